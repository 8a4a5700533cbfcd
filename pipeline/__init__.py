"""
Pipeline package exports.
"""

from pipeline.runner import SheetPipeline
from pipeline.schema import JobAction, SheetStatus, TestKind

__all__ = ["SheetPipeline", "JobAction", "SheetStatus", "TestKind"]
