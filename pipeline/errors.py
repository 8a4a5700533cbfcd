"""
Exception taxonomy for the sheet pipeline.

Content and contract errors are never retried by the queue: retrying an
identical upload or an identical malformed model answer does not help.
Anything not listed in NON_RETRYABLE is treated as transient.
"""

from typing import Optional

from pipeline.schema import SafetyReport


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ContentError(PipelineError):
    """The document or the stored words cannot produce a test."""


class MalformedResponseError(ContentError):
    """The AI service answered with something we cannot parse or trust."""


class ServiceUnavailable(PipelineError):
    """No AI provider is configured for this process."""


class SheetNotFound(PipelineError):
    def __init__(self, sheet_id: str):
        super().__init__(f"Vocabulary sheet {sheet_id} not found")
        self.sheet_id = sheet_id


class PreconditionError(PipelineError):
    """
    The run was rejected before it took ownership of the sheet.
    The sheet is left exactly as it was.
    """


class InvalidSheetState(PreconditionError):
    def __init__(self, sheet_id: str, status: str, expected: str):
        super().__init__(
            f"Sheet {sheet_id} is {status}; expected {expected}"
        )
        self.sheet_id = sheet_id
        self.status = status


class RegenerationBlocked(PreconditionError):
    """Regenerating would cascade-delete student attempts or assignments."""

    def __init__(self, sheet_id: str, report: SafetyReport):
        super().__init__(
            f"Regenerating sheet {sheet_id} would delete {report.attempts} attempt(s) "
            f"and {report.assignments} assignment(s) across {report.affected_tests} test(s). "
            "Pass force=true to regenerate anyway."
        )
        self.sheet_id = sheet_id
        self.report = report


class UploadRejected(PipelineError):
    """The uploaded file fails size or type validation."""


class QueueUnavailable(PipelineError):
    """The job queue cannot be constructed (missing or unreachable Redis)."""


NON_RETRYABLE = (ContentError, PreconditionError, SheetNotFound, ServiceUnavailable)


def is_retryable(exc: BaseException) -> bool:
    return not isinstance(exc, NON_RETRYABLE)


def describe(exc: Optional[BaseException]) -> str:
    """Human-readable message for the sheet's error column."""
    if exc is None:
        return "Unknown error occurred"
    message = str(exc).strip()
    return message or exc.__class__.__name__
