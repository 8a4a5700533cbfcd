"""
Python client for the sheet API: upload, then poll until tests are ready.
"""

from client.api import ApiError, SheetsApiClient
from client.error_messages import FriendlyError, classify_error
from client.poller import CancellationToken, SheetStatusPoller, UploadInProgress, UploadSession

__all__ = [
    "ApiError",
    "SheetsApiClient",
    "FriendlyError",
    "classify_error",
    "CancellationToken",
    "SheetStatusPoller",
    "UploadInProgress",
    "UploadSession",
]
