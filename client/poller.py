"""
Client-side progress for one upload.

The server only exposes a sheet status (PENDING, PROCESSING, COMPLETED,
FAILED) and an error message. SheetStatusPoller polls that status and turns
it into a staged progress estimate for a UI:

    uploading    0-20%    the upload request itself
    extracting   40%      sheet PENDING (queued or extracting)
    generating   40-95%   sheet PROCESSING, grows with elapsed polls
    finalizing   >= 90%   still PROCESSING, estimate near the end
    complete     100%
    error

Polling stops on a terminal status, on cancellation, after ``max_attempts``
polls, or after ``max_consecutive_failures`` transport failures in a row.
Cancelling only stops polling; the server keeps processing.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from client.api import ApiError
from client.error_messages import FriendlyError, classify_error

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2.0
MAX_POLL_ATTEMPTS = 150
MAX_CONSECUTIVE_FAILURES = 5
MAX_BACKOFF_SECONDS = 30.0

UPLOAD_DONE_PERCENT = 20
PENDING_PERCENT = 40
PROCESSING_CEILING_PERCENT = 95
FINALIZING_PERCENT = 90

STAGE_MESSAGES = {
    "idle": "Ready to upload",
    "uploading": "Uploading file...",
    "extracting": "AI is analyzing your content...",
    "generating": "Creating test variants...",
    "finalizing": "Almost done...",
    "complete": "Tests created successfully!",
    "error": "Something went wrong",
}

STATUS_TO_STAGE = {
    "PENDING": "extracting",
    "PROCESSING": "generating",
    "COMPLETED": "complete",
    "FAILED": "error",
}

TIMEOUT_MESSAGE = "Processing timeout - taking longer than expected"
TRANSPORT_MESSAGE = "Failed to check processing status"


class UploadInProgress(Exception):
    """A second upload was started while the first one is still running."""


class CancellationToken:
    """Set once to stop a poll loop at its next iteration boundary."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if cancelled meanwhile."""
        return self._event.wait(seconds)


@dataclass
class ProgressUpdate:
    stage: str
    percent: int
    message: str
    error: Optional[str] = None


@dataclass
class PollResult:
    """
    outcome: completed | failed | timeout | transport_error | cancelled | upload_failed
    """
    outcome: str
    sheet_id: Optional[str] = None
    sheet: Optional[Dict[str, Any]] = None
    error: Optional[FriendlyError] = None
    attempts: int = 0
    updates: List[ProgressUpdate] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome == "completed"


def estimate_percent(status: str, attempts: int) -> int:
    if status == "PENDING":
        return PENDING_PERCENT
    if status == "PROCESSING":
        return min(PROCESSING_CEILING_PERCENT, PENDING_PERCENT + attempts * 2)
    if status == "COMPLETED":
        return 100
    return 0


def stage_for(status: str, percent: int) -> str:
    stage = STATUS_TO_STAGE.get(status, "error")
    if stage == "generating" and percent >= FINALIZING_PERCENT:
        return "finalizing"
    return stage


def backoff_delay(consecutive_failures: int, interval: float = POLL_INTERVAL_SECONDS,
                  cap: float = MAX_BACKOFF_SECONDS) -> float:
    """2s, 4s, 8s, 16s, then capped at 30s."""
    return min(cap, interval * 2 ** (consecutive_failures - 1))


class SheetStatusPoller:
    def __init__(self, api, interval: float = POLL_INTERVAL_SECONDS,
                 max_attempts: int = MAX_POLL_ATTEMPTS,
                 max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
                 on_update: Optional[Callable[[ProgressUpdate], None]] = None,
                 sleep: Optional[Callable[[float], None]] = None):
        self.api = api
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_consecutive_failures = max_consecutive_failures
        self.on_update = on_update
        self._sleep = sleep

    def _wait(self, seconds: float, token: CancellationToken) -> bool:
        if self._sleep is not None:
            self._sleep(seconds)
            return token.cancelled
        return token.wait(seconds)

    def emit(self, result: PollResult, update: ProgressUpdate) -> None:
        result.updates.append(update)
        if self.on_update:
            self.on_update(update)

    def poll(self, sheet_id: str, token: Optional[CancellationToken] = None) -> PollResult:
        token = token or CancellationToken()
        result = PollResult(outcome="timeout", sheet_id=sheet_id)
        consecutive_failures = 0

        while True:
            if token.cancelled:
                result.outcome = "cancelled"
                return result

            result.attempts += 1
            try:
                sheet = self.api.get_sheet(sheet_id)
            except ApiError as e:
                if not e.is_transport:
                    friendly = classify_error(str(e))
                    result.outcome = "failed"
                    result.error = friendly
                    self.emit(result, ProgressUpdate("error", 0, friendly.title, friendly.description))
                    return result

                consecutive_failures += 1
                logger.warning(f"Polling error ({consecutive_failures} in a row): {e}")
                if consecutive_failures >= self.max_consecutive_failures or result.attempts >= self.max_attempts:
                    result.outcome = "transport_error"
                    result.error = FriendlyError(TRANSPORT_MESSAGE, str(e))
                    self.emit(result, ProgressUpdate("error", 0, TRANSPORT_MESSAGE, str(e)))
                    return result
                if self._wait(backoff_delay(consecutive_failures, self.interval), token):
                    result.outcome = "cancelled"
                    return result
                continue

            consecutive_failures = 0
            result.sheet = sheet
            status = sheet.get("status")

            if status == "COMPLETED":
                self.emit(result, ProgressUpdate("complete", 100, STAGE_MESSAGES["complete"]))
                result.outcome = "completed"
                return result

            if status == "FAILED":
                friendly = classify_error(sheet.get("error_message"))
                result.outcome = "failed"
                result.error = friendly
                self.emit(result, ProgressUpdate("error", 0, friendly.title, friendly.description))
                return result

            percent = estimate_percent(status, result.attempts)
            stage = stage_for(status, percent)
            self.emit(result, ProgressUpdate(stage, percent, STAGE_MESSAGES[stage]))

            if result.attempts >= self.max_attempts:
                result.outcome = "timeout"
                result.error = FriendlyError(TIMEOUT_MESSAGE, TIMEOUT_MESSAGE)
                self.emit(result, ProgressUpdate("error", percent, TIMEOUT_MESSAGE, TIMEOUT_MESSAGE))
                return result

            if self._wait(self.interval, token):
                result.outcome = "cancelled"
                return result


class UploadSession:
    """
    One UI session's upload slot. Only one upload may be in flight; a second
    call while it runs raises UploadInProgress instead of queueing.
    """

    def __init__(self, api, poller: Optional[SheetStatusPoller] = None):
        self.api = api
        self.poller = poller or SheetStatusPoller(api)
        self._lock = threading.Lock()
        self._token: Optional[CancellationToken] = None

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> None:
        """Stop polling the current upload. The server keeps processing it."""
        if self._token is not None:
            self._token.cancel()

    def upload(self, file_bytes: bytes, filename: str, **options) -> PollResult:
        if not self._lock.acquire(blocking=False):
            raise UploadInProgress("An upload is already in progress")
        self._token = CancellationToken()
        try:
            result = PollResult(outcome="upload_failed")
            self.poller.emit(result, ProgressUpdate("uploading", 0, STAGE_MESSAGES["uploading"]))
            try:
                response = self.api.upload(file_bytes, filename, **options)
            except ApiError as e:
                friendly = classify_error(str(e))
                result.error = friendly
                self.poller.emit(result, ProgressUpdate("error", 0, friendly.title, friendly.description))
                return result

            sheet_id = response["sheet"]["id"]
            self.poller.emit(
                result, ProgressUpdate("extracting", UPLOAD_DONE_PERCENT, STAGE_MESSAGES["extracting"])
            )
            polled = self.poller.poll(sheet_id, self._token)
            polled.updates = result.updates + polled.updates
            return polled
        finally:
            self._token = None
            self._lock.release()
