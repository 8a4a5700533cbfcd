"""
Enqueue-side operations on sheets: upload, regenerate request, delete.

These run in the web process. They never touch the AI service; everything
slow happens in the worker.
"""

import logging
import re
import time
from typing import Optional

from pipeline.errors import InvalidSheetState, RegenerationBlocked, SheetNotFound, UploadRejected
from pipeline.runner import check_regeneration_safety
from pipeline.schema import JobAction, Sheet, SheetStatus, TestKind

logger = logging.getLogger(__name__)

MIN_TESTS = 3
MAX_TESTS = 10

# (mime type, signature, offset)
FILE_SIGNATURES = [
    ("application/pdf", b"%PDF", 0),
    ("image/jpeg", b"\xff\xd8\xff", 0),
    ("image/png", b"\x89PNG\r\n\x1a\n", 0),
    ("image/gif", b"GIF8", 0),
]

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def detect_mime_type(data: bytes) -> Optional[str]:
    """Sniff the file type from magic bytes. Returns None for anything unsupported."""
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for mime_type, signature, offset in FILE_SIGNATURES:
        if data[offset:offset + len(signature)] == signature:
            return mime_type
    return None


def clamp_tests(requested: Optional[int]) -> int:
    if requested is None:
        return MIN_TESTS
    return max(MIN_TESTS, min(MAX_TESTS, int(requested)))


def build_storage_key(owner_id: str, filename: str, timestamp_ms: Optional[int] = None) -> str:
    """<owner>/<timestamp ms>-<sanitized filename>"""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{owner_id}/{timestamp_ms}-{UNSAFE_FILENAME_CHARS.sub('_', filename)}"


def display_name(filename: str) -> str:
    """Default sheet name: the filename without its extension."""
    return re.sub(r"\.[^.]+$", "", filename) or filename


class SheetService:
    """Ties the record store, blob store and queue together for the HTTP layer."""

    def __init__(self, store, blobs, queue, max_upload_bytes: int = 10 * 1024 * 1024):
        self.store = store
        self.blobs = blobs
        self.queue = queue
        self.max_upload_bytes = max_upload_bytes

    def get_owned(self, sheet_id: str, owner_id: str) -> Sheet:
        sheet = self.store.get_sheet(sheet_id, owner_id=owner_id)
        if sheet is None:
            raise SheetNotFound(sheet_id)
        return sheet

    def create_upload(self, owner_id: str, filename: str, data: bytes,
                      tests_to_generate: Optional[int] = None,
                      test_type: TestKind = TestKind.VOCABULARY,
                      grade_level: Optional[int] = None,
                      name: Optional[str] = None):
        """
        Validate, store and enqueue an upload.

        Returns (sheet, job_id). The sheet is created PENDING before the job
        is enqueued, so the worker always finds it.
        """
        if not data:
            raise UploadRejected("No file uploaded")
        if len(data) > self.max_upload_bytes:
            raise UploadRejected(
                f"File too large. Maximum size is {self.max_upload_bytes / 1024 / 1024:g} MB"
            )
        mime_type = detect_mime_type(data)
        if mime_type is None:
            raise UploadRejected("Invalid file type. Allowed types: PDF, JPEG, PNG, GIF, WebP")

        storage_key = build_storage_key(owner_id, filename)
        self.blobs.put(storage_key, data, mime_type)
        logger.info(f"⬆️ Stored upload {storage_key} ({len(data)} bytes, {mime_type})")

        sheet = self.store.create_sheet({
            "owner_id": owner_id,
            "name": name or display_name(filename),
            "original_name": filename,
            "storage_key": storage_key,
            "mime_type": mime_type,
            "tests_to_generate": clamp_tests(tests_to_generate),
            "grade_level": grade_level,
            "test_type": TestKind(test_type).value,
        })
        job_id = self.queue.enqueue(sheet.id, JobAction.PROCESS)
        return sheet, job_id

    def request_regeneration(self, sheet_id: str, owner_id: str, force: bool = False):
        """
        Enqueue a REGENERATE job for a COMPLETED sheet.

        Raises RegenerationBlocked (with counts) when existing tests have
        student attempts or classroom assignments and ``force`` is False.
        """
        sheet = self.get_owned(sheet_id, owner_id)
        if sheet.status != SheetStatus.COMPLETED:
            raise InvalidSheetState(sheet_id, sheet.status.value, SheetStatus.COMPLETED.value)

        report = check_regeneration_safety(self.store, sheet_id)
        if not report.is_safe and not force:
            raise RegenerationBlocked(sheet_id, report)
        if not report.is_safe:
            logger.warning(
                f"⚠️ Forced regeneration of {sheet_id}: deleting {report.attempts} attempt(s), "
                f"{report.assignments} assignment(s)"
            )

        job_id = self.queue.enqueue(sheet_id, JobAction.REGENERATE, force=force)
        return report, job_id

    def delete_sheet(self, sheet_id: str, owner_id: str) -> None:
        """Delete the record (cascades in the database) and its stored files."""
        sheet = self.get_owned(sheet_id, owner_id)
        self.blobs.delete([sheet.storage_key, sheet.processed_storage_key])
        self.store.delete_sheet(sheet_id)
        logger.info(f"🗑️ Deleted sheet {sheet_id}")
