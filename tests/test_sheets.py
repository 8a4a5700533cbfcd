"""
Tests for upload validation and the enqueue-side sheet operations.
"""

from unittest.mock import MagicMock

import pytest

from pipeline.errors import InvalidSheetState, RegenerationBlocked, SheetNotFound, UploadRejected
from pipeline.schema import JobAction, SheetStatus, TestKind
from pipeline.sheets import SheetService, build_storage_key, clamp_tests, detect_mime_type, display_name


@pytest.fixture
def queue():
    queue = MagicMock()
    queue.enqueue.return_value = "job-7"
    return queue


@pytest.fixture
def service(store, blobs, queue):
    return SheetService(store, blobs, queue, max_upload_bytes=2 * 1024 * 1024)


class TestFileChecks:
    @pytest.mark.parametrize("data,expected", [
        (b"%PDF-1.4", "application/pdf"),
        (b"\xff\xd8\xff\xe0rest", "image/jpeg"),
        (b"\x89PNG\r\n\x1a\nrest", "image/png"),
        (b"GIF89a", "image/gif"),
        (b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp"),
        (b"RIFF\x00\x00\x00\x00WAVEfmt ", None),
        (b"PK\x03\x04", None),
        (b"", None),
    ])
    def test_magic_bytes(self, data, expected):
        assert detect_mime_type(data) == expected

    def test_extension_is_ignored(self, service):
        with pytest.raises(UploadRejected, match="Invalid file type"):
            service.create_upload("teacher-1", "worksheet.pdf", b"not really a pdf")

    def test_clamp(self):
        assert clamp_tests(None) == 3
        assert clamp_tests(1) == 3
        assert clamp_tests(7) == 7
        assert clamp_tests(25) == 10

    def test_storage_key(self):
        key = build_storage_key("teacher-1", "Unit 4 (final)!.pdf", 1700000000000)
        assert key == "teacher-1/1700000000000-Unit_4__final__.pdf"

    def test_display_name(self):
        assert display_name("unit4.final.pdf") == "unit4.final"
        assert display_name("README") == "README"


class TestCreateUpload:
    def test_stores_file_then_enqueues(self, service, store, blobs, queue):
        sheet, job_id = service.create_upload(
            "teacher-1", "spelling week 3.png", b"\x89PNG\r\n\x1a\nimage",
            tests_to_generate=4, test_type=TestKind.SPELLING, grade_level=2,
        )

        assert job_id == "job-7"
        assert sheet.status == SheetStatus.PENDING
        assert sheet.mime_type == "image/png"
        assert sheet.test_type == TestKind.SPELLING
        assert sheet.tests_to_generate == 4
        assert sheet.name == "spelling week 3"
        assert blobs.objects[sheet.storage_key] == b"\x89PNG\r\n\x1a\nimage"
        assert store.sheets[sheet.id] == sheet
        queue.enqueue.assert_called_once_with(sheet.id, JobAction.PROCESS)

    def test_empty_file(self, service):
        with pytest.raises(UploadRejected, match="No file uploaded"):
            service.create_upload("teacher-1", "a.pdf", b"")

    def test_too_large(self, service, queue):
        with pytest.raises(UploadRejected, match="Maximum size is 2 MB"):
            service.create_upload("teacher-1", "a.pdf", b"%PDF" + b"0" * (2 * 1024 * 1024))
        queue.enqueue.assert_not_called()


class TestRegenerationRequest:
    def test_safe_regeneration(self, service, store, queue):
        store.add_sheet(status=SheetStatus.COMPLETED)
        store.create_test("sheet-1", "Unit 4 - Variant A", "A")

        report, job_id = service.request_regeneration("sheet-1", "teacher-1")

        assert report.is_safe
        assert report.affected_tests == 1
        queue.enqueue.assert_called_once_with("sheet-1", JobAction.REGENERATE, force=False)

    def test_blocked_by_attempts(self, service, store, queue):
        store.add_sheet(status=SheetStatus.COMPLETED)
        test = store.create_test("sheet-1", "Unit 4 - Variant A", "A")
        store.attempts[test.id] = 2

        with pytest.raises(RegenerationBlocked) as exc_info:
            service.request_regeneration("sheet-1", "teacher-1")

        assert exc_info.value.report.attempts == 2
        assert "force=true" in str(exc_info.value)
        queue.enqueue.assert_not_called()

    def test_force_overrides(self, service, store, queue):
        store.add_sheet(status=SheetStatus.COMPLETED)
        test = store.create_test("sheet-1", "Unit 4 - Variant A", "A")
        store.assignments[test.id] = 1

        report, _ = service.request_regeneration("sheet-1", "teacher-1", force=True)

        assert report.assignments == 1
        queue.enqueue.assert_called_once_with("sheet-1", JobAction.REGENERATE, force=True)

    @pytest.mark.parametrize("status", [SheetStatus.PENDING, SheetStatus.PROCESSING, SheetStatus.FAILED])
    def test_only_completed_sheets(self, service, store, status):
        store.add_sheet(status=status)
        with pytest.raises(InvalidSheetState):
            service.request_regeneration("sheet-1", "teacher-1")

    def test_other_owner(self, service, store):
        store.add_sheet(status=SheetStatus.COMPLETED, owner_id="teacher-2")
        with pytest.raises(SheetNotFound):
            service.request_regeneration("sheet-1", "teacher-1")


class TestDeleteSheet:
    def test_deletes_files_and_record(self, service, store, blobs):
        sheet = store.add_sheet()
        blobs.objects[sheet.storage_key] = b"%PDF"

        service.delete_sheet("sheet-1", "teacher-1")

        assert "sheet-1" not in store.sheets
        assert sheet.storage_key not in blobs.objects
        assert store.calls[-1] == "delete_sheet"
