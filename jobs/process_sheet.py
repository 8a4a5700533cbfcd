"""
Background job for processing a single vocabulary sheet.
This runs in a worker process, separate from the Flask request handler.
"""

import logging
import time

from rq import get_current_job

from jobs.queue import report_progress
from pipeline.ai_service import AIService
from pipeline.config import load_config
from pipeline.errors import PreconditionError, SheetNotFound, describe, is_retryable
from pipeline.runner import SheetPipeline
from pipeline.schema import JobAction, SheetStatus
from pipeline.supabase_client import get_service_client
from pipeline.supabase_db import SupabaseRecordStore
from pipeline.supabase_storage import SupabaseBlobStore

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "Processing was interrupted before it finished"


def build_record_store(config) -> SupabaseRecordStore:
    return SupabaseRecordStore(get_service_client(config))


def build_services(config):
    """Record store, blob store and AI service for one job."""
    client = get_service_client(config)
    return (
        SupabaseRecordStore(client),
        SupabaseBlobStore(client, config.bucket),
        AIService.from_config(config),
    )


def _start_attempt(job) -> int:
    """Count this delivery on the job and return its 1-based attempt number."""
    if job is None:
        return 1
    attempt = int(job.meta.get("attempts", 0)) + 1
    job.meta["attempts"] = attempt
    job.meta["progress"] = 0
    job.save_meta()
    return attempt


def process_sheet_job(sheet_id: str, action: str = JobAction.PROCESS.value, force: bool = False):
    """
    Process or regenerate one sheet.

    Args:
        sheet_id: Sheet to work on
        action: "process" (extract + generate) or "regenerate" (generate only)
        force: regenerate even if existing tests have attempts or assignments

    Returns:
        dict summary of the run (stored as the RQ job result)

    Any exception leaves the sheet FAILED with the error message, unless the
    run was rejected before it took ownership of the sheet. Content errors
    also cancel the remaining RQ retries.
    """
    config = load_config()
    job = get_current_job()
    job_id = job.id if job else "sync"
    attempt = _start_attempt(job)
    started = time.perf_counter()

    logger.info(f"📄 Job started: job_id={job_id} sheet_id={sheet_id} action={action} attempt={attempt}")

    store = None
    try:
        store, blobs, ai = build_services(config)
        pipeline = SheetPipeline(store, blobs, ai, progress=lambda percent: report_progress(percent, job))
        result = pipeline.run(sheet_id, JobAction(action), force=force, redelivery=attempt > 1)

        logger.info(
            f"✅ Job finished: job_id={job_id} sheet_id={sheet_id} tests={result.tests_generated} "
            f"in {time.perf_counter() - started:.1f}s"
        )
        return result.model_dump(mode="json")

    except Exception as e:
        message = describe(e)
        retryable = is_retryable(e)
        logger.error(
            f"❌ FAILED {action} sheet_id={sheet_id} job_id={job_id} attempt={attempt} "
            f"retryable={retryable}: {message}",
            exc_info=True,
        )

        if store is not None and not isinstance(e, (PreconditionError, SheetNotFound)):
            try:
                store.mark_failed(sheet_id, message)
            except Exception as write_err:
                logger.error(f"❌ Could not mark sheet {sheet_id} FAILED: {write_err}")

        if job is not None:
            job.meta["error"] = message
            job.save_meta()
            if not retryable:
                # RQ reads retries_left from this instance when handling the failure.
                job.retries_left = 0

        # Re-raise so RQ marks the job as failed (not silently "finished")
        raise


def mark_sheet_failed(job, connection, exc_type, exc_value, traceback):
    """
    RQ failure callback.

    Also runs when the work horse died (SIGKILL, out of memory) or the job was
    abandoned, where the except block in process_sheet_job never ran. Only a
    sheet still PROCESSING is touched.
    """
    sheet_id = job.meta.get("sheet_id") or (job.args[0] if job.args else None)
    if not sheet_id:
        return

    message = str(exc_value).strip() if exc_value is not None else ""
    message = message or INTERRUPTED_MESSAGE
    try:
        store = build_record_store(load_config())
        sheet = store.get_sheet(sheet_id)
        if sheet is None or sheet.status != SheetStatus.PROCESSING:
            return
        store.mark_failed(sheet_id, message)
        logger.warning(f"⚠️ Sheet {sheet_id} left PROCESSING by job {job.id}, marked FAILED: {message}")
    except Exception as e:
        logger.error(f"❌ Could not mark sheet {sheet_id} FAILED after job {job.id} died: {e}")
