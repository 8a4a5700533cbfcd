"""
Redis-based job queue using RQ (Redis Queue).

SheetQueue is constructed once by the composition root (flask_app.create_app,
worker_rq.main) and passed to whoever enqueues. A missing or unreachable Redis
is reported at construction time via QueueUnavailable.
"""

import logging
import urllib.parse
from typing import Any, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Callback, Queue, Retry, get_current_job
from rq.exceptions import NoSuchJobError
from rq.job import Job

from pipeline.errors import QueueUnavailable
from pipeline.schema import JobAction

logger = logging.getLogger(__name__)

JOB_HANDLER = "jobs.process_sheet.process_sheet_job"
FAILURE_HANDLER = "jobs.process_sheet.mark_sheet_failed"


def get_redis_client(redis_url: str) -> Redis:
    """
    Get Redis client connection.
    Format: redis[s]://[:password@]host[:port][/db]
    """
    parsed = urllib.parse.urlparse(redis_url)
    if parsed.scheme not in ("redis", "rediss"):
        raise QueueUnavailable(f"Unsupported Redis URL scheme: {parsed.scheme or redis_url!r}")

    host = parsed.hostname or "localhost"
    port = parsed.port or 6379
    db = int(parsed.path.lstrip("/")) if parsed.path.lstrip("/") else 0
    kwargs: Dict[str, Any] = {"host": host, "port": port, "db": db, "decode_responses": False}
    if parsed.password:
        kwargs["password"] = urllib.parse.unquote(parsed.password)
    if parsed.username:
        kwargs["username"] = urllib.parse.unquote(parsed.username)
    if parsed.scheme == "rediss":
        kwargs["ssl"] = True
    return Redis(**kwargs)


def report_progress(percent: int, job: Optional[Job] = None) -> None:
    """Store progress (0-100) on the running job's meta. No-op outside a worker."""
    job = job or get_current_job()
    if job is None:
        return
    job.meta["progress"] = percent
    job.save_meta()


class SheetQueue:
    """Enqueue and inspect sheet jobs."""

    def __init__(self, connection: Redis, config):
        self.connection = connection
        self.config = config
        self.queue = Queue(config.queue_name, connection=connection)

    @classmethod
    def from_config(cls, config, ping: bool = True) -> "SheetQueue":
        if not config.redis_url:
            raise QueueUnavailable("REDIS_URL is not set")
        connection = get_redis_client(config.redis_url)
        if ping:
            try:
                connection.ping()
            except RedisError as e:
                raise QueueUnavailable(f"Redis is unreachable: {e}")
        return cls(connection, config)

    @property
    def name(self) -> str:
        return self.queue.name

    def enqueue(self, sheet_id: str, action: JobAction = JobAction.PROCESS, force: bool = False) -> str:
        """
        Enqueue a sheet job. Returns the job id.

        Failed attempts are retried up to ``max_attempts`` total with
        exponential backoff (2s, 4s, ...).
        """
        action = JobAction(action)
        retry = None
        if self.config.max_attempts > 1:
            retry = Retry(max=self.config.max_attempts - 1, interval=self.config.retry_intervals)

        job = self.queue.enqueue(
            JOB_HANDLER,
            sheet_id,
            action.value,
            force,
            job_timeout=self.config.job_timeout_seconds,
            result_ttl=self.config.result_ttl_seconds,
            failure_ttl=self.config.failure_ttl_seconds,
            retry=retry,
            on_failure=Callback(FAILURE_HANDLER),
            description=f"{action.value} sheet {sheet_id}",
            meta={"sheet_id": sheet_id, "action": action.value, "progress": 0, "attempts": 0},
        )
        logger.info(f"📥 Enqueued {action.value} job {job.id} for sheet {sheet_id}")
        return job.id

    def get_job_status(self, job_id: str) -> Dict[str, Any]:
        """
        Get the status of a job.

        Returns:
            dict with status, progress, attempts, result or error
        """
        try:
            job = Job.fetch(job_id, connection=self.connection)
        except NoSuchJobError:
            return {"job_id": job_id, "status": "not_found", "error": "Job not found"}

        # Map RQ job status to our status format
        rq_status = job.get_status()
        rq_status = getattr(rq_status, "value", rq_status)
        status_map = {
            "queued": "queued",
            "started": "started",
            "finished": "finished",
            "failed": "failed",
            "deferred": "queued",
            "scheduled": "queued",
        }
        status = status_map.get(rq_status, "unknown")

        progress = job.meta.get("progress", 0)
        if status == "finished":
            progress = 100

        result = {
            "job_id": job_id,
            "sheet_id": job.meta.get("sheet_id"),
            "action": job.meta.get("action"),
            "status": status,
            "progress": progress,
            "attempts": job.meta.get("attempts", 0),
            "created_at": job.created_at.isoformat() if job.created_at else None,
            "started_at": job.started_at.isoformat() if job.started_at else None,
            "finished_at": job.ended_at.isoformat() if job.ended_at else None,
        }

        if status == "finished":
            result["result"] = job.return_value()
        elif status == "failed":
            result["error"] = job.meta.get("error") or "Unknown error"

        return result
