"""
Environment-driven configuration for the sheet pipeline.

Entry points (flask_app.py, worker_rq.py) call load_config() once and pass the
result down; nothing below them reads os.environ for queue or worker settings.
"""

import os
from dataclasses import dataclass
from typing import Optional, Mapping

from dotenv import load_dotenv


@dataclass(frozen=True)
class PipelineConfig:
    """Queue, worker and provider settings."""

    redis_url: Optional[str] = None
    queue_name: str = "vocabulary-processing"

    # Worker pool
    concurrency: int = 2
    rate_limit_max_starts: int = 10
    rate_limit_window_seconds: int = 60

    # Retry and retention
    max_attempts: int = 3
    backoff_seconds: int = 2
    job_timeout_seconds: int = 600
    result_ttl_seconds: int = 24 * 3600
    failure_ttl_seconds: int = 7 * 24 * 3600

    # Storage
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    bucket: str = "vocab-documents"

    # AI providers (OpenAI preferred, Groq for text-only generation)
    openai_api_key: Optional[str] = None
    groq_api_key: Optional[str] = None

    max_upload_bytes: int = 10 * 1024 * 1024
    worker_id: Optional[str] = None

    @property
    def retry_intervals(self) -> list:
        """Backoff between attempts: base, 2*base, 4*base, ..."""
        return [self.backoff_seconds * (2 ** i) for i in range(max(self.max_attempts - 1, 0))]


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_config(env: Optional[Mapping[str, str]] = None) -> PipelineConfig:
    """Build a PipelineConfig from environment variables (.env is honored when present)."""
    if env is None:
        load_dotenv()
        env = os.environ

    return PipelineConfig(
        redis_url=env.get("REDIS_URL") or None,
        queue_name=env.get("SHEET_QUEUE_NAME", "vocabulary-processing"),
        concurrency=_int(env, "WORKER_CONCURRENCY", 2),
        rate_limit_max_starts=_int(env, "RATE_LIMIT_MAX_STARTS", 10),
        rate_limit_window_seconds=_int(env, "RATE_LIMIT_WINDOW_SECONDS", 60),
        max_attempts=_int(env, "JOB_MAX_ATTEMPTS", 3),
        backoff_seconds=_int(env, "JOB_BACKOFF_SECONDS", 2),
        job_timeout_seconds=_int(env, "JOB_TIMEOUT_SECONDS", 600),
        result_ttl_seconds=_int(env, "JOB_RESULT_TTL", 24 * 3600),
        failure_ttl_seconds=_int(env, "JOB_FAILURE_TTL", 7 * 24 * 3600),
        supabase_url=(env.get("SUPABASE_URL") or "").rstrip("/") or None,
        supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or None,
        bucket=env.get("SHEET_BUCKET", "vocab-documents"),
        openai_api_key=env.get("OPENAI_API_KEY") or None,
        groq_api_key=env.get("GROQ_API_KEY") or None,
        max_upload_bytes=_int(env, "MAX_UPLOAD_BYTES", 10 * 1024 * 1024),
        worker_id=env.get("WORKER_ID") or None,
    )
