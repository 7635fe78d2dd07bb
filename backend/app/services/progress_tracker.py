"""Latest-progress snapshots for running imports, cached in Redis."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from app.core.config import get_settings
from app.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

settings = get_settings()
redis_client = create_redis_client(
    settings.redis_url,
    verify_ssl=settings.redis_verify_ssl,
    decode_responses=True,
    socket_connect_timeout=5,
)
PROGRESS_PREFIX = "imports:progress:"
PROGRESS_TTL = timedelta(hours=settings.progress_ttl_hours)


def _key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


def publish_progress(
    job_id: str,
    processed_rows: int,
    total_rows: int,
    *,
    status: str | None = None,
    message: str | None = None,
) -> None:
    """Store a progress snapshot so status polls avoid hitting the database."""
    progress = processed_rows / total_rows if total_rows else 0.0
    payload = {
        "job_id": job_id,
        "progress": max(0.0, min(progress, 1.0)),
        "processed_rows": processed_rows,
        "total_rows": total_rows,
        "status": status,
        "message": message or f"Processed {processed_rows}/{total_rows} rows",
    }
    try:
        redis_client.set(
            _key(job_id),
            json.dumps(payload),
            ex=int(PROGRESS_TTL.total_seconds()),
        )
    except RedisError as e:
        # Redis availability should not break ingestion.
        logger.warning(f"Could not publish progress for job {job_id}: {e}")


def fetch_progress(job_id: str) -> dict[str, Any]:
    """Return the latest snapshot for a job, or an empty dict."""
    try:
        raw = redis_client.get(_key(job_id))
    except RedisError as e:
        logger.debug(f"Progress lookup for job {job_id} failed: {e}")
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}

