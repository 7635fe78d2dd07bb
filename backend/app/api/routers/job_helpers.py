"""Shared helpers for shaping job responses."""
from __future__ import annotations

from app.api.schemas.job import JobResponse, RowError
from app.db.models.upload_job import TERMINAL_STATUSES, UploadJob


def serialize_job(job: UploadJob, progress_payload: dict | None) -> JobResponse:
    """Combine DB state + cached progress snapshot into a response schema.

    The database wins once a job is terminal; while it runs, a fresher
    Redis snapshot may report more processed rows than the last commit.
    """
    progress_payload = progress_payload or {}
    terminal = job.status in TERMINAL_STATUSES

    processed_rows = job.processed_rows or 0
    if not terminal:
        processed_rows = max(processed_rows, int(progress_payload.get("processed_rows") or 0))

    if terminal:
        calculated_progress = 1.0
    elif job.total_rows:
        calculated_progress = min(processed_rows / job.total_rows, 1.0)
    else:
        calculated_progress = progress_payload.get("progress")

    message = None if terminal else progress_payload.get("message")
    if not message:
        total_display = job.total_rows if job.total_rows else "?"
        message = f"Processed {processed_rows}/{total_display} rows"

    return JobResponse(
        id=job.id,
        entity_type=job.entity_type,
        status=job.status,
        progress=calculated_progress,
        message=message,
        total_rows=job.total_rows or 0,
        processed_rows=processed_rows,
        success_count=job.success_count or 0,
        failure_count=job.failure_count or 0,
        row_errors=[RowError(**error) for error in (job.row_errors or [])],
        created_by=job.created_by,
        created_at=job.created_at,
        updated_at=job.updated_at,
        completed_at=job.completed_at,
    )
