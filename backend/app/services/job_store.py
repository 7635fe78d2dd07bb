"""Lifecycle transitions for ``UploadJob`` records.

Every transition is one conditional ``UPDATE`` committed immediately, so two
workers racing on the same job converge: only one claims it, and a job that
reached COMPLETED or FAILED never changes again.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.db.models.upload_job import TERMINAL_STATUSES, JobStatus, UploadJob
from app.ingestion.types import ErrorCode, IngestionError

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


def _apply(db: Session, job_id: str, *conditions, **values) -> bool:
    result = db.execute(
        update(UploadJob)
        .where(UploadJob.id == job_id, *conditions)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def create_job(
    db: Session, entity_type: str, total_rows: int, created_by: str = "admin"
) -> UploadJob:
    job = UploadJob(
        entity_type=entity_type,
        status=JobStatus.PENDING.value,
        total_rows=total_rows,
        processed_rows=0,
        success_count=0,
        failure_count=0,
        row_errors=[],
        created_by=created_by,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"Created {entity_type} job {job.id} for {total_rows} rows")
    return job


def mark_running(db: Session, job_id: str) -> bool:
    """Claim a PENDING job. Returns False when it was not PENDING."""
    claimed = _apply(
        db,
        job_id,
        UploadJob.status == JobStatus.PENDING.value,
        status=JobStatus.RUNNING.value,
    )
    if not claimed:
        logger.debug(f"Job {job_id} was not PENDING; claim skipped")
    return claimed


def update_progress(db: Session, job_id: str, processed_rows: int) -> bool:
    return _apply(
        db,
        job_id,
        UploadJob.status == JobStatus.RUNNING.value,
        processed_rows=processed_rows,
    )


def mark_completed(
    db: Session,
    job_id: str,
    success_count: int,
    failure_count: int,
    errors: Sequence[IngestionError],
) -> bool:
    updated = _apply(
        db,
        job_id,
        UploadJob.status.notin_(TERMINAL_STATUSES),
        status=JobStatus.COMPLETED.value,
        success_count=success_count,
        failure_count=failure_count,
        processed_rows=success_count + failure_count,
        row_errors=[error.to_dict() for error in errors],
        completed_at=datetime.now(timezone.utc),
    )
    if not updated:
        logger.warning(f"Job {job_id} already terminal; completion ignored")
    return updated


def mark_failed(db: Session, job_id: str, message: str) -> bool:
    error = IngestionError(row=0, column="", code=ErrorCode.INSERT_FAILED, message=message)
    updated = _apply(
        db,
        job_id,
        UploadJob.status.notin_(TERMINAL_STATUSES),
        status=JobStatus.FAILED.value,
        row_errors=[error.to_dict()],
        completed_at=datetime.now(timezone.utc),
    )
    if updated:
        logger.error(f"Job {job_id} failed: {message}")
    else:
        logger.warning(f"Job {job_id} already terminal; failure ignored")
    return updated


def get_job(db: Session, job_id: str) -> UploadJob | None:
    return db.get(UploadJob, job_id)


def list_jobs(
    db: Session,
    entity_type: str | None = None,
    status: str | None = None,
    limit: int = DEFAULT_LIST_LIMIT,
) -> list[UploadJob]:
    """Return jobs newest first, optionally filtered by entity type and status."""
    stmt = select(UploadJob)
    if entity_type:
        stmt = stmt.where(UploadJob.entity_type == entity_type)
    if status:
        stmt = stmt.where(UploadJob.status == status)
    stmt = stmt.order_by(UploadJob.created_at.desc(), UploadJob.id.desc()).limit(limit)
    return list(db.scalars(stmt))
