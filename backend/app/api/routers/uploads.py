"""Endpoint that gates a CSV upload and hands it to the import queue."""

from __future__ import annotations

import logging

from fastapi import (
    APIRouter,
    Depends,
    File,
    HTTPException,
    UploadFile,
    status,
)
from kombu.exceptions import KombuError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.dependencies.broker import get_publisher
from app.api.dependencies.db import get_session
from app.api.routers.job_helpers import serialize_job
from app.api.schemas.job import JobResponse
from app.ingestion.csv_parser import count_rows
from app.ingestion.importers import IMPORTERS, entity_type_for_slug
from app.ingestion.pipeline import check_preconditions
from app.ingestion.types import IngestionError
from app.services import job_store
from app.services.progress_tracker import publish_progress
from app.workers.broker import BrokerUnavailableError
from app.workers.publisher import JobMessage, JobPublisher

logger = logging.getLogger(__name__)

router = APIRouter()


def _rejected(message: str, errors: list[IngestionError] | None = None) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "message": message,
            "errors": [error.to_dict() for error in errors or []],
        },
    )


@router.post(
    "/{entity_type}",
    summary="Start a CSV import job",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=JobResponse,
)
async def enqueue_import(
    entity_type: str,
    file: UploadFile = File(...),
    db: Session = Depends(get_session),
    publisher: JobPublisher = Depends(get_publisher),
) -> JobResponse:
    """Check headers and preconditions, create a PENDING job and enqueue it.

    Nothing is queued when the file would be rejected before its first row,
    so the caller sees blocking problems immediately.
    """
    resolved_type = entity_type_for_slug(entity_type)
    if resolved_type is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown entity type: {entity_type}",
        )
    importer = IMPORTERS[resolved_type]

    if not file.filename:
        raise _rejected("Filename is required")
    if not file.filename.lower().endswith(".csv"):
        raise _rejected("Only CSV uploads are supported")

    raw = await file.read()
    if not raw.strip():
        raise _rejected("Uploaded file is empty")

    try:
        precondition_errors = check_preconditions(db, importer.preconditions)
    except SQLAlchemyError as exc:
        logger.error(f"Database error checking preconditions: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to check import preconditions",
        ) from exc
    if precondition_errors:
        raise _rejected("Import preconditions not met", precondition_errors)

    total_rows, parse_errors = count_rows(raw, importer.expected_headers)
    if parse_errors:
        raise _rejected("CSV file could not be accepted", parse_errors)
    if total_rows == 0:
        raise _rejected("CSV file contains no data rows")

    try:
        job = job_store.create_job(db, resolved_type.value, total_rows)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(f"Database error creating upload job: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc

    try:
        publisher.publish(JobMessage.for_upload(job.id, resolved_type, total_rows, raw))
    except (KombuError, OSError, BrokerUnavailableError) as exc:
        logger.error(f"Error enqueueing import job {job.id}: {exc}", exc_info=True)
        # Job is created but never reached the queue - mark as failed
        job_store.mark_failed(db, job.id, f"Failed to enqueue import: {exc}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from exc

    publish_progress(job.id, 0, total_rows, status=job.status, message="Queued")
    logger.info(
        f"Created {resolved_type.value} job {job.id} for file {file.filename} ({total_rows} rows)"
    )
    return serialize_job(job, progress_payload={"progress": 0.0, "message": "Queued"})
