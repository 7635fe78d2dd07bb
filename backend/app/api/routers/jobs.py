"""Read-only upload job status endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.dependencies.db import get_session
from app.api.routers.job_helpers import serialize_job
from app.api.schemas.job import JobResponse
from app.ingestion.importers import entity_type_for_slug
from app.services import job_store
from app.services.progress_tracker import fetch_progress

router = APIRouter()


@router.get(
    "/",
    summary="List upload jobs",
    response_model=list[JobResponse],
)
async def list_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    status: str | None = Query(None, description="Filter by status (PENDING, RUNNING, COMPLETED, FAILED)"),
    entity_type: str | None = Query(None, description="Filter by entity type, e.g. STUDENT_IMPORT"),
    db: Session = Depends(get_session),
) -> list[JobResponse]:
    """Return jobs newest first, each merged with its latest progress snapshot."""
    resolved_type = None
    if entity_type:
        resolved = entity_type_for_slug(entity_type)
        if resolved is None:
            raise HTTPException(status_code=400, detail=f"Unknown entity type: {entity_type}")
        resolved_type = resolved.value

    jobs = job_store.list_jobs(
        db,
        entity_type=resolved_type,
        status=status.upper() if status else None,
        limit=limit,
    )
    return [serialize_job(job, fetch_progress(job.id)) for job in jobs]


@router.get(
    "/{job_id}",
    summary="Fetch job metadata and latest progress",
    response_model=JobResponse,
)
async def get_job(
    job_id: str,
    db: Session = Depends(get_session),
) -> JobResponse:
    """Expose job state and the row-level error report."""
    job = job_store.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return serialize_job(job, fetch_progress(job_id))
