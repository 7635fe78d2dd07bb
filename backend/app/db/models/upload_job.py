"""Track CSV import jobs: lifecycle, counters and the row-level error report."""

import enum

from sqlalchemy import Column, DateTime, Index, Integer, String
from sqlalchemy.sql import func

from app.db.base import Base, JSONType, new_id


class JobStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


class UploadJob(Base):
    __tablename__ = "upload_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_type = Column(String(32), nullable=False)
    status = Column(String(16), nullable=False, default=JobStatus.PENDING.value)
    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    row_errors = Column(JSONType, nullable=False, default=list)
    created_by = Column(String(64), nullable=False, default="admin")
    completed_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (Index("ix_upload_jobs_type_status", entity_type, status),)
