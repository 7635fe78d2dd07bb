"""Upload job payloads."""

from datetime import datetime

from pydantic import BaseModel, Field


class RowError(BaseModel):
    row: int = Field(..., description="1-based data row; 0 for file or job level")
    column: str = ""
    code: str
    message: str


class JobResponse(BaseModel):
    id: str
    entity_type: str = Field(..., description="e.g., STUDENT_IMPORT, TIMETABLE_IMPORT")
    status: str = Field(..., description="PENDING|RUNNING|COMPLETED|FAILED")
    progress: float | None = Field(None, description="0-1 range for UI progress bars")
    message: str | None = None
    total_rows: int = 0
    processed_rows: int = 0
    success_count: int = 0
    failure_count: int = 0
    row_errors: list[RowError] = Field(default_factory=list)
    created_by: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class UploadRejected(BaseModel):
    """Body of a 400 from the upload gate."""

    message: str
    errors: list[RowError] = Field(default_factory=list)
