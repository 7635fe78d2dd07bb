"""Shared value types for the CSV ingestion pipeline."""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field
from typing import Any

from app.db.scopes import Scope


class ErrorCode(str, enum.Enum):
    # Parsing
    MISSING_HEADER = "MISSING_HEADER"
    EXTRA_HEADER = "EXTRA_HEADER"
    PARSE_ERROR = "PARSE_ERROR"
    # Validation
    REQUIRED_FIELD = "REQUIRED_FIELD"
    INVALID_TYPE = "INVALID_TYPE"
    INVALID_ENUM = "INVALID_ENUM"
    INVALID_FORMAT = "INVALID_FORMAT"
    # Relations
    RELATION_NOT_FOUND = "RELATION_NOT_FOUND"
    # Cross-row consistency
    DUPLICATE_IN_FILE = "DUPLICATE_IN_FILE"
    DUPLICATE_IN_DB = "DUPLICATE_IN_DB"
    CONFLICT_OVERLAP = "CONFLICT_OVERLAP"
    # Persistence
    INSERT_FAILED = "INSERT_FAILED"
    # Preconditions
    PRECONDITION_FAILED = "PRECONDITION_FAILED"


@dataclass(frozen=True)
class IngestionError:
    """One reportable problem; ``row`` 0 means the whole file or job."""

    row: int
    column: str
    code: ErrorCode
    message: str

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["code"] = self.code.value
        return payload


@dataclass(frozen=True)
class ParsedRow:
    row_number: int
    fields: dict[str, str]


@dataclass(frozen=True)
class ValidatedRow:
    row_number: int
    data: dict[str, Any]

    def replace_data(self, **changes: Any) -> ValidatedRow:
        return ValidatedRow(self.row_number, {**self.data, **changes})


@dataclass(frozen=True)
class RowResult:
    """Outcome of validating a single row: typed data or field errors."""

    data: dict[str, Any] | None = None
    errors: list[IngestionError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.data is not None and not self.errors


@dataclass(frozen=True)
class RelationSpec:
    """A column whose text must resolve via ``lookup_field`` inside ``target_scope``."""

    target_scope: Scope
    lookup_field: str


@dataclass(frozen=True)
class ScheduleShape:
    """Columns that make a row a bookable time slot."""

    room_column: str = "room_number"
    teacher_column: str = "teacher_id"
    day_column: str = "day_of_week"
    start_column: str = "start_time"
    end_column: str = "end_time"


@dataclass
class IngestionResult:
    total_rows: int
    success_count: int
    failure_count: int
    errors: list[IngestionError] = field(default_factory=list)

    @classmethod
    def aborted(cls, errors: list[IngestionError]) -> IngestionResult:
        return cls(total_rows=0, success_count=0, failure_count=0, errors=list(errors))

    def errors_as_dicts(self) -> list[dict[str, Any]]:
        return [error.to_dict() for error in self.errors]


def failed_rows(errors: list[IngestionError]) -> set[int]:
    return {error.row for error in errors}
