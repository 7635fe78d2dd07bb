"""Cross-row checks: in-file duplicates, store duplicates and schedule overlaps."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping, Sequence

from sqlalchemy.orm import Session

from app.db.scopes import Scope, find_existing_values
from app.ingestion.types import ErrorCode, IngestionError, ScheduleShape, ValidatedRow

logger = logging.getLogger(__name__)


def normalize_value(value: object) -> str:
    return str(value).strip().casefold()


def _present(value: object) -> bool:
    return value is not None and str(value).strip() != ""


def check_in_file_duplicates(
    rows: Sequence[ValidatedRow], unique_fields: Sequence[str]
) -> list[IngestionError]:
    """Flag every repeat of a unique value after its first occurrence."""
    errors: list[IngestionError] = []
    for field in unique_fields:
        first_seen: dict[str, int] = {}
        for row in rows:
            value = row.data.get(field)
            if not _present(value):
                continue
            key = normalize_value(value)
            if key in first_seen:
                errors.append(
                    IngestionError(
                        row=row.row_number,
                        column=field,
                        code=ErrorCode.DUPLICATE_IN_FILE,
                        message=(
                            f"Duplicate '{field}' value '{value}' "
                            f"(first seen at row {first_seen[key]})"
                        ),
                    )
                )
            else:
                first_seen[key] = row.row_number
    return errors


def check_store_duplicates(
    db: Session,
    rows: Sequence[ValidatedRow],
    unique_fields: Sequence[str],
    default_scope: Scope,
    field_scopes: Mapping[str, Scope] | None = None,
) -> list[IngestionError]:
    """Flag rows whose unique values already exist in the store.

    The store is queried with the values as written in the file; a match
    then flags every row sharing its normalized form.
    """
    field_scopes = field_scopes or {}
    errors: list[IngestionError] = []

    for field in unique_fields:
        scope = field_scopes.get(field, default_scope)
        rows_by_key: dict[str, list[ValidatedRow]] = defaultdict(list)
        candidates: dict[str, None] = {}
        for row in rows:
            value = row.data.get(field)
            if not _present(value):
                continue
            rows_by_key[normalize_value(value)].append(row)
            candidates[str(value).strip()] = None

        if not candidates:
            continue

        existing = find_existing_values(db, scope, field, candidates)
        matched_keys = {normalize_value(value) for value in existing}
        if matched_keys:
            logger.info(
                f"{len(matched_keys)} '{field}' value(s) already exist in {scope.value}"
            )

        for key in matched_keys:
            for row in rows_by_key.get(key, []):
                errors.append(
                    IngestionError(
                        row=row.row_number,
                        column=field,
                        code=ErrorCode.DUPLICATE_IN_DB,
                        message=(
                            f"{scope.value} with {field} '{row.data.get(field)}' "
                            f"already exists"
                        ),
                    )
                )

    errors.sort(key=lambda error: error.row)
    return errors


def _overlaps_for(
    rows: Sequence[ValidatedRow], shape: ScheduleShape, column: str, label: str
) -> list[IngestionError]:
    groups: dict[tuple[str, str], list[ValidatedRow]] = defaultdict(list)
    for row in rows:
        resource = row.data.get(column)
        day = row.data.get(shape.day_column)
        if not _present(resource) or not _present(day):
            continue
        groups[(str(resource), str(day))].append(row)

    errors: list[IngestionError] = []
    for (_, day), group in groups.items():
        ordered = sorted(
            group, key=lambda r: (r.data[shape.start_column], r.row_number)
        )
        for i, earlier in enumerate(ordered):
            earlier_end = earlier.data[shape.end_column]
            for later in ordered[i + 1 :]:
                # Half-open intervals: touching slots do not conflict.
                if later.data[shape.start_column] >= earlier_end:
                    break
                errors.append(
                    IngestionError(
                        row=later.row_number,
                        column=column,
                        code=ErrorCode.CONFLICT_OVERLAP,
                        message=(
                            f"{label} is already booked on {day} "
                            f"{earlier.data[shape.start_column]}-{earlier_end} "
                            f"by row {earlier.row_number}"
                        ),
                    )
                )
    return errors


def check_schedule_overlaps(
    rows: Sequence[ValidatedRow], shape: ScheduleShape
) -> list[IngestionError]:
    """Detect overlapping slots per (room, day) and per (teacher, day)."""
    errors = _overlaps_for(rows, shape, shape.room_column, "Room")
    errors.extend(_overlaps_for(rows, shape, shape.teacher_column, "Teacher"))
    return errors
