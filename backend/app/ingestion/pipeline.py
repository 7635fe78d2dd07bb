"""Orchestrate one CSV import: parse, validate, resolve, check, persist."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence

from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.scopes import Scope, scope_has_records
from app.ingestion.consistency import (
    check_in_file_duplicates,
    check_schedule_overlaps,
    check_store_duplicates,
)
from app.ingestion.csv_parser import parse_csv
from app.ingestion.importers import EntityImporter
from app.ingestion.relation_resolver import build_relation_maps, resolve_relations
from app.ingestion.types import (
    ErrorCode,
    IngestionError,
    IngestionResult,
    ValidatedRow,
    failed_rows,
)
from app.utils.batching import chunked

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


def check_preconditions(db: Session, scopes: Iterable[Scope]) -> list[IngestionError]:
    """Return a ``PRECONDITION_FAILED`` error for every empty required scope."""
    errors: list[IngestionError] = []
    for scope in scopes:
        if not scope_has_records(db, scope):
            errors.append(
                IngestionError(
                    row=0,
                    column="",
                    code=ErrorCode.PRECONDITION_FAILED,
                    message=(
                        f"Import requires at least one {scope.value} to exist. "
                        f"Import {scope.value} records first."
                    ),
                )
            )
    return errors


def _exclude(rows: Sequence[ValidatedRow], errors: Sequence[IngestionError]) -> list[ValidatedRow]:
    if not errors:
        return list(rows)
    rejected = failed_rows(list(errors))
    return [row for row in rows if row.row_number not in rejected]


def ingest(
    raw: str | bytes,
    importer: EntityImporter,
    db: Session,
    on_progress: ProgressCallback | None = None,
    batch_size: int | None = None,
) -> IngestionResult:
    """Run the full import for ``raw`` CSV content and report per-row outcomes.

    Header, parse and precondition problems abort before any row is touched.
    Everything else excludes the offending rows and carries on, so the
    result always splits ``total_rows`` into successes and failures.
    """
    batch_size = batch_size or get_settings().import_batch_size
    name = importer.entity_type.value

    # 1. Preconditions gate parsing entirely.
    if importer.preconditions:
        precondition_errors = check_preconditions(db, importer.preconditions)
        if precondition_errors:
            logger.info(f"{name}: aborted, {len(precondition_errors)} precondition(s) unmet")
            return IngestionResult.aborted(precondition_errors)

    # 2. Parse.
    parsed = parse_csv(raw, importer.expected_headers)
    if parsed.errors:
        logger.info(f"{name}: aborted on {len(parsed.errors)} header/parse error(s)")
        return IngestionResult.aborted(parsed.errors)

    total_rows = len(parsed.rows)
    errors: list[IngestionError] = []

    # 3. Row validation.
    rows: list[ValidatedRow] = []
    for parsed_row in parsed.rows:
        result = importer.validate_row(parsed_row.fields, parsed_row.row_number)
        if result.ok:
            rows.append(ValidatedRow(parsed_row.row_number, result.data))
        else:
            errors.extend(result.errors)

    # 4. In-file duplicates.
    if importer.unique_fields:
        duplicate_errors = check_in_file_duplicates(rows, importer.unique_fields)
        errors.extend(duplicate_errors)
        rows = _exclude(rows, duplicate_errors)

    # 5. Relations.
    if importer.relations and rows:
        relation_maps = build_relation_maps(db, importer.relations, rows)
        rows, relation_errors = resolve_relations(rows, importer.relations, relation_maps)
        errors.extend(relation_errors)

    # 6. Store duplicates.
    if importer.unique_fields and rows:
        store_errors = check_store_duplicates(
            db,
            rows,
            importer.unique_fields,
            importer.primary_scope,
            importer.unique_field_scopes,
        )
        errors.extend(store_errors)
        rows = _exclude(rows, store_errors)

    # 7. Scheduling overlaps.
    if importer.schedule is not None and rows:
        overlap_errors = check_schedule_overlaps(rows, importer.schedule)
        errors.extend(overlap_errors)
        rows = _exclude(rows, overlap_errors)

    logger.info(
        f"{name}: {total_rows} rows parsed, {len(rows)} passed checks, "
        f"persisting in batches of {batch_size}"
    )

    # 8. Persist.
    success_count = 0
    processed = 0
    for batch in chunked(rows, batch_size):
        batch_errors = importer.persist(db, batch)
        errors.extend(batch_errors)
        success_count += len(batch) - len(failed_rows(batch_errors))
        processed += len(batch)
        if on_progress is not None:
            on_progress(processed)

    # 9. Report.
    failure_count = total_rows - success_count
    logger.info(f"{name}: finished with {success_count} succeeded, {failure_count} failed")
    return IngestionResult(
        total_rows=total_rows,
        success_count=success_count,
        failure_count=failure_count,
        errors=errors,
    )
