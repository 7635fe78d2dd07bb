"""Batch-resolve human-readable reference columns to record identifiers."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from sqlalchemy.orm import Session

from app.db.scopes import lookup_ids
from app.ingestion.types import ErrorCode, IngestionError, RelationSpec, ValidatedRow

logger = logging.getLogger(__name__)

MULTI_VALUE_SEPARATOR = "|"

RelationMaps = dict[str, dict[str, str]]


def split_values(value: object) -> list[str]:
    """Split a (possibly pipe-separated) cell into trimmed, non-empty parts."""
    if value is None:
        return []
    text = str(value)
    if MULTI_VALUE_SEPARATOR not in text:
        return [text] if text else []
    return [part.strip() for part in text.split(MULTI_VALUE_SEPARATOR) if part.strip()]


def collect_lookup_values(
    rows: Sequence[ValidatedRow], relations: Mapping[str, RelationSpec]
) -> dict[str, list[str]]:
    """Return the distinct lookup values per relation column, in first-seen order."""
    values: dict[str, dict[str, None]] = {column: {} for column in relations}
    for row in rows:
        for column in relations:
            for part in split_values(row.data.get(column)):
                values[column][part] = None
    return {column: list(seen) for column, seen in values.items()}


def build_relation_maps(
    db: Session, relations: Mapping[str, RelationSpec], rows: Sequence[ValidatedRow]
) -> RelationMaps:
    """Issue one lookup per relation column and map each value to its id."""
    lookup_values = collect_lookup_values(rows, relations)
    maps: RelationMaps = {}
    for column, spec in relations.items():
        wanted = lookup_values.get(column, [])
        maps[column] = (
            lookup_ids(db, spec.target_scope, spec.lookup_field, wanted) if wanted else {}
        )
        logger.debug(
            f"Resolved {len(maps[column])}/{len(wanted)} {spec.target_scope.value} "
            f"references for column '{column}'"
        )
    return maps


def _not_found(row: ValidatedRow, column: str, spec: RelationSpec, value: str) -> IngestionError:
    return IngestionError(
        row=row.row_number,
        column=column,
        code=ErrorCode.RELATION_NOT_FOUND,
        message=(
            f"Referenced {spec.target_scope.value} '{value}' "
            f"(matched by {spec.lookup_field}) does not exist"
        ),
    )


def resolve_relations(
    rows: Sequence[ValidatedRow],
    relations: Mapping[str, RelationSpec],
    relation_maps: RelationMaps,
) -> tuple[list[ValidatedRow], list[IngestionError]]:
    """Substitute identifiers for names, returning new rows.

    A row with any unresolved value (or any unresolved part of a multi-valued
    cell) is left out of the resolved list.
    """
    resolved: list[ValidatedRow] = []
    errors: list[IngestionError] = []

    for row in rows:
        substitutions: dict[str, str] = {}
        row_ok = True
        for column, spec in relations.items():
            value = row.data.get(column)
            if value is None or value == "":
                continue
            mapping = relation_maps.get(column, {})
            text = str(value)

            if MULTI_VALUE_SEPARATOR in text:
                ids: list[str] = []
                for part in split_values(text):
                    record_id = mapping.get(part)
                    if record_id is None:
                        errors.append(_not_found(row, column, spec, part))
                        row_ok = False
                    else:
                        ids.append(record_id)
                substitutions[column] = MULTI_VALUE_SEPARATOR.join(ids)
                continue

            record_id = mapping.get(text)
            if record_id is None:
                errors.append(_not_found(row, column, spec, text))
                row_ok = False
            else:
                substitutions[column] = record_id

        if row_ok:
            resolved.append(row.replace_data(**substitutions))

    return resolved, errors
