"""Apply a pydantic row schema to one CSV row and map failures to error codes."""

from __future__ import annotations

from collections.abc import Mapping

from pydantic import BaseModel, ValidationError

from app.ingestion.types import ErrorCode, IngestionError, RowResult

ENUM_ERROR_TYPES = frozenset({"literal_error", "enum"})

FORMAT_ERROR_TYPES = frozenset(
    {
        "string_too_short",
        "string_too_long",
        "string_pattern_mismatch",
        "too_short",
        "too_long",
        "greater_than",
        "greater_than_equal",
        "less_than",
        "less_than_equal",
        "value_error",
        "assertion_error",
    }
)


def error_code_for(error_type: str) -> ErrorCode:
    """Translate a pydantic error type into an ingestion error code."""
    if error_type == "missing":
        return ErrorCode.REQUIRED_FIELD
    if error_type in ENUM_ERROR_TYPES:
        return ErrorCode.INVALID_ENUM
    if error_type in FORMAT_ERROR_TYPES:
        return ErrorCode.INVALID_FORMAT
    return ErrorCode.INVALID_TYPE


def _message(error: Mapping) -> str:
    if error["type"] == "missing" and error["loc"]:
        return f"'{error['loc'][-1]}' is required"
    message = str(error.get("msg", "Invalid value"))
    # pydantic prefixes custom predicate failures with "Value error, "
    return message.removeprefix("Value error, ")


def _prepare(fields: Mapping[str, str]) -> dict[str, str]:
    # Blank cells count as absent so required checks report REQUIRED_FIELD.
    return {
        key: value.strip()
        for key, value in fields.items()
        if value is not None and value.strip()
    }


def validate_row(
    schema: type[BaseModel], fields: Mapping[str, str], row_number: int
) -> RowResult:
    """Validate one row; returns the typed record or row-scoped errors."""
    try:
        record = schema.model_validate(_prepare(fields))
    except ValidationError as exc:
        errors = [
            IngestionError(
                row=row_number,
                column=".".join(str(part) for part in error["loc"]),
                code=error_code_for(error["type"]),
                message=_message(error),
            )
            for error in exc.errors()
        ]
        return RowResult(errors=errors)
    return RowResult(data=record.model_dump())
