"""Validate CSV header rows against an entity's expected columns."""

from __future__ import annotations

from collections.abc import Sequence

from app.ingestion.types import ErrorCode, IngestionError


def normalize_header(header: str) -> str:
    return header.strip().lstrip("\ufeff").strip().lower()


def validate_headers(
    actual: Sequence[str], expected: Sequence[str]
) -> list[IngestionError]:
    """Compare header sets case-insensitively; column order does not matter.

    Every expected header that is absent yields ``MISSING_HEADER`` and every
    header outside the expected set yields ``EXTRA_HEADER``, including a blank
    header cell such as the one a trailing comma produces.
    """
    actual_set = {normalize_header(header) for header in actual}
    expected_set = {header.lower() for header in expected}
    errors: list[IngestionError] = []

    for header in expected:
        if header.lower() not in actual_set:
            errors.append(
                IngestionError(
                    row=0,
                    column=header,
                    code=ErrorCode.MISSING_HEADER,
                    message=f"Missing required CSV header: '{header}'",
                )
            )

    for header in actual:
        cleaned = header.strip()
        if normalize_header(header) not in expected_set:
            errors.append(
                IngestionError(
                    row=0,
                    column=cleaned,
                    code=ErrorCode.EXTRA_HEADER,
                    message=f"Unexpected CSV header: '{cleaned}'",
                )
            )

    return errors
