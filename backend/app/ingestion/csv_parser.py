"""Turn raw CSV text into ordered rows, gating on the header shape."""

from __future__ import annotations

import csv
import io
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from app.ingestion.types import ErrorCode, IngestionError, ParsedRow
from app.utils.csv_validator import normalize_header, validate_headers

logger = logging.getLogger(__name__)

BOM = "\ufeff"


@dataclass
class CsvParseResult:
    rows: list[ParsedRow] = field(default_factory=list)
    errors: list[IngestionError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def decode_payload(raw: str | bytes) -> str:
    """Decode uploaded bytes as UTF-8, dropping a leading byte-order mark."""
    text = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else raw
    return text[1:] if text.startswith(BOM) else text


def _is_blank(record: list[str]) -> bool:
    return not any(cell.strip() for cell in record)


def parse_csv(raw: str | bytes, expected_headers: Sequence[str]) -> CsvParseResult:
    """Parse ``raw`` into ``ParsedRow`` records keyed by canonical header names.

    Fields are trimmed and blank lines skipped. Header errors are reported
    when the first data record is reached and stop parsing with zero rows.
    Malformed records stop parsing with a ``PARSE_ERROR`` at the position
    reached; rows read so far are returned alongside it.
    """
    result = CsvParseResult()
    try:
        text = decode_payload(raw)
    except UnicodeDecodeError as e:
        result.errors.append(
            IngestionError(
                row=0,
                column="",
                code=ErrorCode.PARSE_ERROR,
                message=f"File encoding error: {e}",
            )
        )
        return result

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    canonical = {header.lower(): header for header in expected_headers}
    columns: list[str] | None = None
    header_checked = False
    row_number = 0

    try:
        for record in reader:
            if _is_blank(record):
                continue
            if columns is None:
                columns = [cell.strip() for cell in record]
                continue

            if not header_checked:
                header_errors = validate_headers(columns, expected_headers)
                if header_errors:
                    return CsvParseResult(rows=[], errors=header_errors)
                header_checked = True

            row_number += 1
            fields: dict[str, str] = {}
            # Surplus cells beyond the header are dropped; missing trailing
            # cells stay absent.
            for header, cell in zip(columns, record):
                key = canonical.get(normalize_header(header), header)
                fields[key] = cell.strip()
            result.rows.append(ParsedRow(row_number=row_number, fields=fields))
    except csv.Error as e:
        logger.warning(f"CSV parse error near data row {row_number + 1}: {e}")
        result.errors.append(
            IngestionError(
                row=row_number + 1,
                column="",
                code=ErrorCode.PARSE_ERROR,
                message=f"CSV parse error: {e}",
            )
        )

    return result


def count_rows(raw: str | bytes, expected_headers: Sequence[str]) -> tuple[int, list[IngestionError]]:
    """Return the number of data rows and any header/parse errors."""
    parsed = parse_csv(raw, expected_headers)
    return len(parsed.rows), parsed.errors
