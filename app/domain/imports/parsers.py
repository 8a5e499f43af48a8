"""
Streaming file parser for lead imports.

Turns an uploaded CSV/XLSX/XLS stream into a lazy, forward-only sequence of
numbered data rows. The first non-blank record is the header and is never
emitted as data; blank records are skipped without consuming a row number.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple

from app.domain.imports.errors import EmptyFileError, FileParseError
from app.domain.imports.processors.csv_processor import iter_csv_records
from app.domain.imports.processors.excel_processor import iter_xls_records, iter_xlsx_records

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "xlsx", "xls")

DEFAULT_CHUNK_SIZE = 500


@dataclass
class RawRow:
    row_number: int  # 1-based, header excluded
    values: List[str]


@dataclass
class ParsedFile:
    headers: List[str]
    rows: Iterator[RawRow]


@dataclass
class ParseStats:
    total_rows: int = 0
    emitted_rows: int = 0
    chunks: int = 0


def detect_file_type(file_name: str) -> str:
    """Map a file name to ``csv``, ``xlsx`` or ``xls``."""
    extension = os.path.splitext(file_name or "")[1].lower().lstrip(".")
    if extension not in SUPPORTED_FILE_TYPES:
        raise FileParseError(
            f"Unsupported file type '.{extension}'. Use CSV, XLSX or XLS.",
            {"file_name": file_name},
        )
    return extension


def _is_blank(record: List[str]) -> bool:
    return all(not (value or "").strip() for value in record)


def _iter_records(stream: BinaryIO, file_type: str, sheet_name: Optional[str]) -> Iterator[List[str]]:
    if file_type == "csv":
        return iter_csv_records(stream)
    if file_type == "xlsx":
        return iter_xlsx_records(stream, sheet_name)
    if file_type == "xls":
        return iter_xls_records(stream, sheet_name)
    raise FileParseError(f"Unsupported file type '{file_type}'")


def iter_raw_rows(stream: BinaryIO, file_type: str, sheet_name: Optional[str] = None) -> ParsedFile:
    """
    Open a file for row-by-row reading.

    The header is read eagerly; data rows are produced on demand.

    Raises:
        EmptyFileError: If the file contains no header row
        FileParseError: If the file is structurally invalid
    """
    records = _iter_records(stream, file_type, sheet_name)

    headers: Optional[List[str]] = None
    for record in records:
        if not _is_blank(record):
            headers = [(value or "").strip() for value in record]
            break

    if headers is None:
        raise EmptyFileError("The file is empty: no header row found")

    # Trailing empty header cells are spreadsheet padding.
    while headers and not headers[-1]:
        headers.pop()
    if not headers:
        raise EmptyFileError("The file is empty: no header row found")

    def _rows() -> Iterator[RawRow]:
        row_number = 0
        for record in records:
            if _is_blank(record):
                continue
            row_number += 1
            yield RawRow(row_number=row_number, values=list(record))

    return ParsedFile(headers=headers, rows=_rows())


def read_headers(
    stream: BinaryIO,
    file_type: str,
    sheet_name: Optional[str] = None,
    sample_rows: int = 5,
) -> Tuple[List[str], List[List[str]]]:
    """Return the headers and up to ``sample_rows`` data rows for preview/auto-mapping."""
    parsed = iter_raw_rows(stream, file_type, sheet_name)
    samples: List[List[str]] = []
    for row in parsed.rows:
        if len(samples) >= sample_rows:
            break
        samples.append(row.values)
    return parsed.headers, samples


def stream_parse_file(
    stream: BinaryIO,
    file_type: str,
    on_chunk: Callable[[List[str], List[RawRow]], None],
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    start_row: int = 1,
    sheet_name: Optional[str] = None,
) -> ParseStats:
    """
    Feed data rows to ``on_chunk`` in batches of at most ``chunk_size``.

    Rows numbered below ``start_row`` are read past without being emitted,
    which is how a resumed parse skips already-staged rows. Only one batch is
    held in memory at a time.

    Args:
        stream: Binary file stream
        file_type: One of ``csv``, ``xlsx``, ``xls``
        on_chunk: Called with ``(headers, rows)`` for every batch
        chunk_size: Maximum rows per batch
        start_row: First row number to emit
        sheet_name: Spreadsheet sheet to read (first sheet when omitted)

    Returns:
        ParseStats with the total number of data rows in the file
    """
    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")

    parsed = iter_raw_rows(stream, file_type, sheet_name)
    stats = ParseStats()
    batch: List[RawRow] = []

    for row in parsed.rows:
        stats.total_rows = row.row_number
        if row.row_number < start_row:
            continue
        batch.append(row)
        if len(batch) >= chunk_size:
            on_chunk(parsed.headers, batch)
            stats.emitted_rows += len(batch)
            stats.chunks += 1
            batch = []

    if batch:
        on_chunk(parsed.headers, batch)
        stats.emitted_rows += len(batch)
        stats.chunks += 1

    logger.info(
        "Parsed %s data rows (%s emitted from row %s in %s chunks)",
        stats.total_rows,
        stats.emitted_rows,
        start_row,
        stats.chunks,
    )
    return stats
