"""
CSV error report for rows rejected during parsing.

Invalid rows are read in batches and written one at a time, so the report
can be streamed to the client without holding every rejected row.
"""
import csv
import logging
from io import StringIO
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.db.models import ImportRow

logger = logging.getLogger(__name__)

REPORT_FIXED_COLUMNS = ["row_number", "errors"]
REPORT_BATCH_SIZE = 500


def format_row_errors(errors: Optional[Dict[str, str]]) -> str:
    if not errors:
        return ""
    return "; ".join(f"{field}: {message}" for field, message in errors.items())


def report_columns(raw_rows: Iterable[Optional[Dict[str, str]]]) -> List[str]:
    """Fixed columns followed by every raw source column in first-seen order."""
    columns: List[str] = []
    seen = set()
    for raw in raw_rows:
        for column in (raw or {}):
            if column not in seen:
                seen.add(column)
                columns.append(column)
    return REPORT_FIXED_COLUMNS + columns


def generate_csv_stream(rows: Iterable[ImportRow], columns: List[str], delimiter: str = ",") -> Iterator[str]:
    """
    Generator yielding the report as CSV chunks, header first.

    Args:
        rows: Invalid staged rows in row-number order
        columns: Header from ``report_columns``
        delimiter: Field separator

    Yields:
        CSV data chunks as strings
    """
    buffer = StringIO()
    writer = csv.writer(buffer, delimiter=delimiter, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    raw_columns = columns[len(REPORT_FIXED_COLUMNS):]

    writer.writerow(columns)
    yield buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)

    for row in rows:
        raw = row.raw_data or {}
        writer.writerow(
            [row.row_number, format_row_errors(row.validation_errors)]
            + [raw.get(column, "") for column in raw_columns]
        )
        yield buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)


def _invalid_row_filter(job_id: str):
    return (ImportRow.import_job_id == job_id, ImportRow.status == "invalid")


def count_invalid_rows(session: Session, job_id: str) -> int:
    return session.execute(
        select(func.count(ImportRow.id)).where(*_invalid_row_filter(job_id))
    ).scalar() or 0


def iter_error_report(
    session_factory: Callable[[], Session],
    job_id: str,
    delimiter: str = ",",
    batch_size: int = REPORT_BATCH_SIZE,
) -> Iterator[str]:
    """
    Stream a job's error report from its own session.

    The header needs every raw column, so the invalid rows are scanned twice:
    once for the column names only, then again to write the rows.
    """
    with session_factory() as session:
        raw_rows = session.scalars(
            select(ImportRow.raw_data)
            .where(*_invalid_row_filter(job_id))
            .order_by(ImportRow.row_number)
            .execution_options(yield_per=batch_size)
        )
        columns = report_columns(raw_rows)

        rows = session.scalars(
            select(ImportRow)
            .where(*_invalid_row_filter(job_id))
            .order_by(ImportRow.row_number)
            .execution_options(yield_per=batch_size)
        )
        yield from generate_csv_stream(rows, columns, delimiter)

    logger.info("Streamed error report for job %s", job_id)
