"""
Row readers for spreadsheet uploads.

``.xlsx`` files are streamed with openpyxl in read-only mode so only the
current row is held in memory; legacy ``.xls`` files go through xlrd.
"""
import logging
import zipfile
from datetime import date, datetime, time
from typing import Any, BinaryIO, Iterator, List, Optional

import openpyxl
import xlrd
from openpyxl.utils.exceptions import InvalidFileException

from app.domain.imports.errors import FileParseError

logger = logging.getLogger(__name__)


def cell_to_text(value: Any) -> str:
    """Render a spreadsheet cell the way it would appear in a CSV export."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    return str(value)


def iter_xlsx_records(stream: BinaryIO, sheet_name: Optional[str] = None) -> Iterator[List[str]]:
    """Yield each row of the selected sheet (first sheet by default)."""
    try:
        workbook = openpyxl.load_workbook(stream, read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
        raise FileParseError(f"Invalid XLSX file: {e}") from e

    try:
        if sheet_name:
            if sheet_name not in workbook.sheetnames:
                raise FileParseError(
                    f"Sheet '{sheet_name}' not found",
                    {"sheet_name": sheet_name, "available": workbook.sheetnames},
                )
            worksheet = workbook[sheet_name]
        else:
            if not workbook.worksheets:
                return
            worksheet = workbook.worksheets[0]

        logger.info("Reading XLSX sheet '%s'", worksheet.title)
        for row in worksheet.iter_rows(values_only=True):
            yield [cell_to_text(cell) for cell in row]
    finally:
        workbook.close()


def _xls_cell_to_text(cell: Any, datemode: int) -> str:
    if cell.ctype == xlrd.XL_CELL_DATE:
        try:
            return cell_to_text(xlrd.xldate.xldate_as_datetime(cell.value, datemode))
        except (ValueError, OverflowError, xlrd.xldate.XLDateError):
            return cell_to_text(cell.value)
    if cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
        return ""
    if cell.ctype == xlrd.XL_CELL_BOOLEAN:
        return cell_to_text(bool(cell.value))
    return cell_to_text(cell.value)


def iter_xls_records(stream: BinaryIO, sheet_name: Optional[str] = None) -> Iterator[List[str]]:
    """Yield each row of a legacy ``.xls`` sheet."""
    try:
        book = xlrd.open_workbook(file_contents=stream.read(), on_demand=True)
    except xlrd.XLRDError as e:
        raise FileParseError(f"Invalid XLS file: {e}") from e

    try:
        try:
            sheet = book.sheet_by_name(sheet_name) if sheet_name else book.sheet_by_index(0)
        except xlrd.XLRDError as e:
            raise FileParseError(f"Sheet '{sheet_name}' not found", {"sheet_name": sheet_name}) from e
        except IndexError:
            return

        logger.info("Reading XLS sheet '%s' (%s rows)", sheet.name, sheet.nrows)
        for row_idx in range(sheet.nrows):
            yield [_xls_cell_to_text(cell, book.datemode) for cell in sheet.row(row_idx)]
    finally:
        book.release_resources()
