"""
Tests for the streaming file parser and the CSV/Excel record readers.
"""
import io
from datetime import datetime

import openpyxl
import pytest
import xlrd
from xlrd.sheet import Cell

from app.domain.imports.errors import EmptyFileError, FileParseError
from app.domain.imports.parsers import (
    detect_file_type,
    iter_raw_rows,
    read_headers,
    stream_parse_file,
)
from app.domain.imports.processors.csv_processor import detect_delimiter, detect_encoding, iter_csv_records
from app.domain.imports.processors.excel_processor import cell_to_text, iter_xls_records


def _stream(text, encoding="utf-8"):
    return io.BytesIO(text.encode(encoding))


def _collect(stream, file_type="csv", **kwargs):
    chunks = []
    stats = stream_parse_file(
        stream,
        file_type,
        lambda headers, rows: chunks.append((headers, [(r.row_number, r.values) for r in rows])),
        **kwargs,
    )
    return stats, chunks


class TestDelimiterDetection:
    def test_semicolon(self):
        assert detect_delimiter("Nom;Prénom;Email\n") == ";"

    def test_tab(self):
        assert detect_delimiter("Nom\tPrénom\tEmail\n") == "\t"

    def test_pipe(self):
        assert detect_delimiter("Nom|Prénom|Email\n") == "|"

    def test_ignores_delimiters_inside_quotes(self):
        assert detect_delimiter('"Dupont, Jean";Email;Phone\n') == ";"

    def test_defaults_to_comma(self):
        assert detect_delimiter("Email\n") == ","


class TestFileTypeDetection:
    @pytest.mark.parametrize("name,expected", [("a.csv", "csv"), ("B.XLSX", "xlsx"), ("old.xls", "xls")])
    def test_supported(self, name, expected):
        assert detect_file_type(name) == expected

    def test_unsupported(self):
        with pytest.raises(FileParseError):
            detect_file_type("leads.pdf")


class TestCsvRecords:
    def test_utf8_bom_is_stripped(self):
        records = list(iter_csv_records(io.BytesIO(b"\xef\xbb\xbfEmail,Nom\na@b.fr,X\n")))
        assert records[0] == ["Email", "Nom"]

    def test_latin1_fallback(self):
        records = list(iter_csv_records(_stream("Prénom;Email\nHélène;h@x.fr\n", "latin-1")))
        assert records == [["Prénom", "Email"], ["Hélène", "h@x.fr"]]

    def test_latin1_byte_after_first_read_chunk(self):
        ascii_rows = "".join(f"contact{i},c{i}@exemple.fr\n" for i in range(5000))
        content = ("Nom,Email\n" + ascii_rows + "Hélène,h@x.fr\n").encode("latin-1")
        assert len(content) > 64 * 1024

        stream = io.BytesIO(content)
        assert detect_encoding(stream) == "latin-1"
        assert stream.tell() == 0

        records = list(iter_csv_records(stream))
        assert len(records) == 5002
        assert records[-1] == ["Hélène", "h@x.fr"]

    def test_multibyte_char_split_across_read_chunks(self):
        stream = _stream("Nom\nHélène\n")
        # "é" straddles the boundary between the first two reads.
        assert detect_encoding(stream, chunk_size=6) == "utf-8-sig"

    def test_quoted_fields_with_delimiter_and_newline(self):
        text = 'Nom,Notes\n"Dupont, Jean","ligne 1\nligne 2"\n'
        records = list(iter_csv_records(_stream(text)))
        assert records[1] == ["Dupont, Jean", "ligne 1\nligne 2"]

    def test_caller_stream_stays_open(self):
        stream = _stream("Email\na@b.fr\n")
        list(iter_csv_records(stream))
        assert not stream.closed


class TestStreamParse:
    def test_header_row_is_not_data(self):
        stats, chunks = _collect(_stream("Email,Nom\na@b.fr,A\nc@d.fr,C\n"))
        assert stats.total_rows == 2
        headers, rows = chunks[0]
        assert headers == ["Email", "Nom"]
        assert rows == [(1, ["a@b.fr", "A"]), (2, ["c@d.fr", "C"])]

    def test_blank_lines_do_not_consume_row_numbers(self):
        text = "\n\nEmail\n\na@b.fr\n,\nc@d.fr\n\n"
        stats, chunks = _collect(_stream(text))
        assert chunks[0][0] == ["Email"]
        assert [r[0] for r in chunks[0][1]] == [1, 2]
        assert [r[1][0] for r in chunks[0][1]] == ["a@b.fr", "c@d.fr"]
        assert stats.total_rows == 2

    def test_header_only_file_has_zero_rows(self):
        stats, chunks = _collect(_stream("Email,Nom\n"))
        assert stats.total_rows == 0
        assert chunks == []

    def test_empty_file_raises(self):
        with pytest.raises(EmptyFileError):
            _collect(_stream(""))

    def test_whitespace_only_file_raises(self):
        with pytest.raises(EmptyFileError):
            _collect(_stream("\n  \n ; \n"))

    def test_batches_respect_chunk_size(self):
        text = "Email\n" + "".join(f"u{i}@x.fr\n" for i in range(1, 6))
        stats, chunks = _collect(_stream(text), chunk_size=2)
        assert [len(rows) for _, rows in chunks] == [2, 2, 1]
        assert stats.chunks == 3
        assert stats.emitted_rows == 5

    def test_start_row_skips_already_staged_rows(self):
        text = "Email\n" + "".join(f"u{i}@x.fr\n" for i in range(1, 6))
        stats, chunks = _collect(_stream(text), chunk_size=10, start_row=4)
        assert [r[0] for r in chunks[0][1]] == [4, 5]
        assert stats.total_rows == 5
        assert stats.emitted_rows == 2

    def test_trailing_empty_headers_are_dropped(self):
        headers, _ = read_headers(_stream("Email,Nom,,\na@b.fr,A,,\n"), "csv")
        assert headers == ["Email", "Nom"]

    def test_read_headers_returns_samples(self):
        text = "Email\n" + "".join(f"u{i}@x.fr\n" for i in range(1, 10))
        headers, samples = read_headers(_stream(text), "csv", sample_rows=3)
        assert headers == ["Email"]
        assert samples == [["u1@x.fr"], ["u2@x.fr"], ["u3@x.fr"]]

    def test_invalid_chunk_size(self):
        with pytest.raises(ValueError):
            _collect(_stream("Email\n"), chunk_size=0)


class TestExcel:
    def _xlsx(self, rows, title="Leads"):
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.title = title
        for row in rows:
            sheet.append(row)
        buffer = io.BytesIO()
        workbook.save(buffer)
        buffer.seek(0)
        return buffer

    def test_xlsx_rows(self):
        stream = self._xlsx([["Email", "Code postal"], ["a@b.fr", 75001], [None, None], ["c@d.fr", 69002]])
        parsed = iter_raw_rows(stream, "xlsx")
        assert parsed.headers == ["Email", "Code postal"]
        rows = list(parsed.rows)
        assert [(r.row_number, r.values) for r in rows] == [(1, ["a@b.fr", "75001"]), (2, ["c@d.fr", "69002"])]

    def test_xlsx_named_sheet_missing(self):
        stream = self._xlsx([["Email"], ["a@b.fr"]])
        with pytest.raises(FileParseError):
            iter_raw_rows(stream, "xlsx", sheet_name="Absent")

    def test_corrupt_xlsx(self):
        with pytest.raises(FileParseError):
            iter_raw_rows(io.BytesIO(b"not a zip file"), "xlsx")

    def test_cell_to_text(self):
        assert cell_to_text(None) == ""
        assert cell_to_text(612345678.0) == "612345678"
        assert cell_to_text(1.5) == "1.5"
        assert cell_to_text(datetime(2024, 3, 1)) == "2024-03-01"
        assert cell_to_text(True) == "true"


class FakeXlsSheet:
    def __init__(self, name, rows):
        self.name = name
        self._rows = rows
        self.nrows = len(rows)

    def row(self, index):
        return self._rows[index]


class FakeXlsBook:
    datemode = 0

    def __init__(self, *sheets):
        self.sheets = list(sheets)
        self.released = False

    def sheet_by_index(self, index):
        return self.sheets[index]

    def sheet_by_name(self, name):
        for sheet in self.sheets:
            if sheet.name == name:
                return sheet
        raise xlrd.XLRDError(f"No sheet named <{name!r}>")

    def release_resources(self):
        self.released = True


class TestXls:
    @pytest.fixture
    def book(self, monkeypatch):
        leads = FakeXlsSheet(
            "Leads",
            [
                [Cell(xlrd.XL_CELL_TEXT, "Email"), Cell(xlrd.XL_CELL_TEXT, "Créé le"),
                 Cell(xlrd.XL_CELL_TEXT, "Opt-in"), Cell(xlrd.XL_CELL_TEXT, "Téléphone")],
                [Cell(xlrd.XL_CELL_TEXT, "a@b.fr"), Cell(xlrd.XL_CELL_DATE, 45352.0),
                 Cell(xlrd.XL_CELL_BOOLEAN, 1), Cell(xlrd.XL_CELL_NUMBER, 612345678.0)],
                [Cell(xlrd.XL_CELL_TEXT, "c@d.fr"), Cell(xlrd.XL_CELL_DATE, 45352.5),
                 Cell(xlrd.XL_CELL_BOOLEAN, 0), Cell(xlrd.XL_CELL_ERROR, 0x07)],
                [Cell(xlrd.XL_CELL_EMPTY, ""), Cell(xlrd.XL_CELL_BLANK, ""),
                 Cell(xlrd.XL_CELL_EMPTY, ""), Cell(xlrd.XL_CELL_EMPTY, "")],
            ],
        )
        book = FakeXlsBook(leads, FakeXlsSheet("Archive", []))
        monkeypatch.setattr(xlrd, "open_workbook", lambda file_contents=None, on_demand=False: book)
        return book

    def test_cells_are_rendered_as_text(self, book):
        records = list(iter_xls_records(io.BytesIO(b"xls")))
        assert records == [
            ["Email", "Créé le", "Opt-in", "Téléphone"],
            ["a@b.fr", "2024-03-01", "true", "612345678"],
            ["c@d.fr", "2024-03-01T12:00:00", "false", ""],
            ["", "", "", ""],
        ]
        assert book.released

    def test_parsed_through_stream_parser(self, book):
        stats, chunks = _collect(io.BytesIO(b"xls"), "xls")
        assert chunks[0][0] == ["Email", "Créé le", "Opt-in", "Téléphone"]
        assert [r[0] for r in chunks[0][1]] == [1, 2]
        assert stats.total_rows == 2

    def test_named_sheet(self, book):
        assert list(iter_xls_records(io.BytesIO(b"xls"), sheet_name="Archive")) == []

    def test_missing_sheet(self, book):
        with pytest.raises(FileParseError) as exc_info:
            list(iter_xls_records(io.BytesIO(b"xls"), sheet_name="Absent"))
        assert exc_info.value.details == {"sheet_name": "Absent"}
        assert book.released

    def test_workbook_without_sheets(self, monkeypatch):
        empty = FakeXlsBook()
        monkeypatch.setattr(xlrd, "open_workbook", lambda file_contents=None, on_demand=False: empty)
        assert list(iter_xls_records(io.BytesIO(b"xls"))) == []


def test_corrupt_xls():
    with pytest.raises(FileParseError):
        list(iter_xls_records(io.BytesIO(b"not an xls workbook")))
