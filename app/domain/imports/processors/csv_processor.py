import codecs
import csv
import io
import itertools
import logging
from typing import BinaryIO, Iterator, List, Optional

from app.domain.imports.errors import FileParseError

logger = logging.getLogger(__name__)

# Candidate delimiters, in tie-break order.
SUPPORTED_DELIMITERS = (",", ";", "\t", "|")

# Read size while checking the file decodes as UTF-8.
_ENCODING_CHUNK_BYTES = 64 * 1024


def detect_delimiter(line: str) -> str:
    """
    Pick the delimiter that occurs most often in a header line.

    Occurrences inside double quotes are ignored. Falls back to a comma when
    no candidate appears.
    """
    counts = {delimiter: 0 for delimiter in SUPPORTED_DELIMITERS}
    in_quotes = False
    for char in line:
        if char == '"':
            in_quotes = not in_quotes
        elif not in_quotes and char in counts:
            counts[char] += 1

    best = max(SUPPORTED_DELIMITERS, key=lambda d: counts[d])
    return best if counts[best] > 0 else ","


def detect_encoding(stream: BinaryIO, chunk_size: int = _ENCODING_CHUNK_BYTES) -> str:
    """
    Return ``utf-8-sig`` when the whole stream decodes as UTF-8, else ``latin-1``.

    The stream is read chunk by chunk and rewound afterwards, so a non-UTF-8
    byte far into the file is still seen before parsing starts.
    """
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        for chunk in iter(lambda: stream.read(chunk_size), b""):
            decoder.decode(chunk, final=False)
        decoder.decode(b"", final=True)
        return "utf-8-sig"
    except UnicodeDecodeError:
        logger.info("CSV is not valid UTF-8; decoding as latin-1")
        return "latin-1"
    finally:
        stream.seek(0)


def iter_csv_records(stream: BinaryIO, delimiter: Optional[str] = None) -> Iterator[List[str]]:
    """
    Lazily yield every CSV record (header included) as a list of strings.

    Args:
        stream: Seekable binary stream positioned at the start of the file
        delimiter: Force a delimiter instead of detecting it from the first
            non-empty line

    Raises:
        FileParseError: If the file is not valid delimited text
    """
    encoding = detect_encoding(stream)
    text_stream = io.TextIOWrapper(stream, encoding=encoding, newline="")

    try:
        # Buffer leading blank lines so the detection line is not lost.
        leading: List[str] = []
        first_line = ""
        for line in text_stream:
            leading.append(line)
            if line.strip():
                first_line = line
                break

        if delimiter is None:
            delimiter = detect_delimiter(first_line)
        logger.debug("Detected CSV delimiter %r", delimiter)

        reader = csv.reader(itertools.chain(leading, text_stream), delimiter=delimiter)
        try:
            for record in reader:
                yield record
        except csv.Error as e:
            raise FileParseError(
                f"Malformed CSV near line {reader.line_num}: {e}",
                {"line": reader.line_num},
            ) from e
        except UnicodeDecodeError as e:
            raise FileParseError(f"CSV file could not be decoded as {encoding}: {e}") from e
    finally:
        # Leave the caller's stream open.
        if not text_stream.closed:
            text_stream.detach()
