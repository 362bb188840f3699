"""
Quote-aware tokenizing of delimited text.

``parse_line`` turns one raw line into its fields. The ``iter_*`` helpers turn
a stream of byte chunks (as read from blob storage) into text lines without
ever holding more than one chunk plus one partial line in memory.
"""
from __future__ import annotations

import codecs
import logging
from typing import Iterable, Iterator, List

logger = logging.getLogger(__name__)

BOM = "\ufeff"
DELIMITER = ","
QUOTE = '"'

# A stray opening quote must not make us buffer the rest of a multi-GB file.
MAX_LOGICAL_LINE_CHARS = 64 * 1024


def parse_line(line: str, header: bool = False) -> List[str]:
    """
    Split one CSV line into fields, honouring double-quoted sections.

    A ``""`` pair inside a quoted section is a literal quote and commas only
    separate fields outside quotes. Fields are trimmed. When ``header`` is
    True, blank fields are named ``Column_<n>`` (1-based) so every column can
    be mapped; data fields keep empty strings.

    Never raises: malformed input yields a best-effort split.
    """
    if not line:
        return []

    if line[0] == BOM:
        line = line[1:]

    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if char == QUOTE:
            if in_quotes and i + 1 < length and line[i + 1] == QUOTE:
                current.append(QUOTE)
                i += 1
            else:
                in_quotes = not in_quotes
        elif char == DELIMITER and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    fields.append("".join(current))

    parsed: List[str] = []
    for index, field in enumerate(fields):
        value = field.strip()
        if header and not value:
            value = f"Column_{index + 1}"
        parsed.append(value)
    return parsed


def iter_text_lines(chunks: Iterable[bytes], encoding: str = "utf-8") -> Iterator[str]:
    """
    Decode a stream of byte chunks and yield its lines.

    Handles LF and CRLF endings and multi-byte characters split across chunk
    boundaries. Undecodable bytes are replaced rather than aborting the stream.
    """
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    pending = ""

    for chunk in chunks:
        if not chunk:
            continue
        pending += decoder.decode(chunk)
        if "\n" not in pending:
            continue
        *complete, pending = pending.split("\n")
        for line in complete:
            yield line[:-1] if line.endswith("\r") else line

    pending += decoder.decode(b"", final=True)
    if pending:
        yield pending[:-1] if pending.endswith("\r") else pending


def has_open_quote(text: str) -> bool:
    """Return True when ``text`` ends inside a quoted field."""
    return text.count(QUOTE) % 2 == 1


def iter_logical_lines(lines: Iterable[str]) -> Iterator[str]:
    """
    Re-join physical lines that belong to one record.

    A quoted field may contain a newline; while the quote is still open the
    following physical line is appended (with the newline restored). Joining
    gives up after ``MAX_LOGICAL_LINE_CHARS`` and emits what it has.
    """
    buffered = None

    for line in lines:
        if buffered is None:
            if not has_open_quote(line):
                yield line
                continue
            buffered = line
            continue

        buffered = f"{buffered}\n{line}"
        if not has_open_quote(buffered):
            yield buffered
            buffered = None
        elif len(buffered) > MAX_LOGICAL_LINE_CHARS:
            logger.warning(
                f"Unterminated quoted field exceeded {MAX_LOGICAL_LINE_CHARS} characters; "
                "emitting the buffered text as one record"
            )
            yield buffered
            buffered = None

    if buffered is not None:
        yield buffered
