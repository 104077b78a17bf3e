from __future__ import annotations

import logging
from typing import BinaryIO, Generator, Iterable, Iterator, Tuple, Union

from .types import IncompleteStatementError, StreamReadError

TRAILING_DROP = "drop"
TRAILING_EXECUTE = "execute"
TRAILING_REJECT = "reject"
TRAILING_POLICIES = (TRAILING_DROP, TRAILING_EXECUTE, TRAILING_REJECT)

Line = Union[bytes, str]


class LineEndBoundary:
    """A line ends a statement when its trimmed text ends with ``;``.

    Semicolons inside string literals or comments are not special-cased, so
    ``'a;\\n'`` split across lines or ``-- note;`` both terminate.
    """

    name = "line-end"

    def is_boundary(self, text: str) -> bool:
        return text.rstrip().endswith(";")

    def reset(self) -> None:
        pass


class QuoteAwareBoundary:
    """Like ``LineEndBoundary`` but ignores ``;`` inside quotes and comments."""

    name = "quote-aware"

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.in_single = False
        self.in_double = False
        self.in_backtick = False
        self.in_block_comment = False

    def _in_literal(self) -> bool:
        return self.in_single or self.in_double or self.in_backtick

    def is_boundary(self, text: str) -> bool:
        # This code here walks the line once, carrying quote/comment state across lines.
        # last_code is the last non-blank char outside literals and comments.
        last_code = ""
        i = 0
        length = len(text)
        while i < length:
            ch = text[i]
            nxt = text[i + 1] if i + 1 < length else ""

            if self.in_block_comment:
                if ch == "*" and nxt == "/":
                    self.in_block_comment = False
                    i += 2
                    continue
                i += 1
                continue

            if not self._in_literal():
                if (ch == "-" and nxt == "-") or ch == "#":
                    break
                if ch == "/" and nxt == "*":
                    self.in_block_comment = True
                    i += 2
                    continue

            if ch == "\\" and (self.in_single or self.in_double):
                # Backslash escapes the next char, so 'C:\\' closes normally.
                i += 2
                continue

            if ch == "'" and not (self.in_double or self.in_backtick):
                if self.in_single and nxt == "'":
                    i += 2
                    continue
                self.in_single = not self.in_single
            elif ch == '"' and not (self.in_single or self.in_backtick):
                if self.in_double and nxt == '"':
                    i += 2
                    continue
                self.in_double = not self.in_double
            elif ch == "`" and not (self.in_single or self.in_double):
                self.in_backtick = not self.in_backtick

            if not ch.isspace():
                last_code = "" if self._in_literal() else ch
            i += 1

        if self.in_block_comment or self._in_literal():
            return False
        return last_code == ";"


_BOUNDARIES = {
    LineEndBoundary.name: LineEndBoundary,
    QuoteAwareBoundary.name: QuoteAwareBoundary,
}
BOUNDARY_NAMES = tuple(_BOUNDARIES)


def make_boundary(name: str):
    try:
        return _BOUNDARIES[name]()
    except KeyError:
        raise ValueError(
            f"unknown boundary strategy {name!r} (choose from {', '.join(BOUNDARY_NAMES)})"
        ) from None


def read_lines(fp: BinaryIO) -> Iterator[bytes]:
    # This code here turns I/O failures into StreamReadError with the line we were on.
    line_no = 0
    while True:
        line_no += 1
        try:
            raw = fp.readline()
        except OSError as err:
            raise StreamReadError(line_no, err) from err
        if not raw:
            return
        yield raw


def statement_splitter(
    lines: Iterable[Line],
    resume_line: int = 1,
    boundary=None,
    trailing: str = TRAILING_DROP,
    encoding: str = "utf-8",
) -> Generator[Tuple[int, int, str], None, None]:
    """
    Group lines into statements.
    Yields (line_no, raw_bytes_of_terminating_line, statement). Lines before
    resume_line are counted but never buffered, so resuming only skips
    execution and never shifts later boundaries.
    """
    if resume_line < 1:
        raise ValueError(f"resume_line must be >= 1, got {resume_line}")
    if trailing not in TRAILING_POLICIES:
        raise ValueError(f"unknown trailing statement policy {trailing!r}")
    if boundary is None:
        boundary = LineEndBoundary()
    # A strategy may carry literal/comment state from an earlier stream.
    boundary.reset()

    buf: list[str] = []
    line_no = 0

    for line in lines:
        line_no += 1
        if isinstance(line, bytes):
            raw_len = len(line)
            text = line.decode(encoding, errors="replace")
        else:
            raw_len = len(line.encode(encoding))
            text = line

        if line_no < resume_line:
            continue

        buf.append(text)
        if boundary.is_boundary(text):
            statement = "".join(buf)
            buf = []
            yield line_no, raw_len, statement

    tail = "".join(buf)
    boundary.reset()
    if not tail.strip():
        return
    if trailing == TRAILING_EXECUTE:
        yield line_no, 0, tail
    elif trailing == TRAILING_REJECT:
        raise IncompleteStatementError(line_no, tail)
    else:
        logging.warning(
            "Dropping unterminated statement at end of file (line %d, %d chars)",
            line_no,
            len(tail),
        )
