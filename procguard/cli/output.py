"""
Output abstraction for the cleanup commands.

Tools write through an ``OutputWriter`` so they can be tested without
capturing stdout. Tables are drawn with rich on a terminal and as plain
aligned text everywhere else (pipes, CI logs, ``BufferedOutput``).
"""

import os
import sys
from collections.abc import Sequence
from typing import Any, Protocol, TextIO

from rich.console import Console
from rich.table import Table


class OutputWriter(Protocol):
    """Protocol for CLI output writing."""

    def write(self, text: str = "") -> None:
        """Write text with trailing newline."""
        ...

    def flush(self) -> None: ...


class ConsoleOutput:
    """
    Writes to a stream (stdout by default).

    Example:
        out = ConsoleOutput()
        out.write("Summary: killed=0 failed=0")
    """

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream if stream is not None else sys.stdout

    @property
    def stream(self) -> TextIO:
        return self._stream

    def write(self, text: str = "") -> None:
        print(text, file=self._stream)

    def flush(self) -> None:
        self._stream.flush()

    def is_terminal(self) -> bool:
        if os.environ.get("NO_COLOR"):
            return False
        return hasattr(self._stream, "isatty") and self._stream.isatty()


class BufferedOutput:
    """
    Captures output lines; used by tests.

    Example:
        out = BufferedOutput()
        out.write("Line 1")
        assert out.lines == ["Line 1"]
    """

    def __init__(self) -> None:
        self._lines: list[str] = []

    def write(self, text: str = "") -> None:
        self._lines.extend(text.split("\n") if text else [""])

    def flush(self) -> None:
        pass

    @property
    def lines(self) -> list[str]:
        return self._lines.copy()

    @property
    def text(self) -> str:
        return "\n".join(self._lines) + ("\n" if self._lines else "")

    def clear(self) -> None:
        self._lines.clear()


def render_table(
    out: Any,
    title: str,
    headers: Sequence[str],
    rows: Sequence[Sequence[Any]],
) -> None:
    """Write a table: rich on a terminal, plain columns otherwise."""
    if isinstance(out, ConsoleOutput) and out.is_terminal():
        table = Table(title=title)
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*(str(c) for c in row))
        Console(file=out.stream).print(table)
        return

    cells = [[str(c) for c in row] for row in rows]
    widths = [len(h) for h in headers]
    for row in cells:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    out.write(title)
    out.write("  ".join(h.ljust(w) for h, w in zip(headers, widths)).rstrip())
    for row in cells:
        out.write("  ".join(c.ljust(w) for c, w in zip(row, widths)).rstrip())
