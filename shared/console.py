"""
Winfloor Console Interface
===========================

Human-facing output: status messages, section rules and tables.

:class:`FloorConsole` writes to **stderr** unless told otherwise, since
stdout carries the analyzer's records (JSON, key=value lines, CSV) and
must stay pipeable.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from typing import Any, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.theme import Theme

_FLOOR_THEME = Theme(
    {
        "floor.rule": "bright_cyan",
        "floor.header": "bold cyan",
        "floor.border": "cyan",
        "floor.success": "green",
        "floor.warning": "yellow",
        "floor.error": "bold red",
    }
)

# Prefix shown before each message kind
_MESSAGE_LABELS = {
    "success": "OK",
    "warning": "WARNING",
    "error": "ERROR",
}


class FloorConsole:
    """Rich console bound to stderr (or stdout for ``--table`` views).

    Usage::

        con = FloorConsole()
        con.error("binary file not found: app.exe")

        view = FloorConsole(stderr=False)
        view.table("Signals", ["Signal", "Build"], [("API", 19041)])
    """

    def __init__(self, *, stderr: bool = True) -> None:
        self._console = Console(theme=_FLOOR_THEME, stderr=stderr, highlight=False)

    @property
    def rich(self) -> Console:
        return self._console

    def _message(self, kind: str, text: str) -> None:
        style = f"floor.{kind}"
        self._console.print(f"[{style}]{_MESSAGE_LABELS[kind]}:[/{style}] {escape(text)}")

    def success(self, message: str) -> None:
        self._message("success", message)

    def warning(self, message: str) -> None:
        self._message("warning", message)

    def error(self, message: str) -> None:
        self._message("error", message)

    def section(self, title: str) -> None:
        """Horizontal rule carrying *title*, followed by a blank line."""
        self._console.rule(escape(title), style="floor.rule")
        self._console.print()

    def blank(self) -> None:
        self._console.print()

    def table(
        self,
        title: str,
        columns: Sequence[str],
        rows: Sequence[Sequence[Any]],
        *,
        caption: str | None = None,
        styles: Sequence[str] = (),
    ) -> None:
        """Print *rows* under *columns*; cells are stringified and escaped.

        *styles* gives per-column Rich styles; missing entries are unstyled.
        """
        tbl = Table(
            title=title,
            caption=caption,
            header_style="floor.header",
            border_style="floor.border",
        )
        padded = list(styles) + [""] * (len(columns) - len(styles))
        for name, style in zip(columns, padded):
            tbl.add_column(name, style=style)
        for row in rows:
            tbl.add_row(*(escape(str(cell)) for cell in row))
        self._console.print(tbl)
