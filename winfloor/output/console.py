"""
Winfloor Console Output
========================

Rich-powered terminal view of an analysis result (``--table``): a
verdict panel, the three build signals side by side, and the imports
with the highest recorded minimum builds.

Uses the :class:`~shared.console.FloorConsole` abstraction, so the view
goes to stderr unless a stdout console is passed in.

References:
    - Rich library: https://github.com/Textualize/rich
"""

from __future__ import annotations

from rich.markup import escape
from rich.panel import Panel

from shared.console import FloorConsole

from winfloor.core.models import AnalysisResult, BinaryReport, ImportMatch


# Builds at or above these thresholds get the matching colour.
_BUILD_COLOUR_THRESHOLDS: list[tuple[int, str]] = [
    (22000, "bright_red"),   # Windows 11
    (19041, "red"),          # 10 2004
    (10240, "yellow"),       # 10 RTM
    (1, "bright_cyan"),
]


def _build_colour(build: int) -> str:
    for threshold, colour in _BUILD_COLOUR_THRESHOLDS:
        if build >= threshold:
            return colour
    return "dim"


class FloorConsoleOutput:
    """Rich terminal display for :class:`BinaryReport` values.

    Usage::

        output = FloorConsoleOutput(FloorConsole(stderr=False))
        output.display(report)
    """

    def __init__(self, console: FloorConsole | None = None) -> None:
        self._console: FloorConsole = console or FloorConsole()

    def display(self, report: BinaryReport) -> None:
        self._console.section(f"Minimum build: {report.result.binary_path}")
        self.display_verdict(report.result)
        self.display_signals(report.result)
        if report.contributors:
            self.display_contributors(report.contributors)

    def display_verdict(self, result: AnalysisResult) -> None:
        colour = _build_colour(result.required_build)
        coverage = (
            f"{result.mapped_count}/{result.import_count}"
            if result.import_count else "0/0"
        )
        lines = [
            f"[bold]Required build:[/bold] [{colour}]{result.required_build}[/{colour}]",
            f"[bold]Reason:[/bold]         {escape(result.required_reason)}",
            f"[bold]Bitness:[/bold]        {result.bitness or 'n/a'} ({escape(result.machine or 'n/a')})",
            f"[bold]Mapped imports:[/bold] {coverage}"
            f" ({result.fallback_count} via api-set fallback)",
        ]
        panel = Panel(
            "\n".join(lines),
            title="[bold bright_cyan]Verdict[/bold bright_cyan]",
            border_style=colour,
            padding=(0, 2),
        )
        self._console.rich.print(panel)
        self._console.blank()

    def display_signals(self, result: AnalysisResult) -> None:
        rows = [
            ("API", result.api_min_build, result.api_min_reason),
            ("Headers", result.header_min_build, result.header_min_reason),
            ("Known DLLs", result.dll_min_build, result.dll_min_reason),
        ]
        self._console.table(
            "Signals",
            ["Signal", "Build", "Reason"],
            rows,
            caption="Known DLLs are informational and do not raise the verdict",
            styles=["bold", "bright_white", ""],
        )

    def display_contributors(self, matches: tuple[ImportMatch, ...]) -> None:
        rows = [
            (m.module, m.symbol, m.build, m.platform_string, m.via or "-")
            for m in matches
        ]
        self._console.table(
            "Top contributing imports",
            ["Module", "Symbol", "Build", "Platform", "Fallback host"],
            rows,
            styles=["bright_cyan", "bold", "bright_white", "", "dim"],
        )
