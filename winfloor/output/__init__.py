"""
Winfloor Output
================

Machine records (JSON line, ``key=value`` text, CSV batch rows, JSON
report file) and the Rich table view.
"""

from winfloor.output.report import (
    ReportWriter,
    render_batch_header,
    render_batch_row,
    render_json_line,
    render_text,
)
from winfloor.output.console import FloorConsoleOutput

__all__ = [
    "ReportWriter",
    "render_json_line",
    "render_text",
    "render_batch_header",
    "render_batch_row",
    "FloorConsoleOutput",
]
