"""
Winfloor Record Renderers
==========================

Machine-facing renderings of analysis results, all written to stdout by
the CLI:

    - single-line JSON (``--json``)
    - ``key=value`` lines
    - CSV rows for batch lookups
    - an indented JSON report file (``--output``)

Every renderer uses the same camelCase field names and order.
"""

from __future__ import annotations

import csv
import io
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from winfloor import __version__
from winfloor.core.models import AnalysisResult, BatchRow, BinaryReport

BATCH_HEADER: tuple[str, str, str, str] = ("dll", "func", "minBuild", "reason")

TEXT_KEYS: tuple[str, ...] = (
    "binaryPath",
    "source",
    "bitness",
    "machine",
    "importCount",
    "mappedImportCount",
    "fallbackImportCount",
    "apiMinBuild",
    "apiMinReason",
    "headerMinBuild",
    "headerMinReason",
    "dllMinBuild",
    "dllMinReason",
    "requiredMinBuild",
    "requiredMinReason",
)


def result_fields(result: AnalysisResult) -> dict[str, Any]:
    """The result as an ordered camelCase mapping."""
    dumped = result.model_dump(by_alias=True)
    return {key: dumped[key] for key in TEXT_KEYS}


def render_json_line(result: AnalysisResult) -> str:
    """One-line JSON record."""
    return json.dumps(result_fields(result), ensure_ascii=False, separators=(",", ":"))


def render_text(result: AnalysisResult) -> str:
    """``key=value`` lines, one field per line."""
    return "\n".join(f"{key}={value}" for key, value in result_fields(result).items())


def render_csv(rows: Iterable[Sequence[str]]) -> str:
    """CSV-escape *rows* (minimal quoting, ``\\r\\n`` line endings).

    Fields holding a comma, a quote, CR or LF are quoted; ``csv`` only
    quotes line-break characters that appear in its line terminator.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\r\n")
    writer.writerows(rows)
    return buffer.getvalue()


def render_batch_row(row: BatchRow) -> str:
    return render_csv([row.as_fields()]).rstrip("\r\n")


def render_batch_header() -> str:
    return render_csv([BATCH_HEADER]).rstrip("\r\n")


class ReportWriter:
    """Writes the JSON report file for one or more binaries.

    Usage::

        ReportWriter(metadata_path="Windows.Win32.winmd").write(reports, "report.json")
    """

    def __init__(self, metadata_path: str = "") -> None:
        self._metadata_path = metadata_path

    def build(self, reports: Sequence[BinaryReport]) -> dict[str, Any]:
        return {
            "reportType": "winfloor_min_build",
            "version": __version__,
            "generatedAt": datetime.now(timezone.utc).isoformat(),
            "metadataPath": self._metadata_path,
            "binaries": [
                {
                    **result_fields(report.result),
                    "topContributors": [
                        {**m.model_dump(by_alias=True), "reason": m.reason}
                        for m in report.contributors
                    ],
                }
                for report in reports
            ],
        }

    def write(self, reports: Sequence[BinaryReport], output_path: str | Path) -> str:
        """Write the report and return its absolute path."""
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(self.build(reports), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
        return str(path.resolve())
