"""
Winfloor CLI -- Minimum Windows Build Analyzer
===============================================

Click-based command-line interface.  One command, two modes:

Usage::

    # Analyse a binary (key=value lines)
    winfloor --metadata Windows.Win32.winmd --binary app.dll

    # One-line JSON record
    winfloor -m Windows.Win32.winmd -b app.dll --json

    # Several binaries, plus a JSON report file
    winfloor -m Windows.Win32.winmd -b a.dll -b b.exe --output report.json

    # dumpbin text instead of a binary
    winfloor -m Windows.Win32.winmd --imports imports.txt --headers headers.txt

    # Batch lookups: module,symbol lines on stdin, CSV on stdout
    echo kernel32.dll,GetTickCount64 | winfloor Windows.Win32.winmd

Exit codes:
    0 success, 1 unexpected failure, 2 usage error, 3 metadata not found,
    4 binary (or imports file) not found, 5 malformed PE image,
    6 headers file not found.

References:
    - Click documentation: https://click.palletsprojects.com/
"""

from __future__ import annotations

import asyncio
import sys
import tomllib
import traceback
from pathlib import Path

import click

from shared.config import FloorConfig
from shared.console import FloorConsole
from shared.logger import FloorLogger

from winfloor import __version__
from winfloor.core.engine import FloorEngine, resolve_metadata_path
from winfloor.core.exceptions import (
    EXIT_FAILURE,
    BinaryNotFoundError,
    FloorError,
    HeadersNotFoundError,
)
from winfloor.core.models import BinaryReport
from winfloor.output.console import FloorConsoleOutput
from winfloor.output.report import (
    ReportWriter,
    render_batch_header,
    render_batch_row,
    render_json_line,
    render_text,
)
from winfloor.parsers.dumpbin import read_headers_file


# ---------------------------------------------------------------------------
# Command
# ---------------------------------------------------------------------------

@click.command("winfloor")
@click.argument("metadata_arg", required=False, metavar="[METADATA]")
@click.option(
    "--metadata", "-m",
    "metadata_opt",
    default=None,
    help="Metadata file (.winmd), or a .txt file naming it on its first line.",
)
@click.option(
    "--binary", "-b",
    "binaries",
    multiple=True,
    help="PE binary to analyse.  Repeat for several binaries.",
)
@click.option(
    "--imports", "-i",
    "imports_path",
    default=None,
    help="dumpbin /imports output to analyse instead of a binary.",
)
@click.option(
    "--headers", "-H",
    "headers_path",
    default=None,
    help="dumpbin /headers output used as the header signal.",
)
@click.option(
    "--json", "json_output",
    is_flag=True,
    default=False,
    help="Emit each result as a single JSON line.",
)
@click.option(
    "--table", "table_output",
    is_flag=True,
    default=False,
    help="Render results as Rich tables instead of key=value lines.",
)
@click.option(
    "--header-signal/--no-header-signal",
    default=None,
    help="Combine the PE header OS/subsystem version into the verdict.",
)
@click.option(
    "--no-api-set-fallback",
    is_flag=True,
    default=False,
    help="Report direct metadata hits only.",
)
@click.option(
    "--output", "-o",
    "output_path",
    type=click.Path(),
    default=None,
    help="Also write an indented JSON report to this path.",
)
@click.option(
    "--config", "-c",
    "config_path",
    type=click.Path(),
    default=None,
    help="TOML configuration file (default: winfloor.toml if present).",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    default=False,
    help="Enable debug logging and tracebacks.",
)
@click.version_option(__version__, prog_name="winfloor")
def winfloor_cli(
    metadata_arg: str | None,
    metadata_opt: str | None,
    binaries: tuple[str, ...],
    imports_path: str | None,
    headers_path: str | None,
    json_output: bool,
    table_output: bool,
    header_signal: bool | None,
    no_api_set_fallback: bool,
    output_path: str | None,
    config_path: str | None,
    verbose: bool,
) -> None:
    """Winfloor -- minimum Windows build analyzer.

    Cross-references the imports of a PE binary against the
    SupportedOSPlatform annotations of P/Invoke declarations in CLI
    metadata and reports the highest minimum build any import requires.

    Without --binary or --imports, reads module,symbol lines from stdin
    and writes dll,func,minBuild,reason CSV to stdout.

    Examples:

    \b
        winfloor -m Windows.Win32.winmd -b app.dll --json
    \b
        winfloor Windows.Win32.winmd < apis.csv
    """
    console = FloorConsole()

    try:
        config = FloorConfig.load(config_path)
    except (FileNotFoundError, tomllib.TOMLDecodeError) as exc:
        console.error(f"Configuration error: {exc}")
        sys.exit(EXIT_FAILURE)

    if header_signal is not None:
        config.analysis.header_signal = header_signal
    if no_api_set_fallback:
        config.analysis.api_set_fallback = False

    settings = config.global_settings
    logger = FloorLogger(
        "cli",
        log_level="DEBUG" if verbose else settings.log_level,
        log_file=settings.log_file or None,
        json_logs=settings.log_json,
    )

    metadata = metadata_opt or metadata_arg or config.analysis.metadata_path
    if not metadata:
        raise click.UsageError("a metadata file is required (--metadata or METADATA)")

    try:
        _run(
            config=config,
            logger=logger,
            console=console,
            metadata=metadata,
            binaries=binaries,
            imports_path=imports_path,
            headers_path=headers_path,
            json_output=json_output or settings.output_format == "json",
            table_output=table_output,
            output_path=output_path,
        )
    except KeyboardInterrupt:
        console.warning("Analysis interrupted by user.")
        sys.exit(130)
    except FloorError as exc:
        logger.error("%s", exc)
        console.error(str(exc))
        if verbose:
            traceback.print_exc()
        sys.exit(exc.exit_code)
    except Exception as exc:
        logger.error("Unexpected failure: %s", exc)
        console.error(f"Analysis failed: {exc}")
        if verbose:
            traceback.print_exc()
        sys.exit(EXIT_FAILURE)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def _check_inputs(
    binaries: tuple[str, ...],
    imports_path: str | None,
    headers_path: str | None,
) -> None:
    """Verify every input exists before anything is parsed."""
    for binary in binaries:
        if not Path(binary).is_file():
            raise BinaryNotFoundError(binary)
    if imports_path and not Path(imports_path).is_file():
        raise BinaryNotFoundError(imports_path)
    if headers_path and not Path(headers_path).is_file():
        raise HeadersNotFoundError(headers_path)


def _run(
    *,
    config: FloorConfig,
    logger: FloorLogger,
    console: FloorConsole,
    metadata: str,
    binaries: tuple[str, ...],
    imports_path: str | None,
    headers_path: str | None,
    json_output: bool,
    table_output: bool,
    output_path: str | None,
) -> None:
    metadata_path = resolve_metadata_path(metadata)
    _check_inputs(binaries, imports_path, headers_path)

    engine = FloorEngine.from_metadata(metadata_path, config, logger)
    header_versions = read_headers_file(headers_path) if headers_path else None

    reports: list[BinaryReport] = []
    if binaries:
        reports.extend(asyncio.run(engine.analyze_many(list(binaries), header_versions)))
    if imports_path:
        reports.append(engine.analyze_imports_file(imports_path, header_versions))

    if not reports:
        if output_path:
            console.warning("--output is ignored in batch mode")
        _run_batch(engine)
        return

    _emit(reports, json_output=json_output, table_output=table_output)

    if output_path:
        report_path = ReportWriter(str(metadata_path)).write(reports, output_path)
        console.success(f"JSON report saved: {report_path}")


def _run_batch(engine: FloorEngine) -> None:
    click.echo(render_batch_header())
    with click.open_file("-") as stdin:
        for row in engine.lookup_batch(stdin):
            click.echo(render_batch_row(row))


def _emit(reports: list[BinaryReport], *, json_output: bool, table_output: bool) -> None:
    if table_output:
        view = FloorConsoleOutput(FloorConsole(stderr=False))
        for report in reports:
            view.display(report)
        return

    for index, report in enumerate(reports):
        if json_output:
            click.echo(render_json_line(report.result))
            continue
        if index:
            click.echo("")
        click.echo(render_text(report.result))


# ---------------------------------------------------------------------------
# Module entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Entry point for the ``winfloor`` console script and ``python -m winfloor``."""
    winfloor_cli()


if __name__ == "__main__":
    main()
