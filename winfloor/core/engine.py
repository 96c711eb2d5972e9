"""
Winfloor Analysis Engine
=========================

Orchestrates the analysis pipeline for one metadata source and any
number of binaries:

    1. Build the :class:`ApiMap` once from the metadata file
    2. For each binary: parse PE headers, walk import directories
    3. Classify the imports against the shared map
    4. Gather the header and known-DLL signals
    5. Combine into an :class:`AnalysisResult`

The map is immutable after step 1, so binaries are analysed
concurrently on the default executor by :meth:`FloorEngine.analyze_many`.
Each per-binary pipeline is read-only against the map.

References:
    - Python asyncio -- Executing code in thread or process pools.
      https://docs.python.org/3/library/asyncio-eventloop.html
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable, Iterator, Sequence

from shared.config import FloorConfig
from shared.logger import FloorLogger

from winfloor.analyzers.api_map import ApiMap, ApiMapBuilder, normalize_module
from winfloor.analyzers.apiset import ApiSetPolicy
from winfloor.analyzers.classifier import Classifier, combine_signals, top_contributors
from winfloor.analyzers.signals import header_signal, known_dll_signal, pe_header_versions
from winfloor.core.exceptions import (
    BinaryNotFoundError,
    FloorError,
    MetadataNotFoundError,
)
from winfloor.core.models import (
    AnalysisResult,
    BatchRow,
    BinaryReport,
    BuildSignal,
    ImportSymbol,
)
from winfloor.parsers.dumpbin import read_imports_file
from winfloor.parsers.import_walker import walk_imports
from winfloor.parsers.pe_parser import PEParser


# ---------------------------------------------------------------------------
# Input resolution
# ---------------------------------------------------------------------------

def resolve_metadata_path(path: str | Path) -> Path:
    """Resolve a metadata argument, following ``.txt`` indirection.

    A ``.txt`` file names the real metadata file on its first non-blank
    line (surrounding quotes are stripped).

    Raises:
        MetadataNotFoundError: If the file, the indirection target, or
            the indirection line is missing.
    """
    candidate = Path(path)
    if not candidate.is_file():
        raise MetadataNotFoundError(str(candidate))

    if candidate.suffix.lower() == ".txt":
        target = ""
        for line in candidate.read_text(encoding="utf-8-sig", errors="replace").splitlines():
            line = line.strip().strip('"').strip()
            if line:
                target = line
                break
        if not target:
            raise MetadataNotFoundError(f"{candidate} (empty indirection file)")
        candidate = Path(target)
        if not candidate.is_file():
            raise MetadataNotFoundError(str(candidate))

    return candidate


def dedupe(symbols: Iterable[ImportSymbol]) -> list[ImportSymbol]:
    """Drop repeated ``(module, symbol)`` pairs, keeping the first."""
    seen: set[tuple[str, str]] = set()
    unique: list[ImportSymbol] = []
    for sym in symbols:
        if sym.dedup_key not in seen:
            seen.add(sym.dedup_key)
            unique.append(sym)
    return unique


# ---------------------------------------------------------------------------
# FloorEngine
# ---------------------------------------------------------------------------

class FloorEngine:
    """Runs the minimum-build analysis against one shared API map.

    Usage::

        engine = FloorEngine.from_metadata("Windows.Win32.winmd")
        report = engine.analyze_sync("app.exe")
        print(report.result.required_build)

    Or, for several binaries at once::

        reports = asyncio.run(engine.analyze_many(["a.dll", "b.dll"]))
    """

    def __init__(
        self,
        api_map: ApiMap,
        config: FloorConfig | None = None,
        logger: FloorLogger | None = None,
        *,
        policy: ApiSetPolicy | None = None,
    ) -> None:
        """Initialise the engine.

        Args:
            api_map: The prebuilt, read-only API map.
            config: Winfloor configuration.  Defaults are used if not provided.
            logger: Logger instance.  A new one is created if not provided.
            policy: API-set fallback policy.  Built from ``config.apiset``
                if not provided.
        """
        self._config: FloorConfig = config or FloorConfig()
        self._logger: FloorLogger = logger or FloorLogger("engine")
        self._api_map = api_map
        self._classifier = Classifier(
            api_map,
            policy or ApiSetPolicy.from_config(self._config.apiset),
            api_set_fallback=self._config.analysis.api_set_fallback,
        )

    @classmethod
    def from_metadata(
        cls,
        metadata_path: str | Path,
        config: FloorConfig | None = None,
        logger: FloorLogger | None = None,
    ) -> FloorEngine:
        """Build the API map from *metadata_path* and return an engine over it.

        Raises:
            MetadataNotFoundError: If the metadata file cannot be found.
            MetadataFormatError: If it holds no usable CLI metadata.
        """
        logger = logger or FloorLogger("engine")
        path = resolve_metadata_path(metadata_path)
        builder = ApiMapBuilder()

        with logger.operation("map_build"), logger.timed(f"API map build from {path}"):
            api_map = builder.build_file(path)

        stats = builder.stats
        logger.info(
            "map size = %d", len(api_map),
            methods=stats.methods,
            declarations=stats.declarations,
            with_platform=stats.with_platform,
        )
        for platform in stats.unparsed_platforms:
            logger.debug("Unrecognised platform string: %r", platform)
        if stats.skipped_rows:
            logger.debug("Skipped %d unreadable metadata rows", stats.skipped_rows)

        return cls(api_map, config, logger)

    @property
    def api_map(self) -> ApiMap:
        return self._api_map

    @property
    def classifier(self) -> Classifier:
        return self._classifier

    # ------------------------------------------------------------------ #
    #  Binary analysis
    # ------------------------------------------------------------------ #

    async def analyze(
        self,
        file_path: str | Path,
        header_versions: Sequence[tuple[str, int, int]] | None = None,
    ) -> BinaryReport:
        """Analyse one binary on the default executor."""
        return await asyncio.get_running_loop().run_in_executor(
            None, self.analyze_sync, file_path, header_versions,
        )

    async def analyze_many(
        self,
        paths: Sequence[str | Path],
        header_versions: Sequence[tuple[str, int, int]] | None = None,
    ) -> list[BinaryReport]:
        """Analyse *paths* concurrently; reports come back in argument order."""
        return list(await asyncio.gather(
            *(self.analyze(path, header_versions) for path in paths)
        ))

    def analyze_sync(
        self,
        file_path: str | Path,
        header_versions: Sequence[tuple[str, int, int]] | None = None,
    ) -> BinaryReport:
        """Read and analyse one binary.

        Raises:
            BinaryNotFoundError: If *file_path* does not exist.
            MalformedPEError: If the file is not a well-formed PE image.
            FloorError: If the file exceeds ``analysis.max_file_size``.
        """
        path = Path(file_path)
        if not path.is_file():
            raise BinaryNotFoundError(str(path))

        size = path.stat().st_size
        max_size = self._config.analysis.max_file_size
        if size > max_size:
            raise FloorError(
                f"file too large: {path} ({size:,} bytes, max {max_size:,})"
            )

        return self.analyze_data(path.read_bytes(), str(path), header_versions)

    def analyze_data(
        self,
        data: bytes,
        binary_path: str = "<memory>",
        header_versions: Sequence[tuple[str, int, int]] | None = None,
    ) -> BinaryReport:
        """Analyse an in-memory PE image.

        Args:
            data: Complete image bytes.
            binary_path: Display path for the result.
            header_versions: External header versions (from
                ``dumpbin /headers``); replaces the image's own header
                signal when given.
        """
        with self._logger.operation("analyze"):
            pe = PEParser(data).parse()
            analysis = self._config.analysis
            walk = walk_imports(
                pe,
                max_descriptors=analysis.max_descriptors,
                max_thunks=analysis.max_thunks,
            )
            for directory in walk.truncated:
                self._logger.debug(
                    "Truncated %s directory in %s; keeping decoded prefix",
                    directory, binary_path,
                )

            if header_versions is None and analysis.header_signal:
                header_versions = pe_header_versions(pe.os_version, pe.subsystem_version)

            return self._report(
                walk.symbols,
                binary_path=binary_path,
                source="pe",
                bitness=pe.bitness,
                machine=pe.machine,
                header_versions=header_versions,
            )

    def analyze_imports_file(
        self,
        imports_path: str | Path,
        header_versions: Sequence[tuple[str, int, int]] | None = None,
    ) -> BinaryReport:
        """Analyse ``dumpbin /imports`` text instead of an image.

        Raises:
            BinaryNotFoundError: If *imports_path* does not exist.
        """
        path = Path(imports_path)
        if not path.is_file():
            raise BinaryNotFoundError(str(path))
        with self._logger.operation("analyze"):
            symbols = dedupe(read_imports_file(path))
            return self._report(
                symbols,
                binary_path=str(path),
                source="dumpbin",
                bitness=0,
                machine="",
                header_versions=header_versions,
            )

    def _report(
        self,
        symbols: list[ImportSymbol],
        *,
        binary_path: str,
        source: str,
        bitness: int,
        machine: str,
        header_versions: Sequence[tuple[str, int, int]] | None,
    ) -> BinaryReport:
        classification = self._classifier.classify(symbols)
        header = header_signal(header_versions) if header_versions else BuildSignal()
        dll = known_dll_signal(dict.fromkeys(normalize_module(s.module) for s in symbols))
        required, reason = combine_signals(classification.api_signal, header)

        result = AnalysisResult(
            binary_path=binary_path,
            source=source,
            bitness=bitness,
            machine=machine,
            import_count=classification.import_count,
            mapped_count=classification.mapped_count,
            fallback_count=classification.fallback_count,
            api_min_build=classification.api_signal.build,
            api_min_reason=classification.api_signal.reason,
            header_min_build=header.build,
            header_min_reason=header.reason,
            dll_min_build=dll.build,
            dll_min_reason=dll.reason,
            required_build=required,
            required_reason=reason,
        )
        self._logger.info(
            "%s: %d imports, %d mapped, required build %d",
            binary_path, result.import_count, result.mapped_count, required,
        )
        return BinaryReport(
            result=result,
            contributors=top_contributors(
                classification.matches, self._config.analysis.top_contributors
            ),
        )

    # ------------------------------------------------------------------ #
    #  Batch lookups
    # ------------------------------------------------------------------ #

    def lookup_batch(self, lines: Iterable[str]) -> Iterator[BatchRow]:
        """Answer ``module,symbol`` lines one by one.

        Blank lines are skipped silently.  Lines without a comma, or with
        an empty module or symbol, are skipped with a warning.
        """
        for number, raw in enumerate(lines, start=1):
            line = raw.strip()
            if not line:
                continue
            module, sep, symbol = line.partition(",")
            module = normalize_module(module)
            symbol = symbol.strip()
            if not sep or not module or not symbol:
                self._logger.warning("Skipping malformed line %d: %r", number, line)
                continue

            result = self._classifier.lookup(module, symbol)
            if not result.found:
                yield BatchRow(module=module, symbol=symbol)
                continue
            yield BatchRow(
                module=module,
                symbol=symbol,
                build=result.build,
                reason=result.describe(),
            )
