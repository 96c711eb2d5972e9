"""
dumpbin Text Parsers
=====================

Alternate inputs for environments that already captured
``dumpbin /imports`` and ``dumpbin /headers`` output instead of keeping
the binary around.

Recognised ``/imports`` lines::

    KERNEL32.dll                      module header (optionally ``:``)
        0000000180001040 GetTickCount64   named import (hex column + name)
        ordinal 123                       ordinal import
        #123                              ordinal import

Recognised ``/headers`` lines::

    6.01 operating system version
    10.00 subsystem version

Unrecognised lines are ignored.
"""

from __future__ import annotations

import re
from pathlib import Path

from winfloor.core.models import ImportSymbol

_STRUCTURAL_MARKERS: tuple[str, ...] = (
    "import address table",
    "import name table",
    "time date stamp",
    "index of first forwarder reference",
)
_STRUCTURAL_PREFIXES: tuple[str, ...] = ("section contains",)

_HEX_COLUMN = re.compile(r"^[0-9A-Fa-f]{4,}$")
_VERSION_LINE = re.compile(
    r"^(\d+)\.(\d+)\s+.*(operating system version|subsystem version)$",
    re.IGNORECASE,
)


def _is_module_line(text: str) -> bool:
    lowered = text.lower()
    return lowered.endswith(".dll") or lowered.endswith(".dll:")


def _ordinal(text: str) -> int | None:
    if text.startswith("#"):
        value = text[1:]
    elif text.lower().startswith("ordinal"):
        parts = text.split()
        if len(parts) < 2:
            return None
        value = parts[1]
    else:
        return None
    if not value.isdigit() or int(value) > 0xFFFF:
        return None
    return int(value)


def parse_imports_text(text: str) -> list[ImportSymbol]:
    """Parse ``dumpbin /imports`` output into import symbols.

    Symbols are returned in file order, not deduplicated.
    """
    symbols: list[ImportSymbol] = []
    module: str | None = None

    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            continue
        if _is_module_line(line):
            module = line.rstrip(":").strip()
            continue
        if module is None:
            continue

        lowered = line.lower()
        if lowered.startswith("summary"):
            # section sizes follow; no more imports
            module = None
            continue
        if any(marker in lowered for marker in _STRUCTURAL_MARKERS):
            continue
        if lowered.startswith(_STRUCTURAL_PREFIXES):
            continue

        ordinal = _ordinal(line)
        if ordinal is not None:
            symbols.append(ImportSymbol(module=module, ordinal=ordinal))
            continue

        parts = line.split()
        if len(parts) >= 2 and _HEX_COLUMN.match(parts[0]):
            name = parts[-1]
            if name.lower() == "to":  # "... forwarded to ..."
                continue
            symbols.append(ImportSymbol(module=module, name=name))

    return symbols


def parse_headers_text(text: str) -> list[tuple[str, int, int]]:
    """Extract ``(line, major, minor)`` for each OS/subsystem version line."""
    versions: list[tuple[str, int, int]] = []
    for raw in text.splitlines():
        line = raw.strip()
        match = _VERSION_LINE.match(line)
        if match:
            versions.append((line, int(match.group(1)), int(match.group(2))))
    return versions


def read_imports_file(path: str | Path) -> list[ImportSymbol]:
    return parse_imports_text(Path(path).read_text(encoding="utf-8", errors="replace"))


def read_headers_file(path: str | Path) -> list[tuple[str, int, int]]:
    return parse_headers_text(Path(path).read_text(encoding="utf-8", errors="replace"))
