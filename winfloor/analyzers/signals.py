"""
Secondary Build Signals
========================

Minimum-build evidence that does not come from individual imports:

    - **Header signal** -- the operating-system and subsystem versions in
      the PE optional header (or in ``dumpbin /headers`` text), mapped
      through the NT baseline table.  The larger of the two wins.
    - **Known-DLL signal** -- components whose mere presence in the import
      list implies a documented minimum build.  Informational only; it is
      reported beside the verdict but never raises it.

References:
    - Microsoft. (2024). PE Format -- Optional Header Windows-Specific
      Fields. Microsoft Learn.
    - Microsoft. (2024). DXCore; DirectML system requirements.
      Microsoft Learn.
"""

from __future__ import annotations

from typing import Iterable

from winfloor.analyzers.platform import baseline_build
from winfloor.core.models import BuildSignal

KNOWN_DLL_MIN_BUILDS: dict[str, tuple[int, str]] = {
    "dxcore.dll": (19041, "imports dxcore.dll (min Windows 10 2004 / 19041)"),
    "directml.dll": (18362, "imports directml.dll (min Windows 10 1903 / 18362)"),
}


def format_version_line(major: int, minor: int, label: str) -> str:
    """Render a header version the way ``dumpbin /headers`` prints it."""
    return f"{major}.{minor:02d} {label}"


def header_signal(versions: Iterable[tuple[str, int, int]]) -> BuildSignal:
    """Reduce ``(line, major, minor)`` header versions to one signal.

    The highest baseline build wins; on a tie the first line is kept.
    Versions outside the NT baseline table (including the ``7.0``/``8.x``
    marketing numbers, which never appear in real headers) contribute
    nothing.
    """
    best = BuildSignal()
    for line, major, minor in versions:
        build = baseline_build(major, minor)
        if build > best.build:
            best = BuildSignal(build=build, reason=f"{line} -> baseline build {build}")
    return best


def pe_header_versions(
    os_version: tuple[int, int], subsystem_version: tuple[int, int]
) -> list[tuple[str, int, int]]:
    return [
        (format_version_line(*os_version, "operating system version"), *os_version),
        (format_version_line(*subsystem_version, "subsystem version"), *subsystem_version),
    ]


def known_dll_signal(modules: Iterable[str]) -> BuildSignal:
    """Highest documented minimum among the known components in *modules*."""
    best = BuildSignal()
    for module in modules:
        name = module.strip().strip('"').rstrip(":").lower()
        if not name.endswith(".dll"):
            name += ".dll"
        known = KNOWN_DLL_MIN_BUILDS.get(name)
        if known is not None and known[0] > best.build:
            best = BuildSignal(build=known[0], reason=known[1])
    return best
