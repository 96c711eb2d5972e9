"""
Platform Version Conversion
============================

Converts the version strings found in ``SupportedOSPlatform`` attributes
(``"windows10.0.19041"``, ``"windows8.1"``) and the ``major.minor``
versions in PE optional headers into Windows build numbers.

Rules, in order:

    1. Any numeric segment >= 10000 is a literal Windows 10/11 build; the
       largest such segment wins.
    2. Marketing aliases ``7.0``, ``8.0``, ``8.1``.
    3. NT baselines ``6.0`` through ``10.0``.
    4. Anything else is 0 ("no recorded minimum").

References:
    - Microsoft. (2024). OSVERSIONINFOEX -- Operating system version
      numbers. Microsoft Learn.
    - .NET API: System.Runtime.Versioning.SupportedOSPlatformAttribute.
"""

from __future__ import annotations

import re

LITERAL_BUILD_THRESHOLD: int = 10000

NT_BASELINES: dict[tuple[int, int], int] = {
    (6, 0): 6000,    # Vista / Server 2008
    (6, 1): 7600,    # 7 / Server 2008 R2
    (6, 2): 9200,    # 8 / Server 2012
    (6, 3): 9600,    # 8.1 / Server 2012 R2
    (10, 0): 10240,  # 10 RTM
}

MARKETING_ALIASES: dict[tuple[int, int], int] = {
    (7, 0): 7600,
    (8, 0): 9200,
    (8, 1): 9600,
}

_WINDOWS_PREFIX = re.compile(r"^\s*windows", re.IGNORECASE)
_NUMERIC = re.compile(r"^\d+$")


def baseline_build(major: int, minor: int) -> int:
    """NT baseline build for a PE header version; marketing aliases do not apply."""
    return NT_BASELINES.get((major, minor), 0)


def version_to_build(major: int, minor: int) -> int:
    """Map a ``major.minor`` pair to a build; 0 when unrecognised."""
    key = (major, minor)
    if major == 7:
        # "windows7" carries no minor worth distinguishing.
        return MARKETING_ALIASES[(7, 0)]
    if key in MARKETING_ALIASES:
        return MARKETING_ALIASES[key]
    return NT_BASELINES.get(key, 0)


def platform_to_build(platform: str | None) -> int:
    """Convert a platform string to a minimum build number.

    >>> platform_to_build("windows10.0.19041")
    19041
    >>> platform_to_build("windows8.1")
    9600
    >>> platform_to_build("macos")
    0
    """
    if not platform:
        return 0

    text = _WINDOWS_PREFIX.sub("", platform).strip()
    segments: list[int] = []
    for seg in text.split("."):
        seg = seg.strip()
        if not seg:
            continue
        if not _NUMERIC.match(seg):
            break
        segments.append(int(seg))
    if not segments:
        return 0

    literal = [seg for seg in segments if seg >= LITERAL_BUILD_THRESHOLD]
    if literal:
        return max(literal)

    major = segments[0]
    minor = segments[1] if len(segments) > 1 else 0
    return version_to_build(major, minor)
