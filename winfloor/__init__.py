"""
Winfloor -- Minimum Windows Build Analyzer
===========================================

Determines the minimum Windows OS build a native PE binary requires by
cross-referencing its imported symbols against platform-availability
metadata (``SupportedOSPlatform`` attributes on P/Invoke declarations in
ECMA-335 metadata such as ``Windows.Win32.winmd``).

Capabilities:
    - PE32 / PE32+ header parsing with RVA-to-offset resolution
    - Classic and delay-load import table walking, truncation tolerant
    - ECMA-335 metadata table reading (ImplMap, custom attributes)
    - Normalised module/symbol lookup with API-set fallback hosts
    - Header-derived and known-DLL secondary signals
    - JSON, key=value, CSV batch and Rich table output

References:
    - Microsoft. (2024). PE Format.
    - ECMA-335 (6th ed., 2012). Common Language Infrastructure.
    - Microsoft. win32metadata. https://github.com/microsoft/win32metadata
"""

__version__ = "1.0.0"
__all__ = ["__version__"]
