"""
Winfloor Configuration Management
==================================

Centralized configuration for the winfloor analyzer using Python
dataclasses and TOML-based persistence.

Every section maps one-to-one onto a TOML table::

    [global]
    log_level = "INFO"

    [analysis]
    metadata_path = "C:/sdk/Windows.Win32.winmd"
    header_signal = true

    [apiset]
    default_hosts = ["kernelbase.dll", "kernel32.dll"]

    [apiset.rules]
    "-user-" = ["user32.dll"]

References:
    - Wiggins, A. (2011). The Twelve-Factor App. https://12factor.net/
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Default configuration file path relative to the project root
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "winfloor.toml"


# ========================== Section Configs ================================


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Global settings: logging verbosity, log destination, output format."""

    log_level: str = "WARNING"
    log_file: str = ""
    log_json: bool = False
    output_format: str = "text"


@dataclass(frozen=False, slots=True)
class AnalysisConfig:
    """Parameters for the import walk and the classification pass.

    ``max_descriptors`` and ``max_thunks`` bound the walk over garbage
    tables; hitting either ends the table the same way a zero terminator
    does.
    """

    metadata_path: str = ""
    header_signal: bool = False
    api_set_fallback: bool = True
    max_file_size: int = 536_870_912  # 512 MiB
    max_descriptors: int = 4096
    max_thunks: int = 65536
    top_contributors: int = 10


@dataclass(frozen=False, slots=True)
class ApiSetConfig:
    """Overrides for the API-set fallback policy.

    Empty values select the built-in table in
    :mod:`winfloor.analyzers.apiset`.
    """

    prefixes: list[str] = field(default_factory=list)
    excluded_prefixes: list[str] = field(default_factory=list)
    rules: dict[str, list[str]] = field(default_factory=dict)
    default_hosts: list[str] = field(default_factory=list)


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class FloorConfig:
    """Master configuration aggregating all sections.

    Usage:
        >>> config = FloorConfig.load()                  # from default path
        >>> config = FloorConfig.load("custom.toml")     # from custom path
        >>> config.analysis.api_set_fallback
        True
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    apiset: ApiSetConfig = field(default_factory=ApiSetConfig)

    # ------------------------------------------------------------------ #
    #  TOML Loading
    # ------------------------------------------------------------------ #

    @classmethod
    def load(cls, path: str | Path | None = None) -> FloorConfig:
        """Load configuration from a TOML file.

        If *path* is ``None`` the loader looks for ``winfloor.toml`` in the
        project root.  Missing keys fall back to dataclass defaults.

        Args:
            path: Filesystem path to a TOML configuration file.

        Returns:
            A fully-populated :class:`FloorConfig` instance.

        Raises:
            FileNotFoundError: If the specified path does not exist
                *and* was explicitly provided by the caller.
        """
        explicit = path is not None
        config_path = Path(path) if explicit else _DEFAULT_CONFIG_PATH
        if not config_path.is_file():
            if explicit:
                raise FileNotFoundError(f"Configuration file not found: {config_path}")
            return cls()

        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
        sections = {
            attr: _section_from_table(section_cls, raw.get(table) or {})
            for table, (attr, section_cls) in _SECTIONS.items()
        }
        return cls(**sections)

    def to_dict(self) -> dict[str, Any]:
        """Plain nested dictionary of every section."""
        return asdict(self)


# TOML table name -> (FloorConfig attribute, section dataclass)
_SECTIONS: dict[str, tuple[str, type]] = {
    "global": ("global_settings", GlobalConfig),
    "analysis": ("analysis", AnalysisConfig),
    "apiset": ("apiset", ApiSetConfig),
}


def _section_from_table(section_cls: type, table: dict[str, Any]) -> Any:
    # keys the dataclass does not declare are dropped
    known = {f.name for f in fields(section_cls)}
    return section_cls(**{key: value for key, value in table.items() if key in known})
