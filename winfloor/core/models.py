"""
Winfloor Data Models
=====================

Pydantic models for the values that flow between the analyzer stages:
imported symbols from the PE walker, platform requirements from the
metadata map, per-import lookup outcomes, and the final verdict.

All models are frozen: each is built once and never mutated after
construction.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
    - ECMA-335 (6th ed., 2012). Common Language Infrastructure, Partition II.
    - Pydantic v2 documentation. https://docs.pydantic.dev/latest/
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


# ---------------------------------------------------------------------------
# Imported symbols
# ---------------------------------------------------------------------------

class ImportSymbol(BaseModel):
    """One external symbol a binary depends on.

    Exactly one of *name* or *ordinal* is set.  Ordinal-only imports are
    rendered as ``#N`` and never match named metadata.

    Attributes:
        module: Imported module name as written in the image.
        name: Imported symbol name for by-name imports.
        ordinal: Ordinal number for by-ordinal imports.
        delay_loaded: ``True`` when the import came from the delay-load
            directory.
    """

    model_config = ConfigDict(frozen=True)

    module: str
    name: str | None = None
    ordinal: int | None = Field(default=None, ge=0, le=0xFFFF)
    delay_loaded: bool = False

    @model_validator(mode="after")
    def _one_of_name_or_ordinal(self) -> ImportSymbol:
        if (self.name is None) == (self.ordinal is None):
            raise ValueError("exactly one of name or ordinal must be set")
        return self

    @property
    def is_ordinal(self) -> bool:
        return self.ordinal is not None

    @property
    def symbol(self) -> str:
        """Symbol text: the name, or ``#N`` for an ordinal import."""
        if self.name is not None:
            return self.name
        return f"#{self.ordinal}"

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.module.strip().lower(), self.symbol.lower())


# ---------------------------------------------------------------------------
# Metadata-derived requirements and lookups
# ---------------------------------------------------------------------------

class PlatformRequirement(BaseModel):
    """Minimum OS build attached to one declared external API.

    Attributes:
        build: Minimum Windows build number; 0 means no recorded minimum.
        platform_string: The platform attribute argument the build was
            derived from (e.g. ``"windows10.0.19041"``), or ``""``.
    """

    model_config = ConfigDict(frozen=True)

    build: int = Field(default=0, ge=0)
    platform_string: str = ""


class LookupResult(BaseModel):
    """Outcome of looking one ``(module, symbol)`` pair up in the API map.

    Attributes:
        requirement: The matched entry, or ``None`` on a miss.
        key: The map key that matched.
        via: Host module used by the API-set fallback; empty for a
            direct hit.
    """

    model_config = ConfigDict(frozen=True)

    requirement: PlatformRequirement | None = None
    key: str = ""
    via: str = ""

    @property
    def found(self) -> bool:
        return self.requirement is not None

    @property
    def is_fallback(self) -> bool:
        return bool(self.via)

    @property
    def build(self) -> int:
        return self.requirement.build if self.requirement is not None else 0

    @property
    def platform_string(self) -> str:
        return self.requirement.platform_string if self.requirement is not None else ""

    def describe(self) -> str:
        """Platform string, annotated when the hit came from the fallback."""
        if not self.is_fallback:
            return self.platform_string
        return f"{self.platform_string} (api-set fallback via {self.via})"


class ImportMatch(BaseModel):
    """An import that resolved against the API map."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    module: str
    symbol: str
    build: int = 0
    platform_string: str = ""
    via: str = ""

    @property
    def reason(self) -> str:
        text = f"{self.module}!{self.symbol} -> {self.platform_string}"
        if self.via:
            text += f" (api-set fallback via {self.via})"
        return text


class BuildSignal(BaseModel):
    """One independently gathered minimum-build signal and why."""

    model_config = ConfigDict(frozen=True)

    build: int = Field(default=0, ge=0)
    reason: str = "N/A"


class Classification(BaseModel):
    """Classifier output for one import list.

    Attributes:
        import_count: Number of imports examined, ordinals included.
        mapped_count: Named imports found in the map (direct or fallback).
        fallback_count: The subset of *mapped_count* found through the
            API-set fallback.
        api_signal: Maximum build over all matched imports, with the
            first import that reached it.
        matches: Every matched import, in input order.
    """

    model_config = ConfigDict(frozen=True)

    import_count: int = 0
    mapped_count: int = 0
    fallback_count: int = 0
    api_signal: BuildSignal = Field(default_factory=BuildSignal)
    matches: tuple[ImportMatch, ...] = ()


# ---------------------------------------------------------------------------
# Final verdict
# ---------------------------------------------------------------------------

UNKNOWN_REASON: str = "UNKNOWN"


class AnalysisResult(BaseModel):
    """The structured verdict for one analyzed binary.

    Serialized with camelCase keys (``model_dump(by_alias=True)``).

    Attributes:
        binary_path: Path of the analyzed image (or imports text file).
        source: ``"pe"`` for an image, ``"dumpbin"`` for text inputs.
        bitness: 32 or 64; 0 when unknown.
        machine: Machine type name from the COFF header.
        import_count: Deduplicated imports, ordinals included.
        mapped_count: Named imports found in the API map.
        fallback_count: Imports found only through the API-set fallback.
        api_min_build / api_min_reason: Import-derived signal.
        header_min_build / header_min_reason: Header-derived signal.
        dll_min_build / dll_min_reason: Known-component signal
            (informational, not part of *required_build*).
        required_build / required_reason: The combined verdict.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    binary_path: str = ""
    source: str = "pe"
    bitness: int = 0
    machine: str = ""
    import_count: int = 0
    mapped_count: int = Field(default=0, alias="mappedImportCount")
    fallback_count: int = Field(default=0, alias="fallbackImportCount")
    api_min_build: int = 0
    api_min_reason: str = "N/A"
    header_min_build: int = 0
    header_min_reason: str = "N/A"
    dll_min_build: int = 0
    dll_min_reason: str = "N/A"
    required_build: int = Field(default=0, alias="requiredMinBuild")
    required_reason: str = Field(default=UNKNOWN_REASON, alias="requiredMinReason")


class BinaryReport(BaseModel):
    """An :class:`AnalysisResult` plus the imports that drove it."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    result: AnalysisResult
    contributors: tuple[ImportMatch, ...] = ()


class BatchRow(BaseModel):
    """One answered line of a batch lookup."""

    model_config = ConfigDict(frozen=True)

    module: str
    symbol: str
    build: int = 0
    reason: str = ""

    def as_fields(self) -> tuple[str, str, str, str]:
        return (self.module, self.symbol, str(self.build), self.reason)
