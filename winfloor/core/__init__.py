"""
Winfloor Core
==============

Data models and the exception hierarchy shared by the parsers, the
analyzers and the engine.  The engine itself lives in
:mod:`winfloor.core.engine`.
"""

from winfloor.core.exceptions import (
    BinaryNotFoundError,
    FloorError,
    HeadersNotFoundError,
    InputNotFoundError,
    MalformedPEError,
    MetadataFormatError,
    MetadataNotFoundError,
    TruncatedReadError,
)
from winfloor.core.models import (
    AnalysisResult,
    BatchRow,
    BinaryReport,
    BuildSignal,
    ImportMatch,
    ImportSymbol,
    LookupResult,
    PlatformRequirement,
)

__all__ = [
    "FloorError",
    "InputNotFoundError",
    "MetadataNotFoundError",
    "BinaryNotFoundError",
    "HeadersNotFoundError",
    "MalformedPEError",
    "MetadataFormatError",
    "TruncatedReadError",
    "ImportSymbol",
    "PlatformRequirement",
    "LookupResult",
    "ImportMatch",
    "BuildSignal",
    "AnalysisResult",
    "BinaryReport",
    "BatchRow",
]
