"""
API Map
========

The immutable ``module!symbol`` -> :class:`PlatformRequirement` lookup
table, and :class:`ApiMapBuilder`, which derives it from the P/Invoke
declarations in ECMA-335 metadata.

Key normalisation
-----------------
Every declaration is inserted under the cross product of:

    - module variants: as declared, and with ``.dll`` toggled
      (``kernel32`` <-> ``kernel32.dll``)
    - symbol variants: as declared, and without a trailing upper-case
      ``A``/``W`` character-set suffix (``CreateFileW`` -> ``CreateFile``)

all lower-cased.  When two declarations produce the same key the higher
build is kept; a lower one never overwrites it.  :meth:`ApiMap.lookup`
probes the same variants in a fixed order, so insertion and lookup are
symmetric.

Attribute kinds
---------------
Custom attributes on a method are reduced to a closed set of kinds:

    - :class:`NativeImportAttr` -- ``DllImportAttribute(dll)`` with an
      optional ``EntryPoint``
    - :class:`PlatformAttr` -- ``SupportedOSPlatformAttribute(platform)``
    - :class:`OtherAttr` -- anything else, ignored

References:
    - ECMA-335 (6th ed., 2012). Partition II, 15.5 Unmanaged methods;
      22.22 ImplMap.
    - Microsoft. win32metadata: Windows.Win32.winmd.
      https://github.com/microsoft/win32metadata
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Union

from winfloor.core.exceptions import TruncatedReadError
from winfloor.core.models import LookupResult, PlatformRequirement
from winfloor.analyzers.platform import platform_to_build
from winfloor.parsers.blob import decode_custom_attribute, parse_method_signature
from winfloor.parsers.cli_metadata import AttributeRecord, MetadataReader

PLATFORM_ATTRIBUTE: str = "SupportedOSPlatformAttribute"
DLL_IMPORT_ATTRIBUTE: str = "DllImportAttribute"

_DLL_SUFFIX: str = ".dll"


# ---------------------------------------------------------------------------
# Key normalisation
# ---------------------------------------------------------------------------

def normalize_module(module: str) -> str:
    return module.strip().lower()


def toggle_extension(module: str) -> str:
    """``foo.dll`` -> ``foo`` and ``foo`` -> ``foo.dll`` (case-insensitive)."""
    if module.lower().endswith(_DLL_SUFFIX):
        return module[: -len(_DLL_SUFFIX)]
    return module + _DLL_SUFFIX


def strip_charset_suffix(symbol: str) -> str:
    """Drop one trailing upper-case ``A`` or ``W`` from names longer than one character."""
    if len(symbol) > 1 and symbol[-1] in ("A", "W"):
        return symbol[:-1]
    return symbol


def make_key(module: str, symbol: str) -> str:
    return f"{normalize_module(module)}!{symbol.strip()}".lower()


def key_variants(module: str, symbol: str) -> list[str]:
    """Keys probed for ``(module, symbol)``, in lookup order, without duplicates."""
    module = normalize_module(module)
    symbol = symbol.strip()
    stripped = strip_charset_suffix(symbol)
    ordered = [
        make_key(module, symbol),
        make_key(toggle_extension(module), symbol),
        make_key(module, stripped),
        make_key(toggle_extension(module), stripped),
    ]
    return list(dict.fromkeys(ordered))


# ---------------------------------------------------------------------------
# The map
# ---------------------------------------------------------------------------

class ApiMap:
    """Read-only mapping of normalised keys to platform requirements.

    Built once, then shared by every classification (including concurrent
    ones); nothing mutates it after construction.

    Usage::

        api_map = ApiMap.from_entries([
            ("kernel32.dll", "GetTickCount64", 6000, "windows6.0.6000"),
        ])
        api_map.lookup("KERNEL32", "GetTickCount64").build   # 6000
    """

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, PlatformRequirement] | None = None) -> None:
        self._entries: Mapping[str, PlatformRequirement] = MappingProxyType(
            dict(entries or {})
        )

    @classmethod
    def from_entries(
        cls, declarations: Iterable[tuple[str, str, int, str]]
    ) -> ApiMap:
        """Build a map from ``(module, symbol, build, platform)`` tuples."""
        builder = _KeyTable()
        for module, symbol, build, platform in declarations:
            builder.insert(module, symbol, PlatformRequirement(
                build=build, platform_string=platform,
            ))
        return cls(builder.entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def get(self, key: str) -> PlatformRequirement | None:
        """Requirement stored under ``module!symbol``; keys are case-insensitive."""
        return self._entries.get(key.lower())

    def lookup(self, module: str, symbol: str) -> LookupResult:
        """Probe the key variants of ``(module, symbol)``; first hit wins."""
        for key in key_variants(module, symbol):
            requirement = self.get(key)
            if requirement is not None:
                return LookupResult(requirement=requirement, key=key)
        return LookupResult()


class _KeyTable:
    """Mutable staging table used only while a map is being built."""

    def __init__(self) -> None:
        self.entries: dict[str, PlatformRequirement] = {}

    def insert(self, module: str, symbol: str, requirement: PlatformRequirement) -> None:
        module = normalize_module(module)
        symbol = symbol.strip()
        for mod in (module, toggle_extension(module)):
            for sym in (symbol, strip_charset_suffix(symbol)):
                key = make_key(mod, sym)
                current = self.entries.get(key)
                if current is None or requirement.build > current.build:
                    self.entries[key] = requirement


# ---------------------------------------------------------------------------
# Attribute kinds
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NativeImportAttr:
    module: str
    entry_point: str | None = None


@dataclass(frozen=True)
class PlatformAttr:
    platform: str
    build: int


@dataclass(frozen=True)
class OtherAttr:
    type_name: str


AttributeKind = Union[NativeImportAttr, PlatformAttr, OtherAttr]


def classify_attribute(record: AttributeRecord) -> AttributeKind:
    """Reduce one raw custom attribute to a recognised kind."""
    if record.type_name not in (PLATFORM_ATTRIBUTE, DLL_IMPORT_ATTRIBUTE):
        return OtherAttr(record.type_name)

    try:
        params = parse_method_signature(record.constructor_signature)
    except TruncatedReadError:
        return OtherAttr(record.type_name)
    value = decode_custom_attribute(record.value, params)
    first = value.fixed[0] if value.fixed else None
    if not isinstance(first, str):
        return OtherAttr(record.type_name)

    if record.type_name == PLATFORM_ATTRIBUTE:
        return PlatformAttr(first, platform_to_build(first))

    entry_point = value.named.get("EntryPoint")
    return NativeImportAttr(
        first, entry_point if isinstance(entry_point, str) and entry_point else None
    )


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

@dataclass
class BuildStats:
    """Counters gathered while building a map."""
    methods: int = 0
    declarations: int = 0
    with_platform: int = 0
    skipped_rows: int = 0
    unparsed_platforms: list[str] = field(default_factory=list)


class ApiMapBuilder:
    """Derives an :class:`ApiMap` from CLI metadata.

    A method is a native-import declaration when it is flagged
    ``PinvokeImpl`` with an ``ImplMap`` row, or carries a
    ``DllImportAttribute``.  Its requirement is the highest build over
    its ``SupportedOSPlatformAttribute`` instances, or 0 without one.

    Usage::

        builder = ApiMapBuilder()
        api_map = builder.build_file("Windows.Win32.winmd")
        print(len(api_map), builder.stats.declarations)
    """

    def __init__(self) -> None:
        self.stats = BuildStats()

    def build_file(self, path: str | Path) -> ApiMap:
        return self.build_bytes(Path(path).read_bytes())

    def build_bytes(self, data: bytes) -> ApiMap:
        return self.build(MetadataReader.from_bytes(data))

    def build(self, reader: MetadataReader) -> ApiMap:
        """Build the map from an open :class:`MetadataReader`."""
        self.stats = BuildStats()
        table = _KeyTable()
        impl_maps = reader.impl_maps()
        attributes = reader.method_attributes()

        for method in reader.methods():
            self.stats.methods += 1
            kinds = [classify_attribute(rec) for rec in attributes.get(method.rid, ())]

            target = self._declaration(method.rid, method.name, method.is_pinvoke, impl_maps, kinds)
            if target is None:
                continue
            module, symbol = target
            self.stats.declarations += 1
            table.insert(module, symbol, self._requirement(kinds))

        self.stats.skipped_rows = reader.skipped_rows
        return ApiMap(table.entries)

    @staticmethod
    def _declaration(rid, name, is_pinvoke, impl_maps, kinds) -> tuple[str, str] | None:
        impl = impl_maps.get(rid)
        if is_pinvoke and impl is not None and impl.module_name.strip():
            return impl.module_name, impl.import_name or name
        for kind in kinds:
            if isinstance(kind, NativeImportAttr) and kind.module.strip():
                return kind.module, kind.entry_point or name
        return None

    def _requirement(self, kinds: list[AttributeKind]) -> PlatformRequirement:
        best: PlatformAttr | None = None
        for kind in kinds:
            if not isinstance(kind, PlatformAttr):
                continue
            if kind.build == 0:
                self.stats.unparsed_platforms.append(kind.platform)
            if best is None or kind.build > best.build:
                best = kind
        if best is None:
            return PlatformRequirement()
        self.stats.with_platform += 1
        return PlatformRequirement(build=best.build, platform_string=best.platform)
