"""
Import Table Walker
====================

Decodes the classic import directory and the delay-load import directory
of a parsed PE image into a flat, deduplicated list of
:class:`~winfloor.core.models.ImportSymbol`.

Descriptor layouts::

    IMAGE_IMPORT_DESCRIPTOR (20 bytes)
        OriginalFirstThunk, TimeDateStamp, ForwarderChain, Name, FirstThunk

    IMAGE_DELAYLOAD_DESCRIPTOR (32 bytes)
        Attributes, DllNameRVA, ModuleHandleRVA, ImportAddressTableRVA,
        ImportNameTableRVA, BoundImportAddressTableRVA,
        UnloadInformationTableRVA, TimeDateStamp

Truncation contract: a read past the end of the image while decoding a
descriptor, its module name or its thunk array ends the *directory* being
walked.  Everything decoded before that point is kept and no exception
leaves :func:`walk_imports`.

References:
    - Microsoft. (2024). PE Format -- The .idata Section; Delay-Load
      Import Tables. Microsoft Learn.
    - Pietrek, M. (2002). An In-Depth Look into the Win32 Portable
      Executable File Format, Part 2. MSDN Magazine.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from winfloor.core.exceptions import TruncatedReadError
from winfloor.core.models import ImportSymbol
from winfloor.parsers.pe_parser import (
    IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT,
    IMAGE_DIRECTORY_ENTRY_IMPORT,
    PEParser,
)

_IMPORT_DESCRIPTOR_FMT = struct.Struct("<IIIII")
_DELAY_DESCRIPTOR_FMT = struct.Struct("<IIIIIIII")

_ORDINAL_FLAG_32: int = 0x8000_0000
_ORDINAL_FLAG_64: int = 0x8000_0000_0000_0000

# Delay descriptor Attributes bit 0: address fields are RVAs.
_DLATTR_RVA: int = 0x1

DEFAULT_MAX_DESCRIPTORS: int = 4096
DEFAULT_MAX_THUNKS: int = 65536


@dataclass
class ImportWalk:
    """Result of walking one image's import directories.

    Attributes:
        symbols: Deduplicated imports in discovery order, classic imports
            first.
        truncated: Names of the directories (``"import"``,
            ``"delay-import"``) whose walk was cut short by a read past
            the end of the image.
    """

    symbols: list[ImportSymbol] = field(default_factory=list)
    truncated: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.symbols)

    def __iter__(self):
        return iter(self.symbols)


class ImportWalker:
    """Walks the import directories of a parsed image.

    Args:
        pe: A :class:`PEParser` on which :meth:`~PEParser.parse` succeeded.
        max_descriptors: Upper bound on descriptors read per directory.
        max_thunks: Upper bound on thunks read per descriptor.
    """

    def __init__(
        self,
        pe: PEParser,
        *,
        max_descriptors: int = DEFAULT_MAX_DESCRIPTORS,
        max_thunks: int = DEFAULT_MAX_THUNKS,
    ) -> None:
        self._pe = pe
        self._reader = pe.reader
        self._max_descriptors = max_descriptors
        self._max_thunks = max_thunks
        self._thunk_size = 8 if pe.is_pe32plus else 4
        self._ordinal_flag = _ORDINAL_FLAG_64 if pe.is_pe32plus else _ORDINAL_FLAG_32

    def walk(self) -> ImportWalk:
        """Decode both directories and deduplicate the combined list."""
        result = ImportWalk()
        raw: list[ImportSymbol] = []

        for name, walker in (
            ("import", self._walk_classic),
            ("delay-import", self._walk_delay),
        ):
            if not walker(raw):
                result.truncated.append(name)

        seen: set[tuple[str, str]] = set()
        for sym in raw:
            key = sym.dedup_key
            if key in seen:
                continue
            seen.add(key)
            result.symbols.append(sym)
        return result

    # ------------------------------------------------------------------ #
    #  Classic imports
    # ------------------------------------------------------------------ #

    def _walk_classic(self, out: list[ImportSymbol]) -> bool:
        """Append classic imports to *out*; return ``False`` if truncated."""
        rva, size = self._pe.data_directory(IMAGE_DIRECTORY_ENTRY_IMPORT)
        if rva == 0 or size == 0:
            return True

        offset = self._pe.sections.resolve(rva)
        try:
            for index in range(self._max_descriptors):
                fields = self._reader.unpack(
                    _IMPORT_DESCRIPTOR_FMT,
                    offset + index * _IMPORT_DESCRIPTOR_FMT.size,
                )
                if not any(fields):
                    break
                original_thunk, _stamp, _chain, name_rva, first_thunk = fields
                module = self._read_name(name_rva)
                table_rva = original_thunk or first_thunk
                self._read_thunks(out, module, table_rva, delay=False)
        except TruncatedReadError:
            return False
        return True

    # ------------------------------------------------------------------ #
    #  Delay-load imports
    # ------------------------------------------------------------------ #

    def _walk_delay(self, out: list[ImportSymbol]) -> bool:
        """Append delay-load imports to *out*; return ``False`` if truncated."""
        rva, size = self._pe.data_directory(IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT)
        if rva == 0 or size == 0:
            return True

        offset = self._pe.sections.resolve(rva)
        try:
            for index in range(self._max_descriptors):
                fields = self._reader.unpack(
                    _DELAY_DESCRIPTOR_FMT,
                    offset + index * _DELAY_DESCRIPTOR_FMT.size,
                )
                if not any(fields):
                    break
                attributes, name_rva, _handle, _iat, name_table_rva = fields[:5]
                if not attributes & _DLATTR_RVA:
                    # Visual C++ 6.0 era descriptors hold VAs.
                    name_rva = self._rebase(name_rva)
                    name_table_rva = self._rebase(name_table_rva)
                module = self._read_name(name_rva)
                self._read_thunks(out, module, name_table_rva, delay=True)
        except TruncatedReadError:
            return False
        return True

    def _rebase(self, va: int) -> int:
        base = self._pe.image_base
        return va - base if va >= base else va

    # ------------------------------------------------------------------ #
    #  Shared helpers
    # ------------------------------------------------------------------ #

    def _read_name(self, rva: int) -> str:
        return self._reader.cstring(self._pe.sections.resolve(rva))

    def _read_thunks(
        self,
        out: list[ImportSymbol],
        module: str,
        table_rva: int,
        *,
        delay: bool,
    ) -> None:
        """Decode one thunk array into *out*.

        Symbols are appended as they are decoded, so a truncated array
        still contributes the entries before the failing read.
        """
        if table_rva == 0:
            return

        read_thunk = self._reader.u64 if self._thunk_size == 8 else self._reader.u32
        offset = self._pe.sections.resolve(table_rva)
        for index in range(self._max_thunks):
            value = read_thunk(offset + index * self._thunk_size)
            if value == 0:
                break
            if value & self._ordinal_flag:
                out.append(ImportSymbol(
                    module=module, ordinal=value & 0xFFFF, delay_loaded=delay,
                ))
                continue
            hint_name_rva = value & ~self._ordinal_flag & 0x7FFF_FFFF
            name_offset = self._pe.sections.resolve(hint_name_rva) + 2
            out.append(ImportSymbol(
                module=module,
                name=self._reader.cstring(name_offset),
                delay_loaded=delay,
            ))


def walk_imports(
    pe: PEParser,
    *,
    max_descriptors: int = DEFAULT_MAX_DESCRIPTORS,
    max_thunks: int = DEFAULT_MAX_THUNKS,
) -> ImportWalk:
    """Convenience wrapper around :class:`ImportWalker`."""
    return ImportWalker(
        pe, max_descriptors=max_descriptors, max_thunks=max_thunks
    ).walk()
