"""
PE/COFF Header Parser
======================

Manual struct-based parser for the Portable Executable (PE) headers of
Windows executables and DLLs.  No ``pefile``, ``lief`` or OS loader is
involved; both PE32 (32-bit) and PE32+ (64-bit) optional headers are
supported.

The parser extracts:
    - DOS header (MZ stub) and PE signature
    - COFF file header (machine, section count, characteristics)
    - Optional header (image base, header size, OS/subsystem versions,
      data directories)
    - Section table, exposed as a :class:`SectionMap` that resolves RVAs
      to file offsets

Structural damage in any of these is fatal and raises
:class:`~winfloor.core.exceptions.MalformedPEError`.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Pietrek, M. (1994). Peering Inside the PE: A Tour of the Win32
      Portable Executable File Format. Microsoft Systems Journal.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import NamedTuple

from winfloor.core.exceptions import MalformedPEError, TruncatedReadError
from winfloor.parsers.reader import ByteReader


# ---------------------------------------------------------------------------
# PE Constants
# ---------------------------------------------------------------------------

MZ_MAGIC: bytes = b"MZ"
PE_MAGIC: bytes = b"PE\x00\x00"

PE32_MAGIC: int = 0x10B      # PE32 (32-bit)
PE32PLUS_MAGIC: int = 0x20B  # PE32+ (64-bit)

IMAGE_FILE_MACHINE_UNKNOWN: int = 0x0
IMAGE_FILE_MACHINE_I386: int = 0x14C
IMAGE_FILE_MACHINE_ARM: int = 0x1C0
IMAGE_FILE_MACHINE_ARMNT: int = 0x1C4
IMAGE_FILE_MACHINE_AMD64: int = 0x8664
IMAGE_FILE_MACHINE_ARM64: int = 0xAA64
IMAGE_FILE_MACHINE_IA64: int = 0x200

_MACHINE_NAMES: dict[int, str] = {
    IMAGE_FILE_MACHINE_UNKNOWN: "Unknown",
    IMAGE_FILE_MACHINE_I386: "x86",
    IMAGE_FILE_MACHINE_ARM: "ARM",
    IMAGE_FILE_MACHINE_ARMNT: "ARM Thumb-2",
    IMAGE_FILE_MACHINE_AMD64: "x86_64",
    IMAGE_FILE_MACHINE_ARM64: "AArch64",
    IMAGE_FILE_MACHINE_IA64: "IA-64",
}

# Data directory indices
IMAGE_DIRECTORY_ENTRY_IMPORT: int = 1
IMAGE_DIRECTORY_ENTRY_DELAY_IMPORT: int = 13
IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR: int = 14

_MAX_DATA_DIRECTORIES: int = 16
_COFF_HEADER_SIZE: int = 20
_SECTION_HEADER_SIZE: int = 40

_COFF_FMT = struct.Struct("<HHIIIHH")
_OPT_STD_PE32_FMT = struct.Struct("<HBBIIIIII")
_OPT_STD_PE32PLUS_FMT = struct.Struct("<HBBIIIII")
_OPT_WIN_PE32_FMT = struct.Struct("<IIIHHHHHHIIIIHHIIIIII")
_OPT_WIN_PE32PLUS_FMT = struct.Struct("<QIIHHHHHHIIIIHHQQQQII")
_SECTION_FMT = struct.Struct("<IIIIIIHHI")
_DATA_DIR_FMT = struct.Struct("<II")


# ---------------------------------------------------------------------------
# Internal parsed structures
# ---------------------------------------------------------------------------

class _COFFHeader(NamedTuple):
    """COFF file header, in on-disk field order."""

    machine: int
    number_of_sections: int
    time_date_stamp: int
    pointer_to_symbol_table: int
    number_of_symbols: int
    size_of_optional_header: int
    characteristics: int


class _WindowsFields(NamedTuple):
    """Windows-specific optional header fields, in on-disk order.

    ``image_base`` and the four stack/heap sizes are 8 bytes wide on
    PE32+ and 4 bytes on PE32; the layout is otherwise identical.
    """

    image_base: int
    section_alignment: int
    file_alignment: int
    major_os_version: int
    minor_os_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    number_of_rva_and_sizes: int


@dataclass(frozen=True, slots=True)
class SectionEntry:
    """One row of the section map.

    Attributes:
        name: Section name (e.g. ``.idata``).
        virtual_address: RVA of the first byte when loaded.
        virtual_size: Size in memory.
        raw_size: Size of the initialised data on disk.
        file_offset: File offset of the raw data.
    """
    name: str
    virtual_address: int
    virtual_size: int
    raw_size: int
    file_offset: int

    def contains(self, rva: int) -> bool:
        end = self.virtual_address + max(self.virtual_size, self.raw_size)
        return self.virtual_address <= rva < end


class SectionMap:
    """Resolves relative virtual addresses to file offsets.

    RVAs below the declared header size are already file offsets.  Any
    other RVA maps through the first section whose virtual range contains
    it.  An RVA no section claims is returned unchanged; reads at that
    offset are bounds-checked by :class:`ByteReader`, never trusted.
    """

    __slots__ = ("_sections", "_header_size")

    def __init__(self, sections: list[SectionEntry], header_size: int) -> None:
        self._sections: tuple[SectionEntry, ...] = tuple(sections)
        self._header_size = header_size

    def __iter__(self):
        return iter(self._sections)

    def __len__(self) -> int:
        return len(self._sections)

    @property
    def header_size(self) -> int:
        return self._header_size

    def resolve(self, rva: int) -> int:
        """Map *rva* to a file offset (best effort, never raises)."""
        if rva < self._header_size:
            return rva
        for section in self._sections:
            if section.contains(rva):
                return (rva - section.virtual_address) + section.file_offset
        return rva


# ---------------------------------------------------------------------------
# PE Parser
# ---------------------------------------------------------------------------

class PEParser:
    """Manual struct-based PE/COFF header parser.

    Usage::

        pe = PEParser(raw_bytes)
        pe.parse()                         # raises MalformedPEError
        rva, size = pe.data_directory(IMAGE_DIRECTORY_ENTRY_IMPORT)
        offset = pe.sections.resolve(rva)
    """

    def __init__(self, data: bytes) -> None:
        """Initialise the parser with raw binary data.

        Args:
            data: Complete PE file contents as bytes.
        """
        self._reader = ByteReader(data)
        self._e_lfanew: int = 0
        self._coff = _COFFHeader._make([0] * len(_COFFHeader._fields))
        self._windows = _WindowsFields._make([0] * len(_WindowsFields._fields))
        self._directories: list[tuple[int, int]] = []
        self._sections = SectionMap([], 0)
        self._is_pe32plus: bool = False

    # ------------------------------------------------------------------ #
    #  Public interface
    # ------------------------------------------------------------------ #

    def parse(self) -> PEParser:
        """Parse the headers and section table.

        Returns:
            ``self``, for chaining.

        Raises:
            MalformedPEError: If any header is missing, truncated or
                carries an unknown optional-header magic.
        """
        if len(self._reader) < 64 or self._reader.data[:2] != MZ_MAGIC:
            raise MalformedPEError("missing MZ signature")

        try:
            self._e_lfanew = self._reader.u32(0x3C)
            if self._reader.bytes_at(self._e_lfanew, 4) != PE_MAGIC:
                raise MalformedPEError(
                    f"missing PE signature at 0x{self._e_lfanew:x}"
                )
            self._parse_coff_header()
            self._parse_optional_header()
            self._parse_section_table()
        except TruncatedReadError as exc:
            raise MalformedPEError(f"truncated PE headers: {exc}") from exc

        return self

    @property
    def reader(self) -> ByteReader:
        return self._reader

    @property
    def sections(self) -> SectionMap:
        return self._sections

    @property
    def is_pe32plus(self) -> bool:
        return self._is_pe32plus

    @property
    def bitness(self) -> int:
        return 64 if self._is_pe32plus else 32

    @property
    def image_base(self) -> int:
        return self._windows.image_base

    @property
    def machine(self) -> str:
        machine = self._coff.machine
        return _MACHINE_NAMES.get(machine, f"unknown(0x{machine:x})")

    @property
    def os_version(self) -> tuple[int, int]:
        return (self._windows.major_os_version, self._windows.minor_os_version)

    @property
    def subsystem_version(self) -> tuple[int, int]:
        return (self._windows.major_subsystem_version, self._windows.minor_subsystem_version)

    def data_directory(self, index: int) -> tuple[int, int]:
        """Return ``(rva, size)`` of a data directory; ``(0, 0)`` if absent."""
        if index >= len(self._directories):
            return (0, 0)
        return self._directories[index]

    # ------------------------------------------------------------------ #
    #  Headers
    # ------------------------------------------------------------------ #

    def _parse_coff_header(self) -> None:
        self._coff = _COFFHeader._make(self._reader.unpack(_COFF_FMT, self._e_lfanew + 4))

    def _parse_optional_header(self) -> None:
        """PE32 or PE32+, chosen by the magic; then the data directories."""
        if self._coff.size_of_optional_header == 0:
            raise MalformedPEError("image has no optional header")

        start = self._e_lfanew + 4 + _COFF_HEADER_SIZE
        magic = self._reader.u16(start)
        if magic == PE32PLUS_MAGIC:
            std_fmt, win_fmt = _OPT_STD_PE32PLUS_FMT, _OPT_WIN_PE32PLUS_FMT
        elif magic == PE32_MAGIC:
            std_fmt, win_fmt = _OPT_STD_PE32_FMT, _OPT_WIN_PE32_FMT
        else:
            raise MalformedPEError(f"unknown optional header magic 0x{magic:x}")
        self._is_pe32plus = magic == PE32PLUS_MAGIC

        win_offset = start + std_fmt.size
        self._windows = _WindowsFields._make(self._reader.unpack(win_fmt, win_offset))

        # Entry count is capped at 16 and at what the declared header size holds
        dir_offset = win_offset + win_fmt.size
        header_end = start + self._coff.size_of_optional_header
        fits = max(0, (header_end - dir_offset) // _DATA_DIR_FMT.size)
        count = min(self._windows.number_of_rva_and_sizes, _MAX_DATA_DIRECTORIES, fits)
        self._directories = [
            self._reader.unpack(_DATA_DIR_FMT, dir_offset + i * _DATA_DIR_FMT.size)
            for i in range(count)
        ]

    # ------------------------------------------------------------------ #
    #  Section table
    # ------------------------------------------------------------------ #

    def _parse_section_table(self) -> None:
        """Parse the section table immediately following the optional header."""
        offset = (
            self._e_lfanew
            + 4
            + _COFF_HEADER_SIZE
            + self._coff.size_of_optional_header
        )

        entries: list[SectionEntry] = []
        for i in range(self._coff.number_of_sections):
            sec_offset = offset + i * _SECTION_HEADER_SIZE
            raw_name = self._reader.bytes_at(sec_offset, 8)
            (
                virtual_size,
                virtual_address,
                size_of_raw_data,
                pointer_to_raw_data,
                _pointer_to_relocations,
                _pointer_to_linenumbers,
                _number_of_relocations,
                _number_of_linenumbers,
                _characteristics,
            ) = self._reader.unpack(_SECTION_FMT, sec_offset + 8)
            entries.append(SectionEntry(
                name=raw_name.split(b"\x00", 1)[0].decode("ascii", errors="replace"),
                virtual_address=virtual_address,
                virtual_size=virtual_size,
                raw_size=size_of_raw_data,
                file_offset=pointer_to_raw_data,
            ))

        self._sections = SectionMap(entries, self._windows.size_of_headers)
