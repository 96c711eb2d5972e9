"""
Bounds-Checked Byte Reader
===========================

Random-access little-endian reads over an in-memory image.  Every read
is checked against the buffer length and raises
:class:`~winfloor.core.exceptions.TruncatedReadError` instead of
returning short data, so callers decide explicitly how truncation is
handled.
"""

from __future__ import annotations

import struct

from winfloor.core.exceptions import TruncatedReadError

_U16 = struct.Struct("<H")
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


class ByteReader:
    """Bounds-checked view over immutable bytes.

    Usage::

        reader = ByteReader(data)
        e_lfanew = reader.u32(0x3C)
        name = reader.cstring(name_offset)
    """

    __slots__ = ("_data",)

    def __init__(self, data: bytes) -> None:
        self._data = data

    def __len__(self) -> int:
        return len(self._data)

    @property
    def data(self) -> bytes:
        return self._data

    def check(self, offset: int, size: int) -> None:
        """Raise :class:`TruncatedReadError` unless ``[offset, offset+size)`` is in range."""
        if offset < 0 or size < 0 or offset + size > len(self._data):
            raise TruncatedReadError(offset, size, len(self._data))

    def bytes_at(self, offset: int, size: int) -> bytes:
        self.check(offset, size)
        return self._data[offset:offset + size]

    def u8(self, offset: int) -> int:
        self.check(offset, 1)
        return self._data[offset]

    def u16(self, offset: int) -> int:
        self.check(offset, 2)
        return _U16.unpack_from(self._data, offset)[0]

    def u32(self, offset: int) -> int:
        self.check(offset, 4)
        return _U32.unpack_from(self._data, offset)[0]

    def u64(self, offset: int) -> int:
        self.check(offset, 8)
        return _U64.unpack_from(self._data, offset)[0]

    def unpack(self, fmt: struct.Struct, offset: int) -> tuple[int, ...]:
        """Unpack a precompiled :class:`struct.Struct` at *offset*."""
        self.check(offset, fmt.size)
        return fmt.unpack_from(self._data, offset)

    def cstring(self, offset: int, encoding: str = "ascii") -> str:
        """Read a NUL-terminated string starting at *offset*.

        Raises:
            TruncatedReadError: If *offset* is out of range or no NUL
                terminator occurs before the end of the buffer.
        """
        self.check(offset, 1)
        end = self._data.find(b"\x00", offset)
        if end == -1:
            raise TruncatedReadError(offset, len(self._data) - offset + 1, len(self._data))
        return self._data[offset:end].decode(encoding, errors="replace")
