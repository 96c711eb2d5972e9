"""
ECMA-335 Blob Decoding
=======================

A forward-only cursor over one blob-heap entry, plus the two decoders the
metadata reader needs:

    - :func:`parse_method_signature` -- parameter element types of a
      constructor's ``MethodDefSig``
    - :func:`decode_custom_attribute` -- fixed and named arguments of a
      custom-attribute value blob

Only the primitive and string element types are decoded.  An argument of
any other type stops decoding; whatever was decoded before it is kept.

References:
    - ECMA-335 (6th ed., 2012). Partition II, 23.2 Blobs and signatures;
      23.3 Custom attributes.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Any

from winfloor.core.exceptions import TruncatedReadError

# ---------------------------------------------------------------------------
# Element types (II.23.1.16)
# ---------------------------------------------------------------------------

ELEMENT_TYPE_VOID: int = 0x01
ELEMENT_TYPE_BOOLEAN: int = 0x02
ELEMENT_TYPE_CHAR: int = 0x03
ELEMENT_TYPE_I1: int = 0x04
ELEMENT_TYPE_U1: int = 0x05
ELEMENT_TYPE_I2: int = 0x06
ELEMENT_TYPE_U2: int = 0x07
ELEMENT_TYPE_I4: int = 0x08
ELEMENT_TYPE_U4: int = 0x09
ELEMENT_TYPE_I8: int = 0x0A
ELEMENT_TYPE_U8: int = 0x0B
ELEMENT_TYPE_R4: int = 0x0C
ELEMENT_TYPE_R8: int = 0x0D
ELEMENT_TYPE_STRING: int = 0x0E
SERIALIZATION_TYPE_TYPE: int = 0x50
SERIALIZATION_TYPE_TAGGED_OBJECT: int = 0x51
SERIALIZATION_TYPE_ENUM: int = 0x55

NAMED_ARG_FIELD: int = 0x53
NAMED_ARG_PROPERTY: int = 0x54

CA_PROLOG: int = 0x0001

_PRIMITIVES: dict[int, struct.Struct] = {
    ELEMENT_TYPE_BOOLEAN: struct.Struct("<?"),
    ELEMENT_TYPE_CHAR: struct.Struct("<H"),
    ELEMENT_TYPE_I1: struct.Struct("<b"),
    ELEMENT_TYPE_U1: struct.Struct("<B"),
    ELEMENT_TYPE_I2: struct.Struct("<h"),
    ELEMENT_TYPE_U2: struct.Struct("<H"),
    ELEMENT_TYPE_I4: struct.Struct("<i"),
    ELEMENT_TYPE_U4: struct.Struct("<I"),
    ELEMENT_TYPE_I8: struct.Struct("<q"),
    ELEMENT_TYPE_U8: struct.Struct("<Q"),
    ELEMENT_TYPE_R4: struct.Struct("<f"),
    ELEMENT_TYPE_R8: struct.Struct("<d"),
}

# Method signature calling-convention bits (II.23.2.1)
_SIG_GENERIC: int = 0x10


class UnsupportedElementType(Exception):
    """An argument type the decoder does not understand; decoding stops."""


class BlobCursor:
    """Forward-only reader over a single blob.

    All reads raise :class:`TruncatedReadError` when they would run past
    the end of the blob.
    """

    __slots__ = ("_data", "_pos")

    def __init__(self, data: bytes, pos: int = 0) -> None:
        self._data = data
        self._pos = pos

    @property
    def position(self) -> int:
        return self._pos

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def _take(self, size: int) -> bytes:
        if size < 0 or self._pos + size > len(self._data):
            raise TruncatedReadError(self._pos, size, len(self._data))
        chunk = self._data[self._pos:self._pos + size]
        self._pos += size
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u16(self) -> int:
        return int.from_bytes(self._take(2), "little")

    def unpack(self, fmt: struct.Struct) -> Any:
        return fmt.unpack(self._take(fmt.size))[0]

    def compressed_uint(self) -> int:
        """Read an ECMA-335 compressed unsigned integer (1, 2 or 4 bytes)."""
        first = self.u8()
        if first & 0x80 == 0:
            return first
        if first & 0xC0 == 0x80:
            return ((first & 0x3F) << 8) | self.u8()
        if first & 0xE0 == 0xC0:
            rest = self._take(3)
            return ((first & 0x1F) << 24) | (rest[0] << 16) | (rest[1] << 8) | rest[2]
        raise TruncatedReadError(self._pos - 1, 1, len(self._data))

    def ser_string(self) -> str | None:
        """Read a SerString: ``0xFF`` is null, else a compressed length + UTF-8."""
        if self.remaining > 0 and self._data[self._pos] == 0xFF:
            self._pos += 1
            return None
        length = self.compressed_uint()
        return self._take(length).decode("utf-8", errors="replace")

    def element(self, element_type: int) -> Any:
        """Read one custom-attribute value of *element_type*."""
        if element_type in _PRIMITIVES:
            return self.unpack(_PRIMITIVES[element_type])
        if element_type in (ELEMENT_TYPE_STRING, SERIALIZATION_TYPE_TYPE):
            return self.ser_string()
        if element_type == SERIALIZATION_TYPE_TAGGED_OBJECT:
            return self.element(self.u8())
        raise UnsupportedElementType(f"element type 0x{element_type:02x}")


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

def parse_method_signature(blob: bytes) -> list[int]:
    """Return the parameter element types of a ``MethodDefSig``/``MethodRefSig``.

    Parsing stops at the first parameter that is not a primitive or a
    string.  That type is still returned as the last entry, so that
    :func:`decode_custom_attribute` stops at the same argument.

    Raises:
        TruncatedReadError: If the blob ends before the parameter count.
    """
    cursor = BlobCursor(blob)
    conv = cursor.u8()
    if conv & _SIG_GENERIC:
        cursor.compressed_uint()
    count = cursor.compressed_uint()
    ret = cursor.u8()
    if ret != ELEMENT_TYPE_VOID:
        # Constructors return void; anything else is not worth following.
        return []

    params: list[int] = []
    for _ in range(count):
        element_type = cursor.u8()
        params.append(element_type)
        if element_type not in _PRIMITIVES and element_type != ELEMENT_TYPE_STRING:
            break
    return params


# ---------------------------------------------------------------------------
# Custom attribute values
# ---------------------------------------------------------------------------

@dataclass
class CustomAttributeValue:
    """Decoded arguments of one custom attribute.

    Attributes:
        fixed: Positional constructor arguments, in order.
        named: Named field/property arguments keyed by member name.
        complete: ``False`` when decoding stopped early on an unsupported
            type or a short blob.
    """

    fixed: list[Any] = field(default_factory=list)
    named: dict[str, Any] = field(default_factory=dict)
    complete: bool = True


def decode_custom_attribute(blob: bytes, param_types: list[int]) -> CustomAttributeValue:
    """Decode a custom-attribute value blob.

    Args:
        blob: The ``CustomAttribute.Value`` blob.
        param_types: Constructor parameter element types, from
            :func:`parse_method_signature`.

    Returns:
        The decoded arguments.  A missing prolog yields an empty,
        incomplete value; truncation and unsupported types keep what was
        decoded so far.
    """
    value = CustomAttributeValue()
    cursor = BlobCursor(blob)
    try:
        if cursor.u16() != CA_PROLOG:
            value.complete = False
            return value

        for element_type in param_types:
            value.fixed.append(cursor.element(element_type))

        if cursor.remaining < 2:
            return value
        for _ in range(cursor.u16()):
            kind = cursor.u8()
            if kind not in (NAMED_ARG_FIELD, NAMED_ARG_PROPERTY):
                value.complete = False
                break
            element_type = cursor.u8()
            if element_type == SERIALIZATION_TYPE_ENUM:
                cursor.ser_string()  # enum type name
                element_type = ELEMENT_TYPE_I4
            name = cursor.ser_string() or ""
            value.named[name] = cursor.element(element_type)
    except (TruncatedReadError, UnsupportedElementType):
        value.complete = False
    return value
