"""
ECMA-335 Metadata Reader
=========================

Reads the physical CLI metadata layout of a managed image (``.winmd``,
``.dll``) or of a bare metadata blob starting with the ``BSJB`` root
signature:

    - metadata root and stream headers
    - ``#Strings`` and ``#Blob`` heaps
    - the ``#~`` (or uncompressed ``#-``) table stream, with heap-size
      flags, row counts, simple and coded index widths

On top of the raw table access, :class:`MetadataReader` offers the views
the API-map builder consumes: methods grouped under their declaring
types, the custom attributes attached to each method (with the
attribute type name resolved through ``MemberRef`` or ``MethodDef``
constructors), and the ``ImplMap`` P/Invoke rows.

Structural damage to the root, the stream headers or the table layout
raises :class:`~winfloor.core.exceptions.MetadataFormatError`.  Bad
heap indices inside individual rows surface as
:class:`~winfloor.core.exceptions.TruncatedReadError` on the specific
read, for the caller to recover from locally.

References:
    - ECMA-335 (6th ed., 2012). Common Language Infrastructure,
      Partition II, 22 Metadata logical format: tables; 24 Metadata
      physical layout.
    - Microsoft. (2024). PE Format -- The .cormeta Section. Microsoft Learn.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Iterator

from winfloor.core.exceptions import (
    MalformedPEError,
    MetadataFormatError,
    TruncatedReadError,
)
from winfloor.parsers.blob import BlobCursor
from winfloor.parsers.pe_parser import IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR, PEParser
from winfloor.parsers.reader import ByteReader


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

METADATA_SIGNATURE: bytes = b"BSJB"

_HEAP_STRINGS_WIDE: int = 0x01
_HEAP_GUID_WIDE: int = 0x02
_HEAP_BLOB_WIDE: int = 0x04
_HEAP_EXTRA_DATA: int = 0x40

METHOD_ATTR_PINVOKE_IMPL: int = 0x2000

# Table identifiers (II.22)
MODULE = 0x00
TYPE_REF = 0x01
TYPE_DEF = 0x02
FIELD_PTR = 0x03
FIELD = 0x04
METHOD_PTR = 0x05
METHOD_DEF = 0x06
PARAM_PTR = 0x07
PARAM = 0x08
INTERFACE_IMPL = 0x09
MEMBER_REF = 0x0A
CONSTANT = 0x0B
CUSTOM_ATTRIBUTE = 0x0C
FIELD_MARSHAL = 0x0D
DECL_SECURITY = 0x0E
CLASS_LAYOUT = 0x0F
FIELD_LAYOUT = 0x10
STAND_ALONE_SIG = 0x11
EVENT_MAP = 0x12
EVENT_PTR = 0x13
EVENT = 0x14
PROPERTY_MAP = 0x15
PROPERTY_PTR = 0x16
PROPERTY = 0x17
METHOD_SEMANTICS = 0x18
METHOD_IMPL = 0x19
MODULE_REF = 0x1A
TYPE_SPEC = 0x1B
IMPL_MAP = 0x1C
FIELD_RVA = 0x1D
ENC_LOG = 0x1E
ENC_MAP = 0x1F
ASSEMBLY = 0x20
ASSEMBLY_PROCESSOR = 0x21
ASSEMBLY_OS = 0x22
ASSEMBLY_REF = 0x23
ASSEMBLY_REF_PROCESSOR = 0x24
ASSEMBLY_REF_OS = 0x25
FILE = 0x26
EXPORTED_TYPE = 0x27
MANIFEST_RESOURCE = 0x28
NESTED_CLASS = 0x29
GENERIC_PARAM = 0x2A
METHOD_SPEC = 0x2B
GENERIC_PARAM_CONSTRAINT = 0x2C

_TABLE_COUNT: int = 64

# Coded index families (II.24.2.6): tag bit count and tag -> table.
# ``None`` marks a tag value that is reserved or unused.
_CODED: dict[str, tuple[int, tuple[int | None, ...]]] = {
    "TypeDefOrRef": (2, (TYPE_DEF, TYPE_REF, TYPE_SPEC)),
    "HasConstant": (2, (FIELD, PARAM, PROPERTY)),
    "HasCustomAttribute": (5, (
        METHOD_DEF, FIELD, TYPE_REF, TYPE_DEF, PARAM, INTERFACE_IMPL,
        MEMBER_REF, MODULE, DECL_SECURITY, PROPERTY, EVENT, STAND_ALONE_SIG,
        MODULE_REF, TYPE_SPEC, ASSEMBLY, ASSEMBLY_REF, FILE, EXPORTED_TYPE,
        MANIFEST_RESOURCE, GENERIC_PARAM, GENERIC_PARAM_CONSTRAINT,
        METHOD_SPEC,
    )),
    "HasFieldMarshal": (1, (FIELD, PARAM)),
    "HasDeclSecurity": (2, (TYPE_DEF, METHOD_DEF, ASSEMBLY)),
    "MemberRefParent": (3, (TYPE_DEF, TYPE_REF, MODULE_REF, METHOD_DEF, TYPE_SPEC)),
    "HasSemantics": (1, (EVENT, PROPERTY)),
    "MethodDefOrRef": (1, (METHOD_DEF, MEMBER_REF)),
    "MemberForwarded": (1, (FIELD, METHOD_DEF)),
    "Implementation": (2, (FILE, ASSEMBLY_REF, EXPORTED_TYPE)),
    "CustomAttributeType": (3, (None, None, METHOD_DEF, MEMBER_REF, None)),
    "ResolutionScope": (2, (MODULE, MODULE_REF, ASSEMBLY_REF, TYPE_REF)),
    "TypeOrMethodDef": (1, (TYPE_DEF, METHOD_DEF)),
}

# Column kinds: 2 / 4 are fixed-width integers, "str" / "guid" / "blob"
# are heap indices, ("t", id) is a simple table index and ("c", name) is
# a coded index.
_Col = int | str | tuple[str, int] | tuple[str, str]

_SCHEMA: dict[int, tuple[_Col, ...]] = {
    MODULE: (2, "str", "guid", "guid", "guid"),
    TYPE_REF: (("c", "ResolutionScope"), "str", "str"),
    TYPE_DEF: (4, "str", "str", ("c", "TypeDefOrRef"), ("t", FIELD), ("t", METHOD_DEF)),
    FIELD_PTR: (("t", FIELD),),
    FIELD: (2, "str", "blob"),
    METHOD_PTR: (("t", METHOD_DEF),),
    METHOD_DEF: (4, 2, 2, "str", "blob", ("t", PARAM)),
    PARAM_PTR: (("t", PARAM),),
    PARAM: (2, 2, "str"),
    INTERFACE_IMPL: (("t", TYPE_DEF), ("c", "TypeDefOrRef")),
    MEMBER_REF: (("c", "MemberRefParent"), "str", "blob"),
    CONSTANT: (2, ("c", "HasConstant"), "blob"),
    CUSTOM_ATTRIBUTE: (("c", "HasCustomAttribute"), ("c", "CustomAttributeType"), "blob"),
    FIELD_MARSHAL: (("c", "HasFieldMarshal"), "blob"),
    DECL_SECURITY: (2, ("c", "HasDeclSecurity"), "blob"),
    CLASS_LAYOUT: (2, 4, ("t", TYPE_DEF)),
    FIELD_LAYOUT: (4, ("t", FIELD)),
    STAND_ALONE_SIG: ("blob",),
    EVENT_MAP: (("t", TYPE_DEF), ("t", EVENT)),
    EVENT_PTR: (("t", EVENT),),
    EVENT: (2, "str", ("c", "TypeDefOrRef")),
    PROPERTY_MAP: (("t", TYPE_DEF), ("t", PROPERTY)),
    PROPERTY_PTR: (("t", PROPERTY),),
    PROPERTY: (2, "str", "blob"),
    METHOD_SEMANTICS: (2, ("t", METHOD_DEF), ("c", "HasSemantics")),
    METHOD_IMPL: (("t", TYPE_DEF), ("c", "MethodDefOrRef"), ("c", "MethodDefOrRef")),
    MODULE_REF: ("str",),
    TYPE_SPEC: ("blob",),
    IMPL_MAP: (2, ("c", "MemberForwarded"), "str", ("t", MODULE_REF)),
    FIELD_RVA: (4, ("t", FIELD)),
    ENC_LOG: (4, 4),
    ENC_MAP: (4,),
    ASSEMBLY: (4, 2, 2, 2, 2, 4, "blob", "str", "str"),
    ASSEMBLY_PROCESSOR: (4,),
    ASSEMBLY_OS: (4, 4, 4),
    ASSEMBLY_REF: (2, 2, 2, 2, 4, "blob", "str", "str", "blob"),
    ASSEMBLY_REF_PROCESSOR: (4, ("t", ASSEMBLY_REF)),
    ASSEMBLY_REF_OS: (4, 4, 4, ("t", ASSEMBLY_REF)),
    FILE: (4, "str", "blob"),
    EXPORTED_TYPE: (4, 4, "str", "str", ("c", "Implementation")),
    MANIFEST_RESOURCE: (4, 4, "str", ("c", "Implementation")),
    NESTED_CLASS: (("t", TYPE_DEF), ("t", TYPE_DEF)),
    GENERIC_PARAM: (2, 2, ("c", "TypeOrMethodDef"), "str"),
    METHOD_SPEC: (("c", "MethodDefOrRef"), "blob"),
    GENERIC_PARAM_CONSTRAINT: (("t", GENERIC_PARAM), ("c", "TypeDefOrRef")),
}


# ---------------------------------------------------------------------------
# Locating the metadata root
# ---------------------------------------------------------------------------

def locate_metadata_root(data: bytes) -> int:
    """Return the file offset of the ``BSJB`` metadata root in *data*.

    *data* is either a bare metadata blob or a PE image whose COM
    descriptor (data directory 14) points at the metadata.

    Raises:
        MetadataFormatError: If no metadata root can be found.
    """
    if data[:4] == METADATA_SIGNATURE:
        return 0

    try:
        pe = PEParser(data).parse()
    except MalformedPEError as exc:
        raise MetadataFormatError(f"not a metadata image: {exc}") from exc

    cor20_rva, cor20_size = pe.data_directory(IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR)
    if cor20_rva == 0 or cor20_size == 0:
        raise MetadataFormatError("image has no CLI header")

    try:
        cor20 = pe.sections.resolve(cor20_rva)
        metadata_rva = pe.reader.u32(cor20 + 8)
        offset = pe.sections.resolve(metadata_rva)
        signature = pe.reader.bytes_at(offset, 4)
    except TruncatedReadError as exc:
        raise MetadataFormatError(f"CLI header is truncated: {exc}") from exc

    if signature != METADATA_SIGNATURE:
        raise MetadataFormatError(f"no BSJB signature at 0x{offset:x}")
    return offset


# ---------------------------------------------------------------------------
# Physical layout
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class StreamHeader:
    name: str
    offset: int  # absolute file offset
    size: int


class MetadataImage:
    """Raw access to the heaps and tables of one metadata root.

    Usage::

        image = MetadataImage.from_bytes(data)
        for rid in range(1, image.row_count(METHOD_DEF) + 1):
            rva, impl_flags, flags, name, sig, params = image.row(METHOD_DEF, rid)
            print(image.string(name))
    """

    def __init__(self, data: bytes, root_offset: int = 0) -> None:
        self._reader = ByteReader(data)
        self._root = root_offset
        self.version: str = ""
        self.streams: dict[str, StreamHeader] = {}
        self._strings: bytes = b""
        self._blobs: bytes = b""
        self._rows: list[int] = [0] * _TABLE_COUNT
        self._table_offsets: dict[int, int] = {}
        self._row_structs: dict[int, struct.Struct] = {}

        try:
            self._parse_root()
            self._parse_tables()
        except TruncatedReadError as exc:
            raise MetadataFormatError(f"truncated metadata: {exc}") from exc

    @classmethod
    def from_bytes(cls, data: bytes) -> MetadataImage:
        """Locate the metadata root in *data* and parse it."""
        return cls(data, locate_metadata_root(data))

    # ------------------------------------------------------------------ #
    #  Root and streams
    # ------------------------------------------------------------------ #

    def _parse_root(self) -> None:
        r = self._reader
        if r.bytes_at(self._root, 4) != METADATA_SIGNATURE:
            raise MetadataFormatError("missing BSJB signature")

        version_length = r.u32(self._root + 12)
        self.version = (
            r.bytes_at(self._root + 16, version_length)
            .split(b"\x00", 1)[0]
            .decode("ascii", errors="replace")
        )
        pos = self._root + 16 + ((version_length + 3) & ~3)
        stream_count = r.u16(pos + 2)
        pos += 4

        for _ in range(stream_count):
            offset = r.u32(pos)
            size = r.u32(pos + 4)
            name = r.cstring(pos + 8)
            pos += 8 + ((len(name) + 1 + 3) & ~3)
            self.streams[name] = StreamHeader(name, self._root + offset, size)

        if "#Strings" in self.streams:
            self._strings = self._stream_bytes("#Strings")
        if "#Blob" in self.streams:
            self._blobs = self._stream_bytes("#Blob")

    def _stream_bytes(self, name: str) -> bytes:
        stream = self.streams[name]
        return self._reader.bytes_at(stream.offset, stream.size)

    # ------------------------------------------------------------------ #
    #  Table stream
    # ------------------------------------------------------------------ #

    def _parse_tables(self) -> None:
        stream = self.streams.get("#~") or self.streams.get("#-")
        if stream is None:
            raise MetadataFormatError("metadata has no table stream")

        r = self._reader
        base = stream.offset
        heap_sizes = r.u8(base + 6)
        valid = r.u64(base + 8)

        pos = base + 24
        for table in range(_TABLE_COUNT):
            if valid & (1 << table):
                self._rows[table] = r.u32(pos)
                pos += 4
        if heap_sizes & _HEAP_EXTRA_DATA:
            pos += 4

        widths = {
            "str": 4 if heap_sizes & _HEAP_STRINGS_WIDE else 2,
            "guid": 4 if heap_sizes & _HEAP_GUID_WIDE else 2,
            "blob": 4 if heap_sizes & _HEAP_BLOB_WIDE else 2,
        }

        for table in range(_TABLE_COUNT):
            if not self._rows[table]:
                continue
            schema = _SCHEMA.get(table)
            if schema is None:
                # Unknown tables can only trail the ones we need.
                break
            fmt = struct.Struct(
                "<" + "".join(
                    "H" if self._column_width(col, widths) == 2 else "I"
                    for col in schema
                )
            )
            self._table_offsets[table] = pos
            self._row_structs[table] = fmt
            pos += fmt.size * self._rows[table]

        if pos > stream.offset + stream.size or pos > len(r):
            raise MetadataFormatError("table data exceeds the table stream")

    def _column_width(self, col: _Col, widths: dict[str, int]) -> int:
        if isinstance(col, int):
            return col
        if isinstance(col, str):
            return widths[col]
        kind, target = col
        if kind == "t":
            return 4 if self._rows[target] > 0xFFFF else 2
        return self.coded_width(target)

    def coded_width(self, family: str) -> int:
        """Byte width (2 or 4) of a coded index of *family*."""
        bits, tables = _CODED[family]
        largest = max((self._rows[t] for t in tables if t is not None), default=0)
        return 2 if largest < (1 << (16 - bits)) else 4

    # ------------------------------------------------------------------ #
    #  Public accessors
    # ------------------------------------------------------------------ #

    def row_count(self, table: int) -> int:
        return self._rows[table]

    def row(self, table: int, rid: int) -> tuple[int, ...]:
        """Return the raw column values of row *rid* (1-based) of *table*."""
        if rid < 1 or rid > self._rows[table] or table not in self._row_structs:
            raise TruncatedReadError(rid, 1, self._rows[table])
        fmt = self._row_structs[table]
        offset = self._table_offsets[table] + (rid - 1) * fmt.size
        return self._reader.unpack(fmt, offset)

    def rows(self, table: int) -> Iterator[tuple[int, tuple[int, ...]]]:
        """Yield ``(rid, columns)`` for every row of *table*."""
        for rid in range(1, self._rows[table] + 1):
            yield rid, self.row(table, rid)

    def string(self, index: int) -> str:
        """Read a NUL-terminated UTF-8 string from the ``#Strings`` heap."""
        if index == 0:
            return ""
        if index >= len(self._strings):
            raise TruncatedReadError(index, 1, len(self._strings))
        end = self._strings.find(b"\x00", index)
        if end == -1:
            raise TruncatedReadError(index, len(self._strings) - index + 1, len(self._strings))
        return self._strings[index:end].decode("utf-8", errors="replace")

    def blob(self, index: int) -> bytes:
        """Read one length-prefixed entry from the ``#Blob`` heap."""
        if index == 0:
            return b""
        cursor = BlobCursor(self._blobs, index)
        length = cursor.compressed_uint()
        start = cursor.position
        if start + length > len(self._blobs):
            raise TruncatedReadError(start, length, len(self._blobs))
        return self._blobs[start:start + length]

    def decode_coded(self, family: str, value: int) -> tuple[int | None, int]:
        """Split a coded index into ``(table, rid)``; table is ``None`` if unused."""
        bits, tables = _CODED[family]
        tag = value & ((1 << bits) - 1)
        table = tables[tag] if tag < len(tables) else None
        return table, value >> bits


# ---------------------------------------------------------------------------
# Logical views
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class MethodInfo:
    """One ``MethodDef`` row with its declaring type."""
    rid: int
    name: str
    flags: int
    type_namespace: str
    type_name: str

    @property
    def is_pinvoke(self) -> bool:
        return bool(self.flags & METHOD_ATTR_PINVOKE_IMPL)


@dataclass(frozen=True, slots=True)
class AttributeRecord:
    """One custom attribute attached to a method, before decoding."""
    type_namespace: str
    type_name: str
    constructor_signature: bytes
    value: bytes


@dataclass(frozen=True, slots=True)
class ImplMapRecord:
    """The ``ImplMap`` row of a P/Invoke method."""
    method_rid: int
    import_name: str
    module_name: str
    flags: int


@dataclass
class MetadataReader:
    """Logical views over a :class:`MetadataImage`.

    Rows whose heap indices point outside their heap are skipped by the
    views that encounter them; they never abort a whole enumeration.
    """

    image: MetadataImage
    _method_owner: dict[int, tuple[str, str]] = field(default_factory=dict, repr=False)
    skipped_rows: int = 0

    def __post_init__(self) -> None:
        self._method_owner = self._map_method_owners()

    @classmethod
    def from_bytes(cls, data: bytes) -> MetadataReader:
        return cls(MetadataImage.from_bytes(data))

    # ------------------------------------------------------------------ #
    #  Types and methods
    # ------------------------------------------------------------------ #

    def _method_rid(self, index: int) -> int:
        """Map a ``MethodList`` index through ``MethodPtr`` when present."""
        if self.image.row_count(METHOD_PTR):
            return self.image.row(METHOD_PTR, index)[0]
        return index

    def _map_method_owners(self) -> dict[int, tuple[str, str]]:
        image = self.image
        type_count = image.row_count(TYPE_DEF)
        list_end = (
            image.row_count(METHOD_PTR) or image.row_count(METHOD_DEF)
        ) + 1

        owners: dict[int, tuple[str, str]] = {}
        starts: list[tuple[int, str, str]] = []
        for rid, row in image.rows(TYPE_DEF):
            _flags, name, namespace, _extends, _fields, method_list = row
            try:
                owner = (image.string(namespace), image.string(name))
            except TruncatedReadError:
                owner = ("", "")
                self.skipped_rows += 1
            starts.append((method_list, *owner))

        for i, (start, namespace, name) in enumerate(starts):
            end = starts[i + 1][0] if i + 1 < type_count else list_end
            for index in range(start, min(end, list_end)):
                try:
                    owners[self._method_rid(index)] = (namespace, name)
                except TruncatedReadError:
                    self.skipped_rows += 1
        return owners

    def methods(self) -> Iterator[MethodInfo]:
        """Yield every method of every type, in ``MethodDef`` order."""
        for rid, row in self.image.rows(METHOD_DEF):
            _rva, _impl_flags, flags, name, _sig, _params = row
            namespace, type_name = self._method_owner.get(rid, ("", ""))
            try:
                method_name = self.image.string(name)
            except TruncatedReadError:
                self.skipped_rows += 1
                continue
            yield MethodInfo(rid, method_name, flags, namespace, type_name)

    # ------------------------------------------------------------------ #
    #  Custom attributes
    # ------------------------------------------------------------------ #

    def _type_name(self, table: int | None, rid: int) -> tuple[str, str]:
        image = self.image
        if table == TYPE_REF:
            _scope, name, namespace = image.row(TYPE_REF, rid)
            return image.string(namespace), image.string(name)
        if table == TYPE_DEF:
            row = image.row(TYPE_DEF, rid)
            return image.string(row[2]), image.string(row[1])
        return "", ""

    def _constructor(self, ca_type: int) -> tuple[str, str, bytes]:
        """Resolve a ``CustomAttributeType`` to (namespace, type name, signature)."""
        image = self.image
        table, rid = image.decode_coded("CustomAttributeType", ca_type)
        if table == MEMBER_REF:
            parent, _name, signature = image.row(MEMBER_REF, rid)
            parent_table, parent_rid = image.decode_coded("MemberRefParent", parent)
            namespace, name = self._type_name(parent_table, parent_rid)
            return namespace, name, image.blob(signature)
        if table == METHOD_DEF:
            row = image.row(METHOD_DEF, rid)
            namespace, name = self._method_owner.get(rid, ("", ""))
            return namespace, name, image.blob(row[4])
        return "", "", b""

    def method_attributes(self) -> dict[int, list[AttributeRecord]]:
        """Group the custom attributes attached to methods by method rid."""
        image = self.image
        result: dict[int, list[AttributeRecord]] = {}
        for _rid, (parent, ca_type, value) in image.rows(CUSTOM_ATTRIBUTE):
            table, method_rid = image.decode_coded("HasCustomAttribute", parent)
            if table != METHOD_DEF:
                continue
            try:
                namespace, name, signature = self._constructor(ca_type)
                blob = image.blob(value)
            except TruncatedReadError:
                self.skipped_rows += 1
                continue
            result.setdefault(method_rid, []).append(
                AttributeRecord(namespace, name, signature, blob)
            )
        return result

    # ------------------------------------------------------------------ #
    #  P/Invoke
    # ------------------------------------------------------------------ #

    def impl_maps(self) -> dict[int, ImplMapRecord]:
        """Return the ``ImplMap`` rows of methods, keyed by method rid."""
        image = self.image
        result: dict[int, ImplMapRecord] = {}
        for _rid, (flags, forwarded, import_name, scope) in image.rows(IMPL_MAP):
            table, method_rid = image.decode_coded("MemberForwarded", forwarded)
            if table != METHOD_DEF:
                continue
            try:
                module = image.string(image.row(MODULE_REF, scope)[0])
                name = image.string(import_name)
            except TruncatedReadError:
                self.skipped_rows += 1
                continue
            result[method_rid] = ImplMapRecord(method_rid, name, module, flags)
        return result
