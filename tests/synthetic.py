"""Synthetic PE images and ECMA-335 metadata for tests.

Both builders emit the smallest structurally valid layout the parsers
accept, so tests can state exactly which imports and declarations exist.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Sequence, Union

Symbol = Union[str, int]  # name, or ordinal
ModuleImports = tuple[str, Sequence[Symbol]]

# ---------------------------------------------------------------------------
# PE images
# ---------------------------------------------------------------------------

E_LFANEW = 0x40
COFF_OFFSET = E_LFANEW + 4
OPTIONAL_OFFSET = COFF_OFFSET + 20
SIZE_OF_HEADERS = 0x200
SECTION_RVA = 0x1000
SECTION_RAW = SIZE_OF_HEADERS

PE32_IMAGE_BASE = 0x10000000
PE32PLUS_IMAGE_BASE = 0x180000000

IMPORT_DESCRIPTOR_SIZE = 20
DELAY_DESCRIPTOR_SIZE = 32
COR20_SIZE = 72


@dataclass
class SyntheticPE:
    data: bytes
    import_dir_offset: int = 0
    delay_dir_offset: int = 0
    image_base: int = 0


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & ~(alignment - 1)


class _Section:
    """Append-only section body with RVA bookkeeping."""

    def __init__(self) -> None:
        self.body = bytearray()

    def rva(self) -> int:
        return SECTION_RVA + len(self.body)

    def add(self, chunk: bytes, align: int = 2) -> int:
        while len(self.body) % align:
            self.body.append(0)
        rva = self.rva()
        self.body += chunk
        return rva


def _thunk_array(
    section: _Section, symbols: Sequence[Symbol], pe32plus: bool
) -> int:
    flag = 1 << 63 if pe32plus else 1 << 31
    fmt = "<Q" if pe32plus else "<I"
    values: list[int] = []
    for sym in symbols:
        if isinstance(sym, int):
            values.append(flag | sym)
        else:
            values.append(section.add(struct.pack("<H", 0) + sym.encode("ascii") + b"\x00"))
    values.append(0)
    return section.add(b"".join(struct.pack(fmt, v) for v in values), align=8)


def build_pe(
    imports: Sequence[ModuleImports] = (),
    delay_imports: Sequence[ModuleImports] = (),
    *,
    pe32plus: bool = False,
    os_version: tuple[int, int] = (6, 0),
    subsystem_version: tuple[int, int] = (6, 0),
    delay_va_form: bool = False,
    first_thunk_only: bool = False,
    com_metadata: bytes | None = None,
) -> SyntheticPE:
    """Build a one-section PE image.

    Args:
        imports: Classic imports as ``(module, [name or ordinal, ...])``.
        delay_imports: Delay-load imports, same shape.
        pe32plus: Emit a PE32+ (64-bit) optional header and 8-byte thunks.
        os_version: Operating system version in the optional header.
        subsystem_version: Subsystem version in the optional header.
        delay_va_form: Emit old-style delay descriptors (attributes 0,
            addresses as VAs).  PE32 only.
        first_thunk_only: Leave OriginalFirstThunk zero in classic
            descriptors so the walker must use FirstThunk.
        com_metadata: Metadata root to reference from a COM descriptor.

    The section body is laid out as names and thunks first, then delay
    descriptors, then classic descriptors, then the CLI header, so that
    cutting the file inside the classic descriptor array leaves all the
    data of earlier descriptors intact.
    """
    image_base = PE32PLUS_IMAGE_BASE if pe32plus else PE32_IMAGE_BASE
    section = _Section()

    classic_rows: list[bytes] = []
    for module, symbols in imports:
        name_rva = section.add(module.encode("ascii") + b"\x00")
        int_rva = _thunk_array(section, symbols, pe32plus)
        iat_rva = _thunk_array(section, symbols, pe32plus)
        classic_rows.append(struct.pack(
            "<IIIII", 0 if first_thunk_only else int_rva, 0, 0, name_rva, iat_rva,
        ))

    delay_rows: list[bytes] = []
    for module, symbols in delay_imports:
        name_rva = section.add(module.encode("ascii") + b"\x00")
        int_rva = _thunk_array(section, symbols, pe32plus)
        iat_rva = _thunk_array(section, symbols, pe32plus)
        if delay_va_form:
            delay_rows.append(struct.pack(
                "<IIIIIIII", 0, image_base + name_rva, 0,
                image_base + iat_rva, image_base + int_rva, 0, 0, 0,
            ))
        else:
            delay_rows.append(struct.pack(
                "<IIIIIIII", 1, name_rva, 0, iat_rva, int_rva, 0, 0, 0,
            ))

    delay_dir = (0, 0)
    delay_dir_offset = 0
    if delay_rows:
        rva = section.add(b"".join(delay_rows) + bytes(DELAY_DESCRIPTOR_SIZE), align=4)
        delay_dir = (rva, (len(delay_rows) + 1) * DELAY_DESCRIPTOR_SIZE)
        delay_dir_offset = rva - SECTION_RVA + SECTION_RAW

    import_dir = (0, 0)
    import_dir_offset = 0
    if classic_rows:
        rva = section.add(b"".join(classic_rows) + bytes(IMPORT_DESCRIPTOR_SIZE), align=4)
        import_dir = (rva, (len(classic_rows) + 1) * IMPORT_DESCRIPTOR_SIZE)
        import_dir_offset = rva - SECTION_RVA + SECTION_RAW

    com_dir = (0, 0)
    if com_metadata is not None:
        cor20_rva = section.add(bytes(COR20_SIZE), align=4)
        metadata_rva = section.add(com_metadata, align=4)
        cor20 = struct.pack(
            "<IHHIIII", COR20_SIZE, 2, 5, metadata_rva, len(com_metadata), 1, 0,
        ) + bytes(COR20_SIZE - 24)
        start = cor20_rva - SECTION_RVA
        section.body[start:start + COR20_SIZE] = cor20
        com_dir = (cor20_rva, COR20_SIZE)

    raw_size = _align(max(len(section.body), 1), 0x200)
    body = bytes(section.body) + bytes(raw_size - len(section.body))

    directories = [(0, 0)] * 16
    directories[1] = import_dir
    directories[13] = delay_dir
    directories[14] = com_dir

    header = bytearray(SIZE_OF_HEADERS)
    header[0:2] = b"MZ"
    struct.pack_into("<I", header, 0x3C, E_LFANEW)
    header[E_LFANEW:E_LFANEW + 4] = b"PE\x00\x00"

    if pe32plus:
        standard = struct.pack("<HBBIIIII", 0x20B, 14, 0, 0, raw_size, 0, 0, SECTION_RVA)
        windows = struct.pack(
            "<QIIHHHHHHIIIIHHQQQQII",
            image_base, 0x1000, 0x200,
            os_version[0], os_version[1], 0, 0,
            subsystem_version[0], subsystem_version[1],
            0, SECTION_RVA + _align(raw_size, 0x1000), SIZE_OF_HEADERS, 0,
            2, 0x8160, 0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
        )
        machine = 0x8664
    else:
        standard = struct.pack("<HBBIIIIII", 0x10B, 14, 0, 0, raw_size, 0, 0, SECTION_RVA, SECTION_RVA)
        windows = struct.pack(
            "<IIIHHHHHHIIIIHHIIIIII",
            image_base, 0x1000, 0x200,
            os_version[0], os_version[1], 0, 0,
            subsystem_version[0], subsystem_version[1],
            0, SECTION_RVA + _align(raw_size, 0x1000), SIZE_OF_HEADERS, 0,
            2, 0x8140, 0x100000, 0x1000, 0x100000, 0x1000, 0, 16,
        )
        machine = 0x14C

    optional = standard + windows + b"".join(struct.pack("<II", *d) for d in directories)
    struct.pack_into(
        "<HHIIIHH", header, COFF_OFFSET,
        machine, 1, 0, 0, 0, len(optional), 0x2022,
    )
    header[OPTIONAL_OFFSET:OPTIONAL_OFFSET + len(optional)] = optional

    section_offset = OPTIONAL_OFFSET + len(optional)
    header[section_offset:section_offset + 8] = b".idata\x00\x00"
    struct.pack_into(
        "<IIIIIIHHI", header, section_offset + 8,
        len(section.body), SECTION_RVA, raw_size, SECTION_RAW, 0, 0, 0, 0, 0xC0000040,
    )

    return SyntheticPE(
        data=bytes(header) + body,
        import_dir_offset=import_dir_offset,
        delay_dir_offset=delay_dir_offset,
        image_base=image_base,
    )


# ---------------------------------------------------------------------------
# ECMA-335 metadata
# ---------------------------------------------------------------------------

PINVOKE_METHOD_FLAGS = 0x2000 | 0x0010 | 0x0006  # PinvokeImpl | Static | Public
STATIC_METHOD_FLAGS = 0x0010 | 0x0006
CTOR_FLAGS = 0x1886
CTOR_STRING_SIG = bytes([0x20, 0x01, 0x01, 0x0E])  # instance void (string)
STATIC_VOID_SIG = bytes([0x00, 0x00, 0x01])

PLATFORM_NAMESPACE = "Windows.Win32.Foundation.Metadata"
INTEROP_NAMESPACE = "System.Runtime.InteropServices"


def compressed_uint(value: int) -> bytes:
    if value < 0x80:
        return bytes([value])
    if value < 0x4000:
        return struct.pack(">H", 0x8000 | value)
    return struct.pack(">I", 0xC0000000 | value)


def ser_string(text: str | None) -> bytes:
    if text is None:
        return b"\xff"
    raw = text.encode("utf-8")
    return compressed_uint(len(raw)) + raw


def string_attribute_value(argument: str, named: bytes = b"", named_count: int = 0) -> bytes:
    """Custom-attribute blob with one string constructor argument."""
    return b"\x01\x00" + ser_string(argument) + struct.pack("<H", named_count) + named


def dll_import_value(module: str, entry_point: str | None = None) -> bytes:
    """``DllImportAttribute`` blob; an enum named argument precedes EntryPoint."""
    named = (
        b"\x53\x55" + ser_string(f"{INTEROP_NAMESPACE}.CharSet")
        + ser_string("CharSet") + struct.pack("<i", 3)
    )
    count = 1
    if entry_point is not None:
        named += b"\x53\x0e" + ser_string("EntryPoint") + ser_string(entry_point)
        count += 1
    return string_attribute_value(module, named, count)


@dataclass
class _Method:
    name: str
    module: str | None
    entry_point: str | None
    platforms: list[str]
    declaration: str  # "implmap", "attribute" or "none"
    platform_ctor: str  # "memberref" or "methoddef"


@dataclass
class MetadataBuilder:
    """Builds a bare ``BSJB`` metadata root declaring P/Invoke methods.

    Usage::

        data = (
            MetadataBuilder()
            .add_pinvoke("kernel32.dll", "GetTickCount64", platforms=["windows6.0.6000"])
            .build()
        )
    """

    methods: list[_Method] = field(default_factory=list)
    #: 4-byte #Strings and #Blob indices, with both heaps padded past 64 KiB
    wide_heaps: bool = False

    def add_pinvoke(
        self,
        module: str,
        name: str,
        *,
        platforms: Sequence[str] = (),
        entry_point: str | None = None,
        declaration: str = "implmap",
        platform_ctor: str = "memberref",
    ) -> MetadataBuilder:
        self.methods.append(_Method(
            name, module, entry_point, list(platforms), declaration, platform_ctor,
        ))
        return self

    def add_managed(self, name: str, *, platforms: Sequence[str] = ()) -> MetadataBuilder:
        """A method that is not a native import; it must never reach the map."""
        self.methods.append(_Method(name, None, None, list(platforms), "none", "memberref"))
        return self

    # ------------------------------------------------------------------ #

    def build(self) -> bytes:
        if self.wide_heaps:
            strings = _Heap(b"\x00" + b"x" * 0x10000 + b"\x00")
            blobs = _Heap(b"\x00" + compressed_uint(0x10000) + bytes(0x10000))
        else:
            strings = _Heap(b"\x00")
            blobs = _Heap(b"\x00")
        index = "I" if self.wide_heaps else "H"

        def row(fmt: str, *values: int) -> bytes:
            return struct.pack(fmt.format(s=index, b=index), *values)

        def s(text: str) -> int:
            return strings.string(text)

        def b(data: bytes) -> int:
            return blobs.blob(data)

        needs_local_ctor = any(
            m.platforms and m.platform_ctor == "methoddef" for m in self.methods
        )
        api_count = len(self.methods)
        ctor_rid = api_count + 1

        module_rows = [row("<H{s}HHH", 0, s("synthetic.winmd"), 0, 0, 0)]

        # TypeRef 1: platform attribute, TypeRef 2: DllImportAttribute
        resolution_scope = (1 << 2) | 0
        typeref_rows = [
            row("<H{s}{s}", resolution_scope, s("SupportedOSPlatformAttribute"), s(PLATFORM_NAMESPACE)),
            row("<H{s}{s}", resolution_scope, s("DllImportAttribute"), s(INTEROP_NAMESPACE)),
        ]

        typedef_rows = [
            row("<I{s}{s}HHH", 0, s("<Module>"), 0, 0, 1, 1),
            row("<I{s}{s}HHH", 0x181, s("Apis"), s("Windows.Win32"), 0, 1, 1),
        ]
        if needs_local_ctor:
            typedef_rows.append(row(
                "<I{s}{s}HHH", 0x100001, s("SupportedOSPlatformAttribute"),
                s("Local.Metadata"), 0, 1, ctor_rid,
            ))

        # MemberRef 1: platform ctor, MemberRef 2: DllImport ctor
        memberref_rows = [
            row("<H{s}{b}", (1 << 3) | 1, s(".ctor"), b(CTOR_STRING_SIG)),
            row("<H{s}{b}", (2 << 3) | 1, s(".ctor"), b(CTOR_STRING_SIG)),
        ]

        method_rows: list[bytes] = []
        ca_rows: list[bytes] = []
        moduleref_rows: list[bytes] = []
        moduleref_ids: dict[str, int] = {}
        implmap_rows: list[bytes] = []

        for rid, method in enumerate(self.methods, start=1):
            flags = PINVOKE_METHOD_FLAGS if method.declaration == "implmap" else STATIC_METHOD_FLAGS
            method_rows.append(row(
                "<IHH{s}{b}H", 0, 0, flags, s(method.name), b(STATIC_VOID_SIG), 1,
            ))
            parent = rid << 5  # HasCustomAttribute: MethodDef

            if method.declaration == "implmap":
                assert method.module is not None
                if method.module not in moduleref_ids:
                    moduleref_rows.append(row("<{s}", s(method.module)))
                    moduleref_ids[method.module] = len(moduleref_rows)
                implmap_rows.append(row(
                    "<HH{s}H", 0x0100, (rid << 1) | 1,
                    s(method.entry_point or method.name), moduleref_ids[method.module],
                ))
            elif method.declaration == "attribute":
                assert method.module is not None
                ca_rows.append(row(
                    "<HH{b}", parent, (2 << 3) | 3,
                    b(dll_import_value(method.module, method.entry_point)),
                ))

            for platform in method.platforms:
                if method.platform_ctor == "methoddef":
                    ctor = (ctor_rid << 3) | 2
                else:
                    ctor = (1 << 3) | 3
                ca_rows.append(row("<HH{b}", parent, ctor, b(string_attribute_value(platform))))

        if needs_local_ctor:
            method_rows.append(row(
                "<IHH{s}{b}H", 0, 0, CTOR_FLAGS, s(".ctor"), b(CTOR_STRING_SIG), 1,
            ))

        tables: list[tuple[int, list[bytes]]] = [
            (0x00, module_rows),
            (0x01, typeref_rows),
            (0x02, typedef_rows),
            (0x06, method_rows),
            (0x0A, memberref_rows),
            (0x0C, ca_rows),
            (0x1A, moduleref_rows),
            (0x1C, implmap_rows),
        ]
        tables = [(tid, rows) for tid, rows in tables if rows]

        valid = 0
        for tid, _rows in tables:
            valid |= 1 << tid
        # heap_sizes: bit 0 wide #Strings, bit 2 wide #Blob
        heap_sizes = 0x05 if self.wide_heaps else 0x00
        table_stream = struct.pack("<IBBBBQQ", 0, 2, 0, heap_sizes, 1, valid, 0)
        table_stream += b"".join(struct.pack("<I", len(rows)) for _tid, rows in tables)
        table_stream += b"".join(b"".join(rows) for _tid, rows in tables)

        return build_metadata_root([
            ("#~", table_stream),
            ("#Strings", strings.data()),
            ("#Blob", blobs.data()),
        ])


class _Heap:
    def __init__(self, initial: bytes) -> None:
        self._data = bytearray(initial)
        self._index: dict[bytes, int] = {}

    def string(self, text: str) -> int:
        if not text:
            return 0
        return self._intern(text.encode("utf-8") + b"\x00")

    def blob(self, data: bytes) -> int:
        return self._intern(compressed_uint(len(data)) + data)

    def _intern(self, entry: bytes) -> int:
        if entry not in self._index:
            self._index[entry] = len(self._data)
            self._data += entry
        return self._index[entry]

    def data(self) -> bytes:
        return bytes(self._data)


def _pad4(data: bytes) -> bytes:
    return data + bytes(_align(len(data), 4) - len(data))


def build_metadata_root(streams: Sequence[tuple[str, bytes]], version: str = "v4.0.30319") -> bytes:
    """Assemble a ``BSJB`` root with the given streams, in order."""
    version_bytes = _pad4(version.encode("ascii") + b"\x00")
    header_names = [_pad4(name.encode("ascii") + b"\x00") for name, _data in streams]
    header_size = 16 + len(version_bytes) + 4 + sum(8 + len(n) for n in header_names)

    root = struct.pack("<IHHII", 0x424A5342, 1, 1, 0, len(version_bytes)) + version_bytes
    root += struct.pack("<HH", 0, len(streams))

    payload = b""
    offset = header_size
    for (name, data), encoded_name in zip(streams, header_names):
        padded = _pad4(data)
        root += struct.pack("<II", offset, len(padded)) + encoded_name
        payload += padded
        offset += len(padded)

    return root + payload
