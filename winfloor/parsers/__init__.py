"""
Winfloor Parsers
=================

Binary and text readers: PE headers, import tables, ECMA-335 metadata
and ``dumpbin`` output.
"""

from winfloor.parsers.reader import ByteReader
from winfloor.parsers.pe_parser import PEParser, SectionMap
from winfloor.parsers.import_walker import ImportWalk, walk_imports
from winfloor.parsers.cli_metadata import MetadataReader
from winfloor.parsers.dumpbin import parse_headers_text, parse_imports_text

__all__ = [
    "ByteReader",
    "PEParser",
    "SectionMap",
    "ImportWalk",
    "walk_imports",
    "MetadataReader",
    "parse_imports_text",
    "parse_headers_text",
]
