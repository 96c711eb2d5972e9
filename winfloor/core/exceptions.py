"""Exception hierarchy and process exit codes."""

from __future__ import annotations

EXIT_OK: int = 0
EXIT_FAILURE: int = 1
EXIT_USAGE: int = 2  # reserved by Click for command-line usage errors
EXIT_METADATA_NOT_FOUND: int = 3
EXIT_BINARY_NOT_FOUND: int = 4
EXIT_MALFORMED_PE: int = 5
EXIT_HEADERS_NOT_FOUND: int = 6


class FloorError(Exception):
    """Base class for all winfloor errors.

    Attributes:
        exit_code: Process exit code the CLI reports for this error.
    """

    exit_code: int = EXIT_FAILURE


class InputNotFoundError(FloorError):
    """An input file does not exist; reported before any parsing begins."""

    def __init__(self, path: str, kind: str = "input") -> None:
        super().__init__(f"{kind} not found: {path}")
        self.path = path


class MetadataNotFoundError(InputNotFoundError):
    exit_code = EXIT_METADATA_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(path, "metadata file")


class BinaryNotFoundError(InputNotFoundError):
    exit_code = EXIT_BINARY_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(path, "binary file")


class HeadersNotFoundError(InputNotFoundError):
    exit_code = EXIT_HEADERS_NOT_FOUND

    def __init__(self, path: str) -> None:
        super().__init__(path, "headers file")


class MalformedPEError(FloorError):
    """The image is not a structurally valid PE file.

    Fatal for the whole run: nothing decoded from the image is reported.
    """

    exit_code = EXIT_MALFORMED_PE


class MetadataFormatError(FloorError):
    """The metadata image has no usable CLI metadata root or table stream."""


class TruncatedReadError(FloorError):
    """A bounds-checked read ran past the end of its buffer.

    Never escapes to the user: the import walker treats it as the end of
    the current table and the map builder as "no contribution".
    """

    def __init__(self, offset: int, size: int, limit: int) -> None:
        super().__init__(
            f"read of {size} byte(s) at 0x{offset:x} exceeds buffer of 0x{limit:x}"
        )
        self.offset = offset
        self.size = size
        self.limit = limit
