"""
pechain Exceptions
===================

Fatal parse conditions.  Each exception is raised by the component that
detects it and carries the structure name and file offset involved, so a
caller can report *where* in the header chain resolution stopped.

Advisory conditions (non-zero reserved fields) are not exceptions; see
:mod:`pechain.core.diagnostics`.
"""

from __future__ import annotations


class PEError(Exception):
    """Base class for every fatal pechain parse error.

    Attributes:
        structure: Name of the structure being decoded (``"dos_header"``...).
        offset:    Absolute file offset of that structure, when known.
    """

    def __init__(self, message: str, *, structure: str = "", offset: int | None = None) -> None:
        super().__init__(message)
        self.structure = structure
        self.offset = offset


class InvalidSignature(PEError):
    """A magic number (``MZ``, ``PE\\0\\0``) did not match."""

    def __init__(self, structure: str, offset: int, expected: int, actual: int, width: int) -> None:
        digits = width * 2
        super().__init__(
            f"{structure}: invalid signature at 0x{offset:x}; "
            f"expected 0x{expected:0{digits}X}, got 0x{actual:0{digits}X}",
            structure=structure,
            offset=offset,
        )
        self.expected = expected
        self.actual = actual


class OffsetOutOfRange(PEError):
    """A computed offset lies outside the byte source."""

    def __init__(self, structure: str, offset: int, length: int) -> None:
        super().__init__(
            f"{structure}: offset 0x{offset:x} is outside the source "
            f"(length 0x{length:x})",
            structure=structure,
            offset=offset,
        )
        self.length = length


class TruncatedRead(PEError):
    """Fewer bytes are available than the structure declares."""

    def __init__(self, structure: str, offset: int, size: int, available: int) -> None:
        super().__init__(
            f"{structure}: need {size} bytes at 0x{offset:x}, "
            f"only {available} available",
            structure=structure,
            offset=offset,
        )
        self.size = size
        self.available = available


class CountOverflow(PEError):
    """A declared element count cannot be satisfied.

    Raised when ``count * element_size`` exceeds the readable region or
    when *count* exceeds the configured cap.  Corrupt counts are never
    silently truncated.
    """

    def __init__(
        self,
        structure: str,
        offset: int,
        count: int,
        element_size: int,
        available: int,
        limit: int | None = None,
    ) -> None:
        if limit is not None and count > limit:
            reason = f"exceeds the limit of {limit}"
        else:
            reason = (
                f"needs {count * element_size} bytes, "
                f"only {available} available"
            )
        super().__init__(
            f"{structure}: {count} entries of {element_size} bytes at "
            f"0x{offset:x} {reason}",
            structure=structure,
            offset=offset,
        )
        self.count = count
        self.element_size = element_size
        self.available = available
        self.limit = limit


class UnsupportedOptionalHeader(PEError):
    """The optional header magic is neither PE32 nor PE32+."""

    def __init__(self, offset: int, magic: int) -> None:
        super().__init__(
            f"optional_header: unsupported magic 0x{magic:04X} at 0x{offset:x}",
            structure="optional_header",
            offset=offset,
        )
        self.magic = magic
