"""
Random-Access Byte Sources
===========================

The resolver never assumes a shared read cursor: every structure is read
with :func:`read_fixed` at an absolute offset.  A byte source only has to
answer two questions, "what are the *n* bytes at *offset*" and "how long
are you", which is captured by the :class:`ByteSource` protocol.

Two implementations are provided:

    - :class:`BytesSource` over an in-memory buffer.
    - :class:`FileSource` over a seekable binary file object.  Its
      seek/read pair is serialised with a lock, so independent offsets may
      be read from several threads.
"""

from __future__ import annotations

import io
import os
import threading
from typing import BinaryIO, Protocol, Union, runtime_checkable

from pechain.core.errors import InvalidSignature, OffsetOutOfRange, TruncatedRead


@runtime_checkable
class ByteSource(Protocol):
    """Anything that supports read-at-offset and a total length."""

    def read_at(self, offset: int, size: int) -> bytes:
        """Return up to *size* bytes starting at *offset*."""
        ...

    def size(self) -> int:
        """Total number of bytes in the source."""
        ...


class BytesSource:
    """Byte source backed by an in-memory buffer."""

    __slots__ = ("_view",)

    def __init__(self, data: Union[bytes, bytearray, memoryview]) -> None:
        self._view = memoryview(data).cast("B")

    def read_at(self, offset: int, size: int) -> bytes:
        return self._view[offset:offset + size].tobytes()

    def size(self) -> int:
        return len(self._view)


class FileSource:
    """Byte source backed by a seekable binary file object.

    The length is measured once, with a seek to the end, when the source
    is created; images are not expected to change while they are open.
    """

    def __init__(self, fh: BinaryIO) -> None:
        if not fh.seekable():
            raise ValueError("FileSource requires a seekable file object")
        self._fh = fh
        self._lock = threading.Lock()
        with self._lock:
            self._length = fh.seek(0, io.SEEK_END)

    def read_at(self, offset: int, size: int) -> bytes:
        with self._lock:
            self._fh.seek(offset, io.SEEK_SET)
            return self._fh.read(size)

    def size(self) -> int:
        return self._length

    def close(self) -> None:
        self._fh.close()

    @classmethod
    def open(cls, path: Union[str, os.PathLike[str]]) -> FileSource:
        return cls(open(path, "rb"))


SourceLike = Union[ByteSource, bytes, bytearray, memoryview, BinaryIO]


def as_source(obj: SourceLike) -> ByteSource:
    """Adapt bytes-like objects and file objects to a :class:`ByteSource`."""
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return BytesSource(obj)
    if isinstance(obj, ByteSource):
        return obj
    if hasattr(obj, "seek") and hasattr(obj, "read"):
        return FileSource(obj)
    raise TypeError(f"cannot read a PE image from {type(obj).__name__}")


# ---------------------------------------------------------------------------
# Fixed-offset reads
# ---------------------------------------------------------------------------

def read_fixed(source: ByteSource, offset: int, size: int, structure: str = "data") -> bytes:
    """Read exactly *size* bytes at absolute *offset*.

    Args:
        source: Byte source to read from.
        offset: Absolute offset of the first byte.
        size: Number of bytes the structure occupies.
        structure: Name used in error messages.

    Returns:
        A ``bytes`` object of length *size*.

    Raises:
        OffsetOutOfRange: *offset* is negative or beyond the end of *source*.
        TruncatedRead: Fewer than *size* bytes are available at *offset*.
        ValueError: *size* is negative.
    """
    if size < 0:
        raise ValueError(f"{structure}: negative read size {size}")
    length = source.size()
    if offset < 0 or offset > length:
        raise OffsetOutOfRange(structure, offset, length)
    if size == 0:
        return b""
    available = length - offset
    if available < size:
        raise TruncatedRead(structure, offset, size, available)
    data = source.read_at(offset, size)
    # A source may still come up short (e.g. a file truncated after open)
    if len(data) != size:
        raise TruncatedRead(structure, offset, size, len(data))
    return data


def expect_signature(
    data: bytes,
    expected: int,
    width: int,
    structure: str,
    offset: int,
) -> None:
    """Check the little-endian magic number at the start of *data*.

    Raises:
        InvalidSignature: The first *width* bytes do not encode *expected*.
    """
    actual = int.from_bytes(data[:width], "little")
    if actual != expected:
        raise InvalidSignature(structure, offset, expected, actual, width)
