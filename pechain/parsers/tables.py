"""
Table Reads
============

Decode ``count`` fixed-size records that sit back-to-back on disk (section
headers, data directories, debug directory entries, FPO records).

A declared count is validated before anything is read: it must not exceed
the configured cap, must fit inside the declared region when there is one,
and must fit inside the source.  The whole table is then fetched with a
single bounded read and decoded in on-disk order.
"""

from __future__ import annotations

from typing import Callable, Optional, TypeVar

from pechain.core.errors import CountOverflow, OffsetOutOfRange
from pechain.parsers.reader import ByteSource, read_fixed

T = TypeVar("T")

# decode(chunk, index, element_offset) -> element
Decoder = Callable[[bytes, int, int], T]


def read_table(
    source: ByteSource,
    offset: int,
    count: int,
    element_size: int,
    decode: Decoder[T],
    structure: str,
    limit: Optional[int] = None,
    region_end: Optional[int] = None,
) -> tuple[T, ...]:
    """Read and decode a contiguous table of fixed-size records.

    Args:
        source: Byte source to read from.
        offset: Absolute offset of the first record.
        count: Declared number of records.
        element_size: Size of one record in bytes.
        decode: Called as ``decode(chunk, index, element_offset)`` per record.
        structure: Name used in error messages.
        limit: Upper bound on *count*, or ``None`` for no cap.
        region_end: Absolute offset the table must not extend past, for
            tables nested inside a declared region.

    Returns:
        The decoded records, in on-disk order.

    Raises:
        OffsetOutOfRange: *offset* lies outside the source.
        CountOverflow: *count* is over *limit* or does not fit the region
            or the source.
    """
    length = source.size()
    if offset < 0 or offset > length:
        raise OffsetOutOfRange(structure, offset, length)
    if count <= 0:
        return ()

    available = length - offset
    if region_end is not None:
        available = max(0, min(available, region_end - offset))

    if limit is not None and count > limit:
        raise CountOverflow(structure, offset, count, element_size, available, limit)
    total = count * element_size
    if total > available:
        raise CountOverflow(structure, offset, count, element_size, available, limit)

    data = read_fixed(source, offset, total, structure)
    return tuple(
        decode(data[i * element_size:(i + 1) * element_size], i, offset + i * element_size)
        for i in range(count)
    )
