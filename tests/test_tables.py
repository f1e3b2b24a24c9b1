"""Tests for pechain.parsers.tables."""

from __future__ import annotations

import struct

import pytest

from pechain.core.errors import CountOverflow, OffsetOutOfRange
from pechain.parsers.reader import BytesSource
from pechain.parsers.tables import read_table


def _pairs(chunk: bytes, index: int, offset: int) -> tuple[int, int, int]:
    (value,) = struct.unpack("<I", chunk)
    return index, offset, value


@pytest.fixture
def source() -> BytesSource:
    # 8 header bytes, then dwords 10, 20, 30, 40
    return BytesSource(b"\xff" * 8 + struct.pack("<4I", 10, 20, 30, 40))


class TestReadTable:

    def test_in_order_without_gaps(self, source: BytesSource) -> None:
        rows = read_table(source, 8, 4, 4, _pairs, "dwords")
        assert rows == ((0, 8, 10), (1, 12, 20), (2, 16, 30), (3, 20, 40))

    def test_zero_count(self, source: BytesSource) -> None:
        assert read_table(source, 8, 0, 4, _pairs, "dwords") == ()

    def test_single_bounded_read(self) -> None:
        reads: list[tuple[int, int]] = []

        class Recording(BytesSource):
            __slots__ = ()

            def read_at(self, offset: int, size: int) -> bytes:
                reads.append((offset, size))
                return super().read_at(offset, size)

        read_table(Recording(bytes(64)), 0, 8, 8, _skip, "rows")
        assert reads == [(0, 64)]

    def test_count_over_source(self, source: BytesSource) -> None:
        with pytest.raises(CountOverflow) as exc:
            read_table(source, 8, 5, 4, _pairs, "dwords")
        assert exc.value.count == 5
        assert exc.value.available == 16

    def test_huge_count_is_rejected_before_reading(self, source: BytesSource) -> None:
        with pytest.raises(CountOverflow):
            read_table(source, 8, 0xFFFFFFFF, 4, _pairs, "dwords")

    def test_limit(self, source: BytesSource) -> None:
        with pytest.raises(CountOverflow) as exc:
            read_table(source, 8, 4, 4, _pairs, "dwords", limit=3)
        assert exc.value.limit == 3
        assert "limit of 3" in str(exc.value)

    def test_region_end(self, source: BytesSource) -> None:
        assert len(read_table(source, 8, 2, 4, _pairs, "dwords", region_end=16)) == 2
        with pytest.raises(CountOverflow):
            read_table(source, 8, 3, 4, _pairs, "dwords", region_end=16)

    def test_offset_outside_source(self, source: BytesSource) -> None:
        with pytest.raises(OffsetOutOfRange):
            read_table(source, 100, 1, 4, _pairs, "dwords")


def _skip(chunk: bytes, index: int, offset: int) -> int:
    return index
