"""Tests for the header chain resolver (pechain.core.resolver.PEFile)."""

from __future__ import annotations

import struct
import threading
from typing import Optional

import pytest

import pechain
from builders import (
    MZ,
    ROM_MAGIC,
    Section,
    build_image,
    build_layout,
    pack_debug_entry,
    pack_fpo,
    pack_optional_header,
)
from conftest import CountingSource
from pechain.core import resolver
from pechain.parsers.reader import BytesSource, FileSource
from pechain.core.errors import (
    CountOverflow,
    InvalidSignature,
    OffsetOutOfRange,
    TruncatedRead,
    UnsupportedOptionalHeader,
)
from pechain.core.models import Arch, DataDirectoryIndex, DebugType, FrameType, OptState, SectionFlag
from shared.config import GlobalConfig, ParserConfig, PechainConfig


def _three_sections() -> list[Section]:
    return [
        Section(b".text", b"\x55\x8b\xec\xc3" * 8, rva=0x1000, characteristics=0x60000020),
        Section(b".rdata", b"R" * 0x300, rva=0x2000, characteristics=0x40000040),
        Section(b".data", b"D" * 0x10, rva=0x3000, characteristics=0xC0000040),
    ]


class TestDOSHeader:

    def test_fields(self, make_pe) -> None:
        dos = make_pe(build_image()).dos_header()
        assert dos.magic == MZ
        assert dos.pe_header_offset == 0x80
        assert dos.page_count == 3
        assert dos.reserved == (0, 0, 0, 0)
        assert len(dos.reserved2) == 10

    def test_bad_magic_reads_nothing_further(self, make_pe) -> None:
        image = bytearray(build_image([Section(b".text", b"\xc3")]))
        image[0:2] = b"ZM"
        source = CountingSource(bytes(image))
        pe = make_pe(source)
        with pytest.raises(InvalidSignature) as exc:
            pe.dos_header()
        assert exc.value.structure == "dos_header"
        assert exc.value.offset == 0
        assert all(offset + size <= 64 for offset, size in source.reads)

    def test_tiny_file_with_bad_magic(self, make_pe) -> None:
        with pytest.raises(InvalidSignature):
            make_pe(b"\x7fELF").dos_header()

    def test_shorter_than_dos_header(self, make_pe) -> None:
        with pytest.raises(TruncatedRead):
            make_pe(b"MZ" + bytes(20)).dos_header()

    def test_empty_source(self, make_pe) -> None:
        with pytest.raises(TruncatedRead):
            make_pe(b"").dos_header()

    def test_dos_stub(self, make_pe) -> None:
        stub = b"This program cannot be run in DOS mode.\r\r\n$"
        pe = make_pe(build_image(stub=stub))
        assert pe.dos_stub().startswith(stub)
        assert len(pe.dos_stub()) == 0x80 - 64

    def test_dos_stub_empty_when_pe_header_overlaps(self, make_pe) -> None:
        pe = make_pe(build_image(pe_offset=0x40))
        assert pe.dos_stub() == b""


class TestFileHeader:

    def test_located_by_pe_header_offset(self, make_pe) -> None:
        image = build_image(_three_sections(), pe_offset=0xE8)
        pe = make_pe(image)
        fh = pe.file_header()
        assert fh.offset == pe.dos_header().pe_header_offset == 0xE8
        assert image[fh.offset:fh.offset + 4] == b"PE\x00\x00"
        assert fh.end == 0xE8 + 24
        assert fh.arch is Arch.I386
        assert fh.arch_name == "I386"
        assert fh.section_count == 3
        assert fh.created is not None and fh.created.year == 2019

    def test_bad_signature(self, make_pe) -> None:
        image = bytearray(build_image())
        image[0x80:0x84] = b"NE\x00\x00"
        with pytest.raises(InvalidSignature) as exc:
            make_pe(bytes(image)).file_header()
        assert exc.value.offset == 0x80
        assert exc.value.actual == 0x0000454E

    def test_pe_header_offset_past_end(self, make_pe) -> None:
        image = bytearray(build_image())
        struct.pack_into("<I", image, 0x3C, 0x10000)
        with pytest.raises(OffsetOutOfRange):
            make_pe(bytes(image)).file_header()

    def test_truncated_file_header(self, make_pe) -> None:
        image = build_image(with_optional=False)
        with pytest.raises(TruncatedRead):
            make_pe(image[:0x80 + 10]).file_header()

    def test_flags(self, make_pe) -> None:
        flags = make_pe(build_image()).file_header().flags
        assert [f.name for f in flags.known] == ["EXECUTABLE_IMAGE", "MACHINE_32BIT"]


class TestOptionalHeader:

    def test_pe32(self, make_pe) -> None:
        pe = make_pe(build_image(_three_sections()))
        opt = pe.optional_header()
        assert opt is not None
        assert opt.offset == pe.file_header().end
        assert opt.state is OptState.PE32
        assert not opt.is_64bit
        assert opt.image_base == 0x400000
        assert opt.base_of_data == 0x2000
        assert opt.subsystem_name == "Windows CLI"
        assert opt.data_directory_count == 16
        assert len(pe.data_directories()) == 16
        assert [d.index for d in pe.data_directories()] == list(range(16))
        assert pe.data_directories()[0].offset == opt.offset + 96

    def test_pe32_plus(self, make_pe) -> None:
        optional = pack_optional_header(pe32_plus=True)
        pe = make_pe(build_image(_three_sections(), optional=optional, machine=0x8664))
        opt = pe.optional_header()
        assert opt.state is OptState.PE32_PLUS
        assert opt.is_64bit
        assert opt.image_base == 0x140000000
        assert opt.base_of_data == 0
        assert opt.size_of_stack_reserve == 0x100000
        assert pe.data_directories()[0].offset == opt.offset + 112
        assert pe.file_header().arch is Arch.AMD64
        assert len(pe.section_headers()) == 3

    def test_absent(self, make_pe) -> None:
        pe = make_pe(build_image(with_optional=False))
        assert pe.file_header().optional_header_size == 0
        assert pe.optional_header() is None
        assert pe.data_directories() == ()
        assert pe.data_directory(DataDirectoryIndex.DEBUG) is None

    def test_rom_is_unsupported(self, make_pe) -> None:
        optional = pack_optional_header(magic=ROM_MAGIC)
        with pytest.raises(UnsupportedOptionalHeader) as exc:
            make_pe(build_image(optional=optional)).optional_header()
        assert exc.value.magic == ROM_MAGIC

    def test_fixed_part_larger_than_declared(self, make_pe) -> None:
        image = build_image(optional=pack_optional_header(directories=()), optional_header_size=64)
        with pytest.raises(TruncatedRead):
            make_pe(image).optional_header()

    def test_directories_must_fit_declared_region(self, make_pe) -> None:
        # 16 directories on disk but only room for 4 inside the declared size
        image = build_image(optional=pack_optional_header(), optional_header_size=96 + 32)
        with pytest.raises(CountOverflow):
            make_pe(image).optional_header()

    def test_corrupt_directory_count(self, make_pe) -> None:
        optional = pack_optional_header(directory_count=0x7FFFFFFF)
        with pytest.raises(CountOverflow):
            make_pe(build_image(optional=optional)).optional_header()

    def test_directory_limit(self, make_pe) -> None:
        config = PechainConfig(
            global_settings=GlobalConfig(console_output=False),
            parser=ParserConfig(max_data_directories=8),
        )
        with pytest.raises(CountOverflow):
            make_pe(build_image(), config=config).optional_header()

    def test_fewer_directories(self, make_pe) -> None:
        optional = pack_optional_header(directories=((0x1000, 0x10), (0x2000, 0x20)))
        pe = make_pe(build_image(optional=optional))
        assert len(pe.data_directories()) == 2
        assert pe.data_directory(1).rva == 0x2000
        assert pe.data_directory(1).kind is DataDirectoryIndex.IMPORT
        assert pe.data_directory(2) is None


class TestSectionHeaders:

    def test_sequential_windows(self, make_pe) -> None:
        layout = build_layout(_three_sections())
        pe = make_pe(layout.image)
        fh = pe.file_header()
        sections = pe.section_headers()
        assert len(sections) == fh.section_count == 3
        start = fh.end + fh.optional_header_size
        assert start == layout.section_table
        for i, section in enumerate(sections):
            assert section.index == i
            assert section.offset == start + 40 * i
        assert [s.name for s in sections] == [".text", ".rdata", ".data"]
        assert [(s.raw_offset, s.raw_size) for s in sections] == layout.sections

    def test_declared_size_is_authoritative(self, make_pe) -> None:
        # Optional header padded to 0x100 bytes; the table follows the padding
        layout = build_layout(_three_sections(), optional_header_size=0x100)
        pe = make_pe(layout.image)
        assert pe.section_headers()[0].offset == 0x80 + 24 + 0x100
        assert pe.section_headers()[0].name == ".text"

    def test_no_optional_header(self, make_pe) -> None:
        layout = build_layout([Section(b".text", b"\xc3")], with_optional=False)
        pe = make_pe(layout.image)
        assert pe.section_headers()[0].offset == 0x80 + 24

    def test_section_flags(self, make_pe) -> None:
        text = make_pe(build_image(_three_sections())).section_headers()[0]
        assert SectionFlag.CNT_CODE in text.flags
        assert SectionFlag.MEM_EXECUTE in text.flags

    def test_table_past_end_of_file(self, make_pe) -> None:
        layout = build_layout(_three_sections())
        image = layout.image[:layout.section_table + 60]
        with pytest.raises(CountOverflow):
            make_pe(image).section_headers()

    def test_section_limit(self, make_pe) -> None:
        config = PechainConfig(
            global_settings=GlobalConfig(console_output=False),
            parser=ParserConfig(max_section_count=2),
        )
        with pytest.raises(CountOverflow):
            make_pe(build_image(_three_sections()), config=config).section_headers()

    def test_section_data(self, make_pe) -> None:
        pe = make_pe(build_image(_three_sections()))
        text, rdata, data = pe.section_headers()
        assert pe.section_data(text).startswith(b"\x55\x8b\xec\xc3")
        assert len(pe.section_data(text)) == text.raw_size
        assert pe.section_data(rdata)[:0x300] == b"R" * 0x300

    def test_section_data_empty(self, make_pe) -> None:
        pe = make_pe(build_image([Section(b".bss", b"", raw_size=0)]))
        assert pe.section_data(pe.section_headers()[0]) == b""

    def test_section_data_past_end(self, make_pe) -> None:
        layout = build_layout(_three_sections())
        pe = make_pe(layout.image[:-8])
        last = pe.section_headers()[-1]
        with pytest.raises(TruncatedRead):
            pe.section_data(last)

    def test_section_data_offset_beyond_file(self, make_pe) -> None:
        pe = make_pe(build_image([Section(b".text", b"\xc3", raw_offset=0x10000)])[:0x400])
        with pytest.raises(TruncatedRead):
            pe.section_data(pe.section_headers()[0])


class TestRVAMapping:

    def test_rva_inside_section(self, make_pe) -> None:
        layout = build_layout(_three_sections())
        pe = make_pe(layout.image)
        rdata_offset = layout.sections[1][0]
        assert pe.rva_to_offset(0x2010) == rdata_offset + 0x10

    def test_rva_in_headers(self, make_pe) -> None:
        pe = make_pe(build_image(_three_sections()))
        assert pe.rva_to_offset(0x3C) == 0x3C

    def test_unmapped(self, make_pe) -> None:
        pe = make_pe(build_image(_three_sections()))
        assert pe.rva_to_offset(0x9000) is None


def _debug_image(
    entries: int = 1,
    fpo_count: int = 2,
    directory_size: Optional[int] = None,
    fpo_size: Optional[int] = None,
) -> bytes:
    fpo = b"".join(
        pack_fpo(0x1000 + 0x40 * i, 0x40, i, 2, 3, 0b11011101) for i in range(fpo_count)
    )
    directory = b"".join(
        pack_debug_entry(
            DebugType.FPO,
            len(fpo) if fpo_size is None else fpo_size,
            address_of_raw_data=0x2100,
        )
        for _ in range(entries)
    )
    rdata = directory.ljust(0x100, b"\x00") + fpo
    dirs = [(0, 0)] * 16
    dirs[DataDirectoryIndex.DEBUG] = (
        0x2000, len(directory) if directory_size is None else directory_size
    )
    return build_image(
        [
            Section(b".text", b"\xc3" * 4, rva=0x1000),
            Section(b".rdata", rdata, rva=0x2000, characteristics=0x40000040),
        ],
        optional=pack_optional_header(directories=dirs),
    )


class TestDebugDirectory:

    def test_entries(self, make_pe) -> None:
        pe = make_pe(_debug_image(entries=2))
        entries = pe.debug_directories()
        assert len(entries) == 2
        assert entries[0].debug_type is DebugType.FPO
        assert entries[1].offset == entries[0].offset + 28

    def test_fpo_records(self, make_pe) -> None:
        pe = make_pe(_debug_image(fpo_count=3))
        (entry,) = pe.debug_directories()
        records = pe.fpo_data(entry)
        assert len(records) == 3
        assert records[1].offset_start == 0x1040
        assert records[1].locals_size == 4
        assert records[1].params_size == 8
        assert records[0].frame is FrameType.NON_FPO
        assert records[0].has_seh
        assert pe.fpo_records() == records

    def test_fpo_data_rejects_other_types(self, make_pe) -> None:
        pe = make_pe(_debug_image())
        entry = pe.debug_directories()[0].model_copy(update={"type": DebugType.CODEVIEW})
        with pytest.raises(ValueError):
            pe.fpo_data(entry)

    def test_no_debug_directory(self, make_pe) -> None:
        pe = make_pe(build_image(_three_sections()))
        assert pe.debug_directories() == ()
        assert pe.fpo_records() == ()

    def test_unmapped_debug_directory(self, make_pe) -> None:
        dirs = [(0, 0)] * 16
        dirs[DataDirectoryIndex.DEBUG] = (0x9000, 28)
        pe = make_pe(build_image(_three_sections(), optional=pack_optional_header(directories=dirs)))
        with pytest.raises(OffsetOutOfRange):
            pe.debug_directories()

    def test_debug_entry_limit(self, make_pe) -> None:
        config = PechainConfig(
            global_settings=GlobalConfig(console_output=False),
            parser=ParserConfig(max_debug_entries=1),
        )
        with pytest.raises(CountOverflow):
            make_pe(_debug_image(entries=2), config=config).debug_directories()

    def test_trailing_partial_debug_entry(self, make_pe) -> None:
        pe = make_pe(_debug_image(directory_size=30))
        with pytest.raises(CountOverflow) as exc:
            pe.debug_directories()
        assert exc.value.structure == "debug_directory"
        assert exc.value.count == 2
        assert exc.value.available == 30

    def test_debug_directory_smaller_than_one_entry(self, make_pe) -> None:
        pe = make_pe(_debug_image(directory_size=20))
        with pytest.raises(CountOverflow) as exc:
            pe.debug_directories()
        assert exc.value.count == 1
        assert exc.value.element_size == 28

    def test_trailing_partial_fpo_record(self, make_pe) -> None:
        pe = make_pe(_debug_image(fpo_count=2, fpo_size=40))
        (entry,) = pe.debug_directories()
        with pytest.raises(CountOverflow) as exc:
            pe.fpo_data(entry)
        assert exc.value.structure == "fpo_data"
        assert exc.value.count == 3
        assert exc.value.available == 40
        with pytest.raises(CountOverflow):
            pe.fpo_records()


class TestResolution:

    def test_memoised(self, make_pe) -> None:
        source = CountingSource(build_image(_three_sections()))
        pe = make_pe(source)
        first = pe.section_headers()
        reads = len(source.reads)
        assert pe.section_headers() is first
        assert pe.file_header() is pe.file_header()
        assert len(source.reads) == reads

    def test_failures_are_not_cached(self, make_pe) -> None:
        source = CountingSource(b"ZM" + bytes(100))
        pe = make_pe(source)
        for _ in range(2):
            with pytest.raises(InvalidSignature):
                pe.dos_header()
        assert source.reads == [(0, 2), (0, 2)]
        with pytest.raises(InvalidSignature):
            pe.section_headers()

    def test_concurrent_first_use_parses_once(self, make_pe) -> None:
        source = CountingSource(build_image(_three_sections()))
        pe = make_pe(source)
        barrier = threading.Barrier(8)
        results: list[object] = []

        scopes: list[object] = []

        def worker() -> None:
            barrier.wait()
            results.append(pe.section_headers())
            scopes.append(pe._log.current_operation)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r is results[0] for r in results)
        table_reads = [r for r in source.reads if r[1] == 3 * 40]
        assert len(table_reads) == 1
        assert scopes == [None] * 8
        assert pe._log.current_operation is None

    def test_interleaved_fields_keep_their_own_operation(self, make_pe, logger) -> None:
        class GatedSource(BytesSource):
            """Blocks the section table read until released."""

            def __init__(self, data: bytes) -> None:
                super().__init__(data)
                self.blocked = threading.Event()
                self.release = threading.Event()
                self.seen: list[tuple[str, object]] = []

            def read_at(self, offset: int, size: int) -> bytes:
                operation = logger.current_operation
                self.seen.append((threading.current_thread().name, operation))
                if operation == "section_headers":
                    self.blocked.set()
                    self.release.wait(timeout=5)
                return super().read_at(offset, size)

        source = GatedSource(build_image(_three_sections()))
        pe = make_pe(source)
        pe.file_header()
        source.seen.clear()
        results: dict[str, object] = {}
        after: dict[str, object] = {}

        def sections() -> None:
            results["sections"] = pe.section_headers()
            after["sections"] = logger.current_operation

        def optional() -> None:
            source.blocked.wait(timeout=5)
            results["optional"] = pe.optional_header()
            after["optional"] = logger.current_operation
            source.release.set()

        threads = [
            threading.Thread(target=sections, name="sections"),
            threading.Thread(target=optional, name="optional"),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results["sections"]) == 3
        assert results["optional"] is not None
        assert {op for name, op in source.seen if name == "sections"} == {"section_headers"}
        assert {op for name, op in source.seen if name == "optional"} == {"optional_header"}
        assert after == {"sections": None, "optional": None}
        assert logger.current_operation is None

    def test_default_logger_is_shared_between_files(self, tmp_path) -> None:
        config = PechainConfig(
            global_settings=GlobalConfig(log_file=str(tmp_path / "pechain.log"), console_output=False)
        )
        image = build_image(_three_sections())
        first = pechain.PEFile(image, config=config)
        (handler,) = first._log.underlying.handlers

        second = pechain.PEFile(image, config=config)
        assert second._log is first._log
        assert first._log.underlying.handlers == [handler]
        assert not handler.stream.closed
        assert len(first.section_headers()) == len(second.section_headers()) == 3
        first._log.close()

    def test_open_closes_file_when_construction_fails(self, tmp_path, monkeypatch) -> None:
        path = tmp_path / "sample.exe"
        path.write_bytes(build_image())
        opened: list[FileSource] = []

        class RecordingFileSource(FileSource):
            @classmethod
            def open(cls, p):
                source = super().open(p)
                opened.append(source)
                return source

        def broken_config():
            raise ValueError("malformed pechain.toml")

        monkeypatch.setattr(resolver, "FileSource", RecordingFileSource)
        monkeypatch.setattr(resolver, "get_config", broken_config)
        with pytest.raises(ValueError, match="malformed"):
            pechain.open_pe(path)
        (source,) = opened
        assert source._fh.closed

    def test_parse(self, make_pe) -> None:
        pe = make_pe(build_image(_three_sections())).parse()
        assert pe.optional_header() is not None
        assert "section_headers" in repr(pe)

    def test_parse_without_optional_header(self, make_pe) -> None:
        pe = make_pe(build_image([Section(b".text", b"\xc3")], with_optional=False)).parse()
        assert pe.optional_header() is None

    def test_open_and_close(self, tmp_path, config, logger, sink) -> None:
        path = tmp_path / "sample.exe"
        path.write_bytes(build_image(_three_sections(), overlay=b"tail"))
        with pechain.open_pe(path, config=config, logger=logger, diagnostics=sink) as pe:
            assert len(pe.section_headers()) == 3
            assert pe.overlay().data == b"tail"
            fh = pe._owned._fh
        assert fh.closed

    def test_caller_source_is_not_closed(self, tmp_path, make_pe) -> None:
        path = tmp_path / "sample.exe"
        path.write_bytes(build_image())
        with open(path, "rb") as fh:
            with make_pe(fh) as pe:
                pe.file_header()
            assert not fh.closed
