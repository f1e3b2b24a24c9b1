"""
Header Chain Resolver
======================

:class:`PEFile` resolves the chain of PE headers lazily, on first access:

    DOS header -> file header -> optional header -> data directories
                              -> section headers -> overlay
    data directories + sections -> debug directory -> FPO records

Each structure is read at an absolute offset derived from the structure
before it, decoded once and memoised.  Every memoised field has its own
lock, so concurrent first use from several threads parses it exactly once.
A failed resolution is not cached: the next call retries and raises again.

Usage::

    with PEFile.open("sample.exe") as pe:
        print(pe.file_header().arch_name)
        for section in pe.section_headers():
            print(section.name, section.flags)

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
"""

from __future__ import annotations

import os
import threading
from typing import Any, Callable, Optional, TypeVar, Union

from pechain.core.diagnostics import DiagnosticSink, LoggingSink, ReservedFieldNonZero
from pechain.core.errors import (
    CountOverflow,
    OffsetOutOfRange,
    TruncatedRead,
    UnsupportedOptionalHeader,
)
from pechain.core.models import (
    DataDirectory,
    DataDirectoryIndex,
    DebugDirectoryEntry,
    DebugType,
    DOSHeader,
    FileHeader,
    FPOData,
    OptionalHeader,
    Overlay,
    SectionHeader,
)
from pechain.parsers.flags import decode_fpo
from pechain.parsers.headers import (
    DATA_DIRECTORY_SIZE,
    DEBUG_DIRECTORY_SIZE,
    DOS_HEADER_SIZE,
    DOS_SIGNATURE,
    FILE_HEADER_SIZE,
    FPO_DATA_SIZE,
    OPT_HEADER_SIZES,
    PE_SIGNATURE,
    SECTION_HEADER_SIZE,
    decode_data_directory,
    decode_debug_directory,
    decode_dos_header,
    decode_file_header,
    decode_fpo_raw,
    decode_optional_header,
    decode_section_header,
    peek_optional_magic,
)
from pechain.parsers.overlay import locate_overlay
from pechain.parsers.reader import (
    ByteSource,
    FileSource,
    SourceLike,
    as_source,
    expect_signature,
    read_fixed,
)
from pechain.parsers.tables import read_table
from shared.config import PechainConfig, get_config
from shared.logger import StructuredLogger, get_logger

T = TypeVar("T")

# Memoised fields, one lock each
_FIELDS: tuple[str, ...] = (
    "dos_header",
    "dos_stub",
    "file_header",
    "optional_header",
    "section_headers",
    "overlay",
    "debug_directories",
    "fpo_records",
)


def _whole_records(structure: str, offset: int, size: int, element_size: int) -> int:
    """Number of records in a *size*-byte region that must hold whole records."""
    count, remainder = divmod(size, element_size)
    if remainder:
        raise CountOverflow(structure, offset, count + 1, element_size, size)
    return count


class PEFile:
    """Lazy, memoising view of a PE image.

    Args:
        source: Bytes-like object, seekable binary file object, or any
            :class:`~pechain.parsers.reader.ByteSource`.
        config: Parser limits and logging settings.  Defaults to
            :func:`shared.config.get_config`.
        logger: Logger for resolution records.  Defaults to the shared
            ``pechain.resolver`` logger from :func:`shared.logger.get_logger`.
        diagnostics: Sink for advisory findings.  Defaults to a
            :class:`~pechain.core.diagnostics.LoggingSink` on *logger*.

    A ``PEFile`` built from a caller-supplied source never closes it; use
    :meth:`open` to let the ``PEFile`` own the underlying file.
    """

    def __init__(
        self,
        source: SourceLike,
        *,
        config: Optional[PechainConfig] = None,
        logger: Optional[StructuredLogger] = None,
        diagnostics: Optional[DiagnosticSink] = None,
    ) -> None:
        self._source: ByteSource = as_source(source)
        self._config = config if config is not None else get_config()
        self._log = logger if logger is not None else get_logger(
            "resolver", self._config.global_settings
        )
        self._diagnostics: DiagnosticSink = (
            diagnostics if diagnostics is not None else LoggingSink(self._log)
        )
        self._owned: Optional[FileSource] = None
        self._cache: dict[str, Any] = {}
        self._locks: dict[str, threading.Lock] = {name: threading.Lock() for name in _FIELDS}

    @classmethod
    def open(cls, path: Union[str, os.PathLike[str]], **kwargs: Any) -> PEFile:
        """Open the PE image at *path*; the returned object owns the file."""
        source = FileSource.open(path)
        try:
            pe = cls(source, **kwargs)
        except BaseException:
            source.close()
            raise
        pe._owned = source
        return pe

    def close(self) -> None:
        """Close the underlying file if this object opened it."""
        if self._owned is not None:
            self._owned.close()
            self._owned = None

    def __enter__(self) -> PEFile:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"<PEFile size={self._source.size()} resolved={sorted(self._cache)}>"

    # ------------------------------------------------------------------ #
    #  Memoisation
    # ------------------------------------------------------------------ #

    def _memo(self, name: str, build: Callable[[], T]) -> T:
        # Fast path without the lock once populated
        if name in self._cache:
            return self._cache[name]
        with self._locks[name]:
            if name not in self._cache:
                with self._log.operation(name):
                    self._cache[name] = build()
            return self._cache[name]

    def _report_reserved(
        self,
        structure: str,
        offset: int,
        field: str,
        value: int,
        index: Optional[int] = None,
    ) -> None:
        if value == 0 or not self._config.parser.report_reserved_fields:
            return
        self._diagnostics(
            ReservedFieldNonZero(
                structure=structure, offset=offset, field=field, index=index, value=value
            )
        )

    @property
    def source(self) -> ByteSource:
        return self._source

    @property
    def size(self) -> int:
        """Length of the underlying image in bytes."""
        return self._source.size()

    # ------------------------------------------------------------------ #
    #  DOS header
    # ------------------------------------------------------------------ #

    def dos_header(self) -> DOSHeader:
        """Return the DOS header at offset 0.

        Raises:
            InvalidSignature: The image does not start with ``MZ``.
            TruncatedRead: The image is shorter than a DOS header.
        """
        return self._memo("dos_header", self._parse_dos_header)

    def _parse_dos_header(self) -> DOSHeader:
        # The signature is checked before the rest of the header is read
        magic = read_fixed(self._source, 0, 2, "dos_header")
        expect_signature(magic, DOS_SIGNATURE, 2, "dos_header", 0)
        dos = decode_dos_header(read_fixed(self._source, 0, DOS_HEADER_SIZE, "dos_header"))

        # reserved starts at 0x1C, reserved2 at 0x28
        for i, word in enumerate(dos.reserved):
            self._report_reserved("dos_header", 0x1C + 2 * i, "reserved", word, i)
        for i, word in enumerate(dos.reserved2):
            self._report_reserved("dos_header", 0x28 + 2 * i, "reserved2", word, i)

        self._log.debug("DOS header: PE header at 0x%x", dos.pe_header_offset)
        return dos

    def dos_stub(self) -> bytes:
        """Bytes between the end of the DOS header and the PE header."""
        return self._memo("dos_stub", self._parse_dos_stub)

    def _parse_dos_stub(self) -> bytes:
        end = self.dos_header().pe_header_offset
        if end <= DOS_HEADER_SIZE:
            return b""
        return read_fixed(self._source, DOS_HEADER_SIZE, end - DOS_HEADER_SIZE, "dos_stub")

    # ------------------------------------------------------------------ #
    #  File header
    # ------------------------------------------------------------------ #

    def file_header(self) -> FileHeader:
        """Return the COFF file header located by ``pe_header_offset``.

        Raises:
            InvalidSignature: The four bytes at the offset are not ``PE\\0\\0``.
            OffsetOutOfRange: ``pe_header_offset`` points past the image.
            TruncatedRead: The header does not fit in the image.
        """
        return self._memo("file_header", self._parse_file_header)

    def _parse_file_header(self) -> FileHeader:
        offset = self.dos_header().pe_header_offset
        signature = read_fixed(self._source, offset, 4, "file_header")
        expect_signature(signature, PE_SIGNATURE, 4, "file_header", offset)
        fh = decode_file_header(
            read_fixed(self._source, offset, FILE_HEADER_SIZE, "file_header"), offset
        )
        self._log.debug(
            "File header at 0x%x: %s, %d sections, optional header %d bytes",
            offset, fh.arch_name, fh.section_count, fh.optional_header_size,
        )
        return fh

    @property
    def headers_end(self) -> int:
        """End of the declared optional header region; sections follow it."""
        fh = self.file_header()
        return fh.end + fh.optional_header_size

    # ------------------------------------------------------------------ #
    #  Optional header and data directories
    # ------------------------------------------------------------------ #

    def optional_header(self) -> Optional[OptionalHeader]:
        """Return the optional header, or ``None`` when none is declared.

        The fixed part and the data directories must both fit inside the
        region declared by ``optional_header_size``.

        Raises:
            UnsupportedOptionalHeader: The magic is neither PE32 nor PE32+.
            TruncatedRead: The fixed part does not fit the declared region
                or the image.
            CountOverflow: The data directories do not fit the declared
                region, or exceed ``max_data_directories``.
        """
        return self._memo("optional_header", self._parse_optional_header)

    def _parse_optional_header(self) -> Optional[OptionalHeader]:
        fh = self.file_header()
        declared = fh.optional_header_size
        if declared == 0:
            self._log.debug("No optional header declared")
            return None

        offset = fh.end
        region_end = offset + declared
        if declared < 2:
            raise TruncatedRead("optional_header", offset, 2, declared)
        magic = peek_optional_magic(read_fixed(self._source, offset, 2, "optional_header"))
        if magic not in OPT_HEADER_SIZES:
            raise UnsupportedOptionalHeader(offset, magic)

        fixed = OPT_HEADER_SIZES[magic]
        if fixed > declared:
            raise TruncatedRead("optional_header", offset, fixed, declared)
        header = decode_optional_header(
            read_fixed(self._source, offset, fixed, "optional_header"), offset
        )

        directories = read_table(
            self._source,
            offset + fixed,
            header.data_directory_count,
            DATA_DIRECTORY_SIZE,
            decode_data_directory,
            "data_directories",
            limit=self._config.parser.max_data_directories,
            region_end=region_end,
        )
        header = header.model_copy(update={"data_directories": directories})

        # Win32VersionValue is at +0x34 in both PE32 and PE32+
        self._report_reserved(
            "optional_header", offset + 0x34,
            "win32_version_value", header.win32_version_value,
        )
        self._log.debug(
            "Optional header at 0x%x: magic 0x%X, %d data directories",
            offset, magic, len(directories),
        )
        return header

    def data_directories(self) -> tuple[DataDirectory, ...]:
        """Data directories in declared order; empty without an optional header."""
        header = self.optional_header()
        if header is None:
            return ()
        return header.data_directories

    def data_directory(self, index: Union[int, DataDirectoryIndex]) -> Optional[DataDirectory]:
        """Return directory *index*, or ``None`` beyond the declared count."""
        directories = self.data_directories()
        if 0 <= index < len(directories):
            return directories[index]
        return None

    # ------------------------------------------------------------------ #
    #  Sections
    # ------------------------------------------------------------------ #

    def section_headers(self) -> tuple[SectionHeader, ...]:
        """Return ``section_count`` section headers in on-disk order.

        The table starts at ``file_header().end + optional_header_size``;
        the declared size is authoritative even when the optional header
        itself is smaller.
        """
        return self._memo("section_headers", self._parse_section_headers)

    def _parse_section_headers(self) -> tuple[SectionHeader, ...]:
        fh = self.file_header()
        offset = self.headers_end
        sections = read_table(
            self._source,
            offset,
            fh.section_count,
            SECTION_HEADER_SIZE,
            decode_section_header,
            "section_headers",
            limit=self._config.parser.max_section_count,
        )
        self._log.debug("Read %d section headers at 0x%x", len(sections), offset)
        return sections

    def section_data(self, section: SectionHeader) -> bytes:
        """Return exactly ``raw_size`` bytes of *section* from the image.

        Raises:
            TruncatedRead: The section's raw data extends past the image.
        """
        if section.raw_size == 0:
            return b""
        length = self._source.size()
        if section.raw_offset > length:
            raise TruncatedRead("section_data", section.raw_offset, section.raw_size, 0)
        return read_fixed(self._source, section.raw_offset, section.raw_size, "section_data")

    def rva_to_offset(self, rva: int) -> Optional[int]:
        """Map *rva* to a file offset through the section table.

        RVAs below the first section that fall inside ``size_of_headers``
        map one to one.  Returns ``None`` when no file byte backs *rva*.
        """
        for section in self.section_headers():
            if section.contains_rva(rva):
                delta = rva - section.rva
                if delta >= section.raw_size:
                    return None
                return section.raw_offset + delta

        header = self.optional_header()
        if header is not None and rva < header.size_of_headers and rva < self._source.size():
            return rva
        return None

    # ------------------------------------------------------------------ #
    #  Overlay
    # ------------------------------------------------------------------ #

    def overlay(self) -> Overlay:
        """Return the bytes that follow the last section's raw data.

        An image without trailing bytes has an empty overlay; this is not
        an error.
        """
        return self._memo("overlay", self._parse_overlay)

    def _parse_overlay(self) -> Overlay:
        located = locate_overlay(self.section_headers(), self.headers_end, self._source.size())
        if located.is_empty:
            return located
        data = read_fixed(self._source, located.offset, located.size, "overlay")
        self._log.debug("Overlay of %d bytes at 0x%x", located.size, located.offset)
        return located.model_copy(update={"data": data})

    # ------------------------------------------------------------------ #
    #  Debug directory
    # ------------------------------------------------------------------ #

    def debug_directories(self) -> tuple[DebugDirectoryEntry, ...]:
        """Return the entries of the debug data directory (index 6).

        Empty when there is no optional header or the directory is empty.

        Raises:
            OffsetOutOfRange: The directory's RVA is not backed by file data.
            CountOverflow: The entries do not fit the directory, the
                directory size is not a whole number of entries, or the
                count exceeds ``max_debug_entries``.
        """
        return self._memo("debug_directories", self._parse_debug_directories)

    def _parse_debug_directories(self) -> tuple[DebugDirectoryEntry, ...]:
        directory = self.data_directory(DataDirectoryIndex.DEBUG)
        if directory is None or directory.is_empty or directory.size == 0:
            return ()

        offset = self.rva_to_offset(directory.rva)
        if offset is None:
            raise OffsetOutOfRange("debug_directory", directory.rva, self._source.size())
        entries = read_table(
            self._source,
            offset,
            _whole_records("debug_directory", offset, directory.size, DEBUG_DIRECTORY_SIZE),
            DEBUG_DIRECTORY_SIZE,
            decode_debug_directory,
            "debug_directory",
            limit=self._config.parser.max_debug_entries,
            region_end=offset + directory.size,
        )
        self._log.debug("Read %d debug directory entries at 0x%x", len(entries), offset)
        return entries

    def fpo_data(self, entry: DebugDirectoryEntry) -> tuple[FPOData, ...]:
        """Decode the FPO records referenced by an FPO debug entry.

        Raises:
            ValueError: *entry* is not of type ``DebugType.FPO``.
            OffsetOutOfRange: The entry's data is not backed by file data.
            CountOverflow: The records do not fit, ``size_of_data`` is not a
                whole number of records, or the count exceeds ``max_fpo_records``.
        """
        if entry.type != DebugType.FPO:
            raise ValueError(f"debug entry {entry.index} is not FPO data (type {entry.type})")
        if entry.size_of_data == 0:
            return ()

        offset: Optional[int] = entry.pointer_to_raw_data
        if not offset:
            offset = self.rva_to_offset(entry.address_of_raw_data)
        if offset is None:
            raise OffsetOutOfRange("fpo_data", entry.address_of_raw_data, self._source.size())

        records = read_table(
            self._source,
            offset,
            _whole_records("fpo_data", offset, entry.size_of_data, FPO_DATA_SIZE),
            FPO_DATA_SIZE,
            lambda chunk, _index, at: decode_fpo_raw(chunk, at),
            "fpo_data",
            limit=self._config.parser.max_fpo_records,
            region_end=offset + entry.size_of_data,
        )
        return tuple(decode_fpo(raw) for raw in records)

    def fpo_records(self) -> tuple[FPOData, ...]:
        """FPO records of every FPO debug entry, in directory order."""
        return self._memo("fpo_records", self._parse_fpo_records)

    def _parse_fpo_records(self) -> tuple[FPOData, ...]:
        records: list[FPOData] = []
        for entry in self.debug_directories():
            if entry.type == DebugType.FPO:
                records.extend(self.fpo_data(entry))
        return tuple(records)

    # ------------------------------------------------------------------ #
    #  Whole-image resolution
    # ------------------------------------------------------------------ #

    def parse(self) -> PEFile:
        """Resolve the DOS, file, optional and section headers in order."""
        self.dos_header()
        if self.file_header().optional_header_size > 0:
            self.optional_header()
        self.section_headers()
        return self
