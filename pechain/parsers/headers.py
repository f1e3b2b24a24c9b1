"""
PE Structure Decoders
======================

Little-endian :mod:`struct` layouts for every fixed-size PE structure, and
one decoder per structure that turns an exact byte window (as returned by
:func:`pechain.parsers.reader.read_fixed`) into a model.

Decoders do not read from the source themselves and never compute
offsets: the *offset* argument is only recorded on the model.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
"""

from __future__ import annotations

import struct

from pechain.core.errors import TruncatedRead
from pechain.core.models import (
    DataDirectory,
    DebugDirectoryEntry,
    DOSHeader,
    FileHeader,
    FPODataRaw,
    OptionalHeader,
    OptState,
    SectionHeader,
)


# ---------------------------------------------------------------------------
# Signatures
# ---------------------------------------------------------------------------

DOS_SIGNATURE: int = 0x5A4D       # "MZ"
PE_SIGNATURE: int = 0x00004550    # "PE\0\0"

# ---------------------------------------------------------------------------
# Layouts
# ---------------------------------------------------------------------------

# magic, 13 legacy words, res[4], oem id, oem info, res2[10], e_lfanew
_DOS_FMT = struct.Struct("<H13H4HHH10HI")
# signature, machine, nsections, timestamp, symtab, nsymbols, opt size, flags
_FILE_FMT = struct.Struct("<IHHIIIHH")
# PE32: standard fields (28 bytes) + windows fields (68 bytes)
_OPT32_FMT = struct.Struct("<HBBIIIIII" "IIIHHHHHHIIIIHHIIIIII")
# PE32+: no base_of_data, 64-bit image base and stack/heap sizes
_OPT64_FMT = struct.Struct("<HBBIIIII" "QIIHHHHHHIIIIHHQQQQII")
_DATA_DIR_FMT = struct.Struct("<II")
_SECTION_FMT = struct.Struct("<8sIIIIIIHHI")
_DEBUG_DIR_FMT = struct.Struct("<IIHHIIII")
_FPO_FMT = struct.Struct("<IIIHBB")

DOS_HEADER_SIZE: int = _DOS_FMT.size              # 64
FILE_HEADER_SIZE: int = _FILE_FMT.size            # 24, signature included
OPT_HEADER32_SIZE: int = _OPT32_FMT.size          # 96, directories excluded
OPT_HEADER64_SIZE: int = _OPT64_FMT.size          # 112, directories excluded
DATA_DIRECTORY_SIZE: int = _DATA_DIR_FMT.size     # 8
SECTION_HEADER_SIZE: int = _SECTION_FMT.size      # 40
DEBUG_DIRECTORY_SIZE: int = _DEBUG_DIR_FMT.size   # 28
FPO_DATA_SIZE: int = _FPO_FMT.size                # 16

# Size of the fixed optional header part, keyed by magic
OPT_HEADER_SIZES: dict[int, int] = {
    OptState.PE32: OPT_HEADER32_SIZE,
    OptState.PE32_PLUS: OPT_HEADER64_SIZE,
}


def _check(data: bytes, size: int, structure: str, offset: int) -> None:
    if len(data) != size:
        raise TruncatedRead(structure, offset, size, len(data))


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------

def decode_dos_header(data: bytes, offset: int = 0) -> DOSHeader:
    """Decode the 64-byte DOS header.  The signature is not checked here."""
    _check(data, DOS_HEADER_SIZE, "dos_header", offset)
    f = _DOS_FMT.unpack(data)
    return DOSHeader(
        offset=offset,
        magic=f[0],
        last_page_size=f[1],
        page_count=f[2],
        relocation_count=f[3],
        header_paragraphs=f[4],
        min_alloc=f[5],
        max_alloc=f[6],
        initial_ss=f[7],
        initial_sp=f[8],
        checksum=f[9],
        initial_ip=f[10],
        initial_cs=f[11],
        relocation_table_offset=f[12],
        overlay_number=f[13],
        reserved=f[14:18],
        oem_id=f[18],
        oem_info=f[19],
        reserved2=f[20:30],
        pe_header_offset=f[30],
    )


def decode_file_header(data: bytes, offset: int) -> FileHeader:
    """Decode the PE signature and the 20-byte COFF header that follows it."""
    _check(data, FILE_HEADER_SIZE, "file_header", offset)
    (
        signature, machine, section_count, timestamp,
        symbol_table_offset, symbol_count, optional_header_size,
        characteristics,
    ) = _FILE_FMT.unpack(data)
    return FileHeader(
        offset=offset,
        signature=signature,
        machine=machine,
        section_count=section_count,
        timestamp=timestamp,
        symbol_table_offset=symbol_table_offset,
        symbol_count=symbol_count,
        optional_header_size=optional_header_size,
        characteristics=characteristics,
    )


def peek_optional_magic(data: bytes) -> int:
    """Return the optional header magic from the first two bytes of *data*."""
    return int.from_bytes(data[:2], "little")


def decode_optional_header(
    data: bytes,
    offset: int,
    data_directories: tuple[DataDirectory, ...] = (),
) -> OptionalHeader:
    """Decode the fixed part of a PE32 or PE32+ optional header.

    *data* must be exactly the fixed part for its magic (96 or 112 bytes);
    the directories are decoded separately and passed in.

    Raises:
        KeyError: *data* does not start with a PE32 or PE32+ magic.
    """
    magic = peek_optional_magic(data)
    size = OPT_HEADER_SIZES[magic]
    _check(data, size, "optional_header", offset)

    if magic == OptState.PE32_PLUS:
        f = _OPT64_FMT.unpack(data)
        standard = f[:8]
        base_of_data = 0
        windows = f[8:]
    else:
        f = _OPT32_FMT.unpack(data)
        standard = f[:8]
        base_of_data = f[8]
        windows = f[9:]

    (
        magic, major_linker, minor_linker, size_of_code, size_of_data,
        size_of_bss, entry_point, base_of_code,
    ) = standard
    (
        image_base, section_alignment, file_alignment,
        major_os, minor_os, major_image, minor_image,
        major_subsystem, minor_subsystem,
        win32_version_value, size_of_image, size_of_headers,
        checksum, subsystem, dll_characteristics,
        stack_reserve, stack_commit, heap_reserve, heap_commit,
        loader_flags, data_directory_count,
    ) = windows

    return OptionalHeader(
        offset=offset,
        magic=magic,
        major_linker_version=major_linker,
        minor_linker_version=minor_linker,
        size_of_code=size_of_code,
        size_of_initialized_data=size_of_data,
        size_of_uninitialized_data=size_of_bss,
        address_of_entry_point=entry_point,
        base_of_code=base_of_code,
        base_of_data=base_of_data,
        image_base=image_base,
        section_alignment=section_alignment,
        file_alignment=file_alignment,
        major_os_version=major_os,
        minor_os_version=minor_os,
        major_image_version=major_image,
        minor_image_version=minor_image,
        major_subsystem_version=major_subsystem,
        minor_subsystem_version=minor_subsystem,
        win32_version_value=win32_version_value,
        size_of_image=size_of_image,
        size_of_headers=size_of_headers,
        checksum=checksum,
        subsystem=subsystem,
        dll_characteristics=dll_characteristics,
        size_of_stack_reserve=stack_reserve,
        size_of_stack_commit=stack_commit,
        size_of_heap_reserve=heap_reserve,
        size_of_heap_commit=heap_commit,
        loader_flags=loader_flags,
        data_directory_count=data_directory_count,
        data_directories=data_directories,
    )


def decode_data_directory(data: bytes, index: int, offset: int) -> DataDirectory:
    _check(data, DATA_DIRECTORY_SIZE, "data_directory", offset)
    rva, size = _DATA_DIR_FMT.unpack(data)
    return DataDirectory(index=index, offset=offset, rva=rva, size=size)


def decode_section_header(data: bytes, index: int, offset: int) -> SectionHeader:
    _check(data, SECTION_HEADER_SIZE, "section_header", offset)
    (
        raw_name, virtual_size, rva, raw_size, raw_offset,
        relocations_offset, line_numbers_offset,
        relocation_count, line_number_count, characteristics,
    ) = _SECTION_FMT.unpack(data)
    return SectionHeader(
        index=index,
        offset=offset,
        raw_name=raw_name,
        virtual_size=virtual_size,
        rva=rva,
        raw_size=raw_size,
        raw_offset=raw_offset,
        relocations_offset=relocations_offset,
        line_numbers_offset=line_numbers_offset,
        relocation_count=relocation_count,
        line_number_count=line_number_count,
        characteristics=characteristics,
    )


def decode_debug_directory(data: bytes, index: int, offset: int) -> DebugDirectoryEntry:
    _check(data, DEBUG_DIRECTORY_SIZE, "debug_directory", offset)
    (
        characteristics, timestamp, major_version, minor_version,
        debug_type, size_of_data, address_of_raw_data, pointer_to_raw_data,
    ) = _DEBUG_DIR_FMT.unpack(data)
    return DebugDirectoryEntry(
        index=index,
        offset=offset,
        characteristics=characteristics,
        timestamp=timestamp,
        major_version=major_version,
        minor_version=minor_version,
        type=debug_type,
        size_of_data=size_of_data,
        address_of_raw_data=address_of_raw_data,
        pointer_to_raw_data=pointer_to_raw_data,
    )


def decode_fpo_raw(data: bytes, offset: int = 0) -> FPODataRaw:
    _check(data, FPO_DATA_SIZE, "fpo_data", offset)
    (
        offset_start, function_size, locals_dwords,
        params_dwords, prolog_size, bitfield,
    ) = _FPO_FMT.unpack(data)
    return FPODataRaw(
        offset_start=offset_start,
        function_size=function_size,
        locals_dwords=locals_dwords,
        params_dwords=params_dwords,
        prolog_size=prolog_size,
        bitfield=bitfield,
    )
