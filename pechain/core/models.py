"""
pechain Data Models
====================

Immutable models for every structure the header chain resolver decodes:
DOS header, COFF file header, optional header, data directories, section
headers, overlay, debug directory entries and FPO records.

Models are frozen pydantic ``BaseModel`` instances.  Raw numeric fields
keep the exact value read from disk (so unknown architectures, subsystems
or debug types survive decoding); typed views are exposed as properties.

References:
    - Microsoft. (2024). PE Format. Microsoft Learn.
      https://learn.microsoft.com/en-us/windows/win32/debug/pe-format
    - Microsoft. (2024). FPO_DATA structure (winnt.h).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Arch(enum.IntEnum):
    """Machine architectures (``FileHeader.machine``)."""
    UNKNOWN = 0x0000
    I386 = 0x014C
    R3000 = 0x0162
    R4000 = 0x0166
    ARM = 0x01C0
    ARMNT = 0x01C4
    IA64 = 0x0200
    MIPS16 = 0x0266
    RISCV32 = 0x5032
    RISCV64 = 0x5064
    AMD64 = 0x8664
    ARM64 = 0xAA64


class OptState(enum.IntEnum):
    """Optional header magic: the state of the image file."""
    ROM = 0x0107
    PE32 = 0x010B
    PE32_PLUS = 0x020B


class Subsystem(enum.IntEnum):
    """Subsystem required to run an image."""
    UNKNOWN = 0
    NATIVE = 1
    WINDOWS_GUI = 2
    WINDOWS_CUI = 3
    OS2_CUI = 5
    POSIX_CUI = 7
    WINDOWS_CE_GUI = 9
    EFI_APPLICATION = 10
    EFI_BOOT_SERVICE_DRIVER = 11
    EFI_RUNTIME_DRIVER = 12
    EFI_ROM = 13
    XBOX = 14
    WINDOWS_BOOT_APPLICATION = 16


class DataDirectoryIndex(enum.IntEnum):
    """Fixed meaning of the first sixteen data directory slots."""
    EXPORT = 0
    IMPORT = 1
    RESOURCE = 2
    EXCEPTION = 3
    CERTIFICATE = 4
    BASE_RELOCATION = 5
    DEBUG = 6
    ARCHITECTURE = 7
    GLOBAL_PTR = 8
    TLS = 9
    LOAD_CONFIG = 10
    BOUND_IMPORT = 11
    IAT = 12
    DELAY_IMPORT = 13
    CLR = 14
    RESERVED = 15


class DebugType(enum.IntEnum):
    """Format of the data referenced by a debug directory entry."""
    UNKNOWN = 0
    COFF = 1
    CODEVIEW = 2
    FPO = 3
    MISC = 4
    EXCEPTION = 5
    FIXUP = 6
    OMAP_TO_SRC = 7
    OMAP_FROM_SRC = 8
    BORLAND = 9
    RESERVED10 = 10
    CLSID = 11
    REPRO = 16


class FrameType(enum.IntEnum):
    """Frame type of an FPO record."""
    FPO = 0
    TRAP = 1
    TSS = 2
    NON_FPO = 3


class FileFlag(enum.IntFlag):
    """COFF file header characteristics."""
    RELOCS_STRIPPED = 0x0001
    EXECUTABLE_IMAGE = 0x0002
    LINE_NUMS_STRIPPED = 0x0004
    LOCAL_SYMS_STRIPPED = 0x0008
    LARGE_ADDRESS_AWARE = 0x0020
    MACHINE_32BIT = 0x0100
    DEBUG_STRIPPED = 0x0200
    REMOVABLE_RUN_FROM_SWAP = 0x0400
    NET_RUN_FROM_SWAP = 0x0800
    SYSTEM = 0x1000
    DLL = 0x2000
    UP_SYSTEM_ONLY = 0x4000


class DLLFlag(enum.IntFlag):
    """Optional header DLL characteristics."""
    DYNAMIC_BASE = 0x0040
    FORCE_INTEGRITY = 0x0080
    NX_COMPAT = 0x0100
    NO_ISOLATION = 0x0200
    NO_SEH = 0x0400
    NO_BIND = 0x0800
    WDM_DRIVER = 0x2000
    TERMINAL_SERVER_AWARE = 0x8000


class SectionFlag(enum.IntFlag):
    """Section characteristics, excluding the alignment field (bits 20-23)."""
    CNT_CODE = 0x00000020
    CNT_INITIALIZED_DATA = 0x00000040
    CNT_UNINITIALIZED_DATA = 0x00000080
    LNK_INFO = 0x00000200
    LNK_REMOVE = 0x00000800
    LNK_COMDAT = 0x00001000
    NO_DEFER_SPEC_EXC = 0x00004000
    GPREL = 0x00008000
    LNK_NRELOC_OVFL = 0x01000000
    MEM_DISCARDABLE = 0x02000000
    MEM_NOT_CACHED = 0x04000000
    MEM_NOT_PAGED = 0x08000000
    MEM_SHARED = 0x10000000
    MEM_EXECUTE = 0x20000000
    MEM_READ = 0x40000000
    MEM_WRITE = 0x80000000


# ---------------------------------------------------------------------------
# Decoded bitfields
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class DecodedFlags:
    """Result of decoding a characteristics word.

    Attributes:
        raw: The integer as read from disk.
        width: Bit width of the word (16 or 32).
        known: Recognised flags, lowest bit first.
        unknown: Set bits with no entry in the flag table, lowest first.
        alignment: Section alignment in bytes, ``None`` when the field is 0
            or the word is not a section characteristics word.
        unknown_alignment: Raw alignment field value with no table entry.
    """
    raw: int
    width: int = 16
    known: tuple[enum.IntFlag, ...] = ()
    unknown: tuple[int, ...] = ()
    alignment: Optional[int] = None
    unknown_alignment: Optional[int] = None

    def __contains__(self, flag: object) -> bool:
        return flag in self.known


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------

class DOSHeader(_FrozenModel):
    """Legacy MS-DOS header at offset 0.

    Attributes:
        pe_header_offset: File offset of the PE signature (``e_lfanew``).
        reserved: First reserved group (4 words), expected all zero.
        reserved2: Second reserved group (10 words), expected all zero.
    """
    offset: int = 0
    magic: int
    last_page_size: int
    page_count: int
    relocation_count: int
    header_paragraphs: int
    min_alloc: int
    max_alloc: int
    initial_ss: int
    initial_sp: int
    checksum: int
    initial_ip: int
    initial_cs: int
    relocation_table_offset: int
    overlay_number: int
    reserved: tuple[int, ...] = Field(min_length=4, max_length=4)
    oem_id: int
    oem_info: int
    reserved2: tuple[int, ...] = Field(min_length=10, max_length=10)
    pe_header_offset: int


class FileHeader(_FrozenModel):
    """COFF file header, prefixed on disk by the ``PE\\0\\0`` signature."""
    offset: int
    signature: int
    machine: int
    section_count: int
    timestamp: int
    symbol_table_offset: int
    symbol_count: int
    optional_header_size: int
    characteristics: int

    @property
    def end(self) -> int:
        """Offset of the first byte after the file header (signature included)."""
        from pechain.parsers.headers import FILE_HEADER_SIZE
        return self.offset + FILE_HEADER_SIZE

    @property
    def arch(self) -> Optional[Arch]:
        try:
            return Arch(self.machine)
        except ValueError:
            return None

    @property
    def arch_name(self) -> str:
        from pechain.parsers.flags import arch_name
        return arch_name(self.machine)

    @property
    def created(self) -> Optional[datetime]:
        """Link time as a UTC datetime, ``None`` when the stamp is zero."""
        if self.timestamp == 0:
            return None
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def flags(self) -> DecodedFlags:
        from pechain.parsers.flags import decode_file_flags
        return decode_file_flags(self.characteristics)


class DataDirectory(_FrozenModel):
    """One (RVA, size) entry of the optional header's directory table."""
    index: int
    offset: int
    rva: int
    size: int

    @property
    def kind(self) -> Optional[DataDirectoryIndex]:
        try:
            return DataDirectoryIndex(self.index)
        except ValueError:
            return None

    @property
    def is_empty(self) -> bool:
        return self.rva == 0 and self.size == 0


class OptionalHeader(_FrozenModel):
    """PE32 or PE32+ optional header with its data directories.

    ``base_of_data`` only exists in PE32 images and is 0 for PE32+.
    ``image_base`` and the stack/heap sizes are 64-bit in PE32+.
    """
    offset: int
    magic: int
    major_linker_version: int
    minor_linker_version: int
    size_of_code: int
    size_of_initialized_data: int
    size_of_uninitialized_data: int
    address_of_entry_point: int
    base_of_code: int
    base_of_data: int = 0
    image_base: int
    section_alignment: int
    file_alignment: int
    major_os_version: int
    minor_os_version: int
    major_image_version: int
    minor_image_version: int
    major_subsystem_version: int
    minor_subsystem_version: int
    win32_version_value: int
    size_of_image: int
    size_of_headers: int
    checksum: int
    subsystem: int
    dll_characteristics: int
    size_of_stack_reserve: int
    size_of_stack_commit: int
    size_of_heap_reserve: int
    size_of_heap_commit: int
    loader_flags: int
    data_directory_count: int
    data_directories: tuple[DataDirectory, ...] = ()

    @property
    def state(self) -> Optional[OptState]:
        try:
            return OptState(self.magic)
        except ValueError:
            return None

    @property
    def is_64bit(self) -> bool:
        return self.magic == OptState.PE32_PLUS

    @property
    def subsystem_name(self) -> str:
        from pechain.parsers.flags import subsystem_name
        return subsystem_name(self.subsystem)

    @property
    def dll_flags(self) -> DecodedFlags:
        from pechain.parsers.flags import decode_dll_flags
        return decode_dll_flags(self.dll_characteristics)


class SectionHeader(_FrozenModel):
    """A 40-byte section table record.

    Attributes:
        index: Position in the section table (0-based).
        raw_size: Size of the section's data in the file.
        raw_offset: File offset of the section's data.
    """
    index: int
    offset: int
    raw_name: bytes
    virtual_size: int
    rva: int
    raw_size: int
    raw_offset: int
    relocations_offset: int
    line_numbers_offset: int
    relocation_count: int
    line_number_count: int
    characteristics: int

    @property
    def name(self) -> str:
        return self.raw_name.split(b"\x00", 1)[0].decode("ascii", errors="replace")

    @property
    def raw_end(self) -> int:
        return self.raw_offset + self.raw_size

    @property
    def flags(self) -> DecodedFlags:
        from pechain.parsers.flags import decode_section_flags
        return decode_section_flags(self.characteristics)

    def contains_rva(self, rva: int) -> bool:
        span = max(self.virtual_size, self.raw_size)
        return self.rva <= rva < self.rva + span


class Overlay(_FrozenModel):
    """Bytes appended after the last section."""
    offset: int
    size: int
    data: bytes = b""

    @property
    def is_empty(self) -> bool:
        return self.size == 0


# ---------------------------------------------------------------------------
# Debug information
# ---------------------------------------------------------------------------

class DebugDirectoryEntry(_FrozenModel):
    """A 28-byte ``IMAGE_DEBUG_DIRECTORY`` record."""
    index: int
    offset: int
    characteristics: int
    timestamp: int
    major_version: int
    minor_version: int
    type: int
    size_of_data: int
    address_of_raw_data: int
    pointer_to_raw_data: int

    @property
    def debug_type(self) -> Optional[DebugType]:
        try:
            return DebugType(self.type)
        except ValueError:
            return None


class FPODataRaw(_FrozenModel):
    """FPO record exactly as stored (16 bytes); sizes are in dwords."""
    offset_start: int
    function_size: int
    locals_dwords: int
    params_dwords: int
    prolog_size: int
    bitfield: int


class FPOData(_FrozenModel):
    """Decoded FPO record; sizes are in bytes."""
    offset_start: int
    function_size: int
    locals_size: int
    params_size: int
    prolog_size: int
    saved_registers: int
    has_seh: bool
    uses_base_pointer: bool
    reserved: int
    frame: FrameType
