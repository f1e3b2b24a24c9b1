"""
Bitfield Codec
===============

Pure functions turning packed integers into typed values and back:

    - COFF file characteristics and DLL characteristics (independent bits)
    - Section characteristics, whose bits 20-23 hold one *alignment value*
      rather than four flags
    - The FPO record bitfield byte and its dword-scaled size fields

Set bits missing from a flag table are kept in ``DecodedFlags.unknown`` so
nothing is dropped between decode and re-encode.  The module also holds the
name tables used to render values for diagnostics.
"""

from __future__ import annotations

import enum
from typing import Optional

from pechain.core.models import (
    Arch,
    DebugType,
    DecodedFlags,
    DLLFlag,
    FileFlag,
    FPOData,
    FPODataRaw,
    FrameType,
    OptState,
    SectionFlag,
    Subsystem,
)


# ---------------------------------------------------------------------------
# Name tables
# ---------------------------------------------------------------------------

_ARCH_NAMES: dict[int, str] = {
    Arch.UNKNOWN: "unknown",
    Arch.I386: "I386",
    Arch.R3000: "MIPS R3000",
    Arch.R4000: "MIPS R4000",
    Arch.ARM: "ARM",
    Arch.ARMNT: "ARM Thumb-2",
    Arch.IA64: "IA64",
    Arch.MIPS16: "MIPS16",
    Arch.RISCV32: "RISC-V 32",
    Arch.RISCV64: "RISC-V 64",
    Arch.AMD64: "AMD64",
    Arch.ARM64: "ARM64",
}

_OPT_STATE_NAMES: dict[int, str] = {
    OptState.PE32: "32-bit",
    OptState.PE32_PLUS: "64-bit",
    OptState.ROM: "ROM",
}

_SUBSYSTEM_NAMES: dict[int, str] = {
    Subsystem.UNKNOWN: "unknown",
    Subsystem.NATIVE: "native",
    Subsystem.WINDOWS_GUI: "Windows GUI",
    Subsystem.WINDOWS_CUI: "Windows CLI",
    Subsystem.OS2_CUI: "OS/2 CLI",
    Subsystem.POSIX_CUI: "POSIX CLI",
    Subsystem.WINDOWS_CE_GUI: "Windows CE GUI",
    Subsystem.EFI_APPLICATION: "EFI application",
    Subsystem.EFI_BOOT_SERVICE_DRIVER: "EFI boot driver",
    Subsystem.EFI_RUNTIME_DRIVER: "EFI runtime driver",
    Subsystem.EFI_ROM: "EFI ROM",
    Subsystem.XBOX: "Xbox",
    Subsystem.WINDOWS_BOOT_APPLICATION: "boot application",
}

_DEBUG_TYPE_NAMES: dict[int, str] = {
    DebugType.UNKNOWN: "Unknown",
    DebugType.COFF: "COFF",
    DebugType.CODEVIEW: "CodeView",
    DebugType.FPO: "FPO",
    DebugType.MISC: "Misc",
    DebugType.EXCEPTION: "Exception",
    DebugType.FIXUP: "Fixup",
    DebugType.OMAP_TO_SRC: "OMapToSrc",
    DebugType.OMAP_FROM_SRC: "OMapFromSrc",
    DebugType.BORLAND: "Borland",
    DebugType.RESERVED10: "Reserved10",
    DebugType.CLSID: "CLSID",
    DebugType.REPRO: "Repro",
}

_FRAME_TYPE_NAMES: dict[int, str] = {
    FrameType.FPO: "FPO",
    FrameType.TRAP: "Trap",
    FrameType.TSS: "TSS",
    FrameType.NON_FPO: "NonFPO",
}

_FILE_FLAG_NAMES: dict[int, str] = {
    FileFlag.RELOCS_STRIPPED: "no reloc",
    FileFlag.EXECUTABLE_IMAGE: "executable",
    FileFlag.LINE_NUMS_STRIPPED: "no line numbers",
    FileFlag.LOCAL_SYMS_STRIPPED: "no symbol table",
    FileFlag.LARGE_ADDRESS_AWARE: "large addresses",
    FileFlag.MACHINE_32BIT: "32-bit",
    FileFlag.DEBUG_STRIPPED: "no debug",
    FileFlag.REMOVABLE_RUN_FROM_SWAP: "USB copy to swap",
    FileFlag.NET_RUN_FROM_SWAP: "NET copy to swap",
    FileFlag.SYSTEM: "system file",
    FileFlag.DLL: "DLL",
    FileFlag.UP_SYSTEM_ONLY: "uniprocessor",
}

_DLL_FLAG_NAMES: dict[int, str] = {
    DLLFlag.DYNAMIC_BASE: "dynamic base",
    DLLFlag.FORCE_INTEGRITY: "force integrity",
    DLLFlag.NX_COMPAT: "can DEP",
    DLLFlag.NO_ISOLATION: "no isolation",
    DLLFlag.NO_SEH: "no SEH",
    DLLFlag.NO_BIND: "no bind",
    DLLFlag.WDM_DRIVER: "WDM driver",
    DLLFlag.TERMINAL_SERVER_AWARE: "can RDS",
}

_SECTION_FLAG_NAMES: dict[int, str] = {
    SectionFlag.CNT_CODE: "code",
    SectionFlag.CNT_INITIALIZED_DATA: "data",
    SectionFlag.CNT_UNINITIALIZED_DATA: "bss",
    SectionFlag.LNK_INFO: "link info",
    SectionFlag.LNK_REMOVE: "link remove",
    SectionFlag.LNK_COMDAT: "link COMDAT",
    SectionFlag.NO_DEFER_SPEC_EXC: "defer speculative exceptions",
    SectionFlag.GPREL: "global pointer reference",
    SectionFlag.LNK_NRELOC_OVFL: "relocs overflow",
    SectionFlag.MEM_DISCARDABLE: "mem discard",
    SectionFlag.MEM_NOT_CACHED: "mem no cache",
    SectionFlag.MEM_NOT_PAGED: "mem no page",
    SectionFlag.MEM_SHARED: "mem shared",
    SectionFlag.MEM_EXECUTE: "mem exec",
    SectionFlag.MEM_READ: "mem read",
    SectionFlag.MEM_WRITE: "mem write",
}

# FileFlag.MACHINE_32BIT and DLLFlag.NX_COMPAT share a value, so tables
# are selected by flag type, never by value
_FLAG_NAMES: dict[type, dict[int, str]] = {
    FileFlag: _FILE_FLAG_NAMES,
    DLLFlag: _DLL_FLAG_NAMES,
    SectionFlag: _SECTION_FLAG_NAMES,
}


def _lookup(table: dict[int, str], value: int, what: str, width: int = 4) -> str:
    name = table.get(value)
    if name is None:
        return f"unknown {what}: 0x{value:0{width}X}"
    return name


def arch_name(machine: int) -> str:
    return _lookup(_ARCH_NAMES, machine, "arch")


def opt_state_name(magic: int) -> str:
    return _lookup(_OPT_STATE_NAMES, magic, "state")


def subsystem_name(subsystem: int) -> str:
    return _lookup(_SUBSYSTEM_NAMES, subsystem, "subsystem")


def debug_type_name(debug_type: int) -> str:
    return _lookup(_DEBUG_TYPE_NAMES, debug_type, "debug type", 8)


def frame_type_name(frame: int) -> str:
    return _lookup(_FRAME_TYPE_NAMES, frame, "frame type", 2)


# ---------------------------------------------------------------------------
# Independent-bit flag words
# ---------------------------------------------------------------------------

def _decode_bits(
    value: int,
    flag_type: type[enum.IntFlag],
    width: int,
    skip_mask: int = 0,
) -> tuple[tuple[enum.IntFlag, ...], tuple[int, ...]]:
    """Split *value* into recognised members and unknown single-bit masks."""
    members = {int(m): m for m in flag_type.__members__.values()}
    known: list[enum.IntFlag] = []
    unknown: list[int] = []
    for bit in range(width):
        mask = 1 << bit
        if mask & skip_mask or not value & mask:
            continue
        member = members.get(mask)
        if member is None:
            unknown.append(mask)
        else:
            known.append(member)
    return tuple(known), tuple(unknown)


def decode_file_flags(value: int) -> DecodedFlags:
    """Decode the 16-bit COFF characteristics word."""
    known, unknown = _decode_bits(value, FileFlag, 16)
    return DecodedFlags(raw=value, width=16, known=known, unknown=unknown)


def decode_dll_flags(value: int) -> DecodedFlags:
    """Decode the 16-bit DLL characteristics word."""
    known, unknown = _decode_bits(value, DLLFlag, 16)
    return DecodedFlags(raw=value, width=16, known=known, unknown=unknown)


# ---------------------------------------------------------------------------
# Section characteristics
# ---------------------------------------------------------------------------

SECTION_ALIGN_MASK: int = 0x00F00000
SECTION_ALIGN_SHIFT: int = 20

# Alignment field value -> bytes; 0 means "no alignment specified"
_SECTION_ALIGNMENTS: dict[int, int] = {value: 1 << (value - 1) for value in range(1, 15)}
_SECTION_ALIGNMENT_FIELDS: dict[int, int] = {v: k for k, v in _SECTION_ALIGNMENTS.items()}


def decode_section_flags(value: int) -> DecodedFlags:
    """Decode a section characteristics word.

    Bits 20-23 are isolated and looked up as one alignment value; they are
    never reported as independent flags.  Field value 15 has no table entry
    and is returned in ``unknown_alignment``.
    """
    known, unknown = _decode_bits(value, SectionFlag, 32, skip_mask=SECTION_ALIGN_MASK)
    field = (value & SECTION_ALIGN_MASK) >> SECTION_ALIGN_SHIFT
    alignment: Optional[int] = None
    unknown_alignment: Optional[int] = None
    if field:
        alignment = _SECTION_ALIGNMENTS.get(field)
        if alignment is None:
            unknown_alignment = field
    return DecodedFlags(
        raw=value,
        width=32,
        known=known,
        unknown=unknown,
        alignment=alignment,
        unknown_alignment=unknown_alignment,
    )


def encode_flags(decoded: DecodedFlags) -> int:
    """Rebuild the integer a :class:`DecodedFlags` was decoded from.

    Recognised and unknown bits are OR-ed back; a section alignment is
    turned back into its field value by reverse table lookup.

    Raises:
        ValueError: ``alignment`` is not a power of two between 1 and 8192.
    """
    value = 0
    for flag in decoded.known:
        value |= int(flag)
    for mask in decoded.unknown:
        value |= mask
    if decoded.alignment is not None:
        field = _SECTION_ALIGNMENT_FIELDS.get(decoded.alignment)
        if field is None:
            raise ValueError(f"unsupported section alignment: {decoded.alignment}")
        value |= field << SECTION_ALIGN_SHIFT
    elif decoded.unknown_alignment is not None:
        value |= decoded.unknown_alignment << SECTION_ALIGN_SHIFT
    return value


def describe_flags(decoded: DecodedFlags) -> str:
    """Render decoded flags as ``"code|mem read|align 16"``.

    Returns ``"none"`` when no bit is set.
    """
    digits = decoded.width // 4
    parts: list[str] = []
    for flag in decoded.known:
        parts.append(_FLAG_NAMES[type(flag)][int(flag)])
    for mask in decoded.unknown:
        parts.append(f"unknown flag: 0x{mask:0{digits}X}")
    if decoded.alignment is not None:
        parts.append(f"align {decoded.alignment}")
    elif decoded.unknown_alignment is not None:
        field = decoded.unknown_alignment << SECTION_ALIGN_SHIFT
        parts.append(f"unknown align flag: 0x{field:08X}")
    if not parts:
        return "none"
    return "|".join(parts)


# ---------------------------------------------------------------------------
# FPO records
# ---------------------------------------------------------------------------

FPO_REGS_MASK: int = 0x07      # 0b00000111
FPO_SEH_MASK: int = 0x08       # 0b00001000
FPO_BP_MASK: int = 0x10        # 0b00010000
FPO_RESERVED_MASK: int = 0x20  # 0b00100000
FPO_RESERVED_SHIFT: int = 5
FPO_FRAME_MASK: int = 0xC0     # 0b11000000
FPO_FRAME_SHIFT: int = 6

# locals and params are stored in dwords
FPO_SIZE_UNIT: int = 4


def decode_fpo(raw: FPODataRaw) -> FPOData:
    """Decode one raw FPO record into byte-sized, typed fields."""
    bits = raw.bitfield
    return FPOData(
        offset_start=raw.offset_start,
        function_size=raw.function_size,
        locals_size=raw.locals_dwords * FPO_SIZE_UNIT,
        params_size=raw.params_dwords * FPO_SIZE_UNIT,
        prolog_size=raw.prolog_size,
        saved_registers=bits & FPO_REGS_MASK,
        has_seh=bool(bits & FPO_SEH_MASK),
        uses_base_pointer=bool(bits & FPO_BP_MASK),
        reserved=(bits & FPO_RESERVED_MASK) >> FPO_RESERVED_SHIFT,
        frame=FrameType((bits & FPO_FRAME_MASK) >> FPO_FRAME_SHIFT),
    )
