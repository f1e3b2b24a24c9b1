"""
pechain -- Lazy PE Header Chain Resolver
=========================================

pechain reads the header chain of Portable Executable images on demand:
DOS header, COFF file header, PE32/PE32+ optional header with its data
directories, section table, overlay, and the debug directory with its FPO
records.

Capabilities:
    - Random-access reads at absolute offsets, from memory or seekable files
    - Lazy, memoised, thread-safe resolution of each header
    - Bounds-checked table reads that reject corrupt element counts
    - Bitfield decoding of file, DLL and section characteristics
    - Advisory diagnostics for non-zero reserved fields

References:
    - Microsoft. (2024). PE Format.
    - Pietrek, M. (1994). Peering Inside the PE: A Tour of the Win32
      Portable Executable File Format. Microsoft Systems Journal.
"""

from pechain.core.errors import (
    CountOverflow,
    InvalidSignature,
    OffsetOutOfRange,
    PEError,
    TruncatedRead,
    UnsupportedOptionalHeader,
)
from pechain.core.resolver import PEFile

__version__ = "1.0.0"
__all__ = [
    "PEFile",
    "open_pe",
    "PEError",
    "InvalidSignature",
    "OffsetOutOfRange",
    "TruncatedRead",
    "CountOverflow",
    "UnsupportedOptionalHeader",
]

open_pe = PEFile.open
