"""
pechain Core Module
====================

Contains the header chain resolver, the data models it produces, its
exceptions and its advisory diagnostics.
"""

from pechain.core.diagnostics import CollectingSink, Diagnostic, LoggingSink, ReservedFieldNonZero
from pechain.core.errors import (
    CountOverflow,
    InvalidSignature,
    OffsetOutOfRange,
    PEError,
    TruncatedRead,
    UnsupportedOptionalHeader,
)
from pechain.core.models import (
    DataDirectory,
    DebugDirectoryEntry,
    DecodedFlags,
    DOSHeader,
    FileHeader,
    FPOData,
    OptionalHeader,
    Overlay,
    SectionHeader,
)
from pechain.core.resolver import PEFile

__all__ = [
    "CollectingSink",
    "CountOverflow",
    "DataDirectory",
    "DebugDirectoryEntry",
    "DecodedFlags",
    "Diagnostic",
    "DOSHeader",
    "FileHeader",
    "FPOData",
    "InvalidSignature",
    "LoggingSink",
    "OffsetOutOfRange",
    "OptionalHeader",
    "Overlay",
    "PEError",
    "PEFile",
    "ReservedFieldNonZero",
    "SectionHeader",
    "TruncatedRead",
    "UnsupportedOptionalHeader",
]
