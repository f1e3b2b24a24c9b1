"""
pechain Parsers
================

Byte-level building blocks for the resolver: random-access sources,
fixed-size structure decoders, bounded table reads, overlay location and
the bitfield codec.
"""

from pechain.parsers.flags import (
    decode_dll_flags,
    decode_file_flags,
    decode_fpo,
    decode_section_flags,
    describe_flags,
    encode_flags,
)
from pechain.parsers.overlay import locate_overlay
from pechain.parsers.reader import BytesSource, FileSource, as_source, expect_signature, read_fixed
from pechain.parsers.tables import read_table

__all__ = [
    "BytesSource",
    "FileSource",
    "as_source",
    "decode_dll_flags",
    "decode_file_flags",
    "decode_fpo",
    "decode_section_flags",
    "describe_flags",
    "encode_flags",
    "expect_signature",
    "locate_overlay",
    "read_fixed",
    "read_table",
]
