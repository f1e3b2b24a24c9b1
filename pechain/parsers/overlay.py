"""
Overlay Location
=================

The overlay is whatever follows the last byte mapped by a section.  Packers
and installers commonly append payloads there.
"""

from __future__ import annotations

from typing import Iterable

from pechain.core.models import Overlay, SectionHeader


def overlay_offset(sections: Iterable[SectionHeader], headers_end: int) -> int:
    """Return the file offset at which the overlay begins.

    This is the largest ``raw_offset + raw_size`` over all sections.  With
    no sections at all, the overlay starts right after the declared headers
    (*headers_end*).
    """
    ends = [s.raw_end for s in sections]
    if not ends:
        return headers_end
    return max(ends)


def overlay_size(length: int, start: int) -> int:
    """Bytes between *start* and the end of a source of *length* bytes."""
    return max(0, length - start)


def locate_overlay(
    sections: Iterable[SectionHeader],
    headers_end: int,
    length: int,
) -> Overlay:
    """Build an :class:`Overlay` descriptor without reading its bytes."""
    start = overlay_offset(sections, headers_end)
    return Overlay(offset=start, size=overlay_size(length, start))
