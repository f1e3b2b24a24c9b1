"""
Advisory Diagnostics
=====================

Conditions that are worth reporting but do not stop resolution, such as
reserved fields that are expected to be zero but are not.  They are
delivered to a *sink*: any callable accepting a :class:`Diagnostic`.

Two sinks ship with pechain:

    - :class:`LoggingSink` writes a WARNING record per diagnostic and is
      the resolver's default.
    - :class:`CollectingSink` keeps diagnostics in a list.
"""

from __future__ import annotations

from typing import Callable, Iterator, Optional

from pydantic import BaseModel, ConfigDict

from shared.logger import StructuredLogger


class Diagnostic(BaseModel):
    """Base class for advisory, non-fatal findings."""

    model_config = ConfigDict(frozen=True)

    structure: str
    offset: int

    @property
    def message(self) -> str:
        return f"{self.structure}: advisory at 0x{self.offset:x}"


class ReservedFieldNonZero(Diagnostic):
    """A field documented as reserved (must be zero) holds a value.

    Attributes:
        field: Field name, e.g. ``"reserved2"``.
        index: Position within a reserved group, ``None`` for scalar fields.
        value: The non-zero value found.
    """

    field: str
    index: Optional[int] = None
    value: int

    @property
    def message(self) -> str:
        name = self.field if self.index is None else f"{self.field}[{self.index}]"
        return (
            f"{self.structure}: reserved field {name} at 0x{self.offset:x} "
            f"is non-zero (0x{self.value:X})"
        )


DiagnosticSink = Callable[[Diagnostic], None]


class LoggingSink:
    """Report diagnostics as WARNING records on a :class:`StructuredLogger`."""

    def __init__(self, logger: StructuredLogger) -> None:
        self._logger = logger

    def __call__(self, diagnostic: Diagnostic) -> None:
        self._logger.warning(
            diagnostic.message,
            diagnostic=type(diagnostic).__name__,
            **diagnostic.model_dump(),
        )


class CollectingSink:
    """Accumulate diagnostics in memory, in the order they were reported."""

    def __init__(self) -> None:
        self.diagnostics: list[Diagnostic] = []

    def __call__(self, diagnostic: Diagnostic) -> None:
        self.diagnostics.append(diagnostic)

    def __len__(self) -> int:
        return len(self.diagnostics)

    def __iter__(self) -> Iterator[Diagnostic]:
        return iter(self.diagnostics)

    def clear(self) -> None:
        self.diagnostics.clear()
