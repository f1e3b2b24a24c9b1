"""Shared fixtures for the pechain test suite."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from pechain.core.diagnostics import CollectingSink
from pechain.core.resolver import PEFile
from pechain.parsers.reader import BytesSource
from shared.config import GlobalConfig, PechainConfig
from shared.logger import StructuredLogger


class CountingSource(BytesSource):
    """BytesSource that records every (offset, size) read."""

    __slots__ = ("reads",)

    def __init__(self, data: bytes) -> None:
        super().__init__(data)
        self.reads: list[tuple[int, int]] = []

    def read_at(self, offset: int, size: int) -> bytes:
        self.reads.append((offset, size))
        return super().read_at(offset, size)


@pytest.fixture
def config() -> PechainConfig:
    return PechainConfig(global_settings=GlobalConfig(log_level="DEBUG", console_output=False))


@pytest.fixture
def logger(config: PechainConfig) -> StructuredLogger:
    return StructuredLogger.from_config("test", config.global_settings)


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def make_pe(
    config: PechainConfig,
    logger: StructuredLogger,
    sink: CollectingSink,
) -> Callable[..., PEFile]:
    """Factory building a quiet PEFile whose diagnostics land in ``sink``."""

    def _make(source: Any, **kwargs: Any) -> PEFile:
        kwargs.setdefault("config", config)
        kwargs.setdefault("logger", logger)
        kwargs.setdefault("diagnostics", sink)
        return PEFile(source, **kwargs)

    return _make
