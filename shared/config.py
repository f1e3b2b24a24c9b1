"""
pechain Configuration Management
=================================

Settings for logging and for the parser's allocation limits, held in
slotted dataclasses and loaded from TOML.

Example ``pechain.toml``::

    [global]
    log_level = "DEBUG"
    log_file = "logs/pechain.log"
    log_json = true

    [parser]
    max_section_count = 96
    report_reserved_fields = false

References:
    - TOML v1.0.0 Specification. https://toml.io/en/v1.0.0
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[no-redef]


# ---------------------------------------------------------------------------
# Default configuration file path relative to the project root
# ---------------------------------------------------------------------------
_DEFAULT_CONFIG_PATH: Path = Path(__file__).resolve().parent.parent / "pechain.toml"


# ========================== Section Configs ================================


@dataclass(frozen=False, slots=True)
class ParserConfig:
    """Limits and reporting switches for the header chain resolver.

    Element counts read from the image are checked against these caps
    before anything is allocated; a count above its cap raises
    :class:`pechain.core.errors.CountOverflow`.
    """

    # SectionCount is a u16, so the default cap only rejects nothing
    max_section_count: int = 65535
    max_data_directories: int = 4096
    max_debug_entries: int = 4096
    max_fpo_records: int = 1_000_000
    report_reserved_fields: bool = True


@dataclass(frozen=False, slots=True)
class GlobalConfig:
    """Logging settings shared by every pechain component."""

    log_level: str = "INFO"
    log_file: Optional[str] = None
    log_json: bool = False
    console_output: bool = True


# =========================== Master Config =================================


@dataclass(frozen=False, slots=True)
class PechainConfig:
    """Top-level configuration.

    Usage:
        >>> config = PechainConfig.load()                 # from default path
        >>> config = PechainConfig.load("custom.toml")    # from custom path
        >>> config.parser.max_section_count
        65535
    """

    global_settings: GlobalConfig = field(default_factory=GlobalConfig)
    parser: ParserConfig = field(default_factory=ParserConfig)

    @classmethod
    def load(cls, path: str | Path | None = None) -> PechainConfig:
        """Load configuration from a TOML file.

        Missing keys fall back to dataclass defaults and unknown keys are
        ignored.

        Args:
            path: TOML file to read.  Defaults to ``<project_root>/pechain.toml``.

        Returns:
            A fully-populated :class:`PechainConfig`.

        Raises:
            FileNotFoundError: If *path* was given explicitly and does not exist.
        """
        config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH

        if not config_path.exists():
            if path is not None:
                raise FileNotFoundError(
                    f"Configuration file not found: {config_path}"
                )
            return cls()

        with open(config_path, "rb") as fh:
            raw: dict[str, Any] = tomllib.load(fh)

        return cls(
            global_settings=cls._build_section(GlobalConfig, raw.get("global", {})),
            parser=cls._build_section(ParserConfig, raw.get("parser", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise the configuration tree to a plain dictionary."""
        return asdict(self)

    @staticmethod
    def _build_section(cls: type, data: dict[str, Any]) -> Any:
        """Instantiate dataclass *cls* from the keys it declares."""
        valid_keys = {f.name for f in cls.__dataclass_fields__.values()}  # type: ignore[attr-defined]
        filtered = {k: v for k, v in data.items() if k in valid_keys}
        return cls(**filtered)


# ========================= Module-level convenience ========================

def get_config(path: str | Path | None = None) -> PechainConfig:
    """Cached wrapper around :meth:`PechainConfig.load`.

    Passing an explicit *path* reloads and replaces the cached instance.
    """
    if not hasattr(get_config, "_cached") or path is not None:
        get_config._cached = PechainConfig.load(path)  # type: ignore[attr-defined]
    return get_config._cached  # type: ignore[attr-defined]
