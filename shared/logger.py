"""
pechain Structured Logger
==========================

:class:`StructuredLogger` binds a stdlib :class:`logging.Logger` named
``pechain.<component>`` to a set of handlers: a Rich console handler and,
optionally, a rotating file written as plain text or JSON lines.

Every record carries the owning *component* and the *operation* in scope.
The operation lives in a :class:`contextvars.ContextVar`, so each thread
(and each asyncio task) sees only the operations it entered itself.

The stdlib logger behind a component is process-wide.  Handlers are
therefore owned by whichever :class:`StructuredLogger` installed them last;
installing a new set closes the previous one.  :func:`get_logger` hands out
one shared instance per component and only rebuilds it when the settings
change.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - contextvars. https://docs.python.org/3/library/contextvars.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import contextlib
import json
import logging
import threading
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOGGER_PREFIX = "pechain"

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
        "log.level.critical": "bold white on red",
    }
)

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

# Keyword arguments forwarded to logging as-is; everything else is payload
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel"})


class _JSONLineFormatter(logging.Formatter):
    """One JSON object per record.

    Keys, in order: ``timestamp``, ``level``, ``logger``,
    ``component``, ``operation``, ``message``, then ``extra`` and
    ``exc_info`` when present.  ``operation`` is ``null`` outside any scope.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: dict[str, Any] = dict(
            timestamp=created.isoformat(),
            level=record.levelname,
            logger=record.name,
            component=getattr(record, "component", None),
            operation=getattr(record, "operation", None),
            message=record.getMessage(),
        )
        payload = getattr(record, "pechain_extra", None)
        if payload:
            entry["extra"] = payload
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(level: int) -> logging.Handler:
    return RichHandler(
        level=level,
        console=Console(theme=_LOG_THEME, stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )


def _file_handler(
    path: Path, level: int, json_lines: bool, max_bytes: int, backup_count: int
) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        filename=str(path), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    if json_lines:
        handler.setFormatter(_JSONLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))
    return handler


def _detach_all(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


class StructuredLogger:
    """Component-bound logger for pechain.

    Usage::

        log = get_logger("resolver", config.global_settings)
        with log.operation("section_headers"):
            log.debug("reading %d section headers", count, offset=offset)

    Keyword arguments that :mod:`logging` does not understand are gathered
    into the record's ``pechain_extra`` payload.

    Constructing a second instance for the same component replaces (and
    closes) the handlers the first one installed.

    Args:
        component:       Name of the pechain component (``"resolver"``...).
        log_level:       Minimum severity name.
        log_file:        Rotating log file path; ``None`` disables file logging.
        json_logs:       Write JSON lines to *log_file* instead of plain text.
        max_bytes:       Log-file size before rotation.
        backup_count:    Rotated files to keep.
        console_output:  Attach a Rich console handler.
    """

    def __init__(
        self,
        component: str,
        *,
        log_level: str = "INFO",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
        console_output: bool = True,
    ) -> None:
        self._component = component
        self._scope: ContextVar[str | None] = ContextVar(
            f"{_LOGGER_PREFIX}.{component}.operation", default=None
        )

        level = getattr(logging, log_level.upper(), logging.INFO)
        handlers: list[logging.Handler] = []
        if console_output:
            handlers.append(_console_handler(level))
        if log_file is not None:
            handlers.append(_file_handler(Path(log_file), level, json_logs, max_bytes, backup_count))

        self._logger = logging.getLogger(f"{_LOGGER_PREFIX}.{component}")
        self._logger.setLevel(level)
        self._logger.propagate = False
        _detach_all(self._logger)
        for handler in handlers:
            self._logger.addHandler(handler)

    @classmethod
    def from_config(cls, component: str, settings: Any) -> StructuredLogger:
        """Build a fresh logger from a :class:`shared.config.GlobalConfig`."""
        return cls(
            component,
            log_level=settings.log_level,
            log_file=settings.log_file,
            json_logs=settings.log_json,
            console_output=settings.console_output,
        )

    def close(self) -> None:
        """Detach and close every handler on the component's logger.

        A closed instance is no longer handed out by :func:`get_logger`.
        """
        with _registry_lock:
            cached = _registry.get(self._component)
            if cached is not None and cached[1] is self:
                del _registry[self._component]
        _detach_all(self._logger)

    # ------------------------------------------------------------------ #
    #  Operation scope
    # ------------------------------------------------------------------ #

    @contextlib.contextmanager
    def operation(self, name: str) -> Iterator[StructuredLogger]:
        """Stamp ``operation=<name>`` on records emitted inside the block."""
        token = self._scope.set(name)
        try:
            yield self
        finally:
            self._scope.reset(token)

    @property
    def current_operation(self) -> str | None:
        """Operation in scope for the calling thread or task."""
        return self._scope.get()

    # ------------------------------------------------------------------ #
    #  Log methods
    # ------------------------------------------------------------------ #

    def _log(self, level: int, msg: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        forwarded = {key: kwargs.pop(key) for key in kwargs.keys() & _LOGGING_KWARGS}
        extra = dict(kwargs.pop("extra", None) or {})
        extra["component"] = self._component
        extra["operation"] = self._scope.get()
        if kwargs:
            extra["pechain_extra"] = kwargs
        forwarded.setdefault("stacklevel", 3)
        self._logger.log(level, msg, *args, extra=extra, **forwarded)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, args, kwargs)

    @property
    def component(self) -> str:
        return self._component

    @property
    def underlying(self) -> logging.Logger:
        """The stdlib :class:`logging.Logger` behind this component."""
        return self._logger


# ---------------------------------------------------------------------------
# Per-component registry
# ---------------------------------------------------------------------------

_registry: dict[str, tuple[tuple[Any, ...], StructuredLogger]] = {}
_registry_lock = threading.Lock()


def _settings_key(settings: Any) -> tuple[Any, ...]:
    log_file = settings.log_file
    return (
        settings.log_level.upper(),
        None if log_file is None else str(Path(log_file)),
        bool(settings.log_json),
        bool(settings.console_output),
    )


def get_logger(component: str, settings: Any) -> StructuredLogger:
    """Shared :class:`StructuredLogger` for *component*.

    The same instance, with the same open handlers, is returned for as long
    as *settings* describe the same handler set.  Different settings
    rebuild it, closing the handlers of the previous instance.
    """
    key = _settings_key(settings)
    with _registry_lock:
        cached = _registry.get(component)
        if cached is not None and cached[0] == key:
            return cached[1]
        log = StructuredLogger.from_config(component, settings)
        _registry[component] = (key, log)
        return log
