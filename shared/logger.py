"""
Ancestry Structured Logger
===========================

Provides :class:`AncestryLogger`, a logging facade that emits Rich
console output for humans and, optionally, JSON lines to a rotating log
file for later inspection of long whole-binary runs.

Every record carries the tool name, the current operation (for example
``"vtable"`` or ``"vtt"``) and, while a class is being analysed, the
``type_info`` address of that class.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim cyan",
        "log.level.info": "bold bright_blue",
        "log.level.warning": "bold yellow",
        "log.level.error": "bold red",
        "log.level.critical": "bold white on red",
    }
)

_CONTEXT_FIELDS = ("tool_name", "operation", "type_info")


class _JSONFormatter(logging.Formatter):
    """Emit each log record as a single-line JSON object::

        {"timestamp": "...", "level": "INFO", "logger": "ancestry.engine",
         "message": "...", "operation": "vtable", "type_info": "0x4010a0"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in _CONTEXT_FIELDS:
            val = getattr(record, attr, None)
            if val is not None:
                entry[attr] = val

        extra = getattr(record, "ancestry_extra", None)
        if extra is not None:
            entry["extra"] = extra

        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class _ConsoleHandler(RichHandler):
    """:class:`rich.logging.RichHandler` writing to stderr with our theme."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(
            console=Console(theme=_LOG_THEME, stderr=True),
            show_path=False,
            show_time=True,
            rich_tracebacks=True,
            tracebacks_show_locals=False,
            markup=False,
            **kwargs,
        )


class AncestryLogger:
    """Context-aware logger for the Ancestry toolkit.

    Usage::

        log = AncestryLogger("engine", log_file="ancestry.log", json_logs=True)
        with log.operation("vtable"), log.for_class(0x4010A0):
            log.debug("Parsing sub-table at %#x", address)
        with log.timed("hierarchy recovery"):
            ...

    The operation and class context are kept per thread, so worker
    threads analysing different classes do not clobber each other.

    Args:
        tool_name:       Component name, used as ``ancestry.<tool_name>``.
        log_level:       Minimum severity name.
        log_file:        Rotating log file path, ``None`` disables it.
        json_logs:       Emit JSON lines to the log file.
        max_bytes:       Rotation size.
        backup_count:    Rotated files to keep.
        console_output:  Attach the Rich stderr handler.
    """

    def __init__(
        self,
        tool_name: str,
        *,
        log_level: str = "INFO",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10_485_760,
        backup_count: int = 5,
        console_output: bool = True,
    ) -> None:
        self._tool_name = tool_name
        self._local = threading.local()

        level = getattr(logging, log_level.upper(), logging.INFO)
        self._logger = logging.getLogger(f"ancestry.{tool_name}")
        self._logger.setLevel(level)
        self._logger.propagate = False
        self._logger.handlers.clear()

        if console_output:
            self._logger.addHandler(_ConsoleHandler(level=level))

        if log_file:
            file_path = Path(log_file)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            fh = RotatingFileHandler(
                filename=str(file_path),
                maxBytes=max_bytes,
                backupCount=backup_count,
                encoding="utf-8",
            )
            fh.setLevel(level)
            if json_logs:
                fh.setFormatter(_JSONFormatter())
            else:
                fh.setFormatter(
                    logging.Formatter(
                        fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
                        datefmt="%Y-%m-%dT%H:%M:%S%z",
                    )
                )
            self._logger.addHandler(fh)

    # ------------------------------------------------------------------ #
    #  Context scopes
    # ------------------------------------------------------------------ #

    class _Scope:
        """Temporarily binds one context field on the current thread."""

        def __init__(self, parent: AncestryLogger, key: str, value: Any) -> None:
            self._parent = parent
            self._key = key
            self._value = value
            self._prev: Any = None

        def __enter__(self) -> AncestryLogger:
            self._prev = getattr(self._parent._local, self._key, None)
            setattr(self._parent._local, self._key, self._value)
            return self._parent

        def __exit__(self, *exc: Any) -> None:
            setattr(self._parent._local, self._key, self._prev)

    def operation(self, name: str) -> _Scope:
        """Bind ``operation=<name>`` to records logged inside the block."""
        return self._Scope(self, "operation", name)

    def for_class(self, address: int) -> _Scope:
        """Bind the ``type_info`` address of the class being analysed."""
        return self._Scope(self, "type_info", f"{address:#x}")

    # ------------------------------------------------------------------ #
    #  Log methods
    # ------------------------------------------------------------------ #

    def _enrich(self, kwargs: dict[str, Any]) -> dict[str, Any]:
        extra = kwargs.pop("extra", {}) or {}
        payload: dict[str, Any] = {}
        for key in list(kwargs):
            if key not in ("exc_info", "stack_info", "stacklevel"):
                payload[key] = kwargs.pop(key)

        extra["tool_name"] = self._tool_name
        extra["operation"] = getattr(self._local, "operation", None)
        extra["type_info"] = getattr(self._local, "type_info", None)
        if payload:
            extra["ancestry_extra"] = payload
        kwargs["extra"] = extra
        return kwargs

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.debug(msg, *args, **self._enrich(kwargs))

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.info(msg, *args, **self._enrich(kwargs))

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.warning(msg, *args, **self._enrich(kwargs))

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._logger.error(msg, *args, **self._enrich(kwargs))

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log an ERROR-level message with the active traceback."""
        kwargs.setdefault("exc_info", True)
        self._logger.error(msg, *args, **self._enrich(kwargs))

    # ------------------------------------------------------------------ #
    #  Timing helper
    # ------------------------------------------------------------------ #

    class _TimingContext:
        def __init__(self, logger_inst: AncestryLogger, label: str) -> None:
            self._logger = logger_inst
            self._label = label
            self._start = 0.0

        def __enter__(self) -> AncestryLogger._TimingContext:
            self._start = time.perf_counter()
            self._logger.debug("Started: %s", self._label)
            return self

        def __exit__(self, *exc: Any) -> None:
            self._logger.info(
                "Completed: %s (%.3f sec)", self._label, self.elapsed
            )

        @property
        def elapsed(self) -> float:
            return time.perf_counter() - self._start

    def timed(self, label: str) -> _TimingContext:
        """Context manager that logs start, finish and elapsed time."""
        return self._TimingContext(self, label)

    @property
    def tool_name(self) -> str:
        return self._tool_name

    @property
    def underlying(self) -> logging.Logger:
        """Direct access to the stdlib :class:`logging.Logger`."""
        return self._logger
