"""
Winfloor Structured Logger
===========================

Provides :class:`FloorLogger`, a thin facade over :mod:`logging` that
writes Rich-formatted records to stderr and, optionally, plain or
JSON-lines records to a rotating file.

Stdout is never touched: it carries the analyzer's own records.

Every record is stamped with the component name (``tool_name``), the
operation active on the calling thread, and any keyword extras passed
to the log call::

    log = FloorLogger("engine", log_level="INFO")
    with log.operation("map_build"), log.timed("API map build"):
        log.info("map size = %d", len(api_map), methods=stats.methods)

Operations are tracked per thread, so binaries analysed concurrently on
an executor do not see each other's context.

References:
    - Python logging HOWTO. https://docs.python.org/3/howto/logging.html
    - Rich library. https://github.com/Textualize/rich
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

_LOG_THEME = Theme(
    {
        "log.level.debug": "dim",
        "log.level.info": "cyan",
        "log.level.warning": "yellow",
        "log.level.error": "bold red",
    }
)

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [%(operation)s] %(message)s"

# Keyword arguments that belong to logging.Logger._log itself
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel"})


class _JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Keys: ``timestamp``, ``level``, ``logger``, ``message``,
    ``tool_name``, and when present ``operation``, ``extra`` and
    ``exc_info``.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "tool_name": getattr(record, "tool_name", ""),
        }
        if getattr(record, "operation", "-") != "-":
            entry["operation"] = record.operation
        if getattr(record, "floor_extra", None):
            entry["extra"] = record.floor_extra
        if record.exc_info and record.exc_info[1] is not None:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def _console_handler(level: int) -> RichHandler:
    return RichHandler(
        level=level,
        console=Console(theme=_LOG_THEME, stderr=True),
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )


def _file_handler(
    path: Path, level: int, *, json_logs: bool, max_bytes: int, backup_count: int,
) -> RotatingFileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_JSONFormatter() if json_logs else logging.Formatter(_FILE_FORMAT))
    return handler


class FloorLogger:
    """Structured logger bound to one winfloor component.

    Args:
        tool_name: Component name; the stdlib logger is ``winfloor.<tool_name>``.
        log_level: Minimum level name.  Unknown names fall back to WARNING.
        log_file: Rotating log file.  Empty or ``None`` disables it.
        json_logs: Write JSON lines instead of plain text to *log_file*.
        max_bytes: Rotation threshold for *log_file*.
        backup_count: Rotated files to keep.
        console_output: Attach the Rich stderr handler.

    Constructing a second logger with the same *tool_name* replaces the
    handlers of the first instead of stacking them.
    """

    def __init__(
        self,
        tool_name: str,
        *,
        log_level: str = "WARNING",
        log_file: str | Path | None = None,
        json_logs: bool = False,
        max_bytes: int = 10 * 1024 * 1024,
        backup_count: int = 3,
        console_output: bool = True,
    ) -> None:
        self._tool_name = tool_name
        self._local = threading.local()

        level = logging.getLevelNamesMapping().get(log_level.upper(), logging.WARNING)

        self._logger = logging.getLogger(f"winfloor.{tool_name}")
        self._logger.setLevel(level)
        self._logger.propagate = False
        self._logger.handlers.clear()

        if console_output:
            self._logger.addHandler(_console_handler(level))
        if log_file:
            self._logger.addHandler(
                _file_handler(
                    Path(log_file), level,
                    json_logs=json_logs, max_bytes=max_bytes, backup_count=backup_count,
                )
            )

    @property
    def tool_name(self) -> str:
        return self._tool_name

    @property
    def underlying(self) -> logging.Logger:
        """The stdlib logger records are sent to."""
        return self._logger

    @property
    def current_operation(self) -> str | None:
        return getattr(self._local, "operation", None)

    @contextmanager
    def operation(self, name: str) -> Iterator[FloorLogger]:
        """Tag records logged on this thread with ``operation=name``."""
        previous = self.current_operation
        self._local.operation = name
        try:
            yield self
        finally:
            self._local.operation = previous

    @contextmanager
    def timed(self, label: str) -> Iterator[None]:
        """Log *label* with its wall-clock duration at INFO on exit."""
        start = time.perf_counter()
        self.debug("Started: %s", label)
        try:
            yield
        finally:
            self.info("Completed: %s (%.3f sec)", label, time.perf_counter() - start)

    def _log(self, level: int, msg: str, args: tuple[Any, ...], kwargs: dict[str, Any]) -> None:
        if not self._logger.isEnabledFor(level):
            return
        options = {key: kwargs.pop(key) for key in list(kwargs) if key in _LOGGING_KWARGS}
        # skip this facade's own frames when reporting the caller
        options["stacklevel"] = options.get("stacklevel", 1) + 2
        extra = {
            "tool_name": self._tool_name,
            "operation": self.current_operation or "-",
            "floor_extra": kwargs,
        }
        self._logger.log(level, msg, *args, extra=extra, **options)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, args, kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, args, kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, args, kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, args, kwargs)
