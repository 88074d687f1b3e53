"""Structured logging with bound context.

- Immutable bound loggers: ``bind()`` returns a new logger
- Human-readable console output for development, JSON lines for production
- Scoped context (call id, procedure) via ``log_context``

Quick Start:
    >>> from streamrpc.runtime.observability import configure_logging, get_logger
    >>> configure_logging(format="console", level="DEBUG")
    >>> log = get_logger("streamrpc.server")
    >>> log.info("dispatch", procedure="chat", call_id=0)

    >>> with log_context(call_id=3):
    ...     log.warning("stream failed", path="narration")
"""

from __future__ import annotations

import logging
import sys
import time
import traceback
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, TextIO, runtime_checkable

import orjson

from streamrpc.foundation.errors import JsonDict, JsonValue

if TYPE_CHECKING:
    from types import TracebackType

# Context var for scoped context (persists across awaits within a task)
_log_context: ContextVar[JsonDict] = ContextVar("log_context", default={})


# ─────────────────────────────────────────────────────────────────────────────
# Logger
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(slots=True)
class LogEntry:
    timestamp: float
    level: str
    event: str
    context: JsonDict

    @property
    def ts_iso(self) -> str:
        return datetime.fromtimestamp(self.timestamp, tz=UTC).isoformat()

    @property
    def ts_human(self) -> str:
        """HH:MM:SS.mmm"""
        return datetime.fromtimestamp(self.timestamp, tz=UTC).strftime("%H:%M:%S.%f")[:-3]


@dataclass(slots=True)
class BoundLogger:
    """Structured logger with bound context. bind() returns a new logger with merged context.

    Example:
        >>> log = BoundLogger(context={"logger": "streamrpc.client"})
        >>> log.debug("batch flushed", calls=3)
        # => 10:30:45.120 [debug] batch flushed calls=3 logger=streamrpc.client
    """

    context: JsonDict = field(default_factory=dict)
    _renderer: LogRenderer | None = None
    _level: int | None = None

    def bind(self, **kw: JsonValue) -> BoundLogger:
        return BoundLogger(context={**self.context, **kw}, _renderer=self._renderer, _level=self._level)

    def bind_call(self, procedure: str, call_id: int, **kw: JsonValue) -> BoundLogger:
        """Bind the identity of one procedure call."""
        return self.bind(procedure=procedure, call_id=call_id, **kw)

    def _log(self, level: int, event: str, **kw: JsonValue) -> None:
        if level < (self._level if self._level is not None else _state["level"]):  # type: ignore[operator]
            return
        merged = {**_log_context.get(), **self.context, **kw}
        (self._renderer or _get_renderer()).render(LogEntry(time.time(), _level_name(level), event, merged))

    def debug(self, event: str, **kw: JsonValue) -> None: self._log(logging.DEBUG, event, **kw)
    def info(self, event: str, **kw: JsonValue) -> None: self._log(logging.INFO, event, **kw)
    def warning(self, event: str, **kw: JsonValue) -> None: self._log(logging.WARNING, event, **kw)
    def error(self, event: str, **kw: JsonValue) -> None: self._log(logging.ERROR, event, **kw)

    def exception(self, event: str, **kw: JsonValue) -> None:
        """Log error with exception info."""
        self._log(logging.ERROR, event, exc_info=traceback.format_exc(), **kw)


class log_context:
    """Context manager adding key-value pairs to every log entry within the scope."""

    __slots__ = ("_ctx", "_token")

    def __init__(self, **kw: JsonValue) -> None:
        self._ctx: JsonDict = dict(kw)
        self._token: object | None = None

    def __enter__(self) -> log_context:
        self._token = _log_context.set({**_log_context.get(), **self._ctx})
        return self

    def __exit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None,
                 exc_tb: TracebackType | None) -> None:
        if self._token is not None:
            _log_context.reset(self._token)  # type: ignore[arg-type]


# ─────────────────────────────────────────────────────────────────────────────
# Renderers
# ─────────────────────────────────────────────────────────────────────────────


@runtime_checkable
class LogRenderer(Protocol):
    def render(self, entry: LogEntry) -> None: ...


_COLORS = {"reset": "\033[0m", "dim": "\033[2m", "bold": "\033[1m", "red": "\033[31m", "cyan": "\033[36m"}
_NO_COLORS = dict.fromkeys(_COLORS, "")
_LEVEL_COLORS = {"debug": "\033[34m", "info": "\033[32m", "warning": "\033[33m", "error": "\033[31m"}


def _format_value(v: object) -> str:
    if isinstance(v, str):
        return repr(v) if " " in v else v
    return orjson.dumps(v, default=str).decode() if isinstance(v, (dict, list)) else str(v)


@dataclass(slots=True)
class ConsoleRenderer:
    """Human-readable console output. Format: timestamp [level] event key=value ..."""

    output: TextIO = field(default_factory=lambda: sys.stderr)
    colors: bool | None = None  # None = auto-detect

    def __post_init__(self) -> None:
        if self.colors is None:
            self.colors = getattr(self.output, "isatty", lambda: False)()

    def render(self, entry: LogEntry) -> None:
        c = _COLORS if self.colors else _NO_COLORS
        level = _LEVEL_COLORS.get(entry.level, "") if self.colors else ""
        parts = [f"{c['dim']}{entry.ts_human}{c['reset']}",
                 f"{level}[{entry.level}]{c['reset']}",
                 f"{c['bold']}{entry.event}{c['reset']}"]
        parts += [f"{c['cyan']}{k}{c['reset']}={_format_value(v)}"
                  for k, v in sorted(entry.context.items()) if k != "exc_info"]
        print(" ".join(parts), file=self.output)
        if "exc_info" in entry.context:
            print(f"{c['red']}{entry.context['exc_info']}{c['reset']}", file=self.output)


@dataclass(slots=True)
class JsonRenderer:
    """JSON Lines output for log aggregation."""

    output: TextIO = field(default_factory=lambda: sys.stdout)

    def render(self, entry: LogEntry) -> None:
        print(orjson.dumps({"timestamp": entry.ts_iso, "level": entry.level, "event": entry.event,
                            **entry.context}, default=str, option=orjson.OPT_NON_STR_KEYS).decode(),
              file=self.output)


@dataclass(slots=True)
class NoOpRenderer:
    """Silent renderer for testing."""

    def render(self, entry: LogEntry) -> None:
        pass


# ─────────────────────────────────────────────────────────────────────────────
# Global Configuration
# ─────────────────────────────────────────────────────────────────────────────

# Process-wide: server request tasks must see startup configuration
_state: dict[str, object] = {"renderer": None, "level": logging.INFO}


def _level_name(level: int) -> str:
    return logging.getLevelName(level).lower()


def configure_logging(
    format: str = "console",  # noqa: A002 - shadows builtin but matches stdlib
    level: str = "INFO",
    *,
    output: TextIO | None = None,
    colors: bool | None = None,
) -> LogRenderer:
    """Configure global structured logging. Format: "console" (human), "json" (machine), "none"."""
    _state["level"] = getattr(logging, level.upper(), logging.INFO)
    match format:
        case "console": renderer: LogRenderer = ConsoleRenderer(output=output or sys.stderr, colors=colors)
        case "json": renderer = JsonRenderer(output=output or sys.stdout)
        case "none": renderer = NoOpRenderer()
        case _: raise ValueError(f"Unknown format: {format}. Use 'console', 'json', or 'none'")
    _state["renderer"] = renderer
    return renderer


def get_logger(name: str | None = None, **initial_context: JsonValue) -> BoundLogger:
    """Get a structured logger. Name is added to context as 'logger'."""
    ctx = {**initial_context, **({"logger": name} if name else {})}
    return BoundLogger(context=ctx)


def _get_renderer() -> LogRenderer:
    if (renderer := _state["renderer"]) is None:
        _state["renderer"] = renderer = ConsoleRenderer()
    return renderer  # type: ignore[return-value]
