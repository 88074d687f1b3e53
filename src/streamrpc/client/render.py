"""Terminal rendering of streamed results.

Two modes, one per kind of stream:

    narration   text fragments appended as they arrive
    snapshot    each snapshot replaces the previous one in place: the
                lines the previous snapshot occupied are erased (cursor up,
                clear down) and the new one is written

Redraw is idempotent: rendering S1 then S2 leaves the same screen as
rendering S2 alone.

Example:
    >>> renderer = TerminalRenderer()
    >>> result = await client.recipeStream.query(prompt="Chocolate cake")
    >>> await render_composite(result, renderer)
"""

from __future__ import annotations

import asyncio
import itertools
import sys
from collections.abc import AsyncIterable, Mapping
from dataclasses import dataclass, field
from typing import Any, TextIO

import orjson

from streamrpc.foundation.config import get_settings
from streamrpc.foundation.errors import RpcException

# ANSI control sequences
CURSOR_UP = "\x1b[{}A"
CLEAR_DOWN = "\x1b[J"
SHOW_CURSOR = "\x1b[?25h"


def format_snapshot(obj: object) -> str:
    """Indented JSON rendering of a snapshot."""
    return orjson.dumps(obj, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS, default=str).decode()


@dataclass(slots=True)
class TerminalRenderer:
    """Writes narration and snapshots to a terminal stream."""

    output: TextIO = field(default_factory=lambda: sys.stdout)
    _lines: int = 0
    _column: int = 0

    def _write(self, text: str) -> None:
        self.output.write(text)
        self.output.flush()
        if text:
            tail = text.rsplit("\n", 1)
            self._column = len(tail[-1]) if len(tail) > 1 else self._column + len(text)

    def narration(self, text: str) -> None:
        """Append a narration fragment."""
        self._lines = 0
        self._write(text)

    def newline(self) -> None:
        """Move to the start of a fresh line unless already there."""
        if self._column:
            self._write("\n")

    def snapshot(self, obj: object) -> None:
        """Replace the previously rendered snapshot with ``obj``."""
        if self._lines:
            self._write(CURSOR_UP.format(self._lines) + "\r" + CLEAR_DOWN)
        else:
            self.newline()
        text = format_snapshot(obj)
        self._write(text + "\n")
        self._lines = text.count("\n") + 1

    def error(self, exc: BaseException) -> None:
        """Report a failure below whatever was rendered last."""
        self.newline()
        if isinstance(exc, RpcException):
            self._write(f"{exc.error.code}: {exc.error.message}\n")
        else:
            self._write(f"{type(exc).__name__}: {exc}\n")
        self._lines = 0


class Spinner:
    """Loading indicator, drawn in place until the first chunk arrives."""

    FRAMES = ("◜", "◠", "◝", "◞", "◡", "◟")

    __slots__ = ("output", "interval", "_task", "_drawn")

    def __init__(self, output: TextIO | None = None, *, interval: float = 0.05) -> None:
        self.output = output or sys.stdout
        self.interval = interval
        self._task: asyncio.Task[None] | None = None
        self._drawn = False

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._spin())

    async def _spin(self) -> None:
        for frame in itertools.cycle(self.FRAMES):
            self.output.write(("\b" if self._drawn else "") + frame)
            self.output.flush()
            self._drawn = True
            await asyncio.sleep(self.interval)

    def stop(self) -> None:
        """Erase the indicator. Safe to call repeatedly."""
        if self._task is None:
            return
        self._task.cancel()
        self._task = None
        if self._drawn:
            self.output.write("\b \b")
            self._drawn = False
        self.output.write(SHOW_CURSOR)
        self.output.flush()

    async def __aenter__(self) -> Spinner:
        self.start()
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.stop()


# ═════════════════════════════════════════════════════════════════════════════
# Result Rendering
# ═════════════════════════════════════════════════════════════════════════════


async def render_text(stream: AsyncIterable[str], renderer: TerminalRenderer,
                      spinner: Spinner | None = None) -> str:
    """Append a text stream; returns the full text."""
    parts: list[str] = []
    try:
        async for text in stream:
            if spinner is not None:
                spinner.stop()
            renderer.narration(text)
            parts.append(text)
    except Exception as e:
        renderer.error(e)
        raise
    finally:
        if spinner is not None:
            spinner.stop()
    return "".join(parts)


async def render_snapshots(stream: AsyncIterable[Any], renderer: TerminalRenderer,
                           spinner: Spinner | None = None) -> Any:
    """Redraw each snapshot in place; returns the last one."""
    last: Any = None
    try:
        async for snapshot in stream:
            if spinner is not None:
                spinner.stop()
            renderer.snapshot(snapshot)
            last = snapshot
    except Exception as e:
        renderer.error(e)
        raise
    finally:
        if spinner is not None:
            spinner.stop()
    return last


async def render_composite(
    result: Mapping[str, Any],
    renderer: TerminalRenderer,
    spinner: Spinner | None = None,
    *,
    narration: str = "narration",
    payload: str = "payload",
) -> Any:
    """Render a composite: narration appended, then payload redrawn.

    The payload field may be a snapshot stream or a single awaitable
    value. Returns the final payload.
    """
    await render_text(result[narration], renderer, spinner)
    target = result[payload]
    if isinstance(target, AsyncIterable):
        return await render_snapshots(target, renderer)
    try:
        value = await target
    except Exception as e:
        renderer.error(e)
        raise
    renderer.snapshot(value)
    return value


async def render_narrated(
    sequence: AsyncIterable[Any],
    renderer: TerminalRenderer,
    spinner: Spinner | None = None,
    *,
    separator: str | None = None,
) -> Any:
    """Render a composed sequence, switching from append to redraw at the separator.

    Returns the final snapshot.
    """
    separator = get_settings().composer.separator if separator is None else separator
    in_payload = False
    last: Any = None
    try:
        async for item in sequence:
            if spinner is not None:
                spinner.stop()
            if not in_payload and item == separator:
                in_payload = True
            elif in_payload:
                renderer.snapshot(item)
                last = item
            else:
                renderer.narration(item)
    except Exception as e:
        renderer.error(e)
        raise
    finally:
        if spinner is not None:
            spinner.stop()
    return last
