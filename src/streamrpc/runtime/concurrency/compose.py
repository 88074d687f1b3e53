"""Narration + payload composition.

Merges a free-text narration sequence with a structured snapshot sequence
into one ordered sequence. Both sources are pumped concurrently from the
start (so the slower source is never waiting on the faster one), but the
output is strictly ordered:

    narration[0], ..., narration[n], SEPARATOR, payload[0], ..., payload[m]

with a fixed pause after every payload element so a terminal reader sees
the object fill in progressively.

Example:
    >>> async for item in compose_narrated(describe(), build_recipe(), pace=0.0):
    ...     if item == SEPARATOR:
    ...         switch_to_redraw()
    ...     else:
    ...         render(item)
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Generic, TypeVar

from streamrpc.foundation.config import get_settings

T = TypeVar("T")
U = TypeVar("U")

# ASCII record separator; never produced by narration text or JSON snapshots
SEPARATOR = "\x1e"

__all__ = ["SEPARATOR", "NarratedParts", "compose_narrated", "split_narrated"]


@dataclass(slots=True, frozen=True)
class _Failed:
    error: BaseException


_END = object()


async def _pump(source: AsyncIterable[T], own: asyncio.Queue[object], other: asyncio.Queue[object]) -> None:
    """Copy a source into its queue. A failure is posted to both queues."""
    iterator = aiter(source)
    try:
        async for item in iterator:
            await own.put(item)
    except Exception as e:
        failure = _Failed(e)
        await own.put(failure)
        await other.put(failure)
    else:
        await own.put(_END)
    finally:
        if (close := getattr(iterator, "aclose", None)) is not None:
            await close()


async def _drain(queue: asyncio.Queue[object]) -> AsyncIterator[object]:
    while (item := await queue.get()) is not _END:
        if isinstance(item, _Failed):
            raise item.error
        yield item


async def compose_narrated(
    narration: AsyncIterable[T],
    payload: AsyncIterable[U],
    *,
    separator: str | None = None,
    pace: float | None = None,
) -> AsyncIterator[T | U | str]:
    """Drain narration, emit the separator, then drain payload with pacing.

    Both queues are unbounded: a payload that finishes long before the
    narration is held in memory until the narration ends.

    Args:
        narration: Free-text fragments, emitted first and in order
        payload: Snapshots, emitted after the separator and in order
        separator: Marker between the two runs (default: composer settings)
        pace: Seconds to pause after each payload element (default: composer settings)

    Raises:
        Exception: Whatever either source raised; the other pump is cancelled
    """
    settings = get_settings().composer
    separator = settings.separator if separator is None else separator
    pace = settings.pace if pace is None else pace

    narration_q: asyncio.Queue[object] = asyncio.Queue()
    payload_q: asyncio.Queue[object] = asyncio.Queue()
    tasks = [
        asyncio.create_task(_pump(narration, narration_q, payload_q)),
        asyncio.create_task(_pump(payload, payload_q, narration_q)),
    ]
    try:
        async for item in _drain(narration_q):
            yield item  # type: ignore[misc]
        yield separator
        async for item in _drain(payload_q):
            yield item  # type: ignore[misc]
            await asyncio.sleep(pace)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass(slots=True)
class NarratedParts(Generic[T, U]):
    """The two runs of a composed sequence, split at the separator."""
    narration: list[T]
    payload: list[U]


async def split_narrated(
    composed: AsyncIterable[object],
    *,
    separator: str | None = None,
) -> NarratedParts[object, object]:
    """Collect a composed sequence back into its narration and payload runs."""
    separator = get_settings().composer.separator if separator is None else separator
    parts: NarratedParts[object, object] = NarratedParts([], [])
    target = parts.narration
    async for item in composed:
        if target is parts.narration and item == separator:
            target = parts.payload
            continue
        target.append(item)
    return parts
