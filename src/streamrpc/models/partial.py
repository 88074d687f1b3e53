"""Partial JSON snapshots from streamed model text.

A model asked for a JSON object emits it a few characters at a time. Each
time the accumulated text parses (leniently, incomplete tail dropped) into
an object different from the previous one, a new snapshot is emitted.
Snapshots are full objects, never diffs, and grow monotonically.

Example:
    >>> async for snap in snapshots(tokens):
    ...     print(snap)
    {'name': 'Chocolate cake'}
    {'name': 'Chocolate cake', 'ingredients': [{'name': 'flour'}]}
"""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator

from pydantic_core import from_json

from streamrpc.foundation.errors import JsonDict


def parse_partial(text: str) -> JsonDict | None:
    """Best-effort parse of a possibly incomplete JSON object.

    Text before the first ``{`` (preamble, code fences) is ignored, as is
    anything after the last ``}`` when the object is already closed.
    """
    start = text.find("{")
    if start < 0:
        return None
    body = text[start:]
    for candidate in (body, body[:body.rfind("}") + 1]):
        if not candidate:
            continue
        try:
            value = from_json(candidate, allow_partial=True)
        except ValueError:
            continue
        return value if isinstance(value, dict) else None
    return None


async def snapshots(tokens: AsyncIterable[str]) -> AsyncIterator[JsonDict]:
    """Yield a snapshot whenever the accumulated text reveals more of the object."""
    buffer = ""
    last: JsonDict | None = None
    iterator = aiter(tokens)
    try:
        async for token in iterator:
            buffer += token
            snapshot = parse_partial(buffer)
            if snapshot and snapshot != last:
                last = snapshot
                yield snapshot
    finally:
        if (close := getattr(iterator, "aclose", None)) is not None:
            await close()
