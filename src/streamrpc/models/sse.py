"""Server-sent events over httpx, shared by the HTTP model providers."""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx
import orjson

from streamrpc.foundation.errors import UpstreamError


@dataclass(frozen=True, slots=True)
class SSEEvent:
    event: str
    data: str

    def json(self) -> object:
        return orjson.loads(self.data)


def _parse_event(block: str) -> SSEEvent | None:
    event, data = "message", []
    for line in block.split("\n"):
        if line.startswith("event:"):
            event = line[6:].strip()
        elif line.startswith("data:"):
            data.append(line[5:].removeprefix(" "))
    return SSEEvent(event, "\n".join(data)) if data else None


async def iter_sse(response: httpx.Response) -> AsyncIterator[SSEEvent]:
    """Parse SSE events from a streaming response.

    SSE format: "event: name\\ndata: {...}\\n\\n" (the event line is optional)
    """
    buffer = ""
    async for chunk in response.aiter_text():
        # A CRLF may be split across two chunks
        buffer = (buffer + chunk).replace("\r\n", "\n")
        # Events are separated by blank lines
        while "\n\n" in buffer:
            block, buffer = buffer.split("\n\n", 1)
            if block.strip() and (event := _parse_event(block)) is not None:
                yield event
    if buffer.strip() and (event := _parse_event(buffer)) is not None:
        yield event


async def raise_for_status(response: httpx.Response, model: str) -> None:
    """Turn a non-2xx provider response into UpstreamError."""
    if response.is_success:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    raise UpstreamError.create(model, f"Provider returned HTTP {response.status_code}", details=body[:500])
