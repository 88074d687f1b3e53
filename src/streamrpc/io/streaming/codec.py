"""orjson NDJSON codec for frame transport.

One frame per line; each line is a complete JSON object. Lines are
self-delimiting, so any chunking of the HTTP body is fine and a partial
trailing line after a dropped connection is detectable.

Usage:
    >>> from streamrpc.io.streaming import encode_frame, decode_frame
    >>> line = encode_frame(chunk_frame(0, ("narration",), "Hel"))
    >>> decode_frame(line).data
    'Hel'
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import orjson
from pydantic import BaseModel

from streamrpc.foundation.errors import JsonValue, ProtocolError, StreamInterrupted

from .frame import Frame

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

CONTENT_TYPE = "application/x-ndjson"
# Names a streaming response so the client can cancel single paths of it
RESPONSE_HEADER = "x-streamrpc-response"
# Multipart field listing the form fields whose text is JSON
JSON_FIELDS = "jsonFields"

_OPTIONS = orjson.OPT_SERIALIZE_NUMPY | orjson.OPT_UTC_Z | orjson.OPT_NON_STR_KEYS


def _default(obj: object) -> JsonValue:
    """Fallback for types orjson does not handle natively."""
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json")
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def encode(data: object) -> bytes:
    """Encode to JSON bytes (orjson)."""
    return orjson.dumps(data, default=_default, option=_OPTIONS)


def decode(data: bytes | str) -> JsonValue:
    """Decode from JSON bytes/str (orjson)."""
    return orjson.loads(data)


def encode_frame(frame: Frame) -> bytes:
    """Encode a frame as one NDJSON line (newline included)."""
    return orjson.dumps(frame.to_dict(), default=_default, option=_OPTIONS | orjson.OPT_APPEND_NEWLINE)


def decode_frame(line: bytes | str) -> Frame:
    """Decode one NDJSON line.

    Raises:
        ProtocolError: If the line is not valid JSON or not a frame
    """
    try:
        return Frame.from_dict(orjson.loads(line))
    except orjson.JSONDecodeError as e:
        raise ProtocolError.create("", f"Undecodable frame: {e}") from e
    except ValueError as e:
        raise ProtocolError.create("", f"Malformed frame: {e}") from e


async def encode_frames(frames: AsyncIterator[Frame]) -> AsyncIterator[bytes]:
    """Transform a frame stream into NDJSON bytes for a streaming response."""
    async for frame in frames:
        yield encode_frame(frame)


async def split_lines(chunks: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
    """Split a raw body stream into complete lines.

    Raises:
        StreamInterrupted: If the body ends in the middle of a line
    """
    buffer = b""
    async for chunk in chunks:
        buffer += chunk
        # Frames are separated by newlines; keep the unterminated tail
        while (idx := buffer.find(b"\n")) >= 0:
            line, buffer = buffer[:idx], buffer[idx + 1:]
            if line.strip():
                yield line
    if buffer.strip():
        raise StreamInterrupted.create("", f"Response ended inside a frame ({len(buffer)} bytes unterminated)")


async def decode_frames(chunks: AsyncIterator[bytes]) -> AsyncIterator[Frame]:
    """Decode a raw NDJSON body into frames, skipping blank keep-alive lines."""
    async for line in split_lines(chunks):
        yield decode_frame(line)
