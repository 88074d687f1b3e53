"""Tests for frames and the NDJSON codec."""

from __future__ import annotations

from collections.abc import AsyncIterator

import pytest

from streamrpc.foundation.errors import ErrorCode, ProtocolError, RpcError, StreamInterrupted
from streamrpc.io.streaming import (
    Frame,
    FrameKind,
    begin_frame,
    chunk_frame,
    decode_frame,
    decode_frames,
    encode_frame,
    end_frame,
    error_frame,
    shape_frame,
    split_lines,
    value_frame,
)


async def chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


# ─────────────────────────────────────────────────────────────────────────────
# Frames
# ─────────────────────────────────────────────────────────────────────────────


class TestFrame:
    def test_to_dict_omits_missing_data(self) -> None:
        assert begin_frame(3, ("narration",)).to_dict() == {"id": 3, "kind": "begin", "path": ["narration"]}

    def test_shape_frame_is_rooted(self) -> None:
        frame = shape_frame(0, {"a": "stream"})
        assert frame.kind is FrameKind.SHAPE
        assert frame.path == ()
        assert frame.data == {"a": "stream"}

    def test_error_frame_round_trips_error(self) -> None:
        err = RpcError.create("recipeStream", "model exploded", ErrorCode.UPSTREAM_ERROR)
        frame = error_frame(1, ("payload",), err)
        assert "is_retryable" not in frame.data  # type: ignore[operator]
        decoded = decode_frame(encode_frame(frame))
        assert decoded.error.code is ErrorCode.UPSTREAM_ERROR
        assert decoded.error.message == "model exploded"
        assert decoded.error.procedure == "recipeStream"

    @pytest.mark.parametrize("obj,match", [
        ([], "must be an object"),
        ({"id": "0", "kind": "chunk"}, "id must be an integer"),
        ({"id": True, "kind": "chunk"}, "id must be an integer"),
        ({"id": 0, "kind": "bogus"}, "Unknown frame kind"),
        ({"id": 0, "kind": "chunk", "path": "a/b"}, "path must be a list"),
    ])
    def test_from_dict_rejects_malformed(self, obj: object, match: str) -> None:
        with pytest.raises(ValueError, match=match):
            Frame.from_dict(obj)


# ─────────────────────────────────────────────────────────────────────────────
# Codec
# ─────────────────────────────────────────────────────────────────────────────


class TestCodec:
    def test_encode_frame_is_one_line(self) -> None:
        line = encode_frame(chunk_frame(0, ("a", "b"), "line\nbreak"))
        assert line.endswith(b"\n")
        assert line.count(b"\n") == 1

    def test_decode_frame_preserves_fields(self) -> None:
        frame = decode_frame(encode_frame(value_frame(7, ("payload",), {"name": "cake", "n": [1, 2]})))
        assert frame == Frame(7, FrameKind.VALUE, ("payload",), {"name": "cake", "n": [1, 2]})

    def test_decode_garbage_is_protocol_error(self) -> None:
        with pytest.raises(ProtocolError, match="Undecodable"):
            decode_frame(b"{not json")
        with pytest.raises(ProtocolError, match="Malformed"):
            decode_frame(b'{"id": 0, "kind": "nope"}')

    @pytest.mark.asyncio
    async def test_split_lines_across_arbitrary_chunking(self) -> None:
        body = b"".join(encode_frame(f) for f in (
            shape_frame(0, "stream"), begin_frame(0, ()), chunk_frame(0, (), "hi"), end_frame(0, ()),
        ))
        pieces = [body[i:i + 5] for i in range(0, len(body), 5)]
        frames = [f async for f in decode_frames(chunks(*pieces))]
        assert [f.kind for f in frames] == [FrameKind.SHAPE, FrameKind.BEGIN, FrameKind.CHUNK, FrameKind.END]
        assert frames[2].data == "hi"

    @pytest.mark.asyncio
    async def test_blank_lines_are_skipped(self) -> None:
        lines = [line async for line in split_lines(chunks(b"\n", b'{"a":1}\n\n', b"  \n"))]
        assert lines == [b'{"a":1}']

    @pytest.mark.asyncio
    async def test_unterminated_tail_is_interrupted(self) -> None:
        received: list[Frame] = []
        with pytest.raises(StreamInterrupted, match="inside a frame"):
            async for frame in decode_frames(chunks(encode_frame(begin_frame(0, ())), b'{"id": 0, "ki')):
                received.append(frame)
        assert [f.kind for f in received] == [FrameKind.BEGIN]
