"""Tests for the server multiplexer and the client demultiplexer, wired back to back."""

from __future__ import annotations

import asyncio
import gc
import itertools
import random
from collections.abc import AsyncIterable, AsyncIterator, Awaitable

import pytest

from streamrpc.client import Demultiplexer, RemoteComposite, RemoteSequence
from streamrpc.foundation.core import ResultShape, classify
from streamrpc.foundation.errors import NotFound, ProtocolError, StreamInterrupted, UpstreamError
from streamrpc.io.streaming import (
    Frame,
    FrameKind,
    begin_frame,
    chunk_frame,
    decode_frames,
    encode_frame,
    shape_frame,
    value_frame,
)
from streamrpc.runtime import Multiplexer, multiplex


async def tokens(*items: object, delay: float = 0.0) -> AsyncIterator[object]:
    for item in items:
        await asyncio.sleep(delay)
        yield item


async def failing(*items: object, error: Exception) -> AsyncIterator[object]:
    for item in items:
        yield item
    raise error


async def later(value: object, delay: float = 0.0) -> object:
    await asyncio.sleep(delay)
    return value


async def collect(frames: AsyncIterable[Frame]) -> list[Frame]:
    return [f async for f in frames]


async def rechunk(lines: AsyncIterator[bytes], size: int = 7) -> AsyncIterator[bytes]:
    """Re-slice an encoded body into fixed-size pieces, ignoring line boundaries."""
    buffer = b""
    async for line in lines:
        buffer += line
        while len(buffer) >= size:
            piece, buffer = buffer[:size], buffer[size:]
            yield piece
    if buffer:
        yield buffer


def wire(*results: ResultShape | Awaitable[ResultShape], queue_size: int = 16) -> Demultiplexer:
    """Multiplex results as calls 0..n-1 and demultiplex them from the encoded bytes."""
    mux = Multiplexer(queue_size=queue_size, encoder=encode_frame)
    for call_id, result in enumerate(results):
        mux.add(call_id, result, procedure=f"proc{call_id}")
    demux = Demultiplexer(decode_frames(rechunk(aiter(mux))))
    for call_id in range(len(results)):
        demux.expect(call_id, f"proc{call_id}")
    demux.start()
    return demux


# ─────────────────────────────────────────────────────────────────────────────
# Multiplexer
# ─────────────────────────────────────────────────────────────────────────────


class TestMultiplexer:
    @pytest.mark.asyncio
    async def test_frame_order_for_single_sequence(self) -> None:
        frames = [f async for f in multiplex(classify(tokens("a", "b")), procedure="prompt")]
        assert [f.kind for f in frames] == [
            FrameKind.SHAPE, FrameKind.BEGIN, FrameKind.CHUNK, FrameKind.CHUNK, FrameKind.END,
        ]
        assert frames[0].data == "stream"
        assert [f.data for f in frames if f.kind is FrameKind.CHUNK] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_shape_precedes_everything_per_call(self) -> None:
        mux = Multiplexer()
        mux.add(0, classify({"n": tokens(1, 2), "v": later("x")}))
        mux.add(1, classify(tokens("y")))
        seen_shape: set[int] = set()
        async for frame in mux:
            if frame.kind is FrameKind.SHAPE:
                seen_shape.add(frame.id)
            else:
                assert frame.id in seen_shape

    @pytest.mark.asyncio
    async def test_rejected_call_is_root_error(self) -> None:
        async def dispatch() -> ResultShape:
            raise NotFound.create("nope", "No procedure named 'nope'")

        frames = [f async for f in multiplex(dispatch(), procedure="nope")]
        assert len(frames) == 1
        assert frames[0].kind is FrameKind.ERROR
        assert frames[0].path == ()
        assert frames[0].error.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_unencodable_value_fails_only_its_path(self) -> None:
        mux = Multiplexer(encoder=encode_frame).add(0, classify({"bad": later(object()), "good": tokens("ok")}))
        frames = [f async for f in decode_frames(aiter(mux))]
        errors = [f for f in frames if f.kind is FrameKind.ERROR]
        assert [f.path for f in errors] == [("bad",)]
        assert [f.data for f in frames if f.kind is FrameKind.CHUNK] == ["ok"]

    @pytest.mark.asyncio
    async def test_closing_stops_pulling_and_closes_source(self) -> None:
        pulled = 0
        closed = asyncio.Event()

        async def endless() -> AsyncIterator[int]:
            nonlocal pulled
            try:
                for n in range(100):
                    pulled += 1
                    yield n
                    await asyncio.sleep(0)
            finally:
                closed.set()

        frames = aiter(Multiplexer(queue_size=1).add(0, classify(endless())))
        async for frame in frames:
            if frame.kind is FrameKind.CHUNK:
                break
        await frames.aclose()  # type: ignore[attr-defined]
        await asyncio.wait_for(closed.wait(), timeout=1)
        assert pulled <= 3

    def test_add_after_iteration_rejected(self) -> None:
        mux = Multiplexer()
        aiter(mux)
        with pytest.raises(RuntimeError):
            mux.add(0, classify(1))
        with pytest.raises(RuntimeError):
            aiter(mux)

    @pytest.mark.asyncio
    async def test_blank_error_message_still_ends_stream(self) -> None:
        source = classify(failing("a", error=RuntimeError(" ")))
        frames = await asyncio.wait_for(collect(multiplex(source, procedure="prompt")), timeout=2)
        assert frames[-1].kind is FrameKind.ERROR
        assert frames[-1].error.message == "RuntimeError"
        assert frames[-1].error.code == "UPSTREAM_ERROR"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        OSError("could not connect to model provider"),
        ValueError("failed to decode model reply"),
        ValueError("validation of the reply failed"),
        RuntimeError(""),
    ])
    async def test_handler_failure_is_upstream_error(self, error: Exception) -> None:
        async def dispatch() -> ResultShape:
            raise error

        frames = await collect(multiplex(dispatch(), procedure="prompt"))
        assert [(f.kind, f.path) for f in frames] == [(FrameKind.ERROR, ())]
        assert frames[0].error.code == "UPSTREAM_ERROR"

    @pytest.mark.asyncio
    async def test_crashed_producer_still_ends_stream(self) -> None:
        def encoder(frame: Frame) -> Frame:
            if frame.kind is FrameKind.END:
                raise TypeError("cannot encode end")
            return frame

        mux = Multiplexer(encoder=encoder).add(0, classify({"s": tokens("a"), "v": 1}))
        frames = await asyncio.wait_for(collect(mux), timeout=2)
        assert [f.data for f in frames if f.kind is FrameKind.CHUNK] == ["a"]
        assert [f.data for f in frames if f.kind is FrameKind.VALUE] == [1]
        assert FrameKind.END not in {f.kind for f in frames}

    @pytest.mark.asyncio
    async def test_cancel_stops_one_path(self) -> None:
        pulled = 0
        closed = asyncio.Event()

        async def endless() -> AsyncIterator[int]:
            nonlocal pulled
            try:
                for n in itertools.count():
                    pulled += 1
                    yield n
                    await asyncio.sleep(0.01)
            finally:
                closed.set()

        mux = Multiplexer().add(0, classify({"ticks": endless(), "total": later(42, delay=0.2)}))
        assert not mux.cancel(0, ("ticks",))  # not started yet
        frames: list[Frame] = []
        pulled_at_cancel = -1
        async for frame in mux:
            frames.append(frame)
            if frame.kind is FrameKind.CHUNK and pulled_at_cancel < 0:
                assert mux.cancel(0, ("ticks",))
                pulled_at_cancel = pulled
        assert closed.is_set()
        assert pulled == pulled_at_cancel
        assert [f.data for f in frames if f.kind is FrameKind.CHUNK] == [0]
        assert [f.data for f in frames if f.kind is FrameKind.VALUE] == [42]
        assert FrameKind.END not in {f.kind for f in frames}
        assert not mux.cancel(0, ("ticks",))
        assert not mux.cancel(0, ("missing",))


# ─────────────────────────────────────────────────────────────────────────────
# Round trip
# ─────────────────────────────────────────────────────────────────────────────


class TestRoundTrip:
    @pytest.mark.asyncio
    async def test_nested_composite_depth_four(self) -> None:
        demux = wire(classify({
            "a": {"b": {"c": {"d": tokens("x", "y", "z")}}},
            "title": "Cake",
            "total": later(12.5),
        }))
        result = await demux.calls[0].result
        assert isinstance(result, RemoteComposite)
        assert list(result) == ["a", "title", "total"]
        leaf = result["a"]["b"]["c"]["d"]  # type: ignore[index]
        assert isinstance(leaf, RemoteSequence)
        assert await leaf.collect() == ["x", "y", "z"]
        assert await result.title == "Cake"
        assert await result["total"] == 12.5

    @pytest.mark.asyncio
    async def test_scalar_root_is_future(self) -> None:
        demux = wire(classify({"users": [{"name": "Ada"}]}))
        result = await demux.calls[0].result
        assert await result == {"users": [{"name": "Ada"}]}  # type: ignore[misc]

    @pytest.mark.asyncio
    async def test_interleaved_streams_keep_their_order(self) -> None:
        rng = random.Random(7)

        async def jittered(prefix: str) -> AsyncIterator[str]:
            for n in range(20):
                await asyncio.sleep(rng.random() / 500)
                yield f"{prefix}{n}"

        demux = wire(classify({"left": jittered("l"), "right": jittered("r")}), classify(jittered("c")))
        first = await demux.calls[0].result
        second = await demux.calls[1].result
        left, right, alone = await asyncio.gather(
            first["left"].collect(), first["right"].collect(), second.collect(),  # type: ignore[union-attr,index]
        )
        assert left == [f"l{n}" for n in range(20)]
        assert right == [f"r{n}" for n in range(20)]
        assert alone == [f"c{n}" for n in range(20)]

    @pytest.mark.asyncio
    async def test_failing_stream_does_not_affect_sibling(self) -> None:
        demux = wire(classify({
            "a": failing("partial", error=ValueError("model exploded")),
            "b": later(42, delay=0.01),
        }))
        result = await demux.calls[0].result
        received: list[object] = []
        with pytest.raises(UpstreamError, match="model exploded"):
            async for item in result["a"]:  # type: ignore[union-attr]
                received.append(item)
        assert received == ["partial"]
        assert await result["b"] == 42

    @pytest.mark.asyncio
    async def test_rejected_call_in_batch_leaves_others_intact(self) -> None:
        async def rejected() -> ResultShape:
            raise NotFound.create("proc0", "No procedure named 'proc0'")

        demux = wire(rejected(), classify(tokens("fine")))
        with pytest.raises(NotFound):
            await demux.calls[0].result
        second = await demux.calls[1].result
        assert await second.collect() == ["fine"]  # type: ignore[union-attr]


# ─────────────────────────────────────────────────────────────────────────────
# Demultiplexer failure modes
# ─────────────────────────────────────────────────────────────────────────────


async def raw(*frames: object) -> AsyncIterator[bytes]:
    for frame in frames:
        yield frame if isinstance(frame, bytes) else encode_frame(frame)  # type: ignore[arg-type]


class TestDemultiplexer:
    @pytest.mark.asyncio
    async def test_eof_with_open_path_is_interrupted(self) -> None:
        released = asyncio.Event()

        async def release() -> None:
            released.set()

        demux = Demultiplexer(
            decode_frames(raw(shape_frame(0, "stream"), begin_frame(0, ()), chunk_frame(0, (), "a"))),
            on_close=release,
        )
        call = demux.expect(0, "prompt")
        demux.start()
        sequence = await call.result
        assert await sequence.__anext__() == "a"  # type: ignore[union-attr]
        with pytest.raises(StreamInterrupted) as exc_info:
            await sequence.__anext__()  # type: ignore[union-attr]
        assert exc_info.value.error.procedure == "prompt"
        await asyncio.wait_for(released.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_unknown_call_id_is_protocol_error(self) -> None:
        demux = Demultiplexer(decode_frames(raw(shape_frame(5, "value"))))
        call = demux.expect(0, "users")
        demux.start()
        with pytest.raises(ProtocolError, match="unknown call id"):
            await call.result

    @pytest.mark.asyncio
    async def test_undeclared_path_fails_only_that_call(self) -> None:
        demux = Demultiplexer(decode_frames(raw(
            shape_frame(0, {"a": "stream"}),
            shape_frame(1, "stream"),
            begin_frame(0, ("zzz",)),
            begin_frame(1, ()),
            chunk_frame(1, (), "ok"),
            chunk_frame(1, (), "done"),
            b'{"id": 1, "kind": "end", "path": []}\n',
        )))
        first, second = demux.expect(0, "a"), demux.expect(1, "b")
        demux.start()
        broken = await first.result
        with pytest.raises(ProtocolError, match="undeclared path"):
            await broken["a"].collect()  # type: ignore[index,union-attr]
        assert await (await second.result).collect() == ["ok", "done"]  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_early_close_releases_response(self) -> None:
        released = asyncio.Event()

        async def release() -> None:
            released.set()

        async def body() -> AsyncIterator[bytes]:
            yield encode_frame(shape_frame(0, "stream"))
            yield encode_frame(begin_frame(0, ()))
            for n in range(1000):
                yield encode_frame(chunk_frame(0, (), n))
                await asyncio.sleep(0.001)

        demux = Demultiplexer(decode_frames(body()), on_close=release)
        call = demux.expect(0, "prompt")
        demux.start()
        sequence = await call.result
        assert await sequence.__anext__() == 0  # type: ignore[union-attr]
        await sequence.aclose()  # type: ignore[union-attr]
        await asyncio.wait_for(released.wait(), timeout=1)
        assert demux.done

    @pytest.mark.asyncio
    async def test_closing_one_of_several_paths_asks_to_stop_it(self) -> None:
        abandoned: list[tuple[int, tuple[str, ...]]] = []
        gate = asyncio.Event()

        async def abandon(call_id: int, path: tuple[str, ...]) -> None:
            abandoned.append((call_id, path))
            gate.set()

        async def body() -> AsyncIterator[bytes]:
            yield encode_frame(shape_frame(0, {"ticks": "stream", "total": "value"}))
            yield encode_frame(begin_frame(0, ("ticks",)))
            yield encode_frame(chunk_frame(0, ("ticks",), 0))
            await gate.wait()
            yield encode_frame(value_frame(0, ("total",), 3))

        demux = Demultiplexer(decode_frames(body()), on_abandon=abandon)
        call = demux.expect(0, "dashboard")
        demux.start()
        result = await call.result
        assert await result["ticks"].__anext__() == 0  # type: ignore[index,union-attr]
        await result["ticks"].aclose()  # type: ignore[index,union-attr]
        assert abandoned == [(0, ("ticks",))]
        assert await result["total"] == 3  # type: ignore[index]

    @pytest.mark.asyncio
    async def test_closing_a_finished_sequence_asks_nothing(self) -> None:
        abandoned: list[tuple[int, tuple[str, ...]]] = []

        async def abandon(call_id: int, path: tuple[str, ...]) -> None:
            abandoned.append((call_id, path))

        mux = Multiplexer(encoder=encode_frame).add(0, classify({"a": tokens("x"), "b": later(1, delay=0.05)}))
        demux = Demultiplexer(decode_frames(aiter(mux)), on_abandon=abandon)
        call = demux.expect(0, "pair")
        demux.start()
        result = await call.result
        assert await result["a"].collect() == ["x"]  # type: ignore[index,union-attr]
        await result["a"].aclose()  # type: ignore[index,union-attr]
        assert await result["b"] == 1  # type: ignore[index]
        assert abandoned == []

    @pytest.mark.asyncio
    async def test_unawaited_failed_field_is_not_reported(self) -> None:
        async def broken() -> object:
            raise ValueError("no value")

        loop = asyncio.get_running_loop()
        reported: list[dict[str, object]] = []
        loop.set_exception_handler(lambda _, context: reported.append(context))
        try:
            demux = wire(classify({"bad": broken(), "good": later(1, delay=0.01)}))
            result = await demux.calls[0].result
            assert await result["good"] == 1  # type: ignore[index]
            for _ in range(100):
                if demux.done:
                    break
                await asyncio.sleep(0.01)
            del demux, result
            gc.collect()
        finally:
            loop.set_exception_handler(None)
        assert not [c for c in reported if "never retrieved" in str(c.get("message"))]
