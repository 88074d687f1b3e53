"""Client-side stream demultiplexer.

Rebuilds the result tree of each call from the frames of one response:

    Scalar path        -> asyncio.Future resolved by its ``value`` frame
    LazySequence path  -> RemoteSequence fed by begin/chunk/end frames
    Composite          -> RemoteComposite of the above

A single reader task drains the response and routes frames by call id, so
chunks are buffered (unbounded) until the caller pulls them. Buffered
chunks are always delivered before a terminal error.

Example:
    >>> demux = Demultiplexer(decode_frames(body), on_close=response.aclose)
    >>> call = demux.expect(0, "recipeStream")
    >>> demux.start()
    >>> result = await call.result          # RemoteComposite
    >>> async for text in result["narration"]:
    ...     print(text, end="")
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Mapping
from typing import Any, TypeAlias, Union

from streamrpc.foundation.core import ROOT, Path, ShapeKind, skeleton_paths
from streamrpc.foundation.errors import ProtocolError, RpcException, StreamInterrupted, exception_for
from streamrpc.io.streaming import Frame, FrameKind
from streamrpc.runtime.observability import get_logger

log = get_logger("streamrpc.demux")

RemoteResult: TypeAlias = Union["asyncio.Future[Any]", "RemoteSequence", "RemoteComposite"]

_END = object()


def _set_exception(future: asyncio.Future[Any], exc: BaseException) -> None:
    future.set_exception(exc)
    # Marks it retrieved; the caller may never await this field
    future.exception()


class RemoteSequence:
    """Async iterator over the chunks of one remote LazySequence.

    Chunks arrive from the reader task into an unbounded buffer; iteration
    yields them in order and then either stops or raises the path's error.
    ``aclose()`` abandons the sequence: further frames for it are dropped,
    the server is asked to stop producing it, and once every consumer of the
    response is done the response closes.
    """

    __slots__ = ("path", "_buffer", "_begun", "_terminal", "_closed", "_on_close")

    def __init__(self, path: Path, on_close: Callable[[Path, bool], Awaitable[None]] | None = None) -> None:
        self.path = path
        self._buffer: asyncio.Queue[object] = asyncio.Queue()
        self._begun = False
        self._terminal = False
        self._closed = False
        self._on_close = on_close

    def __repr__(self) -> str:
        state = "closed" if self._closed else "done" if self._terminal else "open"
        return f"RemoteSequence({'/'.join(self.path) or '<root>'}, {state}, buffered={self._buffer.qsize()})"

    @property
    def done(self) -> bool:
        """Whether no further frames are expected or wanted."""
        return self._terminal or self._closed

    # ─────────────────────────────────────────────────────────────────
    # Reader side
    # ─────────────────────────────────────────────────────────────────

    def _begin(self) -> None:
        if self._begun:
            raise ProtocolError.create("", f"Duplicate begin at {self._where}")
        self._begun = True

    def _push(self, item: object) -> None:
        if not self._begun or self._terminal:
            raise ProtocolError.create("", f"Chunk outside begin/end at {self._where}")
        if not self._closed:
            self._buffer.put_nowait(item)

    def _finish(self) -> None:
        if not self._begun or self._terminal:
            raise ProtocolError.create("", f"End without open sequence at {self._where}")
        self._terminal = True
        self._buffer.put_nowait(_END)

    def _fail(self, exc: BaseException) -> None:
        if self._terminal:
            return
        self._terminal = True
        self._buffer.put_nowait(exc)

    @property
    def _where(self) -> str:
        return "/".join(self.path) or "<root>"

    # ─────────────────────────────────────────────────────────────────
    # Consumer side
    # ─────────────────────────────────────────────────────────────────

    def __aiter__(self) -> AsyncIterator[Any]:
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        item = await self._buffer.get()
        if item is _END:
            self._buffer.put_nowait(_END)  # keep exhausted iterators exhausted
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            self._buffer.put_nowait(item)
            raise item
        return item

    async def aclose(self) -> None:
        """Stop consuming; remaining and future chunks are discarded."""
        if self._closed:
            return
        self._closed = True
        abandoned = not self._terminal
        while not self._buffer.empty():
            self._buffer.get_nowait()
        if self._on_close is not None:
            await self._on_close(self.path, abandoned)

    async def collect(self) -> list[Any]:
        """Drain the remaining chunks into a list."""
        return [item async for item in self]


class RemoteComposite(Mapping[str, RemoteResult]):
    """Named fields of a remote composite result, in declaration order.

    Fields are futures (await them), RemoteSequences (iterate them), or
    nested RemoteComposites. Attribute access mirrors item access.
    """

    __slots__ = ("_fields",)

    def __init__(self, fields: dict[str, RemoteResult]) -> None:
        self._fields = fields

    def __getitem__(self, name: str) -> RemoteResult:
        return self._fields[name]

    def __getattr__(self, name: str) -> RemoteResult:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._fields[name]
        except KeyError:
            raise AttributeError(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._fields)

    def __len__(self) -> int:
        return len(self._fields)

    def __repr__(self) -> str:
        return f"RemoteComposite({list(self._fields)})"


# ═════════════════════════════════════════════════════════════════════════════
# Per-call state
# ═════════════════════════════════════════════════════════════════════════════


class CallDemux:
    """Frame state machine for one call.

    ``result`` resolves with the root of the rebuilt tree when the ``shape``
    frame arrives, or fails when the call is rejected before it.
    """

    def __init__(self, call_id: int, procedure: str = "",
                 on_consumer_close: Callable[[int, Path, bool], Awaitable[None]] | None = None) -> None:
        self.call_id = call_id
        self.procedure = procedure
        self.result: asyncio.Future[RemoteResult] = asyncio.get_running_loop().create_future()
        self._values: dict[Path, asyncio.Future[Any]] = {}
        self._sequences: dict[Path, RemoteSequence] = {}
        self._composites: set[Path] = set()
        self._on_consumer_close = on_consumer_close
        self._failed = False

    @property
    def done(self) -> bool:
        """Whether the call needs no more frames."""
        if self._failed or self.result.cancelled():
            return True
        if not self.result.done():
            return False
        return all(f.done() for f in self._values.values()) and all(s.done for s in self._sequences.values())

    def feed(self, frame: Frame) -> None:
        """Apply one frame.

        Raises:
            ProtocolError: Frame not valid for the declared shape
        """
        if self._failed or self.result.cancelled():
            return
        if frame.kind is FrameKind.SHAPE:
            self._declare(frame.data)
            return
        if not self.result.done():
            if frame.kind is FrameKind.ERROR and frame.path == ROOT:
                self._reject(exception_for(frame.error))
                return
            raise self._protocol(f"{frame.kind} frame before shape")
        path = frame.path
        if path in self._values:
            self._feed_value(self._values[path], frame)
        elif path in self._sequences:
            self._feed_sequence(self._sequences[path], frame)
        elif path in self._composites and frame.kind is FrameKind.ERROR:
            self._fail_under(path, exception_for(frame.error))
        else:
            raise self._protocol(f"{frame.kind} frame for undeclared path {'/'.join(path) or '<root>'}")

    def _declare(self, desc: object) -> None:
        if self.result.done():
            raise self._protocol("Duplicate shape frame")
        try:
            declared = list(skeleton_paths(desc))  # type: ignore[arg-type]
        except ValueError as e:
            raise self._protocol(str(e)) from e
        loop = asyncio.get_running_loop()
        # Parents are declared before their children
        nodes: dict[Path, RemoteResult] = {}
        for path, kind in declared:
            node: RemoteResult
            match kind:
                case ShapeKind.VALUE:
                    node = self._values[path] = loop.create_future()
                case ShapeKind.STREAM:
                    node = self._sequences[path] = RemoteSequence(path, self._sequence_closed)
                case ShapeKind.COMPOSITE:
                    node = RemoteComposite({})
                    self._composites.add(path)
            if path:
                nodes[path[:-1]]._fields[path[-1]] = node  # type: ignore[union-attr]
            nodes[path] = node
        self.result.set_result(nodes[ROOT])

    def _feed_value(self, future: asyncio.Future[Any], frame: Frame) -> None:
        if future.done():
            raise self._protocol(f"Second {frame.kind} frame for value at {'/'.join(frame.path)}")
        match frame.kind:
            case FrameKind.VALUE: future.set_result(frame.data)
            case FrameKind.ERROR: _set_exception(future, exception_for(frame.error))
            case _: raise self._protocol(f"{frame.kind} frame on value path {'/'.join(frame.path)}")

    def _feed_sequence(self, seq: RemoteSequence, frame: Frame) -> None:
        match frame.kind:
            case FrameKind.BEGIN: seq._begin()
            case FrameKind.CHUNK: seq._push(frame.data)
            case FrameKind.END: seq._finish()
            case FrameKind.ERROR: seq._fail(exception_for(frame.error))
            case _: raise self._protocol(f"{frame.kind} frame on sequence path {'/'.join(frame.path)}")

    def _fail_under(self, prefix: Path, exc: BaseException) -> None:
        for path, future in self._values.items():
            if path[:len(prefix)] == prefix and not future.done():
                _set_exception(future, exc)
        for path, seq in self._sequences.items():
            if path[:len(prefix)] == prefix:
                seq._fail(exc)

    def _reject(self, exc: BaseException) -> None:
        self._failed = True
        _set_exception(self.result, exc)

    async def _sequence_closed(self, path: Path, abandoned: bool) -> None:
        if self._on_consumer_close is not None:
            await self._on_consumer_close(self.call_id, path, abandoned)

    def _protocol(self, message: str) -> ProtocolError:
        return ProtocolError.create(self.procedure, message)

    def fail(self, exc: BaseException) -> None:
        """Terminate every open part of the call with ``exc``."""
        if self.result.cancelled():
            return
        if not self.result.done():
            self._reject(exc)
            return
        self._fail_under(ROOT, exc)
        self._failed = True


# ═════════════════════════════════════════════════════════════════════════════
# Response reader
# ═════════════════════════════════════════════════════════════════════════════


class Demultiplexer:
    """Routes the frames of one response to the calls it carries.

    Args:
        frames: Decoded frame stream of the response body
        on_close: Releases the response (called once, when the reader stops)
        on_abandon: Asks the server to stop one path whose consumer closed early
    """

    def __init__(
        self,
        frames: AsyncIterator[Frame],
        *,
        on_close: Callable[[], Awaitable[None]] | None = None,
        on_abandon: Callable[[int, Path], Awaitable[None]] | None = None,
    ) -> None:
        self._frames = frames
        self._on_close = on_close
        self._on_abandon = on_abandon
        self._calls: dict[int, CallDemux] = {}
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def calls(self) -> Mapping[int, CallDemux]:
        return self._calls

    @property
    def done(self) -> bool:
        return all(call.done for call in self._calls.values())

    def expect(self, call_id: int, procedure: str = "") -> CallDemux:
        """Register a call whose frames this response carries."""
        call = CallDemux(call_id, procedure, self._consumer_closed)
        self._calls[call_id] = call
        return call

    def adopt(self, call: CallDemux) -> CallDemux:
        """Register a call created before the response existed."""
        call._on_consumer_close = self._consumer_closed
        self._calls[call.call_id] = call
        return call

    def start(self) -> None:
        if self._reader is None:
            self._reader = asyncio.create_task(self._read())

    async def _read(self) -> None:
        try:
            async for frame in self._frames:
                call = self._calls.get(frame.id)
                if call is None:
                    raise ProtocolError.create("", f"Frame for unknown call id {frame.id}")
                try:
                    call.feed(frame)
                except ProtocolError as e:
                    log.warning("protocol error", call_id=call.call_id, procedure=call.procedure, error=str(e))
                    call.fail(e)
                if self.done:
                    break
            else:
                if not self.done:
                    self._fail_open(StreamInterrupted.create("", "Response ended with open paths"))
        except RpcException as e:
            log.debug("response failed", code=e.error.code.value, error=e.error.message)
            self._fail_open(e)
        finally:
            await self._release()

    def _fail_open(self, exc: RpcException) -> None:
        for call in self._calls.values():
            if not call.done:
                call.fail(type(exc)(exc.error.model_copy(update={"procedure": call.procedure})))

    async def _consumer_closed(self, call_id: int, path: Path, abandoned: bool) -> None:
        if self.done:
            await self.aclose()
        elif abandoned and self._on_abandon is not None and not self._closed:
            await self._on_abandon(call_id, path)

    async def _release(self) -> None:
        if self._closed:
            return
        self._closed = True
        if (close := getattr(self._frames, "aclose", None)) is not None:
            await close()
        if self._on_close is not None:
            await self._on_close()

    async def aclose(self) -> None:
        """Stop reading and release the response; open paths fail as interrupted."""
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self._fail_open(StreamInterrupted.create("", "Response closed by the client"))
        await self._release()
