"""Server-side stream multiplexer.

Serializes one or more classified results into a single ordered frame
stream. Every LazySequence and every deferred Scalar runs as its own task
writing into one bounded queue that the response body drains, so all open
paths (across all calls of a batch) make progress together and their frames
interleave as each becomes ready.

Guarantees:
    - the ``shape`` frame of a call precedes every other frame of that call
    - per path: begin, chunks in production order, then exactly one end/error
    - a producer pulls its next element only after its previous frame was
      accepted by the queue (at most one element in hand per path)
    - a failing path yields an error frame at that path; siblings continue
    - closing the frame stream cancels every producer and closes its source

Frames are passed through ``encoder`` inside the producer, so a value that
cannot be encoded fails its own path instead of the whole response.

Example:
    >>> mux = Multiplexer(queue_size=16, encoder=encode_frame)
    >>> mux.add(0, registry.dispatch(call_a), procedure="chat")
    >>> mux.add(1, registry.dispatch(call_b), procedure="recipeStream")
    >>> async for line in mux:
    ...     await send(line)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any

from streamrpc.foundation.core import ROOT, LazySequence, Path, ResultShape, Scalar, leaves, skeleton
from streamrpc.foundation.errors import ErrorCode, RpcError, RpcException, error_message
from streamrpc.io.streaming import (
    Frame,
    begin_frame,
    chunk_frame,
    end_frame,
    error_frame,
    shape_frame,
    value_frame,
)
from streamrpc.runtime.observability import get_logger

log = get_logger("streamrpc.multiplex")

# Marker a producer enqueues after its last frame
_FINISHED = object()


def _path_error(procedure: str, exc: BaseException) -> RpcError:
    """Failures while producing a path surface as UpstreamError unless already typed."""
    if isinstance(exc, RpcException):
        return exc.error
    return RpcError.create(procedure, error_message(exc), ErrorCode.UPSTREAM_ERROR)


def _identity(frame: Frame) -> Frame:
    return frame


@dataclass(slots=True)
class _Source:
    call_id: int
    procedure: str
    result: ResultShape | Awaitable[ResultShape] = field(repr=False)


@dataclass
class Multiplexer:
    """Frames the results of one or more calls onto one ordered stream.

    Add every call before iterating; iterate exactly once. While iterating,
    :meth:`cancel` stops the producer of a single path.

    Attributes:
        queue_size: Bound of the shared frame queue (producer backpressure)
        encoder: Applied to every frame by its producer (default: none)
    """

    queue_size: int = 16
    encoder: Callable[[Frame], Any] = _identity
    _sources: list[_Source] = field(default_factory=list, repr=False)
    _started: bool = field(default=False, repr=False)
    _producers: dict[tuple[int, Path], asyncio.Task[None]] = field(default_factory=dict, repr=False)

    def add(
        self,
        call_id: int,
        result: ResultShape | Awaitable[ResultShape],
        *,
        procedure: str = "",
    ) -> Multiplexer:
        """Add one call's result (or the awaitable dispatch producing it).

        Returns:
            self for chaining
        """
        if self._started:
            raise RuntimeError("Cannot add calls after iteration started")
        self._sources.append(_Source(call_id, procedure, result))
        return self

    def cancel(self, call_id: int, path: Path) -> bool:
        """Stop producing one path; no further frames are sent for it.

        Returns:
            True if a running producer was cancelled
        """
        task = self._producers.get((call_id, tuple(path)))
        if task is None or task.done():
            return False
        log.debug("path cancelled", call_id=call_id, path="/".join(path))
        task.cancel()
        return True

    def __aiter__(self) -> AsyncIterator[Any]:
        if self._started:
            raise RuntimeError("Multiplexer can only be iterated once")
        self._started = True
        return self._run()

    async def _run(self) -> AsyncIterator[Any]:
        queue: asyncio.Queue[object] = asyncio.Queue(maxsize=self.queue_size)
        tasks: set[asyncio.Task[None]] = set()
        producers = self._producers
        encode = self.encoder
        pending = 0
        closing = False

        async def produce(call_id: int, procedure: str, work: Coroutine[Any, Any, None]) -> None:
            # Every producer ends with exactly one _FINISHED unless the whole stream is closing
            try:
                await work
            except asyncio.CancelledError:
                if closing:
                    raise
            except Exception as e:
                log.error("producer crashed", call_id=call_id, procedure=procedure, error=error_message(e))
            await queue.put(_FINISHED)

        def spawn(call_id: int, procedure: str, work: Coroutine[Any, Any, None], path: Path | None = None) -> None:
            nonlocal pending
            pending += 1
            task = asyncio.create_task(produce(call_id, procedure, work))
            tasks.add(task)
            task.add_done_callback(tasks.discard)
            if path is not None:
                producers[(call_id, path)] = task
                task.add_done_callback(lambda _: producers.pop((call_id, path), None))

        async def fail(call_id: int, procedure: str, path: Path, exc: Exception) -> None:
            err = _path_error(procedure, exc)
            log.warning("path failed", call_id=call_id, procedure=procedure, path="/".join(path),
                        code=err.code.value, error=err.message)
            await queue.put(encode(error_frame(call_id, path, err)))

        async def pump(call_id: int, procedure: str, path: Path, seq: LazySequence) -> None:
            try:
                await queue.put(encode(begin_frame(call_id, path)))
                try:
                    async for element in seq.source:
                        await queue.put(encode(chunk_frame(call_id, path, element)))
                except Exception as e:
                    await fail(call_id, procedure, path, e)
                else:
                    await queue.put(encode(end_frame(call_id, path)))
            finally:
                await seq.aclose()

        async def resolve(call_id: int, procedure: str, path: Path, scalar: Scalar) -> None:
            try:
                item = encode(value_frame(call_id, path, await scalar.resolve()))
            except Exception as e:
                await fail(call_id, procedure, path, e)
            else:
                await queue.put(item)

        async def start(source: _Source) -> None:
            call_id, procedure = source.call_id, source.procedure
            try:
                result = source.result
                shape = await result if inspect.isawaitable(result) else result
            except Exception as e:
                err = _path_error(procedure, e)
                log.info("call rejected", call_id=call_id, procedure=procedure, code=err.code.value,
                         error=err.message)
                await queue.put(encode(error_frame(call_id, ROOT, err)))
                return
            await queue.put(encode(shape_frame(call_id, skeleton(shape))))
            for path, leaf in leaves(shape):
                if isinstance(leaf, LazySequence):
                    spawn(call_id, procedure, pump(call_id, procedure, path, leaf), path)
                elif leaf.deferred:
                    spawn(call_id, procedure, resolve(call_id, procedure, path, leaf), path)
                else:
                    try:
                        item = encode(value_frame(call_id, path, leaf.value))
                    except Exception as e:
                        await fail(call_id, procedure, path, e)
                    else:
                        await queue.put(item)

        for source in self._sources:
            spawn(source.call_id, source.procedure, start(source))

        try:
            while pending:
                item = await queue.get()
                if item is _FINISHED:
                    pending -= 1
                    continue
                yield item
        finally:
            closing = True
            if tasks:
                log.debug("cancelling producers", count=len(tasks))
                for task in list(tasks):
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)


async def multiplex(
    result: ResultShape | Awaitable[ResultShape],
    *,
    call_id: int = 0,
    procedure: str = "",
    queue_size: int = 16,
) -> AsyncIterator[Frame]:
    """Frame a single call's result."""
    mux = Multiplexer(queue_size=queue_size).add(call_id, result, procedure=procedure)
    async for frame in mux:
        yield frame
