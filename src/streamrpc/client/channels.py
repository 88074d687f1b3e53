"""The two client channels and the HTTP session they share.

BatchChannel:  calls issued in the same event-loop tick become one
               ``POST /rpc`` with a JSON array body; one NDJSON response
               carries the frames of all of them, tagged by call id.
DirectChannel: one ``POST /rpc/{procedure}`` per call, JSON body or
               multipart/form-data when the input carries raw bytes.

Both return the root of the rebuilt result tree as soon as the call's
``shape`` frame arrives; streams keep filling in the background.

Example:
    >>> session = HttpSession("http://127.0.0.1:3000")
    >>> batch = BatchChannel(session, max_batch_size=32)
    >>> a, b = await asyncio.gather(
    ...     batch.invoke(ProcedureCall("users")),
    ...     batch.invoke(ProcedureCall("sentiment", {"text": "great"})),
    ... )  # one HTTP request
"""

from __future__ import annotations

import asyncio
import itertools
import weakref
from functools import partial
from collections.abc import AsyncIterator, Mapping
from typing import Any, ClassVar, Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import orjson
from pydantic import ValidationError

from streamrpc.foundation.core import BinaryPayload, Path, ProcedureCall
from streamrpc.foundation.errors import (
    BadInput,
    ProtocolError,
    RpcConnectionError,
    RpcError,
    RpcException,
    StreamInterrupted,
    error_message,
    exception_for,
)
from streamrpc.io.streaming import CONTENT_TYPE, JSON_FIELDS, RESPONSE_HEADER, Frame, decode_frames, encode
from streamrpc.runtime.observability import get_logger

from .demux import CallDemux, Demultiplexer, RemoteResult
from .router import is_json_serializable

log = get_logger("streamrpc.client")

_JSON_HEADERS = {"content-type": "application/json", "accept": CONTENT_TYPE}
_RESERVED_FIELDS = frozenset({"kind", JSON_FIELDS})


# ═════════════════════════════════════════════════════════════════════════════
# HTTP Session
# ═════════════════════════════════════════════════════════════════════════════


class HttpSession:
    """Lazily-created httpx client shared by both channels.

    Args:
        url: Server base URL
        timeout: httpx timeout in seconds (None = no timeout)
        transport: Custom httpx transport (e.g. ASGITransport in tests)
        headers: Extra headers sent with every request
        event_hooks: httpx event hooks
        client: Use an existing client instead (not closed by the session)
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: Mapping[str, str] | None = None,
        event_hooks: Mapping[str, list[Any]] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._headers = dict(headers or {})
        self._event_hooks = dict(event_hooks or {})
        self._client = client
        self._owns_client = client is None

    def get_client(self) -> httpx.AsyncClient:
        """Get or create the httpx async client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.url,
                timeout=self._timeout,
                transport=self._transport,
                headers=self._headers,
                event_hooks=self._event_hooks,
            )
        return self._client

    async def aclose(self) -> None:
        """Close the httpx client if the session created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def open_stream(self, path: str, *, procedure: str = "", **request: Any) -> httpx.Response:
        """POST and return the response with its body still unread.

        Raises:
            RpcConnectionError: Server unreachable (or timed out) before responding
            RpcException: Non-2xx response, rebuilt from its error body
        """
        client = self.get_client()
        try:
            response = await client.send(client.build_request("POST", path, **request), stream=True)
        except httpx.TransportError as e:
            log.debug("transport failed", path=path, procedure=procedure, error=str(e))
            raise RpcConnectionError.create(procedure, f"Cannot reach {self.url}: {e or type(e).__name__}") from e
        if not response.is_success:
            await response.aread()
            await response.aclose()
            raise _status_error(response, procedure)
        return response

    async def get_json(self, path: str) -> Any:
        """GET a JSON document."""
        try:
            response = await self.get_client().get(path)
        except httpx.TransportError as e:
            raise RpcConnectionError.create("", f"Cannot reach {self.url}: {e or type(e).__name__}") from e
        if not response.is_success:
            raise _status_error(response, "")
        return orjson.loads(response.content)

    async def cancel_path(self, token: str, call_id: int, path: Path) -> None:
        """Ask the server to stop producing one path of a live response.

        Delivery is best effort. If the request fails, frames for the path
        keep arriving and are dropped.
        """
        where = "/".join(path) or "<root>"
        try:
            response = await self.get_client().post(
                f"/rpc/responses/{token}/cancel",
                content=encode({"id": call_id, "path": list(path)}),
                headers={"content-type": "application/json"},
            )
        except httpx.TransportError as e:
            log.debug("cancel not delivered", call_id=call_id, path=where, error=error_message(e))
            return
        log.debug("cancel sent", call_id=call_id, path=where, status=response.status_code)


def _status_error(response: httpx.Response, procedure: str) -> RpcException:
    """Rebuild the exception from an error response body."""
    try:
        return exception_for(RpcError.model_validate(orjson.loads(response.content)))
    except (orjson.JSONDecodeError, ValidationError):
        text = response.text[:200] or response.reason_phrase
        return ProtocolError.create(procedure, f"HTTP {response.status_code}: {text}")


async def _body(response: httpx.Response, procedure: str) -> AsyncIterator[bytes]:
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    except httpx.TransportError as e:
        raise StreamInterrupted.create(procedure, f"Connection lost: {e or type(e).__name__}") from e


def response_frames(response: httpx.Response, procedure: str = "") -> AsyncIterator[Frame]:
    """Decoded frames of a streaming response; transport failures become StreamInterrupted."""
    return decode_frames(_body(response, procedure))


# ═════════════════════════════════════════════════════════════════════════════
# Channels
# ═════════════════════════════════════════════════════════════════════════════


@runtime_checkable
class Channel(Protocol):
    """Carries calls to the server and returns their rebuilt results."""

    name: ClassVar[str]

    async def invoke(self, call: ProcedureCall) -> RemoteResult: ...

    async def aclose(self) -> None: ...


class _Responses:
    """Live demultiplexers of a channel, closed together."""

    __slots__ = ("_session", "_live")

    def __init__(self, session: HttpSession) -> None:
        self._session = session
        self._live: weakref.WeakSet[Demultiplexer] = weakref.WeakSet()

    def open(self, response: httpx.Response, procedure: str = "") -> Demultiplexer:
        token = response.headers.get(RESPONSE_HEADER)
        demux = Demultiplexer(
            response_frames(response, procedure),
            on_close=response.aclose,
            on_abandon=partial(self._session.cancel_path, token) if token else None,
        )
        self._live.add(demux)
        return demux

    async def aclose(self) -> None:
        for demux in list(self._live):
            await demux.aclose()


class BatchChannel:
    """Coalesces calls of one event-loop tick into batch requests.

    Call ids come from a per-channel counter and are never reused.
    """

    name: ClassVar[str] = "batch"

    def __init__(self, session: HttpSession, *, max_batch_size: int = 32) -> None:
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be at least 1")
        self.session = session
        self.max_batch_size = max_batch_size
        self._ids = itertools.count()
        self._queue: list[tuple[ProcedureCall, CallDemux]] = []
        self._flush_scheduled = False
        self._tasks: set[asyncio.Task[None]] = set()
        self._responses = _Responses(session)

    async def invoke(self, call: ProcedureCall) -> RemoteResult:
        # No await before queueing: every call of this tick joins the same flush
        pending = CallDemux(next(self._ids), call.procedure)
        self._queue.append((call, pending))
        if not self._flush_scheduled:
            self._flush_scheduled = True
            asyncio.get_running_loop().call_soon(self._flush)
        return await pending.result

    def _flush(self) -> None:
        self._flush_scheduled = False
        queue, self._queue = self._queue, []
        for start in range(0, len(queue), self.max_batch_size):
            task = asyncio.create_task(self._send(queue[start:start + self.max_batch_size]))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _send(self, group: list[tuple[ProcedureCall, CallDemux]]) -> None:
        ids = [pending.call_id for _, pending in group]
        log.debug("batch flushed", calls=len(group), ids=ids)
        try:
            body = encode([
                {"id": pending.call_id, "procedure": call.procedure, "kind": call.kind.value, "input": call.input}
                for call, pending in group
            ])
            response = await self.session.open_stream("/rpc", content=body, headers=_JSON_HEADERS,
                                                      procedure=group[0][0].procedure)
        except TypeError as e:
            _fail_group(group, BadInput.create("", f"Input is not JSON-encodable: {e}"))
            return
        except RpcException as e:
            _fail_group(group, e)
            return
        except asyncio.CancelledError:
            _fail_group(group, StreamInterrupted.create("", "Client closed before the batch was answered"))
            raise
        demux = self._responses.open(response)
        for _, pending in group:
            demux.adopt(pending)
        demux.start()

    async def aclose(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._responses.aclose()


def _fail_group(group: list[tuple[ProcedureCall, CallDemux]], exc: RpcException) -> None:
    for call, pending in group:
        pending.fail(type(exc)(exc.error.model_copy(update={"procedure": call.procedure})))


class DirectChannel:
    """One request per call; raw bytes travel as multipart/form-data."""

    name: ClassVar[str] = "direct"

    def __init__(self, session: HttpSession) -> None:
        self.session = session
        self._responses = _Responses(session)

    async def invoke(self, call: ProcedureCall) -> RemoteResult:
        response = await self.session.open_stream(
            f"/rpc/{quote(call.procedure, safe='')}", procedure=call.procedure, **encode_direct(call),
        )
        demux = self._responses.open(response, call.procedure)
        pending = demux.expect(0, call.procedure)
        demux.start()
        return await pending.result

    async def aclose(self) -> None:
        await self._responses.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# Direct request bodies
# ─────────────────────────────────────────────────────────────────────────────


def encode_direct(call: ProcedureCall) -> dict[str, Any]:
    """httpx request arguments for a direct call.

    Raises:
        BadInput: Input mixes raw bytes into something other than a flat mapping
    """
    if is_json_serializable(call.input):
        return {"content": encode({"kind": call.kind.value, "input": call.input}), "headers": _JSON_HEADERS}
    files, data = multipart_parts(call.input, call.procedure)
    data["kind"] = call.kind.value
    return {"files": files, "data": data, "headers": {"accept": CONTENT_TYPE}}


def multipart_parts(value: object, procedure: str = "") -> tuple[dict[str, Any], dict[str, str]]:
    """Split an input into multipart file parts and plain form fields.

    A BinaryPayload at the root becomes one file part named ``part_name``
    plus its ``fields``; in a flat mapping each BinaryPayload or bytes value
    becomes a file part named by its key, strings are sent verbatim and
    other values as JSON text named in the ``jsonFields`` field.

    Raises:
        BadInput: Input is not a BinaryPayload or a flat mapping, or a field
            uses a reserved name
    """
    files: dict[str, Any] = {}
    data: dict[str, str] = {}
    encoded: list[str] = []
    if isinstance(value, BinaryPayload):
        files[value.part_name] = (value.filename, value.data, value.media_type)
        data.update(value.fields)
        return files, data
    if not isinstance(value, Mapping):
        raise BadInput.create(procedure, f"Cannot send {type(value).__name__} input as multipart")
    for key, item in value.items():
        if key in _RESERVED_FIELDS:
            raise BadInput.create(procedure, f"Field name '{key}' is reserved in multipart requests")
        match item:
            case BinaryPayload():
                files[str(key)] = (item.filename, item.data, item.media_type)
            case bytes() | bytearray() | memoryview():
                files[str(key)] = (str(key), bytes(item), "application/octet-stream")
            case str():
                data[str(key)] = item
            case _ if is_json_serializable(item):
                data[str(key)] = encode(item).decode()
                encoded.append(str(key))
            case _:
                raise BadInput.create(procedure, f"Field '{key}' cannot be sent as multipart")
    if encoded:
        data[JSON_FIELDS] = encode(encoded).decode()
    return files, data
