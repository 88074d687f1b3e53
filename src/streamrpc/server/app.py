"""HTTP server exposing a procedure registry as a streaming RPC endpoint.

Endpoints:
    GET  /rpc                          -> list procedures with their input schemas
    POST /rpc                          -> batch: JSON array of {id, procedure, kind, input}
    POST /rpc/{procedure}              -> direct: JSON {kind, input} or multipart/form-data
    POST /rpc/responses/{token}/cancel -> stop one path of a live response: {id, path}

Both POST endpoints answer with one ``application/x-ndjson`` body carrying
the frames of every call in the request. Envelope errors (bad JSON, bad
batch entries) get a 400 with a JSON RpcError; everything that concerns a
single call (unknown procedure, bad input, failed stream) travels as error
frames inside the stream.

Every streaming response carries its token in the ``x-streamrpc-response``
header; the client uses it to cancel a sequence it stopped consuming while
the rest of the response keeps streaming.

Example:
    >>> server = RPCServer(build_registry(build_models()))
    >>> server.run(host="127.0.0.1", port=3000)
"""

from __future__ import annotations

import asyncio
import secrets
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import orjson
from pydantic import BaseModel, ConfigDict, NonNegativeInt, TypeAdapter, ValidationError
from starlette.applications import Starlette
from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from streamrpc.foundation.config import get_settings
from streamrpc.foundation.core import InvocationKind, ProcedureCall, ResultShape, UploadedFile
from streamrpc.foundation.errors import BadInput, ErrorCode, RpcError
from streamrpc.foundation.registry import format_validation_error
from streamrpc.io.streaming import CONTENT_TYPE, JSON_FIELDS, RESPONSE_HEADER, encode_frame
from streamrpc.runtime.multiplex import Multiplexer
from streamrpc.runtime.observability import get_logger

if TYPE_CHECKING:
    from streamrpc.foundation.registry import ProcedureRegistry
    from streamrpc.models import ModelCatalog

log = get_logger("streamrpc.server")


class BatchEntry(BaseModel):
    """One call of a batch request."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: NonNegativeInt
    procedure: str
    kind: InvocationKind = InvocationKind.QUERY
    input: Any = None


_BATCH = TypeAdapter(list[BatchEntry])


class CancelRequest(BaseModel):
    """One path of a live response the client no longer reads."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: NonNegativeInt
    path: list[str] = []


def _error_response(err: RpcError, status_code: int = 400) -> JSONResponse:
    return JSONResponse(err.model_dump(mode="json", exclude={"is_retryable"}), status_code=status_code)


def _bad_envelope(message: str, procedure: str = "") -> JSONResponse:
    log.info("envelope rejected", procedure=procedure, error=message)
    return _error_response(RpcError.create(procedure, message, ErrorCode.BAD_INPUT))


def _json_field_names(value: str) -> list[str]:
    try:
        names = orjson.loads(value)
    except orjson.JSONDecodeError as e:
        raise BadInput.create("", f"'{JSON_FIELDS}' is not valid JSON: {e}") from e
    if not isinstance(names, list) or not all(isinstance(name, str) for name in names):
        raise BadInput.create("", f"'{JSON_FIELDS}' must be a list of field names")
    return names


class RPCServer:
    """Streaming RPC server over Starlette.

    Args:
        registry: Procedures to expose
        models: Closed on shutdown when given
        queue_size: Frame queue bound per response (default: server settings)
    """

    __slots__ = ("_registry", "_models", "_queue_size", "_live", "_app")

    def __init__(
        self,
        registry: ProcedureRegistry,
        *,
        models: ModelCatalog | None = None,
        queue_size: int | None = None,
    ) -> None:
        self._registry = registry
        self._models = models
        self._queue_size = queue_size or get_settings().server.queue_size
        self._live: dict[str, Multiplexer] = {}
        self._app = self._create_app()

    @property
    def registry(self) -> ProcedureRegistry:
        return self._registry

    @property
    def app(self) -> Starlette:
        """ASGI app for embedding in larger applications."""
        return self._app

    @property
    def responses(self) -> Mapping[str, Multiplexer]:
        """Multiplexers of the responses still streaming, by token."""
        return self._live

    def _create_app(self) -> Starlette:
        @asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            log.info("server started", procedures=len(self._registry))
            try:
                yield
            finally:
                if self._models is not None:
                    await self._models.aclose()
                log.info("server stopped")

        routes = [
            Route("/rpc", self.list_procedures, methods=["GET"]),
            Route("/rpc", self.batch, methods=["POST"]),
            Route("/rpc/responses/{token}/cancel", self.cancel, methods=["POST"]),
            Route("/rpc/{procedure}", self.direct, methods=["POST"]),
        ]
        return Starlette(routes=routes, lifespan=lifespan)

    def run(self, host: str | None = None, port: int | None = None) -> None:
        """Start the HTTP server (blocking)."""
        import uvicorn

        settings = get_settings().server
        uvicorn.run(self._app, host=host or settings.host, port=port or settings.port, log_level="warning")

    # ─────────────────────────────────────────────────────────────────
    # Endpoints
    # ─────────────────────────────────────────────────────────────────

    async def list_procedures(self, request: Request) -> Response:
        return JSONResponse({"procedures": [proc.describe() for proc in self._registry]})

    async def batch(self, request: Request) -> Response:
        try:
            entries = _BATCH.validate_json(await request.body())
        except ValidationError as e:
            return _bad_envelope(f"Invalid batch: {format_validation_error(e)}")
        if not entries:
            return _bad_envelope("Empty batch")
        if len({entry.id for entry in entries}) != len(entries):
            return _bad_envelope("Duplicate call ids in batch")
        mux = Multiplexer(queue_size=self._queue_size, encoder=encode_frame)
        for entry in entries:
            call = ProcedureCall(entry.procedure, entry.input, entry.kind)
            mux.add(entry.id, self._dispatch(entry.id, call), procedure=entry.procedure)
        log.debug("batch received", calls=len(entries))
        return self._respond(mux)

    async def direct(self, request: Request) -> Response:
        procedure = request.path_params["procedure"]
        try:
            if request.headers.get("content-type", "").startswith("multipart/form-data"):
                kind, raw = await self._read_form(request)
            else:
                kind, raw = await self._read_json(request)
        except BadInput as e:
            return _bad_envelope(e.error.message, procedure)
        try:
            call = ProcedureCall(procedure, raw, InvocationKind(kind))
        except ValueError:
            return _bad_envelope(f"Unknown invocation kind {kind!r}", procedure)
        mux = Multiplexer(queue_size=self._queue_size, encoder=encode_frame)
        mux.add(0, self._dispatch(0, call), procedure=procedure)
        return self._respond(mux)

    async def cancel(self, request: Request) -> Response:
        try:
            target = CancelRequest.model_validate_json(await request.body())
        except ValidationError as e:
            return _bad_envelope(f"Invalid cancel request: {format_validation_error(e)}")
        mux = self._live.get(request.path_params["token"])
        # A response that already ended has nothing left to cancel
        cancelled = mux is not None and mux.cancel(target.id, tuple(target.path))
        log.debug("cancel requested", call_id=target.id, path="/".join(target.path), cancelled=cancelled)
        return JSONResponse({"cancelled": cancelled})

    # ─────────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────────

    async def _dispatch(self, call_id: int, call: ProcedureCall) -> ResultShape:
        log.bind_call(call.procedure, call_id).info("dispatch", kind=InvocationKind(call.kind).value)
        return await self._registry.dispatch(call)

    def _respond(self, mux: Multiplexer) -> StreamingResponse:
        token = secrets.token_urlsafe(12)
        self._live[token] = mux
        return StreamingResponse(self._stream(token, mux), media_type=CONTENT_TYPE, headers={RESPONSE_HEADER: token})

    async def _stream(self, token: str, mux: Multiplexer) -> AsyncIterator[bytes]:
        lines = aiter(mux)
        try:
            async for line in lines:
                yield line
        except asyncio.CancelledError:
            log.info("client disconnected")
            raise
        finally:
            await lines.aclose()  # type: ignore[attr-defined]
            self._live.pop(token, None)

    @staticmethod
    async def _read_json(request: Request) -> tuple[str, object]:
        body = await request.body()
        if not body.strip():
            return InvocationKind.QUERY.value, None
        try:
            envelope = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise BadInput.create("", f"Body is not valid JSON: {e}") from e
        if not isinstance(envelope, dict):
            raise BadInput.create("", "Body must be an object with 'kind' and 'input'")
        return envelope.get("kind", InvocationKind.QUERY.value), envelope.get("input")

    @staticmethod
    async def _read_form(request: Request) -> tuple[str, object]:
        """Form fields are text unless listed in the ``jsonFields`` field."""
        kind = InvocationKind.QUERY.value
        fields: dict[str, object] = {}
        encoded: list[str] = []
        async with request.form() as form:
            for key, value in form.multi_items():
                if isinstance(value, UploadFile):
                    fields[key] = UploadedFile(
                        filename=value.filename or key,
                        media_type=value.content_type or "application/octet-stream",
                        data=await value.read(),
                    )
                elif key == "kind":
                    kind = value
                elif key == JSON_FIELDS:
                    encoded = _json_field_names(value)
                else:
                    fields[key] = value
        for key in encoded:
            if isinstance(text := fields.get(key), str):
                try:
                    fields[key] = orjson.loads(text)
                except orjson.JSONDecodeError as e:
                    raise BadInput.create("", f"Field '{key}' is not valid JSON: {e}") from e
        return kind, fields


def create_app(
    registry: ProcedureRegistry | None = None,
    *,
    models: ModelCatalog | None = None,
    queue_size: int | None = None,
) -> Starlette:
    """Create the ASGI app without running it.

    With no registry, the demo procedures are built against ``models``
    (default: the catalog for the configured provider).
    """
    if registry is None:
        from streamrpc.models import build_models

        from .procedures import build_registry

        models = models or build_models()
        registry = build_registry(models)
    return RPCServer(registry, models=models, queue_size=queue_size).app


def serve(host: str | None = None, port: int | None = None) -> None:
    """Build the demo registry and serve it (blocking)."""
    from streamrpc.models import build_models

    from .procedures import build_registry

    models = build_models()
    RPCServer(build_registry(models), models=models).run(host=host, port=port)
