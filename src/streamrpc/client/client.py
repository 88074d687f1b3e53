"""RpcClient: the caller-facing entry point.

Calls are routed per input (batch for JSON, direct for raw bytes) and
return native Python objects:

    Scalar result      the value itself (awaited)
    LazySequence       RemoteSequence (async iterator)
    Composite          RemoteComposite of futures / sequences

Example:
    >>> async with RpcClient("http://127.0.0.1:3000") as client:
    ...     async for token in await client.prompt.query(prompt="Tell me a joke"):
    ...         print(token, end="")
    ...     label = await client.sentiment.query(text="I love this")
    ...     invoice = await client.extractInvoice.mutate(BinaryPayload(pdf, "application/pdf",
    ...                                                  "invoice.pdf", part_name="fileContent"))
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from streamrpc.foundation.config import get_settings
from streamrpc.foundation.core import InvocationKind, ProcedureCall

from .channels import BatchChannel, DirectChannel, HttpSession
from .router import TransportRouter

if TYPE_CHECKING:
    import httpx

    from streamrpc.foundation.errors import JsonDict


class ProcedureProxy:
    """Bound procedure name: ``client.chat.query(...)``.

    Keyword arguments become the input mapping; a single positional
    argument is sent as-is.
    """

    __slots__ = ("_client", "name")

    def __init__(self, client: RpcClient, name: str) -> None:
        self._client = client
        self.name = name

    def __repr__(self) -> str:
        return f"ProcedureProxy({self.name!r})"

    async def query(self, input: object = None, /, **fields: object) -> Any:  # noqa: A002
        return await self._client.call(self.name, _input(input, fields), kind=InvocationKind.QUERY)

    async def mutate(self, input: object = None, /, **fields: object) -> Any:  # noqa: A002
        return await self._client.call(self.name, _input(input, fields), kind=InvocationKind.MUTATION)


def _input(positional: object, fields: Mapping[str, object]) -> object:
    if positional is not None and fields:
        raise TypeError("Pass the input either positionally or as keywords, not both")
    return dict(fields) if fields else positional


class RpcClient:
    """Streaming RPC client.

    Args:
        url: Server base URL (default: client settings)
        timeout: httpx timeout in seconds; the only timeout applied
        max_batch_size: Max calls per batch request
        transport: Custom httpx transport
        headers: Extra request headers
        event_hooks: httpx event hooks
        http: Existing httpx.AsyncClient (caller keeps ownership)
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        timeout: float | None = None,
        max_batch_size: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        headers: Mapping[str, str] | None = None,
        event_hooks: Mapping[str, list[Any]] | None = None,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings().client
        self.session = HttpSession(
            url or settings.url,
            timeout=timeout if timeout is not None else settings.timeout,
            transport=transport,
            headers=headers,
            event_hooks=event_hooks,
            client=http,
        )
        self.router = TransportRouter(
            BatchChannel(self.session, max_batch_size=max_batch_size or settings.max_batch_size),
            DirectChannel(self.session),
        )

    def __getattr__(self, name: str) -> ProcedureProxy:
        if name.startswith("_"):
            raise AttributeError(name)
        return ProcedureProxy(self, name)

    async def call(self, procedure: str, input: object = None, *,  # noqa: A002
                   kind: InvocationKind | str = InvocationKind.QUERY) -> Any:
        """Invoke a procedure.

        Raises:
            BadInput, NotFound: Call rejected by the server
            RpcConnectionError: Server unreachable
            StreamInterrupted, ProtocolError, UpstreamError: Scalar result failed
        """
        call = ProcedureCall(procedure, input, InvocationKind(kind))
        remote = await self.router.route(call).invoke(call)
        if isinstance(remote, asyncio.Future):
            return await remote
        return remote

    async def query(self, procedure: str, input: object = None) -> Any:  # noqa: A002
        return await self.call(procedure, input, kind=InvocationKind.QUERY)

    async def mutate(self, procedure: str, input: object = None) -> Any:  # noqa: A002
        return await self.call(procedure, input, kind=InvocationKind.MUTATION)

    async def procedures(self) -> list[JsonDict]:
        """List the server's procedures with their input schemas."""
        return (await self.session.get_json("/rpc"))["procedures"]

    async def aclose(self) -> None:
        """Close every open response, then the HTTP client."""
        await self.router.batch.aclose()
        await self.router.direct.aclose()
        await self.session.aclose()

    async def __aenter__(self) -> RpcClient:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.aclose()
