"""StreamRPC - streaming remote procedure calls over a single HTTP response.

Procedures return plain values, async iterators, or mappings of both. The
server multiplexes every streamed part of every call in a request onto one
NDJSON body; the client demultiplexes it back into futures and async
iterators that look like the values the procedure returned.

Server:
    >>> from streamrpc import ProcedureRegistry, RPCServer
    >>> registry = ProcedureRegistry()
    >>>
    >>> @registry.procedure()
    ... async def countdown(params):
    ...     for n in range(3, 0, -1):
    ...         yield n
    >>>
    >>> RPCServer(registry).run(port=3000)

Client:
    >>> from streamrpc import RpcClient
    >>> async with RpcClient("http://127.0.0.1:3000") as client:
    ...     async for n in await client.countdown.query():
    ...         print(n)

Calls made in the same event-loop tick share one batch request; calls
carrying raw bytes (``BinaryPayload``) go out on their own as multipart.

Configuration is read from ``STREAMRPC_*`` environment variables, see
:mod:`streamrpc.foundation.config`.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .client import (
    ChatSession,
    RemoteComposite,
    RemoteSequence,
    RpcClient,
    Spinner,
    TerminalRenderer,
)
from .foundation.config import get_settings
from .foundation.core import BinaryPayload, ChatMessage, InvocationKind
from .foundation.errors import (
    BadInput,
    ErrorCode,
    NotFound,
    ProtocolError,
    RpcConnectionError,
    RpcError,
    RpcException,
    StreamInterrupted,
    UpstreamError,
)
from .foundation.registry import ProcedureRegistry
from .runtime import Multiplexer, compose_narrated, split_narrated
from .runtime.observability import configure_logging, get_logger
from .server import RPCServer, create_app, serve

__all__ = [
    "__version__",
    # Core
    "BinaryPayload", "ChatMessage", "InvocationKind", "ProcedureRegistry",
    # Errors
    "ErrorCode", "RpcError", "RpcException", "BadInput", "NotFound", "ProtocolError",
    "RpcConnectionError", "StreamInterrupted", "UpstreamError",
    # Server
    "Multiplexer", "RPCServer", "create_app", "serve",
    # Client
    "ChatSession", "RemoteComposite", "RemoteSequence", "RpcClient", "Spinner", "TerminalRenderer",
    # Composition
    "compose_narrated", "split_narrated",
    # Ambient
    "configure_logging", "get_logger", "get_settings",
]
