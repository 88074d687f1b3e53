"""Client side: transport routing, channels, demultiplexing and rendering.

Example:
    >>> from streamrpc.client import RpcClient, TerminalRenderer, render_composite
    >>> async with RpcClient() as client:
    ...     result = await client.recipeStream.query(prompt="Chocolate cake")
    ...     await render_composite(result, TerminalRenderer())
"""

from __future__ import annotations

from .channels import BatchChannel, Channel, DirectChannel, HttpSession, encode_direct, multipart_parts, response_frames
from .chat import ChatSession
from .client import ProcedureProxy, RpcClient
from .demux import CallDemux, Demultiplexer, RemoteComposite, RemoteResult, RemoteSequence
from .render import (
    Spinner,
    TerminalRenderer,
    format_snapshot,
    render_composite,
    render_narrated,
    render_snapshots,
    render_text,
)
from .router import TransportRouter, is_json_serializable

__all__ = [
    # Transport
    "BatchChannel", "Channel", "DirectChannel", "HttpSession", "TransportRouter",
    "encode_direct", "is_json_serializable", "multipart_parts", "response_frames",
    # Results
    "CallDemux", "Demultiplexer", "RemoteComposite", "RemoteResult", "RemoteSequence",
    # Client
    "ChatSession", "ProcedureProxy", "RpcClient",
    # Rendering
    "Spinner", "TerminalRenderer", "format_snapshot",
    "render_composite", "render_narrated", "render_snapshots", "render_text",
]
