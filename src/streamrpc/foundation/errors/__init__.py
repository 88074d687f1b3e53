"""Unified error handling for streamrpc.

- ErrorCode: error kinds shared by server and client
- RpcError: structured error carried inside error frames
- RpcException and subclasses: raised on either side of the wire
"""

from .errors import (
    BadInput,
    ErrorCode,
    NotFound,
    ProtocolError,
    RpcConnectionError,
    RpcError,
    RpcException,
    StreamInterrupted,
    UpstreamError,
    classify_exception,
    error_message,
    exception_for,
)
from .types import JsonDict, JsonMapping, JsonPrimitive, JsonValue

__all__ = [
    "ErrorCode", "RpcError", "RpcException", "classify_exception", "error_message", "exception_for",
    "BadInput", "RpcConnectionError", "StreamInterrupted", "ProtocolError", "UpstreamError", "NotFound",
    "JsonDict", "JsonMapping", "JsonPrimitive", "JsonValue",
]
