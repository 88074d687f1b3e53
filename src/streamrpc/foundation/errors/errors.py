"""Standardized error handling for remote procedure calls.

Provides error codes, a structured error model that travels inside error
frames, and the exception hierarchy raised on both sides of the wire.
Uses Pydantic for validation and serialization.

Error kinds:
    BAD_INPUT          Input failed the procedure's contract (handler never ran)
    CONNECTION_ERROR   Server unreachable before any frame was produced
    STREAM_INTERRUPTED Connection lost while a sequence was still open
    PROTOCOL_ERROR     Malformed frame or unknown path (version mismatch)
    UPSTREAM_ERROR     The model capability (or handler) failed at a path
    NOT_FOUND          No procedure registered under the requested name
"""

from __future__ import annotations

import traceback
from enum import StrEnum
from typing import Annotated, ClassVar, Self

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ErrorCode(StrEnum):
    """Error codes carried by error frames and raised exceptions."""
    BAD_INPUT = "BAD_INPUT"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    STREAM_INTERRUPTED = "STREAM_INTERRUPTED"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    NOT_FOUND = "NOT_FOUND"
    UNKNOWN = "UNKNOWN"


# Pre-computed retryable codes set for O(1) lookup
_RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.CONNECTION_ERROR,
    ErrorCode.STREAM_INTERRUPTED,
    ErrorCode.UPSTREAM_ERROR,
})


def error_message(exc: BaseException) -> str:
    """Message text of an exception, or its type name when the text is blank."""
    return str(exc).strip() or type(exc).__name__


def classify_exception(exc: BaseException) -> ErrorCode:
    """Map an arbitrary exception to an error code.

    RpcExceptions keep their own code. Anything else raised inside a handler
    comes from the capability it wraps and is an UPSTREAM_ERROR; the other
    kinds describe transport and contract failures that only the framework
    itself detects.
    """
    if isinstance(exc, RpcException):
        return exc.error.code
    return ErrorCode.UPSTREAM_ERROR


class RpcError(BaseModel):
    """Structured error for a failed call or a failed path within a call.

    Attributes:
        procedure: Name of the procedure the error belongs to
        message: Human-readable error message
        code: Machine-readable error code
        recoverable: Whether the caller may retry
        details: Optional detailed information (e.g., stack trace)
    """

    model_config = ConfigDict(
        frozen=True,
        str_strip_whitespace=True,
        validate_default=True,
        json_schema_extra={
            "title": "RPC Error",
            "examples": [{
                "procedure": "chat",
                "message": "Input should be a valid list",
                "code": "BAD_INPUT",
                "recoverable": False,
            }],
        },
    )

    procedure: str = Field(default="", description="Procedure that produced the error")
    message: Annotated[str, Field(min_length=1, description="Human-readable error message")]
    code: ErrorCode = Field(default=ErrorCode.UNKNOWN, description="Machine-readable error kind")
    recoverable: bool = Field(default=True, description="Whether retry might succeed")
    details: str | None = Field(default=None, description="Optional detail (stack trace, raw text)")

    @field_validator("message", mode="before")
    @classmethod
    def _ensure_message(cls, v: str | Exception) -> str:
        """Accept Exception objects and extract message."""
        if isinstance(v, Exception):
            return error_message(v)
        return v

    @computed_field
    @property
    def is_retryable(self) -> bool:
        return self.code in _RETRYABLE_CODES

    @classmethod
    def create(
        cls,
        procedure: str,
        message: str,
        code: ErrorCode = ErrorCode.UNKNOWN,
        *,
        recoverable: bool | None = None,
        details: str | None = None,
    ) -> Self:
        """Factory method; recoverable defaults to the code's retryability."""
        return cls(
            procedure=procedure,
            message=message,
            code=code,
            recoverable=code in _RETRYABLE_CODES if recoverable is None else recoverable,
            details=details,
        )

    @classmethod
    def from_exception(
        cls,
        procedure: str,
        exc: BaseException,
        context: str = "",
        *,
        include_trace: bool = False,
    ) -> Self:
        """Create from exception with auto-classification."""
        if isinstance(exc, RpcException):
            return exc.error
        message = error_message(exc)
        code = classify_exception(exc)
        return cls.create(
            procedure,
            f"{context}: {message}" if context else message,
            code,
            details="".join(traceback.format_exception(exc)) if include_trace else None,
        )

    def render(self) -> str:
        """One-line form used by terminal output and logs."""
        where = f" ({self.procedure})" if self.procedure else ""
        return f"{self.code}{where}: {self.message}"

    __str__ = render


class RpcException(Exception):
    """Exception wrapping an RpcError for raising."""

    __slots__ = ("error",)

    code: ClassVar[ErrorCode] = ErrorCode.UNKNOWN

    def __init__(self, error: RpcError | str, procedure: str = "") -> None:
        if isinstance(error, str):
            error = RpcError.create(procedure, error, self.code)
        self.error = error
        super().__init__(error.message)

    @classmethod
    def create(cls, procedure: str, message: str, *, details: str | None = None) -> Self:
        return cls(RpcError.create(procedure, message, cls.code, details=details))

    @property
    def retryable(self) -> bool:
        return self.error.is_retryable


class BadInput(RpcException):
    """Input failed the procedure's input contract."""
    code = ErrorCode.BAD_INPUT


class RpcConnectionError(RpcException):
    """Transport unreachable before any frame arrived."""
    code = ErrorCode.CONNECTION_ERROR


class StreamInterrupted(RpcException):
    """Connection lost while a sequence or deferred value was still open."""
    code = ErrorCode.STREAM_INTERRUPTED


class ProtocolError(RpcException):
    """Malformed frame or a frame referencing an unknown path or call."""
    code = ErrorCode.PROTOCOL_ERROR


class UpstreamError(RpcException):
    """The model capability or handler failed while producing a path."""
    code = ErrorCode.UPSTREAM_ERROR


class NotFound(RpcException):
    """No procedure registered under the requested name."""
    code = ErrorCode.NOT_FOUND


_EXCEPTIONS: dict[ErrorCode, type[RpcException]] = {
    cls.code: cls
    for cls in (BadInput, RpcConnectionError, StreamInterrupted, ProtocolError, UpstreamError, NotFound)
}


def exception_for(error: RpcError) -> RpcException:
    """Rebuild the exception class matching a decoded error's code."""
    return _EXCEPTIONS.get(error.code, RpcException)(error)
