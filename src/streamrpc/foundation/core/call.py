"""Call-level data model: procedure calls, binary payloads and chat turns."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class InvocationKind(StrEnum):
    """Whether a procedure reads (query) or acts (mutation)."""
    QUERY = "query"
    MUTATION = "mutation"


@dataclass(frozen=True, slots=True)
class BinaryPayload:
    """Raw bytes plus their media type and sibling form fields.

    Never JSON-serializable; always travels as multipart/form-data over the
    direct channel. ``part_name`` names the file part, ``fields`` are sent as
    plain form fields next to it.

    Example:
        >>> BinaryPayload(pdf_bytes, "application/pdf", "invoice.pdf",
        ...               part_name="fileContent", fields={"model": "claude-3-5-sonnet-latest"})
    """
    data: bytes
    media_type: str = "application/octet-stream"
    filename: str = "upload.bin"
    part_name: str = "file"
    fields: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True, slots=True)
class ProcedureCall:
    """One outbound call. Immutable once sent."""
    procedure: str
    input: object = None
    kind: InvocationKind = InvocationKind.QUERY


class UploadedFile(BaseModel):
    """Server-side view of a multipart file part, passed to input contracts."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    filename: str
    media_type: str
    data: bytes = Field(repr=False)

    @property
    def size(self) -> int:
        return len(self.data)

    def text(self, encoding: str = "utf-8") -> str:
        return self.data.decode(encoding, errors="replace")


Role = Literal["user", "assistant", "system"]


class ChatMessage(BaseModel):
    """One turn of a caller-owned chat history."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    role: Role
    content: str


ChatHistory = list[ChatMessage]
