"""Frames: the unit written to the wire.

Every frame belongs to one call (``id``) and one location inside that call's
result tree (``path``). Lifecycle per call:

    shape               skeleton of the result, always first
    value               one per Scalar path
    begin/chunk*/end    one run per LazySequence path
    error               terminates a sequence or deferred value; with an
                        empty path and no preceding shape it fails the call

Chunks of one path keep production order; frames of different paths may
interleave arbitrarily.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from streamrpc.foundation.core import ROOT, Path
from streamrpc.foundation.errors import JsonDict, RpcError


class FrameKind(StrEnum):
    """Types of frames."""
    SHAPE = "shape"    # Result skeleton for a call
    VALUE = "value"    # Full value of a Scalar path
    BEGIN = "begin"    # Sequence opened
    CHUNK = "chunk"    # One sequence element
    END = "end"        # Sequence exhausted
    ERROR = "error"    # Path (or whole call) failed


@dataclass(slots=True, frozen=True)
class Frame:
    """A single wire frame.

    Attributes:
        id: Call index the frame belongs to
        kind: Frame type
        path: Field names locating the frame in the result tree
        data: Payload (skeleton, value, element, or serialized RpcError)
    """
    id: int
    kind: FrameKind
    path: Path = ROOT
    data: object = None

    def to_dict(self) -> JsonDict:
        """Serialize for JSON transport."""
        result: JsonDict = {"id": self.id, "kind": self.kind.value, "path": list(self.path)}
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, obj: object) -> Frame:
        """Parse a decoded wire object.

        Raises:
            ValueError: If the object is not a well-formed frame
        """
        if not isinstance(obj, dict):
            raise ValueError(f"Frame must be an object, got {type(obj).__name__}")
        call_id, kind, path = obj.get("id"), obj.get("kind"), obj.get("path", [])
        if not isinstance(call_id, int) or isinstance(call_id, bool):
            raise ValueError(f"Frame id must be an integer, got {call_id!r}")
        try:
            kind = FrameKind(kind)
        except ValueError:
            raise ValueError(f"Unknown frame kind {kind!r}") from None
        if not isinstance(path, list) or not all(isinstance(p, str) for p in path):
            raise ValueError(f"Frame path must be a list of strings, got {path!r}")
        return cls(id=call_id, kind=kind, path=tuple(path), data=obj.get("data"))

    @property
    def error(self) -> RpcError:
        """Decode the error payload of an ERROR frame."""
        return RpcError.model_validate(self.data)


# ─────────────────────────────────────────────────────────────────────────────
# Factory Functions
# ─────────────────────────────────────────────────────────────────────────────


def shape_frame(call_id: int, desc: object) -> Frame:
    return Frame(call_id, FrameKind.SHAPE, ROOT, desc)


def value_frame(call_id: int, path: Path, value: object) -> Frame:
    return Frame(call_id, FrameKind.VALUE, path, value)


def begin_frame(call_id: int, path: Path) -> Frame:
    return Frame(call_id, FrameKind.BEGIN, path)


def chunk_frame(call_id: int, path: Path, element: object) -> Frame:
    return Frame(call_id, FrameKind.CHUNK, path, element)


def end_frame(call_id: int, path: Path) -> Frame:
    return Frame(call_id, FrameKind.END, path)


def error_frame(call_id: int, path: Path, error: RpcError) -> Frame:
    return Frame(call_id, FrameKind.ERROR, path, error.model_dump(mode="json", exclude={"is_retryable"}))
