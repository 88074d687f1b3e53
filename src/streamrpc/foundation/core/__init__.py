"""Core data model: procedure calls and result shapes."""

from .call import BinaryPayload, ChatHistory, ChatMessage, InvocationKind, ProcedureCall, Role, UploadedFile
from .shape import (
    ROOT,
    Composite,
    LazySequence,
    Path,
    ResultShape,
    Scalar,
    ShapeKind,
    classify,
    composite,
    leaves,
    skeleton,
    skeleton_paths,
)

__all__ = [
    "BinaryPayload", "ChatHistory", "ChatMessage", "InvocationKind", "ProcedureCall", "Role", "UploadedFile",
    "ROOT", "Composite", "LazySequence", "Path", "ResultShape", "Scalar", "ShapeKind",
    "classify", "composite", "leaves", "skeleton", "skeleton_paths",
]
