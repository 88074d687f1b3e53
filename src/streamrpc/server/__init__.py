"""Server side: the Starlette app and the demo procedures."""

from __future__ import annotations

from .app import BatchEntry, CancelRequest, RPCServer, create_app, serve
from .procedures import (
    RIDDLE_SYSTEM,
    SENTIMENTS,
    ChatInput,
    ImageInput,
    Invoice,
    InvoiceInput,
    ModelInput,
    PromptInput,
    Recipe,
    SentimentInput,
    User,
    build_registry,
)

__all__ = [
    "BatchEntry", "CancelRequest", "RPCServer", "create_app", "serve",
    "RIDDLE_SYSTEM", "SENTIMENTS", "build_registry",
    "ModelInput", "PromptInput", "ChatInput", "SentimentInput", "ImageInput", "InvoiceInput",
    "Recipe", "User", "Invoice",
]
