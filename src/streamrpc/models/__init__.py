"""Model capabilities: the boundary procedures call for generated output.

Example:
    >>> from streamrpc.models import TEXT_STREAM, build_models
    >>> models = build_models()          # provider from STREAMRPC_MODEL_PROVIDER
    >>> tokens = models["claude-3-5-haiku-latest"].invoke("Hi", TEXT_STREAM)
"""

from __future__ import annotations

from .anthropic import AnthropicModel
from .base import (
    TEXT,
    TEXT_STREAM,
    Attachment,
    LanguageModel,
    ModelCapability,
    ModelRequest,
    OutputContract,
    OutputMode,
    ScriptedModel,
    choice,
    default_script,
    example_object,
    parse_choice,
    parse_object,
    structured,
    structured_stream,
)
from .catalog import DEFAULT_MODEL, MODEL_NAMES, ModelCatalog, ModelName, build_models
from .openai_compat import OpenAICompatibleModel
from .partial import parse_partial, snapshots
from .sse import SSEEvent, iter_sse

__all__ = [
    # Contracts
    "TEXT", "TEXT_STREAM", "OutputContract", "OutputMode", "choice", "structured", "structured_stream",
    # Capabilities
    "Attachment", "LanguageModel", "ModelCapability", "ModelRequest",
    "ScriptedModel", "AnthropicModel", "OpenAICompatibleModel",
    "default_script", "example_object", "parse_choice", "parse_object",
    # Catalog
    "DEFAULT_MODEL", "MODEL_NAMES", "ModelCatalog", "ModelName", "build_models",
    # Streaming helpers
    "parse_partial", "snapshots", "SSEEvent", "iter_sse",
]
