"""Named models available to procedures, built from settings."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Literal, get_args

from streamrpc.foundation.config import ModelSettings, get_settings
from streamrpc.runtime.observability import get_logger

from .anthropic import AnthropicModel
from .base import LanguageModel, ScriptedModel
from .openai_compat import OpenAICompatibleModel

log = get_logger("streamrpc.models")

ModelName = Literal["claude-3-5-haiku-latest", "claude-3-5-sonnet-latest", "llama-3.2-3b-instruct"]
MODEL_NAMES: tuple[str, ...] = get_args(ModelName)
DEFAULT_MODEL: ModelName = "claude-3-5-haiku-latest"


class ModelCatalog(Mapping[str, LanguageModel]):
    """Model name -> capability; closes every model together."""

    __slots__ = ("_models",)

    def __init__(self, models: Mapping[str, LanguageModel]) -> None:
        self._models = dict(models)

    def __getitem__(self, name: str) -> LanguageModel:
        return self._models[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    async def aclose(self) -> None:
        for model in self._models.values():
            await model.aclose()

    @classmethod
    def scripted(cls, **kwargs: object) -> ModelCatalog:
        """Every known name served by its own ScriptedModel."""
        return cls({name: ScriptedModel(name, **kwargs) for name in MODEL_NAMES})  # type: ignore[arg-type]


def _live(name: str, settings: ModelSettings) -> LanguageModel:
    if settings.provider == "anthropic" and name.startswith("claude"):
        if settings.anthropic_api_key is None:
            raise ValueError("ANTHROPIC_API_KEY is required for the anthropic provider")
        return AnthropicModel(
            name,
            api_key=settings.anthropic_api_key.get_secret_value(),
            base_url=settings.anthropic_url,
            max_tokens=settings.max_tokens,
            timeout=settings.timeout,
        )
    return OpenAICompatibleModel(
        name, base_url=settings.lmstudio_url, max_tokens=settings.max_tokens, timeout=settings.timeout,
    )


def build_models(settings: ModelSettings | None = None) -> ModelCatalog:
    """Catalog for the configured provider.

    scripted   deterministic canned replies (no network)
    anthropic  Claude names via the Messages API, others via the OpenAI-compatible URL
    openai     every name via the OpenAI-compatible URL
    """
    settings = settings or get_settings().model
    log.info("models configured", provider=settings.provider, default=settings.default)
    if settings.provider == "scripted":
        return ModelCatalog.scripted()
    return ModelCatalog({name: _live(name, settings) for name in MODEL_NAMES})
