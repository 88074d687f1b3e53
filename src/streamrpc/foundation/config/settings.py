"""Environment-based configuration using pydantic-settings.

Provides type-safe, validated configuration from environment variables
with sensible defaults. Supports .env files.

Example:
    >>> from streamrpc.foundation.config import get_settings
    >>> settings = get_settings()
    >>> settings.server.port
    3000
    >>> settings.composer.pace
    0.05

    # Or with environment variables:
    # STREAMRPC_SERVER_PORT=8080
    # STREAMRPC_MODEL_PROVIDER=anthropic
    # ANTHROPIC_API_KEY=sk-ant-...
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import AliasChoices, Field, NonNegativeFloat, PositiveFloat, PositiveInt, SecretStr, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="STREAMRPC_SERVER_", extra="ignore")

    host: str = "127.0.0.1"
    port: Annotated[int, Field(ge=1, le=65535, validation_alias=AliasChoices("STREAMRPC_SERVER_PORT", "PORT"))] = 3000
    queue_size: PositiveInt = Field(default=16, description="Bounded frame queue between producers and the response")


class ClientSettings(BaseSettings):
    """Client transport defaults."""

    model_config = SettingsConfigDict(env_prefix="STREAMRPC_CLIENT_", extra="ignore")

    url: str = "http://127.0.0.1:3000"
    timeout: PositiveFloat | None = Field(default=None, description="httpx timeout in seconds (None = no timeout)")
    max_batch_size: PositiveInt = Field(default=32, description="Max calls coalesced into one batch request")


class ComposerSettings(BaseSettings):
    """Narration/payload composition defaults."""

    model_config = SettingsConfigDict(env_prefix="STREAMRPC_COMPOSER_", extra="ignore")

    pace: NonNegativeFloat = Field(default=0.05, description="Pause after each payload element in seconds")
    separator: str = Field(default="\x1e", description="Marker emitted between narration and payload")


class ModelSettings(BaseSettings):
    """Language model capability configuration."""

    model_config = SettingsConfigDict(env_prefix="STREAMRPC_MODEL_", extra="ignore")

    provider: Literal["scripted", "anthropic", "openai"] = "scripted"
    default: str = "claude-3-5-haiku-latest"
    anthropic_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("STREAMRPC_MODEL_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"),
    )
    anthropic_url: str = "https://api.anthropic.com"
    lmstudio_url: str = Field(
        default="http://127.0.0.1:1234/v1",
        validation_alias=AliasChoices("STREAMRPC_MODEL_LMSTUDIO_URL", "LMSTUDIO_URL"),
    )
    max_tokens: PositiveInt = 1024
    timeout: PositiveFloat = 60.0

    @computed_field
    @property
    def has_anthropic_key(self) -> bool:
        return self.anthropic_api_key is not None


class LoggingSettings(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(env_prefix="STREAMRPC_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console", "none"] = "console"


class StreamRPCSettings(BaseSettings):
    """Root settings.

    Loads configuration from environment variables with the STREAMRPC_ prefix.

    Example environment variables:
        STREAMRPC_SERVER_PORT=3000
        STREAMRPC_CLIENT_URL=http://localhost:3000
        STREAMRPC_COMPOSER_PACE=0.1
        STREAMRPC_LOG_LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="STREAMRPC_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
        validate_default=True,
    )

    debug: bool = False

    server: ServerSettings = Field(default_factory=ServerSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)
    composer: ComposerSettings = Field(default_factory=ComposerSettings)
    model: ModelSettings = Field(default_factory=ModelSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


@lru_cache(maxsize=1)
def get_settings() -> StreamRPCSettings:
    """Get the global settings instance (cached)."""
    return StreamRPCSettings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing).

    After calling this, the next get_settings() call will
    reload configuration from environment.
    """
    get_settings.cache_clear()
