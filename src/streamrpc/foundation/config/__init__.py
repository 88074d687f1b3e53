"""Configuration: environment-driven settings."""

from .settings import (
    ClientSettings,
    ComposerSettings,
    LoggingSettings,
    ModelSettings,
    ServerSettings,
    StreamRPCSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    "ClientSettings", "ComposerSettings", "LoggingSettings", "ModelSettings", "ServerSettings",
    "StreamRPCSettings", "clear_settings_cache", "get_settings",
]
