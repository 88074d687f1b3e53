"""Shared fixtures: silent logging and fresh settings per test."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from streamrpc.foundation.config import clear_settings_cache
from streamrpc.runtime.observability import configure_logging


@pytest.fixture(autouse=True)
def _quiet_logging() -> Iterator[None]:
    configure_logging(format="none")
    clear_settings_cache()
    yield
    clear_settings_cache()
