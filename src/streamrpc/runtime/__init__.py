"""Runtime - execution of results on the wire.

Contains: the stream multiplexer, narration composition, observability.
"""

from __future__ import annotations

from .concurrency import SEPARATOR, NarratedParts, compose_narrated, split_narrated
from .multiplex import Multiplexer, multiplex

__all__ = [
    "SEPARATOR", "NarratedParts", "compose_narrated", "split_narrated",
    "Multiplexer", "multiplex",
]
