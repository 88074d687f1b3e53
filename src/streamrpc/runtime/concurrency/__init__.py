"""Concurrency helpers for composing result sequences.

Key Components:
    - compose_narrated: concurrent pumps, drain-then-drain ordered output
    - split_narrated: collect a composed sequence back into its two runs
    - SEPARATOR: marker between narration and payload

Example:
    >>> from streamrpc.runtime.concurrency import compose_narrated, SEPARATOR
    >>> async for item in compose_narrated(narration, snapshots):
    ...     ...
"""

from __future__ import annotations

from .compose import SEPARATOR, NarratedParts, compose_narrated, split_narrated

__all__ = ["SEPARATOR", "NarratedParts", "compose_narrated", "split_narrated"]
