"""Transport selection.

Every call goes over one of two channels, chosen purely from the shape of
its input: anything that survives a deep JSON check is batched, anything
carrying raw bytes (at any depth) goes direct as multipart.

Example:
    >>> is_json_serializable({"messages": [{"role": "user", "content": "hi"}]})
    True
    >>> is_json_serializable({"file": BinaryPayload(b"%PDF", "application/pdf")})
    False
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from pydantic import BaseModel

from streamrpc.foundation.core import ProcedureCall

if TYPE_CHECKING:
    from .channels import Channel


def is_json_serializable(value: object) -> bool:
    """Deep check that a value encodes to JSON without loss.

    Accepts None, bools, ints, finite floats, strings, lists/tuples of
    those and str-keyed dicts of those. Pydantic models are judged by their
    python dump. Everything else (bytes, files, BinaryPayload) fails.
    """
    match value:
        case None | bool() | int() | str():
            return True
        case float():
            return math.isfinite(value)
        case list() | tuple():
            return all(is_json_serializable(v) for v in value)
        case dict():
            return all(isinstance(k, str) and is_json_serializable(v) for k, v in value.items())
        case BaseModel():
            return is_json_serializable(value.model_dump())
        case _:
            return False


class TransportRouter:
    """Chooses the channel for each call. One instance serves a whole client."""

    __slots__ = ("batch", "direct")

    def __init__(self, batch: Channel, direct: Channel) -> None:
        self.batch = batch
        self.direct = direct

    def route(self, call: ProcedureCall) -> Channel:
        return self.batch if is_json_serializable(call.input) else self.direct
