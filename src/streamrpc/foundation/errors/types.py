"""JSON type aliases shared across the protocol layer."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Union

# Any for recursive slots, avoids Pydantic forward-ref resolution issues
JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list[Any], dict[str, Any]]
JsonDict = dict[str, Any]
JsonMapping = Mapping[str, Any]

# Empty dict singleton to avoid allocation on hot paths
_EMPTY_META: JsonDict = {}
