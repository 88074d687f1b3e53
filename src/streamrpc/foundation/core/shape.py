"""Result shapes: the tagged union a handler's return value is classified into.

A procedure may return a plain value, a lazy sequence, or a mapping whose
fields mix both (at any depth). The classifier inspects the value once,
right after the handler returns, and produces an explicit tree:

    Scalar        one value, materialized or awaitable (deferred)
    LazySequence  a finite, pull-based async iterator
    Composite     insertion-ordered field name -> shape

Example:
    >>> shape = classify({"loading": narration(), "recipe": fetch_recipe()})
    >>> isinstance(shape, Composite)
    True
    >>> [(path, type(leaf).__name__) for path, leaf in leaves(shape)]
    [(('loading',), 'LazySequence'), (('recipe',), 'Scalar')]
"""

from __future__ import annotations

import inspect
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TypeAlias, Union

from pydantic import BaseModel

from streamrpc.foundation.errors import JsonValue

Path: TypeAlias = tuple[str, ...]
ROOT: Path = ()


class ShapeKind(StrEnum):
    """Wire names of the three shape variants."""
    VALUE = "value"
    STREAM = "stream"
    COMPOSITE = "composite"


@dataclass(frozen=True, slots=True)
class Scalar:
    """A single value. ``pending`` holds an awaitable when the value is deferred."""
    value: object = None
    pending: Awaitable[object] | None = field(default=None, repr=False)

    @property
    def deferred(self) -> bool:
        return self.pending is not None

    async def resolve(self) -> object:
        if self.pending is None:
            return self.value
        return _plain(await self.pending)


@dataclass(frozen=True, slots=True)
class LazySequence:
    """A finite, non-restartable, pull-driven sequence of elements."""
    source: AsyncIterator[object] = field(repr=False)

    async def aclose(self) -> None:
        """Close the underlying generator if it supports it."""
        if (close := getattr(self.source, "aclose", None)) is not None:
            await close()


@dataclass(frozen=True, slots=True)
class Composite:
    """Named, insertion-ordered collection of independently-shaped fields."""
    fields: dict[str, ResultShape]

    def __getitem__(self, name: str) -> ResultShape:
        return self.fields[name]

    def __len__(self) -> int:
        return len(self.fields)


ResultShape: TypeAlias = Union[Scalar, LazySequence, Composite]
_SHAPES = (Scalar, LazySequence, Composite)


# ─────────────────────────────────────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────────────────────────────────────


def _plain(value: object) -> object:
    """Dump pydantic models so scalars are wire-ready."""
    return value.model_dump(mode="json") if isinstance(value, BaseModel) else value


def _is_lazy(value: object) -> bool:
    if isinstance(value, (str, bytes, bytearray)):
        return False
    return isinstance(value, (AsyncIterable, Iterator)) or inspect.isawaitable(value)


def _is_live(value: object) -> bool:
    """Whether a value (or anything nested in a mapping) needs more than one frame."""
    if isinstance(value, _SHAPES) or _is_lazy(value):
        return True
    if isinstance(value, Mapping):
        return any(_is_live(v) for v in value.values())
    return False


async def _iterate_sync(it: Iterator[object]) -> AsyncIterator[object]:
    for item in it:
        yield item


def classify(value: object) -> ResultShape:
    """Tag a handler's return value. Pure: nothing is pulled or awaited.

    - explicit shapes pass through unchanged
    - async iterables and iterators/generators become LazySequence
    - awaitables (coroutines, futures, tasks) become deferred Scalars
    - mappings holding anything live at any depth become Composite
    - everything else, pydantic models included, is a Scalar
    """
    if isinstance(value, _SHAPES):
        return value
    if isinstance(value, AsyncIterable):
        return LazySequence(aiter(value))
    if isinstance(value, Iterator) and not isinstance(value, (str, bytes, bytearray)):
        return LazySequence(_iterate_sync(value))
    if inspect.isawaitable(value):
        return Scalar(pending=value)
    if isinstance(value, Mapping) and _is_live(value):
        return Composite({str(k): classify(v) for k, v in value.items()})
    return Scalar(_plain(value))


def composite(**fields: object) -> Composite:
    """Build a Composite explicitly, classifying each field."""
    return Composite({name: classify(v) for name, v in fields.items()})


# ─────────────────────────────────────────────────────────────────────────────
# Traversal & Skeleton
# ─────────────────────────────────────────────────────────────────────────────


def leaves(shape: ResultShape, path: Path = ROOT) -> Iterator[tuple[Path, Scalar | LazySequence]]:
    """Depth-first (path, leaf) pairs in field insertion order."""
    if isinstance(shape, Composite):
        for name, child in shape.fields.items():
            yield from leaves(child, (*path, name))
    else:
        yield path, shape


def skeleton(shape: ResultShape) -> JsonValue:
    """Wire description of a shape tree (no values).

    Leaves are ``"value"`` or ``"stream"``; composites are objects mapping
    field names to their own skeletons.
    """
    if isinstance(shape, Composite):
        return {name: skeleton(child) for name, child in shape.fields.items()}
    return ShapeKind.STREAM.value if isinstance(shape, LazySequence) else ShapeKind.VALUE.value


def skeleton_paths(desc: JsonValue, path: Path = ROOT) -> Iterator[tuple[Path, ShapeKind]]:
    """Inverse of :func:`skeleton`: declared (path, kind) pairs including composites.

    Raises:
        ValueError: On a description that is neither a leaf name nor an object
    """
    if isinstance(desc, dict):
        yield path, ShapeKind.COMPOSITE
        for name, child in desc.items():
            yield from skeleton_paths(child, (*path, str(name)))
    elif desc in (ShapeKind.VALUE, ShapeKind.STREAM):
        yield path, ShapeKind(desc)
    else:
        raise ValueError(f"Invalid shape description at {'/'.join(path) or '<root>'}: {desc!r}")
