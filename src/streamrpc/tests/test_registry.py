"""Tests for result classification and the procedure registry."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest
from pydantic import BaseModel, Field

from streamrpc.foundation.core import (
    Composite,
    InvocationKind,
    LazySequence,
    ProcedureCall,
    Scalar,
    ShapeKind,
    classify,
    composite,
    leaves,
    skeleton,
    skeleton_paths,
)
from streamrpc.foundation.errors import BadInput, NotFound
from streamrpc.foundation.registry import NoInput, ProcedureRegistry


async def tokens(*items: str) -> AsyncIterator[str]:
    for item in items:
        yield item


async def answer() -> int:
    await asyncio.sleep(0)
    return 42


class EchoInput(BaseModel):
    text: str = Field(min_length=1)


# ─────────────────────────────────────────────────────────────────────────────
# Classification
# ─────────────────────────────────────────────────────────────────────────────


class TestClassify:
    def test_plain_value_is_scalar(self) -> None:
        shape = classify({"name": "cake", "steps": ["mix", "bake"]})
        assert isinstance(shape, Scalar)
        assert not shape.deferred
        assert shape.value == {"name": "cake", "steps": ["mix", "bake"]}

    def test_pydantic_model_is_dumped(self) -> None:
        shape = classify(EchoInput(text="hi"))
        assert isinstance(shape, Scalar)
        assert shape.value == {"text": "hi"}

    def test_strings_are_not_sequences(self) -> None:
        assert isinstance(classify("hello"), Scalar)
        assert isinstance(classify(b"bytes"), Scalar)

    @pytest.mark.asyncio
    async def test_async_generator_is_lazy_and_untouched(self) -> None:
        pulled: list[str] = []

        async def source() -> AsyncIterator[str]:
            for item in ("a", "b"):
                pulled.append(item)
                yield item

        shape = classify(source())
        assert isinstance(shape, LazySequence)
        assert pulled == []
        assert [x async for x in shape.source] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_sync_generator_is_lazy(self) -> None:
        shape = classify(iter([1, 2, 3]))
        assert isinstance(shape, LazySequence)
        assert [x async for x in shape.source] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_awaitable_is_deferred_scalar(self) -> None:
        shape = classify(answer())
        assert isinstance(shape, Scalar)
        assert shape.deferred
        assert await shape.resolve() == 42

    @pytest.mark.asyncio
    async def test_mapping_with_live_field_is_composite(self) -> None:
        shape = classify({"narration": tokens("hi"), "payload": {"fixed": 1}})
        assert isinstance(shape, Composite)
        assert isinstance(shape["narration"], LazySequence)
        assert isinstance(shape["payload"], Scalar)
        await shape["narration"].aclose()  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_nested_composite_and_skeleton(self) -> None:
        shape = composite(a={"b": {"c": tokens("x")}}, v=1)
        assert skeleton(shape) == {"a": {"b": {"c": "stream"}}, "v": "value"}
        assert [path for path, _ in leaves(shape)] == [("a", "b", "c"), ("v",)]
        await shape["a"]["b"]["c"].aclose()  # type: ignore[index,union-attr]

    def test_skeleton_paths_declares_parents_first(self) -> None:
        declared = list(skeleton_paths({"a": {"b": "stream"}, "v": "value"}))
        assert declared == [
            ((), ShapeKind.COMPOSITE),
            (("a",), ShapeKind.COMPOSITE),
            (("a", "b"), ShapeKind.STREAM),
            (("v",), ShapeKind.VALUE),
        ]

    def test_skeleton_paths_rejects_garbage(self) -> None:
        with pytest.raises(ValueError, match="Invalid shape"):
            list(skeleton_paths({"a": 3}))


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


class TestProcedureRegistry:
    def setup_method(self) -> None:
        self.calls: list[str] = []
        self.registry = ProcedureRegistry()

        @self.registry.procedure(input=EchoInput)
        def echo(params: EchoInput) -> AsyncIterator[str]:
            """Echo the text back word by word."""
            self.calls.append(params.text)
            return tokens(*params.text.split())

        @self.registry.procedure(name="save", input=EchoInput, kind=InvocationKind.MUTATION)
        async def save(params: EchoInput) -> dict[str, object]:
            self.calls.append(params.text)
            return {"saved": True, "length": len(params.text)}

        @self.registry.procedure
        def ping(params: NoInput) -> str:
            return "pong"

    def test_registration_and_lookup(self) -> None:
        assert len(self.registry) == 3
        assert "echo" in self.registry
        assert self.registry["save"].kind is InvocationKind.MUTATION
        assert self.registry.get("missing") is None
        assert [proc.name for proc in self.registry] == ["echo", "save", "ping"]

    def test_duplicate_name_rejected(self) -> None:
        with pytest.raises(ValueError, match="already registered"):
            self.registry.register("echo", EchoInput, lambda p: p)

    def test_unregister(self) -> None:
        assert self.registry.unregister("ping")
        assert not self.registry.unregister("ping")

    def test_describe_uses_docstring_and_schema(self) -> None:
        info = self.registry["echo"].describe()
        assert info["name"] == "echo"
        assert info["kind"] == "query"
        assert info["description"] == "Echo the text back word by word."
        assert "text" in info["input"]["properties"]  # type: ignore[index,operator]

    @pytest.mark.asyncio
    async def test_dispatch_streaming_handler(self) -> None:
        shape = await self.registry.dispatch(ProcedureCall("echo", {"text": "hello there"}))
        assert isinstance(shape, LazySequence)
        assert [x async for x in shape.source] == ["hello", "there"]

    @pytest.mark.asyncio
    async def test_dispatch_coroutine_handler(self) -> None:
        shape = await self.registry.dispatch(ProcedureCall("save", {"text": "abc"}, InvocationKind.MUTATION))
        assert isinstance(shape, Scalar)
        assert shape.value == {"saved": True, "length": 3}

    @pytest.mark.asyncio
    async def test_no_input_defaults_to_empty_contract(self) -> None:
        shape = await self.registry.dispatch(ProcedureCall("ping"))
        assert isinstance(shape, Scalar)
        assert shape.value == "pong"

    @pytest.mark.asyncio
    async def test_unknown_procedure(self) -> None:
        with pytest.raises(NotFound, match="nope"):
            await self.registry.dispatch(ProcedureCall("nope"))

    @pytest.mark.asyncio
    async def test_invalid_input_never_reaches_handler(self) -> None:
        with pytest.raises(BadInput) as exc_info:
            await self.registry.dispatch(ProcedureCall("echo", {"text": ""}))
        assert exc_info.value.error.procedure == "echo"
        assert "text" in exc_info.value.error.message
        assert self.calls == []

    @pytest.mark.asyncio
    async def test_kind_mismatch_is_bad_input(self) -> None:
        with pytest.raises(BadInput, match="mutation"):
            await self.registry.dispatch(ProcedureCall("save", {"text": "abc"}))
        assert self.calls == []
