"""Tests for narration + payload composition."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

import pytest

from streamrpc.runtime import SEPARATOR, compose_narrated, split_narrated


async def items(*values: object, delay: float = 0.0) -> AsyncIterator[object]:
    for value in values:
        await asyncio.sleep(delay)
        yield value


class TestComposeNarrated:
    @pytest.mark.asyncio
    async def test_narration_separator_then_payload(self) -> None:
        composed = compose_narrated(
            items("a", "b"),
            items({"n": 1}, {"n": 1, "s": 1}, {"n": 1, "s": 2}),
            pace=0.0,
        )
        assert [x async for x in composed] == [
            "a", "b", SEPARATOR, {"n": 1}, {"n": 1, "s": 1}, {"n": 1, "s": 2},
        ]

    @pytest.mark.asyncio
    async def test_fast_payload_still_waits_for_narration(self) -> None:
        composed = compose_narrated(items("slow", "words", delay=0.01), items(1, 2, 3), separator="|", pace=0.0)
        assert [x async for x in composed] == ["slow", "words", "|", 1, 2, 3]

    @pytest.mark.asyncio
    async def test_sources_run_concurrently(self) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        composed = compose_narrated(items("x", "y", delay=0.05), items(1, 2, delay=0.05), pace=0.0)
        assert len([x async for x in composed]) == 5
        assert loop.time() - start < 0.19

    @pytest.mark.asyncio
    async def test_pace_applies_after_each_payload_element(self) -> None:
        loop = asyncio.get_running_loop()
        start = loop.time()
        composed = compose_narrated(items("n"), items(1, 2, 3), pace=0.02)
        assert [x async for x in composed][-3:] == [1, 2, 3]
        assert loop.time() - start >= 0.05

    @pytest.mark.asyncio
    async def test_empty_sources(self) -> None:
        assert [x async for x in compose_narrated(items(), items(), pace=0.0)] == [SEPARATOR]

    @pytest.mark.asyncio
    async def test_payload_failure_propagates(self) -> None:
        async def broken() -> AsyncIterator[object]:
            yield {"n": 1}
            raise RuntimeError("snapshot source failed")

        received: list[object] = []
        with pytest.raises(RuntimeError, match="snapshot source failed"):
            async for item in compose_narrated(items("a", delay=0.01), broken(), pace=0.0):
                received.append(item)
        assert SEPARATOR not in received

    @pytest.mark.asyncio
    async def test_narration_failure_propagates(self) -> None:
        async def broken() -> AsyncIterator[str]:
            yield "first"
            raise RuntimeError("narration failed")

        with pytest.raises(RuntimeError, match="narration failed"):
            [x async for x in compose_narrated(broken(), items(1, 2), pace=0.0)]

    @pytest.mark.asyncio
    async def test_early_close_stops_both_sources(self) -> None:
        closed: list[str] = []

        async def endless(name: str) -> AsyncIterator[str]:
            try:
                while True:
                    await asyncio.sleep(0.005)
                    yield name
            finally:
                closed.append(name)

        composed = compose_narrated(endless("narration"), endless("payload"), pace=0.0)
        assert await composed.__anext__() == "narration"
        await composed.aclose()
        assert sorted(closed) == ["narration", "payload"]


class TestSplitNarrated:
    @pytest.mark.asyncio
    async def test_split_back_into_runs(self) -> None:
        parts = await split_narrated(compose_narrated(items("Here ", "it is"), items({"a": 1}), pace=0.0))
        assert parts.narration == ["Here ", "it is"]
        assert parts.payload == [{"a": 1}]

    @pytest.mark.asyncio
    async def test_custom_separator(self) -> None:
        parts = await split_narrated(items("x", "--", 1, "--"), separator="--")
        assert parts.narration == ["x"]
        assert parts.payload == [1, "--"]
