"""Tests for transport selection."""

from __future__ import annotations

import math

import pytest
from pydantic import BaseModel

from streamrpc.client import TransportRouter, is_json_serializable
from streamrpc.foundation.core import BinaryPayload, ChatMessage, ProcedureCall


class _Channel:
    def __init__(self, name: str) -> None:
        self.name = name

    async def invoke(self, call: ProcedureCall) -> object:
        return None

    async def aclose(self) -> None:
        pass


class Point(BaseModel):
    x: int
    y: int


# ─────────────────────────────────────────────────────────────────────────────
# JSON check
# ─────────────────────────────────────────────────────────────────────────────


class TestIsJsonSerializable:
    @pytest.mark.parametrize("value", [
        None, True, 0, -3, 1.5, "text",
        [1, "two", None],
        (1, 2),
        {"messages": [{"role": "user", "content": "hi"}]},
        {"nested": {"deep": {"deeper": [1, 2, {"x": False}]}}},
        Point(x=1, y=2),
        [ChatMessage(role="user", content="hi")],
    ])
    def test_accepts_plain_json(self, value: object) -> None:
        assert is_json_serializable(value)

    @pytest.mark.parametrize("value", [
        b"%PDF",
        bytearray(b"x"),
        BinaryPayload(b"%PDF", "application/pdf"),
        {"file": b"raw"},
        {"outer": {"inner": [1, BinaryPayload(b"x")]}},
        {1: "non-string key"},
        {1, 2},
        object(),
        math.nan,
        math.inf,
    ])
    def test_rejects_binary_and_non_json(self, value: object) -> None:
        assert not is_json_serializable(value)


# ─────────────────────────────────────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────────────────────────────────────


class TestTransportRouter:
    def setup_method(self) -> None:
        self.batch = _Channel("batch")
        self.direct = _Channel("direct")
        self.router = TransportRouter(self.batch, self.direct)  # type: ignore[arg-type]

    def test_json_input_is_batched(self) -> None:
        call = ProcedureCall("chat", {"messages": [{"role": "user", "content": "hi"}]})
        assert self.router.route(call) is self.batch

    def test_no_input_is_batched(self) -> None:
        assert self.router.route(ProcedureCall("users")) is self.batch

    def test_binary_payload_goes_direct(self) -> None:
        call = ProcedureCall("extractInvoice", BinaryPayload(b"%PDF", "application/pdf", part_name="fileContent"))
        assert self.router.route(call) is self.direct

    def test_bytes_anywhere_go_direct(self) -> None:
        call = ProcedureCall("upload", {"meta": {"name": "a"}, "file": b"raw"})
        assert self.router.route(call) is self.direct
