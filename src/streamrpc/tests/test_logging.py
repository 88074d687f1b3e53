"""Tests for structured logging."""

from __future__ import annotations

import io

import orjson
import pytest

from streamrpc.runtime.observability import configure_logging, get_logger, log_context


def lines(out: io.StringIO) -> list[dict[str, object]]:
    return [orjson.loads(line) for line in out.getvalue().splitlines()]


class TestLogging:
    def test_json_entries_carry_bound_context(self) -> None:
        out = io.StringIO()
        configure_logging(format="json", level="DEBUG", output=out)
        log = get_logger("streamrpc.server").bind_call("chat", 3)
        log.info("dispatch", kind="query")
        [entry] = lines(out)
        assert entry["event"] == "dispatch"
        assert entry["level"] == "info"
        assert entry["logger"] == "streamrpc.server"
        assert (entry["procedure"], entry["call_id"], entry["kind"]) == ("chat", 3, "query")

    def test_level_filters(self) -> None:
        out = io.StringIO()
        configure_logging(format="json", level="WARNING", output=out)
        log = get_logger("streamrpc.client")
        log.debug("batch flushed", calls=2)
        log.warning("protocol error", call_id=0)
        assert [e["event"] for e in lines(out)] == ["protocol error"]

    def test_scoped_context(self) -> None:
        out = io.StringIO()
        configure_logging(format="json", output=out)
        log = get_logger()
        with log_context(request="r1"):
            log.info("inside")
        log.info("outside")
        inside, outside = lines(out)
        assert inside["request"] == "r1"
        assert "request" not in outside

    def test_console_format(self) -> None:
        out = io.StringIO()
        configure_logging(format="console", output=out, colors=False)
        get_logger("streamrpc.demux").warning("path failed", path="payload")
        text = out.getvalue()
        assert "[warning] path failed" in text
        assert "path=payload" in text

    def test_unknown_format(self) -> None:
        with pytest.raises(ValueError, match="Unknown format"):
            configure_logging(format="xml")
