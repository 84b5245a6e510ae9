"""Tests for wire protocol debug logging infrastructure."""

from __future__ import annotations

import logging
from typing import Any

import pyarrow as pa
import pytest

from demonite.errors import RpcError
from demonite.rpc import connect
from demonite.rpc._debug import fmt_args, fmt_batch, fmt_metadata, fmt_schema
from tests.conftest import ListenerFactory
from tests.test_rpc import Calculator, CalculatorImpl

# ---------------------------------------------------------------------------
# Unit tests for formatting helpers
# ---------------------------------------------------------------------------


class TestFmtSchema:
    """Tests for fmt_schema."""

    def test_empty_schema(self) -> None:
        fields: list[pa.Field[Any]] = []
        assert fmt_schema(pa.schema(fields)) == "(empty)"

    def test_multiple_fields(self) -> None:
        """Fields are comma-separated inside parentheses."""
        fields: list[pa.Field[Any]] = [pa.field("a", pa.float64()), pa.field("b", pa.int32())]
        assert fmt_schema(pa.schema(fields)) == "(a: double, b: int32)"


class TestFmtMetadata:
    """Tests for fmt_metadata."""

    def test_none(self) -> None:
        assert fmt_metadata(None) == "None"

    def test_empty(self) -> None:
        assert fmt_metadata(pa.KeyValueMetadata({})) == "{}"

    def test_bytes_keys(self) -> None:
        """Bytes keys/values are decoded to strings."""
        md = pa.KeyValueMetadata({b"demonite.method": b"add", b"demonite.request_version": b"1"})
        result = fmt_metadata(md)
        assert "demonite.method='add'" in result
        assert "demonite.request_version='1'" in result

    def test_long_value_truncated(self) -> None:
        result = fmt_metadata(pa.KeyValueMetadata({b"key": b"x" * 200}))
        assert "..." in result
        assert len(result) < 200


class TestFmtBatch:
    def test_empty_batch(self) -> None:
        batch = pa.RecordBatch.from_pydict({}, schema=pa.schema([]))
        result = fmt_batch(batch)
        assert "rows=0" in result
        assert "cols=0" in result
        assert "(empty)" in result

    def test_data_batch(self) -> None:
        schema = pa.schema([pa.field("a", pa.float64()), pa.field("b", pa.float64())])
        batch = pa.RecordBatch.from_arrays([pa.array([1.0]), pa.array([2.0])], schema=schema)
        result = fmt_batch(batch)
        assert "rows=1" in result
        assert "cols=2" in result
        assert "a: double" in result
        assert "bytes=" in result


class TestFmtArgs:
    def test_empty(self) -> None:
        assert fmt_args((), ()) == ""

    def test_simple(self) -> None:
        assert fmt_args(("a", "b"), (1.0, 2.0)) == "a=1.0, b=2.0"

    def test_long_value_truncated(self) -> None:
        assert "..." in fmt_args(("data",), ("x" * 200,))


# ---------------------------------------------------------------------------
# Integration: debug records emitted during real calls
# ---------------------------------------------------------------------------


class TestDebugLoggingCalls:
    """``demonite.wire.*`` loggers fire on both sides of a call when enabled."""

    @pytest.fixture(autouse=True)
    def _serve(self, serve_in_thread: ListenerFactory) -> None:
        serve_in_thread(Calculator, CalculatorImpl())

    def _messages(self, caplog: pytest.LogCaptureFixture, name: str) -> list[str]:
        return [r.getMessage() for r in caplog.records if r.name == name]

    def test_request_logger_fires(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="demonite.wire"):
            connect(Calculator).add(1.0, 2.0)
        messages = self._messages(caplog, "demonite.wire.request")
        assert "Call Calculator.add(a=1.0, b=2.0)" in messages
        assert any(m.startswith("Parsed request: method=add") for m in messages)

    def test_response_logger_fires(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="demonite.wire"):
            connect(Calculator).greet("log")
        assert any(m.startswith("Read response batch") for m in self._messages(caplog, "demonite.wire.response"))

    def test_transport_logger_fires(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="demonite.wire"):
            connect(Calculator).noop()
        messages = self._messages(caplog, "demonite.wire.transport")
        assert any(m.startswith("Connected to") for m in messages)
        assert any(m.startswith("Accepted connection") for m in messages)

    def test_error_response_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.DEBUG, logger="demonite.wire"), pytest.raises(RpcError):
            connect(Calculator).fail("traced")
        assert any("demonite.error_kind='PROCEDURE'" in m for m in self._messages(caplog, "demonite.wire.response"))

    def test_silent_by_default(self, caplog: pytest.LogCaptureFixture) -> None:
        with caplog.at_level(logging.INFO, logger="demonite.wire"):
            connect(Calculator).add(1.0, 1.0)
        assert not [r for r in caplog.records if r.name.startswith("demonite.wire")]
