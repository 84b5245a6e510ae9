"""Tests for error messages, the JSON log formatter, and timeout configuration."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from demonite.log import Level, Message
from demonite.logging_utils import DemoniteJsonFormatter, configure_logging
from demonite.rpc import SocketTimeouts


class TestMessage:
    def test_only_exception_level(self) -> None:
        assert [level.value for level in Level] == ["EXCEPTION"]

    def test_equality(self) -> None:
        assert Message(Level.EXCEPTION, "hi") == Message(Level.EXCEPTION, "hi")
        assert Message(Level.EXCEPTION, "hi", a=1) != Message(Level.EXCEPTION, "hi")
        assert Message(Level.EXCEPTION, "hi").__eq__("hi") is NotImplemented

    def test_unhashable(self) -> None:
        with pytest.raises(TypeError):
            hash(Message(Level.EXCEPTION, "x"))

    def test_repr(self) -> None:
        assert repr(Message(Level.EXCEPTION, "m")) == "Message(<Level.EXCEPTION: 'EXCEPTION'>, 'm')"
        assert "**{'k': 1}" in repr(Message(Level.EXCEPTION, "m", k=1))

    def test_add_to_metadata(self) -> None:
        md = Message(Level.EXCEPTION, "bad", code=7).add_to_metadata({"keep": "me"})
        assert md["keep"] == "me"
        assert md["demonite.log_level"] == "EXCEPTION"
        assert md["demonite.log_message"] == "bad"
        assert json.loads(md["demonite.log_extra"]) == {"code": 7}

    def test_add_to_metadata_without_extra(self) -> None:
        md = Message(Level.EXCEPTION, "plain").add_to_metadata()
        assert "demonite.log_extra" not in md

    def test_from_exception(self) -> None:
        def _inner() -> None:
            raise KeyError("missing")

        try:
            try:
                _inner()
            except KeyError as cause:
                raise RuntimeError("outer") from cause
        except RuntimeError as exc:
            msg = Message.from_exception(exc)

        assert msg.level is Level.EXCEPTION
        assert msg.message == "RuntimeError: outer"
        assert msg.extra is not None
        assert msg.extra["exception_type"] == "RuntimeError"
        assert msg.extra["exception_message"] == "outer"
        assert "KeyError" in str(msg.extra["cause"])
        frames = msg.extra["frames"]
        assert isinstance(frames, list)
        assert frames[-1]["function"] == "test_from_exception"

    def test_traceback_truncated(self) -> None:
        exc = ValueError("x" * 40_000)
        msg = Message.from_exception(exc)
        assert msg.extra is not None
        assert str(msg.extra["traceback"]).endswith("<traceback truncated>")


class TestJsonFormatter:
    """Records become single-line JSON objects with their extras."""

    @staticmethod
    def _record(**extra: object) -> logging.LogRecord:
        record = logging.LogRecord("demonite.access", logging.INFO, __file__, 1, "%s.%s %s", ("Svc", "m", "ok"), None)
        for k, v in extra.items():
            setattr(record, k, v)
        return record

    def test_standard_fields(self) -> None:
        out = json.loads(DemoniteJsonFormatter().format(self._record()))
        assert out["level"] == "INFO"
        assert out["logger"] == "demonite.access"
        assert out["message"] == "Svc.m ok"
        assert "timestamp" in out

    def test_extras_included(self) -> None:
        out = json.loads(DemoniteJsonFormatter().format(self._record(service="Svc", duration_ms=1.5)))
        assert out["service"] == "Svc"
        assert out["duration_ms"] == 1.5

    def test_reserved_keys_not_overwritten(self) -> None:
        out = json.loads(DemoniteJsonFormatter().format(self._record(level="fake", logger="fake")))
        assert out["level"] == "INFO"
        assert out["logger"] == "demonite.access"

    def test_unserializable_values_stringified(self) -> None:
        out = json.loads(DemoniteJsonFormatter().format(self._record(obj=object())))
        assert out["obj"].startswith("<object object")

    def test_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._record()
            record.exc_info = sys.exc_info()
        out = json.loads(DemoniteJsonFormatter().format(record))
        assert "ValueError: boom" in out["exception"]


class TestConfigureLogging:
    def test_replaces_previous_handler(self) -> None:
        logger = logging.getLogger("demonite")
        before = list(logger.handlers)
        level = logger.level
        try:
            configure_logging("DEBUG", "json")
            configure_logging("INFO", "text")
            added = [h for h in logger.handlers if h not in before]
            assert len(added) == 1
            assert not isinstance(added[0].formatter, DemoniteJsonFormatter)
            assert logger.level == logging.INFO
        finally:
            for h in [h for h in logger.handlers if h not in before]:
                logger.removeHandler(h)
            logger.setLevel(level)

    def test_json_format(self) -> None:
        logger = logging.getLogger("demonite")
        before = list(logger.handlers)
        level = logger.level
        try:
            configure_logging("warning", "json")
            added = [h for h in logger.handlers if h not in before]
            assert isinstance(added[0].formatter, DemoniteJsonFormatter)
            assert logger.level == logging.WARNING
        finally:
            for h in [h for h in logger.handlers if h not in before]:
                logger.removeHandler(h)
            logger.setLevel(level)


class TestSocketTimeouts:
    def test_defaults_block(self) -> None:
        assert SocketTimeouts() == SocketTimeouts(None, None, None)

    def test_uniform(self) -> None:
        assert SocketTimeouts.uniform(2.0) == SocketTimeouts(connect=2.0, read=2.0, write=2.0)

    @pytest.mark.parametrize("value", [0, -1.0])
    def test_rejects_non_positive(self, value: float) -> None:
        with pytest.raises(ValueError, match="must be positive"):
            SocketTimeouts(read=value)

    def test_from_env_unset(self) -> None:
        assert SocketTimeouts.from_env() == SocketTimeouts()

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEMONITE_TIMEOUT", "1.5")
        assert SocketTimeouts.from_env() == SocketTimeouts.uniform(1.5)

    def test_from_env_invalid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEMONITE_TIMEOUT", "soon")
        with pytest.raises(ValueError, match="DEMONITE_TIMEOUT"):
            SocketTimeouts.from_env()
