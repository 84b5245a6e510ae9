"""Tests for the demonite CLI tool."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from typer.testing import CliRunner

from demonite.cli import app
from tests.conftest import ListenerFactory, _short_unix_path
from tests.test_rpc import Calculator, CalculatorImpl

runner = CliRunner()

_PROTOCOL = "tests.test_rpc:Calculator"


class _Empty:
    """Implements none of Calculator's procedures."""


@pytest.fixture(autouse=True)
def _restore_demonite_logger() -> Iterator[None]:
    """Drop the stderr handler each invocation attaches to the ``demonite`` logger."""
    logger = logging.getLogger("demonite")
    handlers = list(logger.handlers)
    level = logger.level
    yield
    for handler in [h for h in logger.handlers if h not in handlers]:
        logger.removeHandler(handler)
    logger.setLevel(level)


@pytest.fixture()
def running(serve_in_thread: ListenerFactory) -> None:
    serve_in_thread(Calculator, CalculatorImpl())


class TestGlobalOptions:
    def test_version(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("demonite")

    def test_no_args_shows_help(self) -> None:
        result = runner.invoke(app, [])
        assert "Usage" in result.output

    def test_log_level_applied(self, runtime_dir: Path) -> None:
        result = runner.invoke(app, ["--log-level", "debug", "--log-format", "json", "check"])
        assert result.exit_code == 0
        assert logging.getLogger("demonite").level == logging.DEBUG


class TestPathAndCheck:
    def test_path(self, runtime_dir: Path) -> None:
        result = runner.invoke(app, ["path", "Calculator"])
        assert result.exit_code == 0
        assert result.output.strip() == str(runtime_dir / "demonite" / "Calculator")

    def test_path_env_missing(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("XDG_RUNTIME_DIR")
        result = runner.invoke(app, ["path", "Calculator"])
        assert result.exit_code == 1
        assert '"kind": "ENV_VAR"' in result.output

    def test_path_invalid_service(self) -> None:
        result = runner.invoke(app, ["path", "a/b"])
        assert result.exit_code == 2

    def test_check(self, runtime_dir: Path) -> None:
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 0
        assert result.output.strip() == f"OK: {runtime_dir}"

    def test_check_json(self, runtime_dir: Path) -> None:
        result = runner.invoke(app, ["--format", "json", "check"])
        assert result.exit_code == 0
        assert json.loads(result.output) == {"runtime_dir": str(runtime_dir), "ok": True}

    def test_check_bad_permissions(self, runtime_dir: Path) -> None:
        runtime_dir.chmod(0o755)
        result = runner.invoke(app, ["check"])
        assert result.exit_code == 1
        assert '"kind": "RUNTIME_DIR_INVALID_PERMISSIONS"' in result.output


class TestDescribe:
    def test_json(self) -> None:
        result = runner.invoke(app, ["--format", "json", "describe", _PROTOCOL])
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["service"] == "Calculator"
        add = data["methods"]["add"]
        assert add["param_types"] == {"a": "double", "b": "double"}
        assert add["result_type"] == "double"
        assert add["doc"] == "Add two numbers."
        assert data["methods"]["noop"]["result_type"] is None
        assert data["methods"]["greet"]["param_defaults"] == {"punctuation": "!"}

    def test_table(self) -> None:
        result = runner.invoke(app, ["--format", "table", "describe", _PROTOCOL])
        assert result.exit_code == 0
        assert result.output.startswith("Service: Calculator")
        assert "add(a: float, b: float)" in result.output

    @pytest.mark.parametrize("spec", ["nocolon", "no_such_module_xyz:Thing", "tests.test_rpc:Missing"])
    def test_bad_spec(self, spec: str) -> None:
        result = runner.invoke(app, ["describe", spec])
        assert result.exit_code == 2


class TestCall:
    def test_key_value(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "add", "a=1", "b=2.5"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == 3.5

    def test_json_args(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "lookup", "--json", '{"table": {"a": 1}, "key": "a"}'])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == 1

    def test_complex_value_parsed_as_json(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "total", "values=[1, 2, 3]"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == 6

    def test_enum_result(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "echo_color", "color=GREEN"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == "GREEN"

    def test_void_result(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "noop"])
        assert result.exit_code == 0
        assert json.loads(result.output) is None

    def test_table_output(self, running: None) -> None:
        result = runner.invoke(app, ["--format", "table", "call", _PROTOCOL, "greet", "name=Ada"])
        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].strip() == "result"
        assert lines[2].strip() == "Hello, Ada!"

    def test_explicit_socket(self, serve_in_thread: ListenerFactory) -> None:
        path = _short_unix_path("cli")
        serve_in_thread(Calculator, CalculatorImpl(), path=path)
        result = runner.invoke(app, ["call", _PROTOCOL, "add", "a=2", "b=2", "--socket", path, "--timeout", "5"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == 4.0

    def test_remote_error(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "fail", "message=boom"])
        assert result.exit_code == 1
        err = json.loads(result.output.strip().splitlines()[-1])["error"]
        assert err["kind"] == "PROCEDURE"
        assert err["type"] == "ValueError"
        assert err["message"] == "boom"
        assert "traceback" in err

    def test_no_server(self) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "noop"])
        assert result.exit_code == 1
        assert '"kind": "IO"' in result.output

    def test_unknown_method(self) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "mul"])
        assert result.exit_code == 2
        assert "Unknown method" in result.output

    def test_unknown_parameter(self) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "add", "c=1"])
        assert result.exit_code == 2
        assert "Unknown parameter" in result.output

    def test_invalid_value(self) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "add", "a=one", "b=2"])
        assert result.exit_code == 2

    def test_missing_argument(self, running: None) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "add", "a=1"])
        assert result.exit_code == 2

    def test_json_must_be_object(self) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "add", "--json", "[1, 2]"])
        assert result.exit_code == 2

    def test_zero_timeout(self) -> None:
        result = runner.invoke(app, ["call", _PROTOCOL, "noop", "--timeout", "0"])
        assert result.exit_code == 2
        assert "positive" in result.output

    def test_malformed_timeout_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEMONITE_TIMEOUT", "soon")
        result = runner.invoke(app, ["call", _PROTOCOL, "noop"])
        assert result.exit_code == 2
        assert "DEMONITE_TIMEOUT" in result.output


class TestServe:
    def test_already_running(self, running: None) -> None:
        result = runner.invoke(app, ["serve", _PROTOCOL, "tests.test_rpc:CalculatorImpl"])
        assert result.exit_code == 1
        assert '"kind": "ALREADY_RUNNING"' in result.output

    def test_nonconforming_implementation(self) -> None:
        result = runner.invoke(app, ["serve", _PROTOCOL, "tests.test_cli:_Empty"])
        assert result.exit_code == 1
        assert "does not implement Calculator" in result.output

    def test_bad_permissions(self, runtime_dir: Path) -> None:
        runtime_dir.chmod(0o700 | 0o070)
        result = runner.invoke(app, ["serve", _PROTOCOL, "tests.test_rpc:CalculatorImpl"])
        assert result.exit_code == 1
        assert '"kind": "RUNTIME_DIR_INVALID_PERMISSIONS"' in result.output
        assert not (runtime_dir / "demonite").exists()

    def test_malformed_timeout_env(self, runtime_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DEMONITE_TIMEOUT", "-1")
        result = runner.invoke(app, ["serve", _PROTOCOL, "tests.test_rpc:CalculatorImpl"])
        assert result.exit_code == 2
        assert "positive" in result.output
        assert not (runtime_dir / "demonite").exists()
