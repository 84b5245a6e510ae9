"""Command-line interface for demonite services.

Resolves socket paths, checks the runtime directory, describes service
protocols, hosts a service, and invokes single procedures.

Usage::

    demonite path Calculator
    demonite check
    demonite describe myapp.services:Calculator
    demonite serve myapp.services:Calculator myapp.impl:CalculatorImpl
    demonite call myapp.services:Calculator add a=1 b=2

"""

from __future__ import annotations

import importlib
import json
import sys
from dataclasses import dataclass
from enum import Enum, StrEnum
from importlib.metadata import PackageNotFoundError, version
from typing import Annotated, Any

import pyarrow as pa
import typer

from demonite.errors import DemoniteError, RpcError
from demonite.logging_utils import configure_logging
from demonite.rpc import (
    RpcMethodInfo,
    RpcServer,
    SocketTimeouts,
    UnixListener,
    connect,
    describe_rpc,
    rpc_methods,
    service_name,
)
from demonite.runtime import resolve_socket_path, runtime_base_dir, validate_runtime_dir

# ---------------------------------------------------------------------------
# Output format enums
# ---------------------------------------------------------------------------


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    auto = "auto"
    json = "json"
    table = "table"


class LogFormat(StrEnum):
    """Format of log records written to stderr."""

    text = "text"
    json = "json"


# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    format: OutputFormat = OutputFormat.auto


app = typer.Typer(
    name="demonite",
    help="Host and call local demonite services.",
    add_completion=False,
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if not value:
        return
    try:
        typer.echo(f"demonite {version('demonite')}")
    except PackageNotFoundError:
        typer.echo("demonite (not installed)")
    raise typer.Exit()


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def _main(
    ctx: typer.Context,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.auto,
    log_level: Annotated[str, typer.Option("--log-level", help="Level for demonite.* loggers")] = "WARNING",
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Log record format")] = LogFormat.text,
    _version: Annotated[
        bool,
        typer.Option("--version", callback=_version_callback, is_eager=True, help="Show the version and exit"),
    ] = False,
) -> None:
    """Configure logging and output options."""
    configure_logging(log_level, log_format.value)
    ctx.obj = _CliConfig(format=fmt)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_object(spec: str) -> Any:
    """Import ``module:attribute`` and return the attribute.

    Raises:
        typer.BadParameter: If the reference is malformed or cannot be imported.

    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter(f"Expected MODULE:NAME, got: {spec}")
    try:
        obj: Any = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"Cannot import {module_name}: {exc}") from None
    for part in attr.split("."):
        try:
            obj = getattr(obj, part)
        except AttributeError:
            raise typer.BadParameter(f"{module_name} has no attribute {attr}") from None
    return obj


def _load_protocol(spec: str) -> type:
    protocol = _load_object(spec)
    if not isinstance(protocol, type):
        raise typer.BadParameter(f"{spec} is not a class")
    return protocol


def _is_integer_type(arrow_type: pa.DataType) -> bool:
    """Check if arrow_type is any integer type."""
    return pa.types.is_integer(arrow_type)


def _is_float_type(arrow_type: pa.DataType) -> bool:
    """Check if arrow_type is any float type."""
    return pa.types.is_floating(arrow_type)


def _coerce_value(value_str: str, arrow_type: pa.DataType) -> object:
    """Coerce a string value to the expected Arrow type.

    Args:
        value_str: Raw string from a CLI ``key=value`` arg.
        arrow_type: Target Arrow type from the procedure's params_schema.

    Returns:
        Coerced Python value suitable for Arrow serialization.

    """
    if _is_integer_type(arrow_type):
        return int(value_str)
    if _is_float_type(arrow_type):
        return float(value_str)
    if pa.types.is_boolean(arrow_type):
        return value_str.lower() in ("true", "1", "yes")
    if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type):
        return value_str
    if pa.types.is_binary(arrow_type) or pa.types.is_large_binary(arrow_type):
        return value_str.encode()
    # Complex types: try JSON parse
    return json.loads(value_str)


def _parse_key_value_args(args: list[str], info: RpcMethodInfo) -> dict[str, object]:
    """Parse key=value args using schema-driven type coercion.

    Raises:
        typer.BadParameter: If a key is not a parameter or a value cannot be coerced.

    """
    result: dict[str, object] = {}
    schema_fields = {f.name: f.type for f in info.params_schema}
    for arg in args:
        if "=" not in arg:
            raise typer.BadParameter(f"Expected key=value, got: {arg}")
        key, value = arg.split("=", 1)
        if key not in schema_fields:
            available = ", ".join(sorted(schema_fields)) or "(none)"
            raise typer.BadParameter(f"Unknown parameter '{key}'. Available: {available}")
        try:
            result[key] = _coerce_value(value, schema_fields[key])
        except (ValueError, json.JSONDecodeError) as exc:
            raise typer.BadParameter(f"Invalid value for '{key}' ({schema_fields[key]}): {exc}") from None
    return result


def _to_jsonable(value: object) -> object:
    """Convert a procedure result into plain JSON types."""
    if isinstance(value, Enum):
        return value.name
    if isinstance(value, bytes):
        return value.decode(errors="replace")
    if isinstance(value, frozenset):
        return sorted((_to_jsonable(v) for v in value), key=str)
    if isinstance(value, dict):
        return {str(k): _to_jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_jsonable(v) for v in value]
    return value


def _format_table(rows: list[dict[str, object]]) -> str:
    """Format rows as a simple column-aligned text table."""
    if not rows:
        return "(empty)"
    columns = list(rows[0].keys())
    widths = {col: len(col) for col in columns}
    str_rows: list[dict[str, str]] = []
    for row in rows:
        sr: dict[str, str] = {}
        for col in columns:
            s = str(row.get(col, ""))
            sr[col] = s
            widths[col] = max(widths[col], len(s))
        str_rows.append(sr)

    lines: list[str] = []
    lines.append("  ".join(col.ljust(widths[col]) for col in columns))
    lines.append("  ".join("-" * widths[col] for col in columns))
    lines.extend("  ".join(sr[col].ljust(widths[col]) for col in columns) for sr in str_rows)
    return "\n".join(lines)


def _print_json(data: object, *, pretty: bool = False) -> None:
    """Print JSON to stdout."""
    if pretty:
        typer.echo(json.dumps(data, indent=2, default=str))
    else:
        typer.echo(json.dumps(data, default=str))


def _emit_error(e: DemoniteError) -> None:
    """Write a DemoniteError to stderr as JSON."""
    err: dict[str, object] = {"kind": e.kind.value, "type": type(e).__name__, "message": str(e)}
    if isinstance(e, RpcError):
        err["type"] = e.error_type
        err["message"] = e.error_message
        if e.remote_traceback:
            err["traceback"] = e.remote_traceback
    typer.echo(json.dumps({"error": err}, default=str), err=True)


# ---------------------------------------------------------------------------
# path / check commands
# ---------------------------------------------------------------------------


@app.command()
def path(service: Annotated[str, typer.Argument(help="Service name")]) -> None:
    """Print the socket path of SERVICE."""
    try:
        resolved = resolve_socket_path(service)
    except DemoniteError as e:
        _emit_error(e)
        raise typer.Exit(1) from None
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None
    typer.echo(str(resolved))


@app.command()
def check(ctx: typer.Context) -> None:
    """Check that the runtime directory exists and is owner-only."""
    config: _CliConfig = ctx.obj
    try:
        base = runtime_base_dir()
        validate_runtime_dir(base)
    except DemoniteError as e:
        _emit_error(e)
        raise typer.Exit(1) from None
    if config.format == OutputFormat.json:
        _print_json({"runtime_dir": str(base), "ok": True})
    else:
        typer.echo(f"OK: {base}")


# ---------------------------------------------------------------------------
# describe command
# ---------------------------------------------------------------------------


@app.command()
def describe(
    ctx: typer.Context,
    protocol_spec: Annotated[str, typer.Argument(metavar="MODULE:PROTOCOL", help="Service Protocol class")],
) -> None:
    """Show the procedures of a service Protocol."""
    config: _CliConfig = ctx.obj
    protocol = _load_protocol(protocol_spec)
    try:
        methods = rpc_methods(protocol)
        name = service_name(protocol)
    except (TypeError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    is_tty = sys.stdout.isatty()
    fmt = config.format
    if fmt == OutputFormat.table or (fmt == OutputFormat.auto and is_tty):
        typer.echo(describe_rpc(protocol, methods=methods))
        return
    data: dict[str, object] = {
        "service": name,
        "methods": {
            method_name: {
                "doc": info.doc,
                "has_return": info.has_return,
                "param_types": {f.name: str(f.type) for f in info.params_schema},
                "result_type": str(info.result_schema.field(0).type) if info.has_return else None,
                "param_defaults": {k: _to_jsonable(v) for k, v in info.param_defaults.items()},
            }
            for method_name, info in sorted(methods.items())
        },
    }
    _print_json(data, pretty=(fmt == OutputFormat.auto and is_tty))


def _socket_timeouts(seconds: float | None) -> SocketTimeouts:
    """Build deadlines from ``--timeout``, falling back to ``DEMONITE_TIMEOUT``.

    Raises:
        typer.BadParameter: If the value is not a positive number of seconds.

    """
    try:
        return SocketTimeouts.uniform(seconds) if seconds is not None else SocketTimeouts.from_env()
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None


# ---------------------------------------------------------------------------
# serve command
# ---------------------------------------------------------------------------


@app.command()
def serve(
    protocol_spec: Annotated[str, typer.Argument(metavar="MODULE:PROTOCOL", help="Service Protocol class")],
    impl_spec: Annotated[str, typer.Argument(metavar="MODULE:IMPL", help="Implementation class or instance")],
    socket: Annotated[str | None, typer.Option("--socket", "-s", help="Explicit socket path")] = None,
) -> None:
    """Serve a service on its Unix socket until interrupted."""
    protocol = _load_protocol(protocol_spec)
    impl = _load_object(impl_spec)
    timeouts = _socket_timeouts(None)
    if isinstance(impl, type):
        impl = impl()
    try:
        server = RpcServer(protocol, impl)
    except (TypeError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None
    try:
        with UnixListener(server, socket, config=timeouts) as listener:
            typer.echo(f"UNIX:{listener.path}", err=True)
            listener.serve_forever()
    except DemoniteError as e:
        _emit_error(e)
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        pass


# ---------------------------------------------------------------------------
# call command
# ---------------------------------------------------------------------------


@app.command()
def call(
    ctx: typer.Context,
    protocol_spec: Annotated[str, typer.Argument(metavar="MODULE:PROTOCOL", help="Service Protocol class")],
    method: Annotated[str, typer.Argument(help="Procedure name")],
    args: Annotated[list[str] | None, typer.Argument(help="Arguments as key=value")] = None,
    json_args: Annotated[str | None, typer.Option("--json", "-j", help="Arguments as a JSON object")] = None,
    socket: Annotated[str | None, typer.Option("--socket", "-s", help="Explicit socket path")] = None,
    timeout: Annotated[float | None, typer.Option("--timeout", "-t", help="Deadline in seconds")] = None,
) -> None:
    """Invoke one procedure and print its result."""
    config: _CliConfig = ctx.obj
    protocol = _load_protocol(protocol_spec)
    info = rpc_methods(protocol).get(method)
    if info is None:
        available = ", ".join(sorted(rpc_methods(protocol)))
        raise typer.BadParameter(f"Unknown method '{method}'. Available: {available}")

    kwargs: dict[str, object] = {}
    if json_args is not None:
        try:
            parsed = json.loads(json_args)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"--json is not valid JSON: {e}") from None
        if not isinstance(parsed, dict):
            raise typer.BadParameter("--json must be a JSON object")
        kwargs.update(parsed)
    kwargs.update(_parse_key_value_args(args or [], info))

    timeouts = _socket_timeouts(timeout)
    client = connect(protocol, path=socket, config=timeouts)
    try:
        result = getattr(client, method)(**kwargs)
    except TypeError as e:
        raise typer.BadParameter(str(e)) from None
    except DemoniteError as e:
        _emit_error(e)
        raise typer.Exit(1) from None

    value = _to_jsonable(result)
    is_tty = sys.stdout.isatty()
    fmt = config.format
    if fmt == OutputFormat.table:
        typer.echo(_format_table([{"result": value}]))
    else:
        _print_json(value, pretty=(fmt == OutputFormat.auto and is_tty))
