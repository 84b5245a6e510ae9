"""Local RPC over Unix-domain sockets using Arrow IPC serialization.

Services are declared as Python Protocol classes.  Each public method is a
procedure; its parameter and return annotations determine the Arrow schemas
of the call message and of the result.  A hosting process serves the
implementation with :class:`UnixListener` (or :func:`serve_unix`); other
processes on the same host call it through :func:`connect`.

Wire Protocol
-------------
Every connection carries exactly one exchange::

    Client→Server: [IPC stream: params_schema + 1 request batch + EOS]
    Server→Client: [IPC stream: result_schema + 1 result batch + EOS]      (Ok)
                   [IPC stream: empty schema + 0-row error batch + EOS]    (Err)

Each ``ipc.open_stream()`` reads one complete IPC stream and stops, so
neither side needs a length prefix.

The request batch carries ``demonite.service``, ``demonite.method`` and
``demonite.request_version`` in its custom metadata.  A request that names
another service, an undeclared procedure, or whose columns do not match
the procedure's parameters is rejected before dispatch.

Errors are signaled as zero-row batches with ``demonite.log_level =
EXCEPTION`` plus ``demonite.error_kind``; the client raises ``RpcError``.

Socket Location
---------------
``$XDG_RUNTIME_DIR/demonite/<ServiceName>``.  ``XDG_RUNTIME_DIR`` must be
a directory with mode 0700; the ``demonite`` sub-directory is created on
first use.  A stale socket file left by a crashed listener is detected
(connection refused) and replaced; a live one makes startup fail with
``AlreadyRunningError``.

Concurrency
-----------
Listeners are strictly serial: a connection is read, dispatched, answered
and closed before the next one is accepted.  Clients open a new
connection per call and hold no state between calls.
"""

from __future__ import annotations

from collections.abc import Mapping

from demonite.errors import (
    AlreadyRunningError,
    DemoniteError,
    EnvVarError,
    ErrorKind,
    RpcError,
    RuntimeDirInvalidPermissionsError,
    RuntimeDirMissingError,
    SerializeError,
    TransportError,
)
from demonite.rpc._client import _RpcProxy, call, connect
from demonite.rpc._common import (
    _EMPTY_SCHEMA,
    TIMEOUT_ENV,
    SocketTimeouts,
    _access_logger,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from demonite.rpc._server import RpcServer, _emit_access_log
from demonite.rpc._transport import UnixListener, _prepare_socket_path, _socket_is_live, serve_unix
from demonite.rpc._types import (
    CallMessage,
    RpcMethodInfo,
    _build_params_schema,
    _build_result_schema,
    _format_signature,
    _unwrap_annotated,
    _validate_implementation,
    _validate_protocol_params,
    build_call,
    rpc_methods,
    service_name,
)
from demonite.rpc._wire import (
    _convert_for_arrow,
    _deserialize_value,
    _read_call,
    decode_call,
    decode_result,
    encode_call,
    encode_error,
    encode_result,
)

__all__ = [
    # Public API
    "AlreadyRunningError",
    "CallMessage",
    "DemoniteError",
    "EnvVarError",
    "ErrorKind",
    "RpcError",
    "RpcMethodInfo",
    "RpcServer",
    "RuntimeDirInvalidPermissionsError",
    "RuntimeDirMissingError",
    "SerializeError",
    "SocketTimeouts",
    "TIMEOUT_ENV",
    "TransportError",
    "UnixListener",
    "build_call",
    "call",
    "connect",
    "decode_call",
    "decode_result",
    "describe_rpc",
    "encode_call",
    "encode_error",
    "encode_result",
    "rpc_methods",
    "serve_unix",
    "service_name",
    # Internal, used by demonite.cli and tests
    "_EMPTY_SCHEMA",
    "_RpcProxy",
    "_access_logger",
    "_build_params_schema",
    "_build_result_schema",
    "_convert_for_arrow",
    "_current_request_id",
    "_deserialize_value",
    "_emit_access_log",
    "_format_signature",
    "_generate_request_id",
    "_logger",
    "_prepare_socket_path",
    "_read_call",
    "_socket_is_live",
    "_unwrap_annotated",
    "_validate_implementation",
    "_validate_protocol_params",
]


def describe_rpc(protocol: type, *, methods: Mapping[str, RpcMethodInfo] | None = None) -> str:
    """Return a human-readable description of a service's procedures."""
    if methods is None:
        methods = rpc_methods(protocol)
    name = service_name(protocol)
    lines: list[str] = [f"Service: {name}", f"Socket: $XDG_RUNTIME_DIR/demonite/{name}", ""]

    for _, info in sorted(methods.items()):
        lines.append(f"  {_format_signature(info)}")
        lines.append(f"    params: {info.params_schema}")
        lines.append(f"    result: {info.result_schema if info.has_return else 'None'}")
        if info.doc:
            lines.append(f"    doc: {info.doc.strip()}")
        lines.append("")

    return "\n".join(lines)
