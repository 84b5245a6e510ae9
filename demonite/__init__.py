"""Local inter-process procedure calls over Unix-domain sockets."""

import logging

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
from demonite.log import Level, Message
from demonite.metadata import REQUEST_VERSION
from demonite.rpc import (
    CallMessage,
    RpcMethodInfo,
    RpcServer,
    SocketTimeouts,
    UnixListener,
    build_call,
    call,
    connect,
    decode_call,
    decode_result,
    describe_rpc,
    encode_call,
    rpc_methods,
    serve_unix,
    service_name,
)
from demonite.runtime import (
    ensure_socket_dir,
    resolve_socket_path,
    runtime_base_dir,
    socket_dir,
    validate_runtime_dir,
)
from demonite.utils import ArrowType

__all__ = [
    # Core
    "RpcServer",
    "UnixListener",
    "RpcMethodInfo",
    "CallMessage",
    "SocketTimeouts",
    # Convenience
    "serve_unix",
    "connect",
    "call",
    "build_call",
    # Codec
    "encode_call",
    "decode_call",
    "decode_result",
    # Introspection
    "rpc_methods",
    "service_name",
    "describe_rpc",
    # Runtime directory
    "runtime_base_dir",
    "validate_runtime_dir",
    "socket_dir",
    "resolve_socket_path",
    "ensure_socket_dir",
    # Errors
    "DemoniteError",
    "ErrorKind",
    "SerializeError",
    "TransportError",
    "EnvVarError",
    "RuntimeDirMissingError",
    "RuntimeDirInvalidPermissionsError",
    "AlreadyRunningError",
    "RpcError",
    # Logging
    "Level",
    "Message",
    # Serialization
    "ArrowType",
    # Protocol version
    "REQUEST_VERSION",
]

# Attach NullHandler to the package logger so library users don't get
# "No handler found" warnings.
logging.getLogger("demonite").addHandler(logging.NullHandler())
