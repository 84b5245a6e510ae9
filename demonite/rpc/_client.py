"""Client proxy: one blocking stub per procedure."""

from __future__ import annotations

import contextlib
import logging
import os
import socket
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar, cast

from demonite.errors import TransportError
from demonite.rpc._common import SocketTimeouts
from demonite.rpc._debug import fmt_args, wire_request_logger, wire_transport_logger
from demonite.rpc._types import RpcMethodInfo, build_call, rpc_methods, service_name
from demonite.rpc._wire import decode_result, encode_call
from demonite.runtime import resolve_socket_path

_RECV_CHUNK = 64 * 1024


def _open_connection(path: Path, timeouts: SocketTimeouts) -> socket.socket:
    """Open a fresh stream connection to the listener at *path*.

    Raises:
        TransportError: If the connection cannot be established.

    """
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.settimeout(timeouts.connect)
        sock.connect(str(path))
    except OSError as exc:
        sock.close()
        raise TransportError(f"Cannot connect to {path}: {exc}") from exc
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("Connected to %s", path)
    return sock


def _round_trip(path: Path, info: RpcMethodInfo, request: bytes, timeouts: SocketTimeouts) -> object:
    """Send one encoded call over a new connection and decode the single response.

    Raises:
        TransportError: On connect, send, or receive failures, or if the
            peer closes the connection before sending a response.
        SerializeError: If the response cannot be decoded.
        RpcError: If the server answered with an error envelope.

    """
    with contextlib.closing(_open_connection(path, timeouts)) as sock:
        try:
            sock.settimeout(timeouts.write)
            sock.sendall(request)
        except OSError as exc:
            raise TransportError(f"Cannot send call to '{info.name}' on {path}: {exc}") from exc
        try:
            sock.settimeout(timeouts.read)
            response = _recv_until_closed(sock)
        except OSError as exc:
            raise TransportError(f"Cannot receive response to '{info.name}' from {path}: {exc}") from exc
    if not response:
        raise TransportError(f"Connection to {path} closed before a response to '{info.name}'")
    return decode_result(info, response)


def _recv_until_closed(sock: socket.socket) -> bytes:
    """Read from *sock* until the peer closes its side; the server closes after one response."""
    chunks: list[bytes] = []
    while chunk := sock.recv(_RECV_CHUNK):
        chunks.append(chunk)
    return b"".join(chunks)


class _RpcProxy:
    """Dynamic proxy whose attributes are blocking stubs for the protocol's procedures.

    Every stub call opens its own connection, so a proxy may be shared
    across threads.
    """

    def __init__(
        self,
        protocol: type,
        path: str | os.PathLike[str] | None = None,
        *,
        config: SocketTimeouts | None = None,
    ) -> None:
        self._protocol = protocol
        self._methods = rpc_methods(protocol)
        self._service_name = service_name(protocol)
        self._path = Path(path) if path is not None else None
        self._config = config if config is not None else SocketTimeouts.from_env()

    def __getattr__(self, name: str) -> Any:
        info = self._methods.get(name)
        if info is None:
            raise AttributeError(f"{self._protocol.__name__} has no RPC method '{name}'")
        caller = self._make_caller(info)
        self.__dict__[name] = caller
        return caller

    def __repr__(self) -> str:
        target = str(self._path) if self._path is not None else f"<runtime>/{self._service_name}"
        return f"<{self._protocol.__name__} client at {target}>"

    def _socket_path(self) -> Path:
        # Resolved per call so environment changes are observed.
        if self._path is not None:
            return self._path
        return resolve_socket_path(self._service_name)

    def _make_caller(self, info: RpcMethodInfo) -> Callable[..., object]:
        protocol = self._protocol
        config = self._config

        def caller(*args: Any, **kwargs: Any) -> object:
            message = build_call(protocol, info.name, *args, **kwargs)
            request = encode_call(protocol, message)
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug(
                    "Call %s.%s(%s)",
                    message.service,
                    info.name,
                    fmt_args(info.param_names, message.args),
                )
            return _round_trip(self._socket_path(), info, request, config)

        caller.__name__ = info.name
        caller.__doc__ = info.doc
        return caller


P = TypeVar("P")


def connect(
    protocol: type[P],
    *,
    path: str | os.PathLike[str] | None = None,
    config: SocketTimeouts | None = None,
) -> P:
    """Return a typed client for the service declared by *protocol*.

    No connection is opened here: each procedure call connects, sends one
    call message, reads one response, and disconnects.

    Args:
        protocol: The Protocol class declaring the service.
        path: Explicit socket path; resolved from the service name on every
            call if ``None``.
        config: Deadlines for each call; read from ``DEMONITE_TIMEOUT`` if ``None``.

    Returns:
        A proxy typed as *protocol*.

    """
    return cast(P, _RpcProxy(protocol, path, config=config))


def call(protocol: type, method: str, /, *args: Any, **kwargs: Any) -> object:
    """Invoke one procedure of *protocol* and return its result.

    Shorthand for ``getattr(connect(protocol), method)(*args, **kwargs)``.

    Raises:
        AttributeError: If *method* is not a procedure of *protocol*.

    """
    return getattr(_RpcProxy(protocol), method)(*args, **kwargs)
