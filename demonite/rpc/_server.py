"""RPC server dispatch."""

from __future__ import annotations

import logging
import socket
import time
import uuid
from collections.abc import Mapping
from typing import Any, Literal, TypeAlias

from demonite.errors import ErrorKind, SerializeError
from demonite.rpc._common import (
    SocketTimeouts,
    _access_logger,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from demonite.rpc._debug import fmt_args
from demonite.rpc._types import CallMessage, RpcMethodInfo, _validate_implementation, rpc_methods, service_name
from demonite.rpc._wire import _read_call, encode_error, encode_result

_Logger: TypeAlias = logging.Logger | logging.LoggerAdapter[logging.Logger]

# Failures while receiving a request; each one drops the connection and nothing else.
_REQUEST_READ_ERRORS = (SerializeError, EOFError, OSError)

# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _emit_access_log(
    service: str,
    method_name: str,
    server_id: str,
    duration_ms: float,
    status: Literal["ok", "error"],
    error_type: str = "",
    error_kind: ErrorKind | None = None,
) -> None:
    """Emit a structured access log record for a completed call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    extra: dict[str, object] = {
        "server_id": server_id,
        "service": service,
        "method": method_name,
        "duration_ms": round(duration_ms, 2),
        "status": status,
        "error_type": error_type,
    }
    if error_kind is not None:
        extra["error_kind"] = error_kind.value
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _access_logger.info("%s.%s %s", service, method_name, status, extra=extra)


class RpcServer:
    """Dispatches call messages of one service to its implementation.

    The server owns no socket; :class:`~demonite.rpc.UnixListener` accepts
    connections and hands each one to :meth:`serve_one`.
    """

    __slots__ = ("_impl", "_logger", "_methods", "_protocol", "_server_id", "_service_name")

    def __init__(
        self,
        protocol: type,
        implementation: object,
        *,
        logger: _Logger | None = None,
        server_id: str | None = None,
    ) -> None:
        """Initialize with a protocol type and its implementation.

        Args:
            protocol: The Protocol class declaring the service.
            implementation: Object implementing every procedure of *protocol*.
            logger: Sink for lifecycle and error records; defaults to
                the ``demonite.rpc`` logger.
            server_id: Optional server identifier; auto-generated if ``None``.

        Raises:
            TypeError: If *implementation* does not conform to *protocol*.
            ValueError: If the service name is not a plain filename.

        """
        self._protocol = protocol
        self._impl = implementation
        self._logger: _Logger = logger if logger is not None else _logger
        self._methods = rpc_methods(protocol)
        self._service_name = service_name(protocol)
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        _validate_implementation(protocol, implementation, self._methods)

        self._logger.info(
            "RpcServer created for %s (server_id=%s, methods=%d)",
            self._service_name,
            self._server_id,
            len(self._methods),
            extra={"server_id": self._server_id, "service": self._service_name, "method_count": len(self._methods)},
        )

    @property
    def methods(self) -> Mapping[str, RpcMethodInfo]:
        """Return procedure metadata for this server's protocol."""
        return self._methods

    @property
    def protocol(self) -> type:
        """The Protocol class this server implements."""
        return self._protocol

    @property
    def implementation(self) -> object:
        """The implementation object."""
        return self._impl

    @property
    def logger(self) -> _Logger:
        """The injected log sink."""
        return self._logger

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def service_name(self) -> str:
        """Service name; also the socket filename."""
        return self._service_name

    @property
    def protocol_name(self) -> str:
        """Name of the Protocol class this server implements."""
        return self._protocol.__name__

    def dispatch(self, message: CallMessage) -> bytes:
        """Invoke the procedure named by *message* and return the encoded response.

        Never raises for failures of the call itself: an exception from the
        implementation becomes an ``Err`` envelope of kind ``PROCEDURE`` and a
        return value that cannot be encoded becomes ``Err`` of kind
        ``SERIALIZE``.
        """
        info = self._methods.get(message.method)
        if info is None or message.service != self._service_name:
            exc = SerializeError(f"'{message.service}.{message.method}' is not a procedure of {self._service_name}")
            self._log_error(message.method, exc, ErrorKind.SERIALIZE)
            return encode_error(exc, ErrorKind.SERIALIZE)

        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.debug(
                "Dispatch %s.%s(%s)",
                self._service_name,
                info.name,
                fmt_args(info.param_names, message.args),
                extra={"server_id": self._server_id, "method": info.name},
            )

        start = time.monotonic()
        status: Literal["ok", "error"] = "ok"
        error_type = ""
        error_kind: ErrorKind | None = None
        try:
            try:
                result = getattr(self._impl, info.name)(**message.kwargs(info))
            except Exception as exc:
                status, error_type, error_kind = "error", type(exc).__name__, ErrorKind.PROCEDURE
                self._log_error(info.name, exc, error_kind)
                return encode_error(exc, error_kind)
            try:
                return encode_result(info, result)
            except SerializeError as exc:
                status, error_type, error_kind = "error", type(exc).__name__, ErrorKind.SERIALIZE
                self._log_error(info.name, exc, error_kind)
                return encode_error(exc, error_kind)
        finally:
            _emit_access_log(
                self._service_name,
                info.name,
                self._server_id,
                (time.monotonic() - start) * 1000,
                status,
                error_type,
                error_kind,
            )

    def serve_one(self, conn: socket.socket, timeouts: SocketTimeouts | None = None) -> None:
        """Handle one accepted connection: read one call, dispatch, answer once.

        Failures to read the request or to write the response are logged and
        the method returns normally; the caller closes *conn*.

        Args:
            conn: A connected stream socket.
            timeouts: Deadlines for reading the request and writing the
                response; ``None`` blocks indefinitely.

        """
        timeouts = timeouts if timeouts is not None else SocketTimeouts()
        token = _current_request_id.set(_generate_request_id())
        try:
            try:
                conn.settimeout(timeouts.read)
                with conn.makefile("rb") as reader:
                    _, message = _read_call(self._protocol, reader)
            except _REQUEST_READ_ERRORS as exc:
                self._logger.error(
                    "Dropping connection: cannot read request: %s",
                    exc or type(exc).__name__,
                    extra={"server_id": self._server_id, "error_type": type(exc).__name__},
                )
                return

            response = self.dispatch(message)

            try:
                conn.settimeout(timeouts.write)
                conn.sendall(response)
            except OSError as exc:
                self._logger.error(
                    "Cannot write response for %s.%s: %s",
                    self._service_name,
                    message.method,
                    exc,
                    extra={"server_id": self._server_id, "method": message.method},
                )
        finally:
            _current_request_id.reset(token)

    def _log_error(self, method_name: str, exc: BaseException, kind: ErrorKind) -> None:
        extra: dict[str, Any] = {
            "server_id": self._server_id,
            "method": method_name,
            "error_type": type(exc).__name__,
            "error_kind": kind.value,
        }
        request_id = _current_request_id.get()
        if request_id:
            extra["request_id"] = request_id
        self._logger.error(
            "Error in %s.%s: %s",
            self._service_name,
            method_name,
            exc,
            exc_info=kind is ErrorKind.PROCEDURE,
            extra=extra,
        )
