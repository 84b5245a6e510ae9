"""Unix-domain socket listener.

A listener moves through a fixed startup sequence before it accepts
anything::

    validate runtime dir → ensure socket dir → stale check → bind + listen

and then serves connections strictly one at a time: each connection
carries exactly one call message and receives exactly one response.
"""

from __future__ import annotations

import contextlib
import os
import socket
import stat
import threading
from pathlib import Path
from types import TracebackType

from demonite.errors import AlreadyRunningError, TransportError
from demonite.rpc._common import SocketTimeouts
from demonite.rpc._debug import wire_transport_logger
from demonite.rpc._server import RpcServer, _Logger
from demonite.runtime import ensure_socket_dir, resolve_socket_path, runtime_base_dir, validate_runtime_dir

# How often a blocked accept() wakes up to notice close().
_ACCEPT_POLL_INTERVAL = 0.2


def _socket_is_live(path: Path) -> bool:
    """Return ``True`` if a live listener accepts connections at *path*.

    Raises:
        TransportError: If connecting fails for any reason other than the
            connection being refused.

    """
    with contextlib.closing(socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)) as sock:
        try:
            sock.connect(str(path))
        except ConnectionRefusedError:
            return False
        except OSError as exc:
            raise TransportError(f"Cannot check existing socket {path}: {exc}") from exc
    return True


def _prepare_socket_path(path: Path) -> None:
    """Make *path* available for binding.

    Nothing at the path: nothing to do.  A live listener: the path is left
    untouched and ``AlreadyRunningError`` is raised.  A stale socket file
    (connection refused): the file is removed.  Anything that is not a
    socket is left alone and reported.

    Raises:
        AlreadyRunningError: If another listener is serving on *path*.
        TransportError: If *path* is not a socket, the liveness check is
            inconclusive, or the stale file cannot be removed.

    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise TransportError(f"Cannot inspect {path}: {exc}") from exc
    if not stat.S_ISSOCK(st.st_mode):
        raise TransportError(f"{path} exists and is not a socket")
    if _socket_is_live(path):
        raise AlreadyRunningError(path)
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as exc:
        raise TransportError(f"Cannot remove stale socket {path}: {exc}") from exc
    wire_transport_logger.debug("Removed stale socket %s", path)


class UnixListener:
    """Serves one :class:`RpcServer` on a Unix-domain socket.

    With ``path=None`` the socket lives at the resolved service path under
    ``$XDG_RUNTIME_DIR/demonite``, and the runtime directory is validated
    before anything is bound.  An explicit *path* bypasses the runtime
    directory entirely.

    Usable as a context manager: entering starts the listener, exiting
    closes it.
    """

    def __init__(
        self,
        server: RpcServer,
        path: str | os.PathLike[str] | None = None,
        *,
        config: SocketTimeouts | None = None,
        logger: _Logger | None = None,
    ) -> None:
        """Initialize without touching the filesystem.

        Args:
            server: The server whose calls this listener accepts.
            path: Explicit socket path; resolved from the service name if ``None``.
            config: Per-connection deadlines; read from ``DEMONITE_TIMEOUT``
                if ``None``.
            logger: Sink for lifecycle and error records; defaults to the
                server's logger.

        """
        self._server = server
        self._explicit_path = Path(path) if path is not None else None
        self._path: Path | None = None
        self._config = config if config is not None else SocketTimeouts.from_env()
        self._logger: _Logger = logger if logger is not None else server.logger
        self._sock: socket.socket | None = None
        self._inode: int | None = None
        self._closed = threading.Event()

    @property
    def server(self) -> RpcServer:
        """The server whose calls this listener accepts."""
        return self._server

    @property
    def path(self) -> Path | None:
        """Bound socket path, or ``None`` before :meth:`start`."""
        return self._path

    @property
    def config(self) -> SocketTimeouts:
        """Per-connection deadlines."""
        return self._config

    @property
    def listening(self) -> bool:
        """Whether the socket is bound and not yet closed."""
        return self._sock is not None and not self._closed.is_set()

    def start(self) -> Path:
        """Run the startup sequence and return the bound socket path.

        Raises:
            EnvVarError: If ``XDG_RUNTIME_DIR`` is not set.
            RuntimeDirMissingError: If the runtime directory does not exist.
            RuntimeDirInvalidPermissionsError: If the runtime directory is not 0700.
            AlreadyRunningError: If a live listener already serves the path.
            TransportError: If something other than a socket occupies the
                path, or on any other I/O failure.

        """
        if self._sock is not None:
            raise RuntimeError("UnixListener already started")
        if self._explicit_path is None:
            validate_runtime_dir(runtime_base_dir())
            ensure_socket_dir()
            path = resolve_socket_path(self._server.service_name)
        else:
            path = self._explicit_path

        _prepare_socket_path(path)

        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(path))
            sock.listen()
            self._inode = os.stat(path).st_ino
        except OSError as exc:
            sock.close()
            raise TransportError(f"Cannot listen on {path}: {exc}") from exc
        sock.settimeout(_ACCEPT_POLL_INTERVAL)

        self._sock = sock
        self._path = path
        self._logger.info(
            "Listening on %s",
            path,
            extra={"server_id": self._server.server_id, "service": self._server.service_name, "path": str(path)},
        )
        return path

    def serve_forever(self) -> None:
        """Accept and handle connections, one at a time, until :meth:`close`.

        Starts the listener first if needed; startup errors propagate.
        Nothing that happens on an individual connection stops the loop.
        """
        if self._sock is None:
            self.start()
        sock = self._sock
        assert sock is not None
        while not self._closed.is_set():
            try:
                conn, _ = sock.accept()
            except TimeoutError:
                continue
            except OSError as exc:
                if self._closed.is_set():
                    break
                self._logger.warning("accept() failed: %s", exc, extra={"server_id": self._server.server_id})
                continue
            wire_transport_logger.debug("Accepted connection on %s", self._path)
            with conn:
                self._server.serve_one(conn, self._config)

    def close(self) -> None:
        """Stop accepting and remove the socket file if this listener still owns it."""
        if self._closed.is_set():
            return
        self._closed.set()
        if self._sock is not None:
            self._sock.close()
        path = self._path
        if path is not None and self._inode is not None:
            try:
                if os.stat(path).st_ino == self._inode:
                    path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                self._logger.warning("Cannot remove socket %s: %s", path, exc)
        self._logger.info("Listener closed", extra={"server_id": self._server.server_id, "path": str(path)})

    def __enter__(self) -> UnixListener:
        """Start the listener."""
        if self._sock is None:
            self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the listener."""
        self.close()


def serve_unix(
    protocol_or_server: type | RpcServer,
    implementation: object | None = None,
    *,
    path: str | os.PathLike[str] | None = None,
    config: SocketTimeouts | None = None,
) -> None:
    """Serve a service on its Unix-domain socket until interrupted.

    Accepts either a ``(protocol, implementation)`` pair or a pre-built
    ``RpcServer``.  Blocks; the socket file is removed on exit.

    Raises:
        TypeError: On invalid argument combinations.
        DemoniteError: If the listener cannot start.

    """
    if isinstance(protocol_or_server, RpcServer):
        if implementation is not None:
            raise TypeError("implementation must be None when passing an RpcServer")
        server = protocol_or_server
    elif isinstance(protocol_or_server, type):
        if implementation is None:
            raise TypeError("implementation is required when passing a Protocol class")
        server = RpcServer(protocol_or_server, implementation)
    else:
        raise TypeError(f"Expected a Protocol class or RpcServer, got {type(protocol_or_server).__name__}")
    with UnixListener(server, path, config=config) as listener:
        listener.serve_forever()
