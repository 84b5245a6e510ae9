"""Shared test fixtures for demonite tests."""

from __future__ import annotations

import contextlib
import os
import shutil
import socket
import sys
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from demonite.rpc import RpcServer, SocketTimeouts, UnixListener

ListenerFactory = Callable[..., UnixListener]
"""Type alias for the ``serve_in_thread`` fixture return type."""


def _short_unix_path(tag: str) -> str:
    """Return a socket path short enough for AF_UNIX (108 bytes on Linux)."""
    return os.path.join(tempfile.mkdtemp(prefix=f"dm-{tag}-", dir="/tmp"), "s")


def _wait_for_unix(path: str | Path, timeout: float = 5.0) -> None:
    """Poll until a listener accepts connections at *path*."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        with contextlib.closing(socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)) as sock:
            try:
                sock.connect(str(path))
                return
            except OSError:
                time.sleep(0.05)
    raise TimeoutError(f"Unix socket {path} did not accept connections within {timeout}s")


@pytest.fixture(autouse=True)
def runtime_dir(monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    """Point ``XDG_RUNTIME_DIR`` at a fresh owner-only directory for each test.

    Created under ``/tmp`` so socket paths stay below the AF_UNIX length limit.
    """
    path = Path(tempfile.mkdtemp(prefix="dm-", dir="/tmp"))
    path.chmod(0o700)
    monkeypatch.setenv("XDG_RUNTIME_DIR", str(path))
    monkeypatch.delenv("DEMONITE_TIMEOUT", raising=False)
    yield path
    path.chmod(0o700)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture()
def serve_in_thread() -> Iterator[ListenerFactory]:
    """Start listeners whose accept loops run in daemon threads.

    ``start()`` runs in the calling thread, so startup errors raise
    directly in the test.  All listeners are closed at teardown.
    """
    started: list[tuple[UnixListener, threading.Thread]] = []

    def _serve(
        protocol: type,
        implementation: object,
        *,
        path: str | os.PathLike[str] | None = None,
        config: SocketTimeouts | None = None,
    ) -> UnixListener:
        listener = UnixListener(RpcServer(protocol, implementation), path, config=config)
        listener.start()
        thread = threading.Thread(target=listener.serve_forever, daemon=True)
        thread.start()
        started.append((listener, thread))
        return listener

    yield _serve

    for listener, thread in started:
        listener.close()
        thread.join(timeout=5)


def _python_cmd(script: Path, *args: str) -> list[str]:
    """Return the command that runs a fixture script with this interpreter."""
    return [sys.executable, str(script), *args]
