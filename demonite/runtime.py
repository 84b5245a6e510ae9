"""Runtime directory and socket path resolution.

Socket files live at ``$XDG_RUNTIME_DIR/demonite/<service>``.  The only
access control on a Unix socket is the filesystem permission of its
containing directory, so the base directory must be owner-only (0700);
anything looser would let other local users connect to the service.

Nothing here is memoised: every call re-reads the environment and
re-checks the directory, so changes are observed without restarting
callers.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Final

from demonite.errors import (
    EnvVarError,
    RuntimeDirInvalidPermissionsError,
    RuntimeDirMissingError,
    TransportError,
)

__all__ = [
    "REQUIRED_MODE",
    "RUNTIME_DIR_ENV",
    "SOCKET_SUBDIR",
    "ensure_socket_dir",
    "resolve_socket_path",
    "runtime_base_dir",
    "socket_dir",
    "validate_runtime_dir",
    "validate_service_name",
]

RUNTIME_DIR_ENV: Final = "XDG_RUNTIME_DIR"
SOCKET_SUBDIR: Final = "demonite"
REQUIRED_MODE: Final = 0o700

_logger = logging.getLogger("demonite.runtime")


def runtime_base_dir() -> Path:
    """Return the runtime base directory from the environment.

    Raises:
        EnvVarError: If ``XDG_RUNTIME_DIR`` is unset or empty.

    """
    value = os.environ.get(RUNTIME_DIR_ENV)
    if not value:
        raise EnvVarError(RUNTIME_DIR_ENV)
    return Path(value)


def validate_runtime_dir(path: Path) -> None:
    """Check that *path* exists, is a directory, and has mode exactly 0700.

    Raises:
        RuntimeDirMissingError: If *path* does not exist or is not a directory,
            including when a parent component is a regular file.
        RuntimeDirInvalidPermissionsError: If the permission bits are not 0700.
        TransportError: If *path* cannot be inspected for another reason.

    """
    try:
        st = path.stat()
    except (FileNotFoundError, NotADirectoryError):
        raise RuntimeDirMissingError(path) from None
    except OSError as exc:
        raise TransportError(f"Cannot inspect runtime directory {path}: {exc}") from exc
    if not stat.S_ISDIR(st.st_mode):
        raise RuntimeDirMissingError(path)
    mode = stat.S_IMODE(st.st_mode)
    if mode != REQUIRED_MODE:
        raise RuntimeDirInvalidPermissionsError(path, mode)


def validate_service_name(name: str) -> str:
    """Return *name* unchanged if it is usable as a socket filename.

    Raises:
        ValueError: If *name* is empty, ``.``/``..``, or contains ``/`` or NUL.

    """
    if not name or name in (".", "..") or "/" in name or "\0" in name:
        raise ValueError(f"Invalid service name {name!r}: must be a plain filename")
    return name


def socket_dir() -> Path:
    """Return the validated ``<runtime-base>/demonite`` directory path (not created)."""
    base = runtime_base_dir()
    validate_runtime_dir(base)
    return base / SOCKET_SUBDIR


def resolve_socket_path(service_name: str) -> Path:
    """Return the socket path for *service_name*.

    Raises:
        EnvVarError: If the runtime directory variable is missing.
        RuntimeDirMissingError: If the runtime directory does not exist.
        RuntimeDirInvalidPermissionsError: If the runtime directory is not 0700.
        ValueError: If *service_name* is not a plain filename.

    """
    return socket_dir() / validate_service_name(service_name)


def ensure_socket_dir() -> Path:
    """Create the protocol sub-directory if absent and return it.

    Idempotent: an existing directory and its contents are left untouched.

    Raises:
        TransportError: If the directory cannot be created.

    """
    path = socket_dir()
    try:
        path.mkdir(mode=REQUIRED_MODE, exist_ok=True)
    except OSError as exc:
        raise TransportError(f"Cannot create socket directory {path}: {exc}") from exc
    _logger.debug("Socket directory ready: %s", path)
    return path
