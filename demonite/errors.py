"""Error taxonomy for demonite.

Every failure the runtime reports is a :class:`DemoniteError` subclass
carrying an :class:`ErrorKind`.  The kind is what travels over the wire in
an error envelope, so clients can tell a procedure failure from a codec
failure without parsing messages.

KEY CLASSES
-----------
ErrorKind : Enum of every failure class
SerializeError : Encode/decode failure against the codec
TransportError : Socket or filesystem I/O failure
EnvVarError : Required environment variable missing
RuntimeDirMissingError : Runtime base directory does not exist
RuntimeDirInvalidPermissionsError : Runtime base directory mode is not 0700
AlreadyRunningError : A live listener already owns the socket path
RpcError : The server answered with an error envelope

"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import ClassVar

__all__ = [
    "AlreadyRunningError",
    "DemoniteError",
    "EnvVarError",
    "ErrorKind",
    "RpcError",
    "RuntimeDirInvalidPermissionsError",
    "RuntimeDirMissingError",
    "SerializeError",
    "TransportError",
]


class ErrorKind(Enum):
    """Classification of demonite failures.

    Attributes:
        SERIALIZE: A value could not be encoded, or bytes could not be decoded.
        IO: A socket or filesystem operation failed.
        ENV_VAR: The runtime directory environment variable is not set.
        RUNTIME_DIR_MISSING: The runtime base directory does not exist.
        RUNTIME_DIR_INVALID_PERMISSIONS: The runtime base directory is not owner-only.
        ALREADY_RUNNING: Another live listener is serving the same service.
        PROCEDURE: The procedure implementation raised on the server.

    """

    SERIALIZE = "SERIALIZE"
    IO = "IO"
    ENV_VAR = "ENV_VAR"
    RUNTIME_DIR_MISSING = "RUNTIME_DIR_MISSING"
    RUNTIME_DIR_INVALID_PERMISSIONS = "RUNTIME_DIR_INVALID_PERMISSIONS"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    PROCEDURE = "PROCEDURE"


class DemoniteError(Exception):
    """Base class for all demonite errors."""

    kind: ClassVar[ErrorKind]


class SerializeError(DemoniteError):
    """Raised when a value cannot be encoded or bytes cannot be decoded."""

    kind = ErrorKind.SERIALIZE


class TransportError(DemoniteError):
    """Raised when a socket or filesystem operation fails.

    The originating ``OSError`` is chained as ``__cause__``.
    """

    kind = ErrorKind.IO


class EnvVarError(DemoniteError):
    """Raised when a required environment variable is missing or empty."""

    kind = ErrorKind.ENV_VAR

    def __init__(self, name: str) -> None:
        """Initialize with the name of the missing variable."""
        self.name = name
        super().__init__(f"Environment variable {name} is not set")


class RuntimeDirMissingError(DemoniteError):
    """Raised when the runtime base directory does not exist."""

    kind = ErrorKind.RUNTIME_DIR_MISSING

    def __init__(self, path: Path) -> None:
        """Initialize with the offending path."""
        self.path = path
        super().__init__(f"Runtime directory {path} does not exist")


class RuntimeDirInvalidPermissionsError(DemoniteError):
    """Raised when the runtime base directory is not mode 0700."""

    kind = ErrorKind.RUNTIME_DIR_INVALID_PERMISSIONS

    def __init__(self, path: Path, mode: int) -> None:
        """Initialize with the offending path and its actual permission bits."""
        self.path = path
        self.mode = mode
        super().__init__(f"Runtime directory {path} has mode {mode:#o}, expected 0o700")


class AlreadyRunningError(DemoniteError):
    """Raised when a live listener already accepts connections on the socket path."""

    kind = ErrorKind.ALREADY_RUNNING

    def __init__(self, path: Path) -> None:
        """Initialize with the contested socket path."""
        self.path = path
        super().__init__(f"Another instance is already listening on {path}")


class RpcError(DemoniteError):
    """Raised on the client side when the server answers with an error envelope."""

    kind = ErrorKind.PROCEDURE

    def __init__(
        self,
        error_type: str,
        error_message: str,
        remote_traceback: str,
        *,
        kind: ErrorKind = ErrorKind.PROCEDURE,
        request_id: str = "",
    ) -> None:
        """Initialize with error details from the remote side."""
        self.error_type = error_type
        self.error_message = error_message
        self.remote_traceback = remote_traceback
        self.kind = kind  # type: ignore[misc]
        self.request_id = request_id
        super().__init__(f"{error_type}: {error_message}")
