"""Constants, loggers, timeouts, and per-request correlation for the RPC runtime."""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Final

import pyarrow as pa

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMPTY_SCHEMA = pa.schema([])
_logger = logging.getLogger("demonite.rpc")
_access_logger = logging.getLogger("demonite.access")

TIMEOUT_ENV: Final = "DEMONITE_TIMEOUT"


# ---------------------------------------------------------------------------
# Socket timeouts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SocketTimeouts:
    """Deadlines applied to socket operations, in seconds.

    ``None`` means block indefinitely.  The listener applies ``read`` and
    ``write`` to each accepted connection so a stalled client cannot hold
    the serial accept loop forever; clients apply all three.

    Attributes:
        connect: Deadline for establishing a client connection.
        read: Deadline for receiving a complete request or response.
        write: Deadline for sending a complete request or response.

    """

    connect: float | None = None
    read: float | None = None
    write: float | None = None

    def __post_init__(self) -> None:
        """Reject non-positive deadlines."""
        for name in ("connect", "read", "write"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"SocketTimeouts.{name} must be positive or None, got {value!r}")

    @classmethod
    def uniform(cls, seconds: float | None) -> SocketTimeouts:
        """Return timeouts with the same deadline for every operation."""
        return cls(connect=seconds, read=seconds, write=seconds)

    @classmethod
    def from_env(cls) -> SocketTimeouts:
        """Build timeouts from ``DEMONITE_TIMEOUT`` (seconds, applied to every operation).

        Raises:
            ValueError: If the variable is set but is not a positive number.

        """
        raw = os.environ.get(TIMEOUT_ENV, "").strip()
        if not raw:
            return cls()
        try:
            seconds = float(raw)
        except ValueError:
            raise ValueError(f"{TIMEOUT_ENV} must be a number of seconds, got {raw!r}") from None
        return cls.uniform(seconds)


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("demonite_request_id", default="")
