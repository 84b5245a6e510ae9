"""Error messages carried inside response envelopes.

A failed call is transmitted to the client as a zero-row batch whose
custom metadata holds a :class:`Message` at ``Level.EXCEPTION``.  The
message keeps the exception type, text, and a bounded traceback so the
client can raise an ``RpcError`` with useful diagnostics.

    try:
        risky_operation()
    except Exception as e:
        md = Message.from_exception(e).add_to_metadata()

KEY CLASSES
-----------
Level : Enum of message severities (only EXCEPTION travels on the wire)
Message : Log message with level, message text, and optional extras

"""

from __future__ import annotations

import json
import traceback
from enum import Enum
from typing import ClassVar

from demonite.metadata import LOG_EXTRA_KEY, LOG_LEVEL_KEY, LOG_MESSAGE_KEY

__all__ = [
    "Level",
    "Message",
]


class Level(Enum):
    """Severity levels for messages embedded in a response.

    Attributes:
        EXCEPTION: Unrecoverable error that terminated the call.

    """

    EXCEPTION = "EXCEPTION"


class Message:
    """Message embedded in response metadata.

    Attributes:
        level: Severity level indicating the nature of the message.
        message: Human-readable message text.
        extra: Additional arbitrary key-value pairs, JSON-encoded on the wire.

    """

    __slots__ = ("extra", "level", "message")
    __hash__ = None  # type: ignore[assignment]  # Unhashable since we define __eq__

    _MAX_TRACEBACK_CHARS: ClassVar[int] = 16_000
    _MAX_TRACEBACK_FRAMES: ClassVar[int] = 5

    def __init__(self, level: Level, message: str, **kwargs: object) -> None:
        """Create a message with level, text, and optional extras."""
        self.level = level
        self.message = message
        self.extra: dict[str, object] | None = kwargs if kwargs else None

    def __eq__(self, other: object) -> bool:
        """Compare messages by level, text, and extra fields."""
        if not isinstance(other, Message):
            return NotImplemented
        return self.level == other.level and self.message == other.message and self.extra == other.extra

    def __repr__(self) -> str:
        """Return a string representation suitable for debugging."""
        if self.extra:
            return f"Message({self.level!r}, {self.message!r}, **{self.extra!r})"
        return f"Message({self.level!r}, {self.message!r})"

    def add_to_metadata(
        self,
        metadata: dict[str, str] | None = None,
    ) -> dict[str, str]:
        """Return a new metadata dict with this message's fields added.

        Args:
            metadata: Existing metadata dict to augment, or None to create new.

        Returns:
            New dict containing original entries plus:
            - demonite.log_level: The Level value (e.g., "EXCEPTION")
            - demonite.log_message: The human-readable message text
            - demonite.log_extra: JSON string with extra kwargs (omitted when empty)

        """
        result = dict(metadata) if metadata else {}
        result[LOG_LEVEL_KEY.decode()] = self.level.value
        result[LOG_MESSAGE_KEY.decode()] = self.message
        if self.extra:
            result[LOG_EXTRA_KEY.decode()] = json.dumps(self.extra, default=str)
        return result

    @classmethod
    def from_exception(cls, exc: BaseException) -> Message:
        """Produce an EXCEPTION-level Message from an exception."""
        tb_exc = traceback.TracebackException.from_exception(
            exc,
            capture_locals=False,
        )

        formatted_tb = "".join(tb_exc.format())
        if len(formatted_tb) > cls._MAX_TRACEBACK_CHARS:
            formatted_tb = formatted_tb[: cls._MAX_TRACEBACK_CHARS] + "\n… <traceback truncated>"

        extra: dict[str, object] = {
            "exception_type": type(exc).__name__,
            "exception_message": str(exc),
            "traceback": formatted_tb,
        }

        if tb_exc.__cause__:
            cause_str = "".join(tb_exc.__cause__.format())
            if len(cause_str) > cls._MAX_TRACEBACK_CHARS:
                cause_str = cause_str[: cls._MAX_TRACEBACK_CHARS] + "\n… <traceback truncated>"
            extra["cause"] = cause_str

        extra["frames"] = [
            {
                "file": f.filename,
                "line": f.lineno,
                "function": f.name,
                "code": f.line,
            }
            for f in tb_exc.stack[-cls._MAX_TRACEBACK_FRAMES :]
        ]

        return cls(
            Level.EXCEPTION,
            f"{type(exc).__name__}: {exc}",
            **extra,
        )
