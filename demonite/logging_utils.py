"""JSON formatter for structured logging output.

Provides :class:`DemoniteJsonFormatter`, a :class:`logging.Formatter`
subclass that serializes log records as single-line JSON objects.  Every
``extra`` field attached to a record is included, so the access log's
``service``, ``method``, ``status``, ``duration_ms`` and ``request_id``
appear as top-level keys.

This module is **not** auto-imported by ``demonite``; import it explicitly::

    from demonite.logging_utils import DemoniteJsonFormatter
"""

from __future__ import annotations

import json
import logging

__all__ = ["DemoniteJsonFormatter", "configure_logging"]

# Attribute names every LogRecord has; anything else came from ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception", "stack_info"})


class DemoniteJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    Standard fields (``timestamp``, ``level``, ``logger``, ``message``) are
    always present and cannot be overwritten by extra fields of the same
    name.  Exception information goes under ``"exception"``.  Values that
    are not JSON-serializable are rendered with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            obj["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(obj, default=str)


def configure_logging(level: str = "WARNING", fmt: str = "text") -> None:
    """Attach a stderr handler to the ``demonite`` logger, replacing one from an earlier call.

    Args:
        level: Standard logging level name.
        fmt: ``"text"`` for ``%(asctime)s %(levelname)s %(name)s: %(message)s``
            lines, ``"json"`` for :class:`DemoniteJsonFormatter` output.

    """
    logger = logging.getLogger("demonite")
    for existing in [h for h in logger.handlers if getattr(h, "_demonite_cli", False)]:
        logger.removeHandler(existing)
    handler = logging.StreamHandler()
    handler._demonite_cli = True  # type: ignore[attr-defined]
    if fmt == "json":
        handler.setFormatter(DemoniteJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
