"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``demonite.wire.*`` hierarchy and
formatting helpers for Arrow IPC objects.  Enabling
``logging.getLogger("demonite.wire").setLevel(logging.DEBUG)`` shows
every call message and response envelope that crosses a socket.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging
from typing import Any

import pyarrow as pa

# ---------------------------------------------------------------------------
# Logger hierarchy: demonite.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("demonite.wire.request")
"""Call message encoding / decoding."""

wire_response_logger = logging.getLogger("demonite.wire.response")
"""Result envelope encoding / decoding."""

wire_transport_logger = logging.getLogger("demonite.wire.transport")
"""Socket lifecycle (liveness check, bind, connect, accept)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum repr length for individual values in fmt_metadata / fmt_args."""


def fmt_schema(schema: pa.Schema) -> str:
    """Format an Arrow schema compactly.

    Returns:
        ``"(a: double, b: double)"`` or ``"(empty)"`` for zero-field schemas.

    """
    if len(schema) == 0:
        return "(empty)"
    fields = ", ".join(f"{f.name}: {f.type}" for f in schema)
    return f"({fields})"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Format Arrow custom metadata compactly.

    Returns:
        ``"{demonite.method='add', demonite.request_version='1'}"``
        or ``"None"`` when metadata is absent.

    """
    if metadata is None:
        return "None"
    parts: list[str] = []
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        if len(val) > _MAX_VALUE_LEN:
            val = val[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{key}={val!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_batch(batch: pa.RecordBatch) -> str:
    """Format a RecordBatch summary.

    Returns:
        ``"RecordBatch(rows=1, cols=2, schema=(a: double, b: double), bytes=128)"``

    """
    return (
        f"RecordBatch(rows={batch.num_rows}, cols={batch.num_columns}, "
        f"schema={fmt_schema(batch.schema)}, bytes={batch.nbytes})"
    )


def fmt_args(names: tuple[str, ...], args: tuple[Any, ...]) -> str:
    """Format positional call arguments with their parameter names.

    Returns:
        ``"a=1.0, b=2.0"`` with long repr values truncated.

    """
    parts: list[str] = []
    for name, value in zip(names, args, strict=False):
        r = repr(value)
        if len(r) > _MAX_VALUE_LEN:
            r = r[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{name}={r}")
    return ", ".join(parts)
