"""Shared helpers for ``pa.KeyValueMetadata`` used on the wire.

Centralises the well-known metadata keys (including the wire-protocol
version constant ``REQUEST_VERSION``) and encoding/decoding so that
``rpc/`` and ``log.py`` share a single implementation.
"""

from __future__ import annotations

import pyarrow as pa

__all__ = [
    "ERROR_KIND_KEY",
    "LOG_EXTRA_KEY",
    "LOG_LEVEL_KEY",
    "LOG_MESSAGE_KEY",
    "REQUEST_ID_KEY",
    "REQUEST_VERSION",
    "REQUEST_VERSION_KEY",
    "RPC_METHOD_KEY",
    "SERVICE_NAME_KEY",
    "decode_metadata",
    "encode_metadata",
]

# ---------------------------------------------------------------------------
# Well-known metadata keys (bytes, matching what appears on the wire)
# ---------------------------------------------------------------------------

SERVICE_NAME_KEY = b"demonite.service"
RPC_METHOD_KEY = b"demonite.method"
REQUEST_VERSION_KEY = b"demonite.request_version"
REQUEST_VERSION = b"1"
REQUEST_ID_KEY = b"demonite.request_id"

LOG_LEVEL_KEY = b"demonite.log_level"
LOG_MESSAGE_KEY = b"demonite.log_message"
LOG_EXTRA_KEY = b"demonite.log_extra"
ERROR_KIND_KEY = b"demonite.error_kind"

# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------


def encode_metadata(metadata: dict[str, str]) -> pa.KeyValueMetadata:
    """Encode a plain ``dict[str, str]`` to ``pa.KeyValueMetadata`` with bytes keys/values."""
    return pa.KeyValueMetadata({k.encode(): v.encode() for k, v in metadata.items()})


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Decode ``pa.KeyValueMetadata`` to a plain ``dict[str, str]`` (empty when ``None``)."""
    if metadata is None:
        return {}
    result: dict[str, str] = {}
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        result[key] = val
    return result
