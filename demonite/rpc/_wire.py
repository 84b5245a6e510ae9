"""Wire format: call messages and result envelopes as Arrow IPC streams.

**Request** (client → server)::

    [IPC stream: params_schema + 1 request batch + EOS]

The single row holds one column per argument.  The batch's custom
metadata carries ``demonite.service``, ``demonite.method`` and
``demonite.request_version``.

**Response** (server → client), one of::

    Ok:  [IPC stream: result_schema + 1 result batch + EOS]
    Err: [IPC stream: empty schema + 0-row batch with error metadata + EOS]

Error metadata holds ``demonite.log_level = EXCEPTION``,
``demonite.log_message``, ``demonite.log_extra`` (JSON: exception type,
message, traceback) and ``demonite.error_kind``.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from io import BytesIO
from typing import Any, cast, get_origin

import pyarrow as pa

from demonite.errors import ErrorKind, RpcError, SerializeError
from demonite.log import Level, Message
from demonite.metadata import (
    ERROR_KIND_KEY,
    LOG_EXTRA_KEY,
    LOG_LEVEL_KEY,
    LOG_MESSAGE_KEY,
    REQUEST_ID_KEY,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    SERVICE_NAME_KEY,
    encode_metadata,
)
from demonite.rpc._common import _EMPTY_SCHEMA, _current_request_id
from demonite.rpc._debug import (
    fmt_args,
    fmt_batch,
    fmt_metadata,
    fmt_schema,
    wire_request_logger,
    wire_response_logger,
)
from demonite.rpc._types import CallMessage, RpcMethodInfo, _unwrap_annotated, rpc_methods, service_name
from demonite.utils import empty_batch, is_optional_type, read_single_batch, write_single_batch

# Errors pyarrow raises when a Python value does not fit the declared Arrow type.
_CONVERSION_ERRORS = (pa.ArrowInvalid, pa.ArrowTypeError, pa.ArrowNotImplementedError, TypeError, OverflowError)

# ---------------------------------------------------------------------------
# Value conversion
# ---------------------------------------------------------------------------


def _convert_for_arrow(val: object) -> object:
    """Convert a Python value for Arrow serialization.

    Inverse of ``_deserialize_value``.  Handles types that Arrow cannot
    serialize directly:

    - Enum → .name (string)
    - frozenset → list
    - dict → list of tuples (for map types)
    """
    if isinstance(val, Enum):
        return val.name
    if isinstance(val, frozenset):
        return list(val)
    if isinstance(val, dict):
        return list(val.items())
    return val


def _deserialize_value(value: object, type_hint: Any) -> object:
    """Deserialize a single value based on its type hint.

    Inverse of ``_convert_for_arrow``.  Restores Enum members, dicts, and
    frozensets that lose type fidelity through ``as_py()``.

    Raises:
        SerializeError: If an Enum member name is unknown.

    """
    inner, _ = is_optional_type(type_hint)
    base = _unwrap_annotated(inner)
    if isinstance(base, type) and issubclass(base, Enum):
        if not isinstance(value, str):
            return value
        try:
            return base[value]
        except KeyError:
            raise SerializeError(f"{value!r} is not a member of {base.__name__}") from None
    origin = get_origin(base)
    if origin is dict and isinstance(value, list):
        return dict(cast(list[tuple[Any, Any]], value))
    if origin is frozenset and isinstance(value, list):
        return frozenset(value)
    return value


def _single_value_array(value: object, arrow_type: pa.DataType) -> pa.Array[Any]:
    """Build a one-element array, wrapping conversion failures in ``SerializeError``."""
    try:
        return pa.array([_convert_for_arrow(value)], type=arrow_type)
    except _CONVERSION_ERRORS as exc:
        raise SerializeError(f"Cannot encode {type(value).__name__} value as {arrow_type}: {exc}") from exc


# ---------------------------------------------------------------------------
# Call messages
# ---------------------------------------------------------------------------


def encode_call(protocol: type, message: CallMessage) -> bytes:
    """Encode *message* as a complete request IPC stream.

    Raises:
        SerializeError: If the message does not name a procedure of
            *protocol* or an argument cannot be represented as its
            declared type.

    """
    info = rpc_methods(protocol).get(message.method)
    if info is None or message.service != service_name(protocol) or len(message.args) != len(info.param_names):
        raise SerializeError(
            f"Call message for '{message.service}.{message.method}' is not a procedure of {protocol.__name__}"
        )
    arrays = [_single_value_array(v, f.type) for v, f in zip(message.args, info.params_schema, strict=True)]
    try:
        batch = pa.RecordBatch.from_arrays(arrays, schema=info.params_schema)
    except _CONVERSION_ERRORS as exc:
        raise SerializeError(f"Cannot encode arguments for '{info.name}': {exc}") from exc
    custom_metadata = pa.KeyValueMetadata(
        {
            SERVICE_NAME_KEY: message.service.encode(),
            RPC_METHOD_KEY: message.method.encode(),
            REQUEST_VERSION_KEY: REQUEST_VERSION,
        }
    )
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Write request: service=%s, method=%s, schema=%s, args={%s}",
            message.service,
            message.method,
            fmt_schema(info.params_schema),
            fmt_args(info.param_names, message.args),
        )
    buf = BytesIO()
    write_single_batch(buf, batch, custom_metadata)
    return buf.getvalue()


def _read_call(protocol: type, source: Any) -> tuple[RpcMethodInfo, CallMessage]:
    """Read one request IPC stream as a call message of *protocol*.

    Args:
        protocol: The service Protocol class.
        source: ``bytes`` or a readable binary stream positioned at a request.

    Returns:
        The procedure metadata and the decoded call message.

    Raises:
        SerializeError: If the data is not a well-formed call message for
            this service: malformed or truncated IPC, wrong protocol
            version, another service's name, an undeclared procedure,
            a schema that differs from the declared parameters, or a row
            count other than one.
        EOFError: If the source ended before any data was read.

    """
    batch, custom_metadata = read_single_batch(source, "request")
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Read request batch: %s, metadata=%s",
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    md = custom_metadata or {}

    version = md.get(REQUEST_VERSION_KEY)
    if version != REQUEST_VERSION:
        raise SerializeError(f"Unsupported request version {version!r}, expected {REQUEST_VERSION!r}")

    expected_service = service_name(protocol)
    service_bytes = md.get(SERVICE_NAME_KEY)
    if service_bytes is None or service_bytes.decode(errors="replace") != expected_service:
        raise SerializeError(f"Request is addressed to service {service_bytes!r}, not '{expected_service}'")

    method_bytes = md.get(RPC_METHOD_KEY)
    if method_bytes is None:
        raise SerializeError("Request is missing 'demonite.method' metadata")
    method = method_bytes.decode(errors="replace")
    info = rpc_methods(protocol).get(method)
    if info is None:
        raise SerializeError(f"'{method}' is not a procedure of {expected_service}")

    if not batch.schema.equals(info.params_schema, check_metadata=False):
        raise SerializeError(
            f"Request schema {fmt_schema(batch.schema)} does not match "
            f"{method}() parameters {fmt_schema(info.params_schema)}"
        )
    expected_rows = 1 if len(info.params_schema) > 0 else 0
    if batch.num_rows != expected_rows:
        raise SerializeError(f"Expected {expected_rows} row(s) in request batch, got {batch.num_rows}")

    args: list[Any] = []
    for i, name in enumerate(info.param_names):
        value = batch.column(i)[0].as_py()
        if value is None:
            if not is_optional_type(info.param_types[name])[1]:
                raise SerializeError(f"{method}() parameter '{name}' is not optional but got None")
            args.append(None)
            continue
        args.append(_deserialize_value(value, info.param_types[name]))

    message = CallMessage(service=expected_service, method=method, args=tuple(args))
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Parsed request: method=%s, args={%s}",
            method,
            fmt_args(info.param_names, message.args),
        )
    return info, message


def decode_call(protocol: type, source: Any) -> CallMessage:
    """Decode one request IPC stream into a call message of *protocol*.

    Raises:
        SerializeError: If the data is not a well-formed call message for
            this service, including empty input.

    """
    try:
        return _read_call(protocol, source)[1]
    except EOFError:
        raise SerializeError("Empty request: no IPC stream data") from None


# ---------------------------------------------------------------------------
# Result envelopes
# ---------------------------------------------------------------------------


def encode_result(info: RpcMethodInfo, value: object) -> bytes:
    """Encode an ``Ok`` envelope carrying *value*.

    Raises:
        SerializeError: If *value* is ``None`` for a non-optional return type
            or cannot be represented as the declared return type.

    """
    if not info.has_return:
        batch = empty_batch(_EMPTY_SCHEMA)
    else:
        if value is None and not is_optional_type(info.result_type)[1]:
            raise SerializeError(f"{info.name}() expected a non-None return value but got None")
        array = _single_value_array(value, info.result_schema.field(0).type)
        batch = pa.RecordBatch.from_arrays([array], schema=info.result_schema)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write result: method=%s, %s", info.name, fmt_batch(batch))
    buf = BytesIO()
    write_single_batch(buf, batch)
    return buf.getvalue()


def encode_error(exc: BaseException, kind: ErrorKind) -> bytes:
    """Encode an ``Err`` envelope describing *exc*."""
    md = Message.from_exception(exc).add_to_metadata()
    md[ERROR_KIND_KEY.decode()] = kind.value
    request_id = _current_request_id.get()
    if request_id:
        md[REQUEST_ID_KEY.decode()] = request_id
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug(
            "Write error: kind=%s, %s: %s",
            kind.value,
            type(exc).__name__,
            str(exc)[:200],
        )
    buf = BytesIO()
    write_single_batch(buf, empty_batch(_EMPTY_SCHEMA), encode_metadata(md))
    return buf.getvalue()


def _raise_if_error(batch: pa.RecordBatch, custom_metadata: pa.KeyValueMetadata | None) -> None:
    """Raise ``RpcError`` if the response batch is an ``Err`` envelope.

    Raises:
        SerializeError: If the batch carries error metadata that does not
            form a valid envelope.

    """
    if custom_metadata is None or batch.num_rows != 0:
        return
    level_bytes = custom_metadata.get(LOG_LEVEL_KEY)
    if level_bytes is None:
        return
    if level_bytes != Level.EXCEPTION.value.encode():
        raise SerializeError(f"Unexpected log level {level_bytes!r} in response envelope")
    message = (custom_metadata.get(LOG_MESSAGE_KEY) or b"").decode(errors="replace")
    extra: dict[str, object] = {}
    raw_extra = custom_metadata.get(LOG_EXTRA_KEY)
    if raw_extra is not None:
        try:
            parsed = json.loads(raw_extra.decode())
        except (ValueError, RecursionError) as exc:
            raise SerializeError(f"Malformed error details in response envelope: {exc}") from exc
        if not isinstance(parsed, dict):
            raise SerializeError(f"Error details in response envelope must be an object, got {type(parsed).__name__}")
        extra = parsed
    kind_bytes = custom_metadata.get(ERROR_KIND_KEY)
    try:
        kind = ErrorKind(kind_bytes.decode()) if kind_bytes is not None else ErrorKind.PROCEDURE
    except ValueError:
        kind = ErrorKind.PROCEDURE
    request_id_bytes = custom_metadata.get(REQUEST_ID_KEY)
    raise RpcError(
        str(extra.get("exception_type", Level.EXCEPTION.value)),
        str(extra.get("exception_message", message)),
        str(extra.get("traceback", "")),
        kind=kind,
        request_id=request_id_bytes.decode(errors="replace") if request_id_bytes is not None else "",
    )


def decode_result(info: RpcMethodInfo, source: Any) -> object:
    """Decode one response IPC stream for procedure *info*.

    Returns:
        The procedure's return value (``None`` for ``-> None`` procedures).

    Raises:
        RpcError: If the response is an ``Err`` envelope.
        SerializeError: If the response is malformed or does not match the
            declared return type.
        EOFError: If the source ended before any data was read.

    """
    batch, custom_metadata = read_single_batch(source, "response")
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug(
            "Read response batch: %s, metadata=%s",
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    _raise_if_error(batch, custom_metadata)

    if not batch.schema.equals(info.result_schema, check_metadata=False):
        raise SerializeError(
            f"Response schema {fmt_schema(batch.schema)} does not match "
            f"{info.name}() result {fmt_schema(info.result_schema)}"
        )
    if not info.has_return:
        return None
    if batch.num_rows != 1:
        raise SerializeError(f"Expected 1 row in response batch, got {batch.num_rows}")
    value = batch.column(0)[0].as_py()
    if value is None:
        if not is_optional_type(info.result_type)[1]:
            raise SerializeError(f"{info.name}() expected a non-None return value but got None")
        return None
    return _deserialize_value(value, info.result_type)
