"""Arrow IPC helpers used as the byte-level codec.

Every request and every response is one complete Arrow IPC stream
(schema + batches + EOS marker), which makes each wire value
self-delimiting: ``ipc.open_stream()`` on a socket file reads exactly one
value and stops.

KEY FUNCTIONS
-------------
write_single_batch(dest, batch, custom_metadata) : Write one IPC stream
read_single_batch(source, context) : Read one IPC stream, exactly one batch
empty_batch(schema) : Zero-row batch conforming to a schema
infer_arrow_type(python_type) : Map a type annotation to an Arrow type

KEY CLASSES
-----------
ArrowType : Annotated marker overriding the inferred Arrow type

Set ``DEMONITE_IPC_DEBUG=1`` to trace every IPC read/write to stderr.

"""

import os
from dataclasses import dataclass
from enum import Enum
from io import IOBase
from types import UnionType
from typing import (
    Annotated,
    Any,
    Union,
    get_args,
    get_origin,
)

import pyarrow as pa
import structlog
from pyarrow import ipc

from demonite.errors import SerializeError
from demonite.metadata import decode_metadata

__all__ = [
    "ArrowType",
    "empty_batch",
    "infer_arrow_type",
    "read_single_batch",
    "write_single_batch",
]

# IPC debug logging - enable with DEMONITE_IPC_DEBUG=1
_IPC_DEBUG = os.environ.get("DEMONITE_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the IPC debug logger, configured to write to stderr."""
    global _ipc_log
    if _ipc_log is None:
        import sys

        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="ipc")
    return _ipc_log


def _schema_to_dict(schema: pa.Schema) -> dict[str, str]:
    """Convert Arrow schema to dict of {name: type} for logging."""
    return {field.name: str(field.type) for field in schema}


def empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return an empty batch conforming to the schema."""
    return pa.RecordBatch.from_arrays(
        [pa.array([], type=field.type) for field in schema],
        schema=schema,
    )


def write_single_batch(
    destination: IOBase,
    batch: pa.RecordBatch,
    custom_metadata: pa.KeyValueMetadata | None = None,
) -> None:
    """Write *batch* as a complete Arrow IPC stream (schema + batch + EOS).

    Args:
        destination: Binary sink (``BytesIO``, socket file, ...).
        batch: The RecordBatch to serialize.
        custom_metadata: Optional metadata attached to the batch.

    """
    with ipc.new_stream(destination, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)

    if _IPC_DEBUG:
        _get_ipc_log().debug(
            "ipc_write",
            num_rows=batch.num_rows,
            schema=_schema_to_dict(batch.schema),
            metadata=decode_metadata(custom_metadata),
        )


def read_single_batch(
    source: Any,
    context: str = "batch",
) -> tuple[pa.RecordBatch, pa.KeyValueMetadata | None]:
    """Read one IPC stream from *source* and return its single batch.

    Consumes the stream through its EOS marker, so the source is positioned
    just past this value.

    Args:
        source: ``bytes``, ``pa.Buffer``, or a readable binary stream.
        context: Description for error messages (e.g. "request", "response").

    Returns:
        Tuple of (RecordBatch, custom_metadata).

    Raises:
        SerializeError: If the data is not a valid IPC stream, is truncated,
            or does not contain exactly one batch.
        EOFError: If *source* held no bytes at all, or a stream ended
            before any IPC data.

    """
    if isinstance(source, (bytes, pa.Buffer)):
        source = pa.BufferReader(source)
    in_memory = isinstance(source, pa.BufferReader)
    at_end = in_memory and source.tell() == source.size()
    # Arrow reports some corrupt messages as a bare OSError; from memory that
    # can only be a decode failure, from a socket it may be real I/O.
    decode_errors: tuple[type[Exception], ...] = (
        (pa.ArrowException, UnicodeDecodeError, OSError) if in_memory else (pa.ArrowException, UnicodeDecodeError)
    )
    try:
        reader = ipc.open_stream(source)
    except pa.ArrowInvalid as exc:
        # Arrow reports a clean EOF before the schema message as ArrowInvalid.
        if "length 0" in str(exc) and (at_end or not in_memory):
            raise EOFError(f"No data in {context} stream") from exc
        raise SerializeError(f"Malformed {context} stream: {exc}") from exc
    except decode_errors as exc:
        raise SerializeError(f"Malformed {context} stream: {exc}") from exc

    try:
        try:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
        except StopIteration:
            raise SerializeError(f"No record batch found in {context} stream") from None

        try:
            reader.read_next_batch()
        except StopIteration:
            pass
        else:
            raise SerializeError(f"Expected a single record batch in {context} stream, found more")
        batch.validate(full=True)
        # validate() does not check that field names are UTF-8.
        batch.schema.names  # noqa: B018
    except decode_errors as exc:
        raise SerializeError(f"Malformed {context} stream: {exc}") from exc

    if _IPC_DEBUG:
        _get_ipc_log().debug(
            "ipc_read",
            context=context,
            num_rows=batch.num_rows,
            schema=_schema_to_dict(batch.schema),
            metadata=decode_metadata(custom_metadata),
        )
    return batch, custom_metadata


# =============================================================================
# Type inference
# =============================================================================


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify explicit Arrow type for a parameter.

    Use with Annotated to override the default inferred Arrow type:

        class Counter(Protocol):
            def bump(self, by: Annotated[int, ArrowType(pa.int32())]) -> int: ...

    """

    arrow_type: pa.DataType


def is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Check if a type is Optional (X | None) and extract the inner type.

    Returns:
        Tuple of (inner_type, is_nullable). If nullable, inner_type is the
        non-None type. If not nullable, inner_type is the original type.

    """
    origin = get_origin(python_type)
    args = get_args(python_type)

    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True

    return python_type, False


def infer_arrow_type(python_type: Any) -> pa.DataType:
    """Infer Arrow type from Python type annotation.

    Supports:
    - Basic types: str, bytes, int, float, bool
    - Generic types: list[T], dict[K, V], frozenset[T]
    - NewType: auto-unwraps to underlying type
    - Enum: serializes as a string holding the member name

    For complex types not supported here, use Annotated[T, ArrowType(...)].

    Raises:
        TypeError: If the type cannot be automatically inferred.

    """
    inner_type, _ = is_optional_type(python_type)
    if inner_type is not python_type:
        return infer_arrow_type(inner_type)

    if get_origin(python_type) is Annotated:
        args = get_args(python_type)
        for arg in args[1:]:
            if isinstance(arg, ArrowType):
                return arg.arrow_type
        return infer_arrow_type(args[0])

    # NewType creates a callable with __supertype__ attribute
    if hasattr(python_type, "__supertype__"):
        return infer_arrow_type(python_type.__supertype__)

    if isinstance(python_type, type) and issubclass(python_type, Enum):
        return pa.string()

    origin = get_origin(python_type)
    args = get_args(python_type)

    if origin is list or origin is frozenset:
        if args:
            return pa.list_(infer_arrow_type(args[0]))
        return pa.list_(pa.string())

    if origin is dict:
        if len(args) >= 2:
            return pa.map_(infer_arrow_type(args[0]), infer_arrow_type(args[1]))
        return pa.map_(pa.string(), pa.string())

    type_map: dict[type, pa.DataType] = {
        str: pa.string(),
        bytes: pa.binary(),
        int: pa.int64(),
        float: pa.float64(),
        bool: pa.bool_(),
    }

    if python_type in type_map:
        return type_map[python_type]

    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )
