"""Service declaration: procedure metadata, call messages, and protocol introspection."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import (
    Annotated,
    Any,
    get_args,
    get_origin,
    get_type_hints,
)

import pyarrow as pa

from demonite.rpc._common import _EMPTY_SCHEMA
from demonite.runtime import validate_service_name
from demonite.utils import infer_arrow_type, is_optional_type

# ---------------------------------------------------------------------------
# RpcMethodInfo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RpcMethodInfo:
    """Metadata for a single procedure, derived from Protocol type hints.

    Produced by :func:`rpc_methods` when introspecting a Protocol class.
    Each instance describes one arm of the service's call-message union.

    Attributes:
        name: Procedure name as it appears on the Protocol.
        param_names: Parameter names in declaration order (excludes ``self``).
        params_schema: Arrow schema of the request batch, one column per parameter.
        result_schema: Arrow schema of a successful response (empty for ``-> None``).
        result_type: The raw Python return-type annotation.
        has_return: ``False`` for ``-> None`` procedures.
        doc: The method's docstring from the Protocol class, or ``None``.
        param_defaults: Mapping of parameter name to its declared default.
        param_types: Mapping of parameter name to its Python type annotation.
        signature: Signature without ``self``, used to bind call arguments.

    """

    name: str
    param_names: tuple[str, ...]
    params_schema: pa.Schema
    result_schema: pa.Schema
    result_type: Any
    has_return: bool
    doc: str | None
    param_defaults: dict[str, Any] = field(default_factory=dict)
    param_types: dict[str, Any] = field(default_factory=dict)
    signature: inspect.Signature | None = field(default=None, compare=False, repr=False)


# ---------------------------------------------------------------------------
# CallMessage
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallMessage:
    """One procedure invocation: the tagged-union value sent from client to server.

    The variant tag is ``method``; ``args`` holds the argument values in
    declaration order.  Build instances with :func:`build_call` (or decode
    them with ``decode_call``) so that the tag always names a declared
    procedure and the arguments always match its shape.

    Attributes:
        service: Name of the service the message belongs to.
        method: Name of the procedure to invoke.
        args: Argument values, positionally.

    """

    service: str
    method: str
    args: tuple[Any, ...]

    def kwargs(self, info: RpcMethodInfo) -> dict[str, Any]:
        """Return the arguments keyed by parameter name."""
        return dict(zip(info.param_names, self.args, strict=True))


# ---------------------------------------------------------------------------
# Protocol introspection
# ---------------------------------------------------------------------------


def service_name(protocol: type) -> str:
    """Return the service name for *protocol*.

    The class name is used unless the class defines ``__service_name__``.

    Raises:
        ValueError: If the name is not usable as a socket filename.

    """
    name = protocol.__dict__.get("__service_name__", protocol.__name__)
    return validate_service_name(str(name))


def _unwrap_annotated(hint: Any) -> Any:
    """Unwrap Annotated[T, ...] to T, or return hint unchanged."""
    if get_origin(hint) is Annotated:
        return get_args(hint)[0]
    return hint


def _build_params_schema(protocol: type, method_name: str, hints: dict[str, Any]) -> pa.Schema:
    """Build an Arrow schema from method parameter type hints (excluding 'self' and 'return')."""
    fields: list[pa.Field[pa.DataType]] = []
    for name, hint in hints.items():
        if name in ("self", "return"):
            continue
        _, is_nullable = is_optional_type(hint)
        try:
            arrow_type = infer_arrow_type(hint)
        except TypeError as exc:
            raise TypeError(f"{protocol.__name__}.{method_name}() parameter '{name}': {exc}") from exc
        fields.append(pa.field(name, arrow_type, nullable=is_nullable))
    return pa.schema(fields)


def _build_result_schema(protocol: type, method_name: str, result_type: Any) -> pa.Schema:
    """Build a single-field Arrow schema for a result type."""
    if result_type is type(None) or result_type is None:
        return _EMPTY_SCHEMA
    _, is_nullable = is_optional_type(result_type)
    try:
        arrow_type = infer_arrow_type(result_type)
    except TypeError as exc:
        raise TypeError(f"{protocol.__name__}.{method_name}() return type: {exc}") from exc
    return pa.schema([pa.field("result", arrow_type, nullable=is_nullable)])


_UNSUPPORTED_PARAM_KINDS: dict[int, str] = {
    inspect.Parameter.POSITIONAL_ONLY: "positional-only (before '/')",
    inspect.Parameter.VAR_POSITIONAL: "*args",
    inspect.Parameter.VAR_KEYWORD: "**kwargs",
}


def _validate_protocol_params(protocol: type, method_name: str, sig: inspect.Signature) -> None:
    """Validate that procedure parameters have a fixed, named shape.

    Each parameter becomes a named column of the request batch, so
    positional-only, ``*args``, and ``**kwargs`` parameters are rejected.

    Raises:
        TypeError: If any parameter uses an unsupported kind.

    """
    errors: list[str] = []
    for name, param in sig.parameters.items():
        if name == "self":
            continue
        label = _UNSUPPORTED_PARAM_KINDS.get(param.kind)
        if label is not None:
            errors.append(f"  - '{name}' is {label}")
    if errors:
        detail = "\n".join(errors)
        raise TypeError(
            f"{protocol.__name__}.{method_name}() has parameters incompatible"
            f" with the call message format (all parameters must be keyword-passable):\n{detail}"
        )


@functools.lru_cache(maxsize=64)
def rpc_methods(protocol: type) -> Mapping[str, RpcMethodInfo]:
    """Introspect a Protocol class and return RpcMethodInfo for each procedure.

    Skips underscore-prefixed names and non-callable attributes.  The
    result is cached: a service's procedure set is fixed once declared.

    Raises:
        TypeError: If a procedure's signature or annotations cannot be
            expressed in the call message format.

    """
    result: dict[str, RpcMethodInfo] = {}

    for name in dir(protocol):
        if name.startswith("_"):
            continue
        attr = getattr(protocol, name, None)
        if attr is None or not callable(attr):
            continue

        try:
            method_hints = get_type_hints(attr, include_extras=True)
        except (NameError, AttributeError) as exc:
            raise TypeError(f"Failed to resolve type hints for {protocol.__name__}.{name}(): {exc}") from exc

        full_sig = inspect.signature(attr)
        _validate_protocol_params(protocol, name, full_sig)
        params = [p for n, p in full_sig.parameters.items() if n != "self"]
        sig = full_sig.replace(parameters=params)

        missing = [p.name for p in params if p.name not in method_hints]
        if missing:
            raise TypeError(f"{protocol.__name__}.{name}() parameters missing type annotations: {missing}")

        return_hint = method_hints.get("return", type(None))
        param_types = {p.name: method_hints[p.name] for p in params}

        result[name] = RpcMethodInfo(
            name=name,
            param_names=tuple(p.name for p in params),
            params_schema=_build_params_schema(protocol, name, param_types),
            result_schema=_build_result_schema(protocol, name, return_hint),
            result_type=return_hint,
            has_return=return_hint is not type(None) and return_hint is not None,
            doc=getattr(attr, "__doc__", None),
            param_defaults={p.name: p.default for p in params if p.default is not inspect.Parameter.empty},
            param_types=param_types,
            signature=sig,
        )

    return MappingProxyType(result)


def build_call(protocol: type, method: str, *args: Any, **kwargs: Any) -> CallMessage:
    """Build the call message for ``protocol.method(*args, **kwargs)``.

    Declared defaults are applied for omitted arguments.

    Raises:
        AttributeError: If *method* is not a procedure of *protocol*.
        TypeError: If the arguments do not match the procedure signature, or
            ``None`` is passed for a non-optional parameter.

    """
    info = rpc_methods(protocol).get(method)
    if info is None:
        raise AttributeError(f"{protocol.__name__} has no RPC method '{method}'")
    assert info.signature is not None
    try:
        bound = info.signature.bind(*args, **kwargs)
    except TypeError as exc:
        raise TypeError(f"{_format_signature(info)}: {exc}") from None
    bound.apply_defaults()
    values = tuple(bound.arguments[n] for n in info.param_names)
    for pname, value in zip(info.param_names, values, strict=True):
        if value is None and not is_optional_type(info.param_types[pname])[1]:
            raise TypeError(f"{method}() parameter '{pname}' is not optional but got None")
    return CallMessage(service=service_name(protocol), method=method, args=values)


# ---------------------------------------------------------------------------
# Implementation validation
# ---------------------------------------------------------------------------


def _format_signature(info: RpcMethodInfo) -> str:
    """Format a procedure signature for error messages."""
    params = ", ".join(f"{n}: {getattr(t, '__name__', str(t))}" for n, t in info.param_types.items())
    return f"{info.name}({params})"


def _validate_implementation(
    protocol: type,
    implementation: object,
    methods: Mapping[str, RpcMethodInfo],
) -> None:
    """Validate that *implementation* conforms to *protocol*.

    Checks that every procedure declared in the protocol exists on the
    implementation, is callable, and accepts the declared parameters.

    Raises:
        TypeError: If one or more validation errors are found.  The
            message lists every problem so the developer can fix them
            all in one pass.

    """
    errors: list[str] = []

    for name, info in methods.items():
        method = getattr(implementation, name, None)

        if method is None:
            errors.append(f"missing method {_format_signature(info)}")
            continue

        if not callable(method):
            errors.append(f"'{name}' exists but is not callable")
            continue

        impl_params = {k: v for k, v in inspect.signature(method).parameters.items() if k != "self"}
        accepts_var_kw = any(p.kind == inspect.Parameter.VAR_KEYWORD for p in impl_params.values())

        errors.extend(
            f"'{name}()' missing parameter '{param_name}'"
            for param_name in info.param_names
            if param_name not in impl_params and not accepts_var_kw
        )

        for param_name, param in impl_params.items():
            if param_name in info.param_types:
                continue
            if param.default is inspect.Parameter.empty and param.kind not in (
                inspect.Parameter.VAR_POSITIONAL,
                inspect.Parameter.VAR_KEYWORD,
            ):
                errors.append(f"'{name}()' has required parameter '{param_name}' not defined in {protocol.__name__}")

    if errors:
        impl_name = type(implementation).__name__
        header = f"{impl_name} does not implement {protocol.__name__}:"
        detail = "\n".join(f"  - {e}" for e in errors)
        raise TypeError(f"{header}\n{detail}")
