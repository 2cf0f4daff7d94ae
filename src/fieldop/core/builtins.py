from __future__ import annotations

import builtins as _py_builtins
from typing import Any, Callable, Dict

import numpy as np

from .dims import Dimension, DimensionKind, as_dims, dims_repr
from .exceptions import DimensionMismatch, DTypeError, ShapeError
from .field import Field, array_namespace, elementwise


def _xp_of(*values: Any):
    return array_namespace(*[v.data for v in values if isinstance(v, Field)])


# Reductions over a local dimension ----------------------------------------------


def _reduction_axis(field: Any, axis: Any, name: str) -> int:
    if not isinstance(field, Field):
        raise DimensionMismatch(f"{name} expects a Field, got {type(field).__name__}")
    if not isinstance(axis, Dimension):
        raise DimensionMismatch(f"{name} axis must be a Dimension, got {axis!r}")
    if axis.kind is not DimensionKind.LOCAL:
        raise DimensionMismatch(f"{name} axis {axis.name} must be a local dimension")
    if axis not in field.dims:
        raise DimensionMismatch(
            f"{name} axis {axis.name} is not a dimension of the field {dims_repr(field.dims)}"
        )
    return field.axis_of(axis)


def _drop_axis(field: Field, ax: int, data: Any) -> Field:
    dropped = field.dims[ax]
    return Field._from_parts(
        field.dims[:ax] + field.dims[ax + 1 :],
        data,
        tuple(d for d in field.broadcast_dims if d is not dropped),
        field.origin[:ax] + field.origin[ax + 1 :],
    )


def neighbor_sum(field: Field, axis: Dimension) -> Field:
    ax = _reduction_axis(field, axis, "neighbor_sum")
    xp = _xp_of(field)
    data = field.data
    if field.valid is not None:
        data = xp.where(field.valid, data, xp.zeros((), dtype=data.dtype))
    if data.dtype == np.bool_:
        # booleans count the true neighbors
        return _drop_axis(field, ax, xp.sum(data, axis=ax, dtype=np.int64))
    return _drop_axis(field, ax, xp.sum(data, axis=ax, dtype=data.dtype))


def _extreme(dtype, largest: bool):
    if np.issubdtype(dtype, np.floating):
        return np.inf if largest else -np.inf
    if dtype == np.bool_:
        return largest
    info = np.iinfo(dtype)
    return info.max if largest else info.min


def _masked_extreme(field: Field, axis: Dimension, name: str, largest: bool) -> Field:
    ax = _reduction_axis(field, axis, name)
    xp = _xp_of(field)
    data = field.data
    reduce = xp.max if largest else xp.min
    if field.valid is None:
        return _drop_axis(field, ax, reduce(data, axis=ax))
    # max_over fills invalid slots with the smallest value and min_over with the largest
    ident = xp.asarray(_extreme(np.dtype(data.dtype), not largest), dtype=data.dtype)
    reduced = reduce(xp.where(field.valid, data, ident), axis=ax)
    any_valid = xp.any(field.valid, axis=ax)
    return _drop_axis(field, ax, xp.where(any_valid, reduced, xp.zeros((), dtype=data.dtype)))


def max_over(field: Field, axis: Dimension) -> Field:
    return _masked_extreme(field, axis, "max_over", largest=True)


def min_over(field: Field, axis: Dimension) -> Field:
    return _masked_extreme(field, axis, "min_over", largest=False)


# Selection and broadcasting -------------------------------------------------------


def where(mask: Any, a: Any, b: Any) -> Any:
    """Elementwise select; tuple branches unroll into a tuple of selects."""
    if isinstance(a, tuple) or isinstance(b, tuple):
        if not (isinstance(a, tuple) and isinstance(b, tuple)) or len(a) != len(b):
            raise ShapeError("where branches must be tuples of the same length")
        return tuple(where(mask, x, y) for x, y in zip(a, b))
    mask_dtype = mask.dtype if isinstance(mask, Field) else np.asarray(mask).dtype
    if mask_dtype != np.bool_:
        raise DTypeError(f"where mask must be boolean, got {mask_dtype}")
    xp = _xp_of(mask, a, b)
    return elementwise(xp.where, mask, a, b)


def broadcast(value: Any, dims: Any) -> Field:
    dims = as_dims(dims)
    if isinstance(value, Field):
        missing = [d for d in value.dims if d not in dims]
        if missing:
            raise ShapeError(
                f"Cannot broadcast field over {dims_repr(value.dims)} to {dims_repr(dims)}"
            )
        order = [d for d in dims if d in value.dims]
        if tuple(order) != value.dims:
            raise ShapeError(
                f"broadcast dims {dims_repr(dims)} reorder the field dims {dims_repr(value.dims)}"
            )
        return Field._from_parts(value.dims, value.data, dims, value.origin, value.valid)
    return Field((), np.asarray(value), dims)


def astype(value: Any, dtype: Any) -> Any:
    if isinstance(value, tuple):
        return tuple(astype(v, dtype) for v in value)
    if isinstance(value, Field):
        return value.astype(dtype)
    if any(dtype is py for py in (bool, int, float)):
        return dtype(value)
    return np.dtype(dtype).type(value)


# Math -----------------------------------------------------------------------------

MATH_FUNCTIONS = {
    "sin": "sin",
    "cos": "cos",
    "tan": "tan",
    "arcsin": "arcsin",
    "arccos": "arccos",
    "arctan": "arctan",
    "asin": "arcsin",
    "acos": "arccos",
    "atan": "arctan",
    "sinh": "sinh",
    "cosh": "cosh",
    "tanh": "tanh",
    "arcsinh": "arcsinh",
    "arccosh": "arccosh",
    "arctanh": "arctanh",
    "asinh": "arcsinh",
    "acosh": "arccosh",
    "atanh": "arctanh",
    "exp": "exp",
    "log": "log",
    "sqrt": "sqrt",
    "abs": "absolute",
    "absolute": "absolute",
    "floor": "floor",
    "ceil": "ceil",
    "trunc": "trunc",
    "isfinite": "isfinite",
    "isnan": "isnan",
    "isinf": "isinf",
    "minimum": "minimum",
    "maximum": "maximum",
}


def _math_builtin(name: str, np_name: str) -> Callable[..., Any]:
    def fn(*args):
        xp = _xp_of(*args)
        return elementwise(getattr(xp, np_name), *args)

    fn.__name__ = name
    fn.__qualname__ = name
    return fn


_MATH = {name: _math_builtin(name, np_name) for name, np_name in MATH_FUNCTIONS.items()}
sin = _MATH["sin"]
cos = _MATH["cos"]
tan = _MATH["tan"]
arcsin = _MATH["arcsin"]
arccos = _MATH["arccos"]
arctan = _MATH["arctan"]
asin = _MATH["asin"]
acos = _MATH["acos"]
atan = _MATH["atan"]
sinh = _MATH["sinh"]
cosh = _MATH["cosh"]
tanh = _MATH["tanh"]
arcsinh = _MATH["arcsinh"]
arccosh = _MATH["arccosh"]
arctanh = _MATH["arctanh"]
asinh = _MATH["asinh"]
acosh = _MATH["acosh"]
atanh = _MATH["atanh"]
exp = _MATH["exp"]
log = _MATH["log"]
sqrt = _MATH["sqrt"]
abs = _MATH["abs"]
absolute = _MATH["absolute"]
floor = _MATH["floor"]
ceil = _MATH["ceil"]
trunc = _MATH["trunc"]
isfinite = _MATH["isfinite"]
isnan = _MATH["isnan"]
isinf = _MATH["isinf"]
minimum = _MATH["minimum"]
maximum = _MATH["maximum"]


BUILTINS: Dict[str, Callable[..., Any]] = {
    "neighbor_sum": neighbor_sum,
    "max_over": max_over,
    "min_over": min_over,
    "where": where,
    "broadcast": broadcast,
    "astype": astype,
    **_MATH,
}

_NUMPY_ALIASES: Dict[int, str] = {}
for _name, _np_name in MATH_FUNCTIONS.items():
    _NUMPY_ALIASES.setdefault(id(getattr(np, _np_name)), _name)
_NUMPY_ALIASES[id(np.where)] = "where"
_NUMPY_ALIASES[id(np.abs)] = "abs"
_NUMPY_ALIASES[id(_py_builtins.abs)] = "abs"


def builtin_name(value: Any):
    """Name of the builtin ``value`` stands for, or ``None``."""
    for name, fn in BUILTINS.items():
        if value is fn:
            return name
    return _NUMPY_ALIASES.get(id(value))


__all__ = [
    "BUILTINS",
    "builtin_name",
    "neighbor_sum",
    "max_over",
    "min_over",
    "where",
    "broadcast",
    "astype",
    "abs",
    "absolute",
    "acos",
    "acosh",
    "arccos",
    "arccosh",
    "arcsin",
    "arcsinh",
    "arctan",
    "arctanh",
    "asin",
    "asinh",
    "atan",
    "atanh",
    "ceil",
    "cos",
    "cosh",
    "exp",
    "floor",
    "isfinite",
    "isinf",
    "isnan",
    "log",
    "maximum",
    "minimum",
    "sin",
    "sinh",
    "sqrt",
    "tan",
    "tanh",
    "trunc",
]
