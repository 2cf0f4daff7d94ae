from __future__ import annotations

import operator
import sys
from numbers import Number
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from .dims import (
    Connectivity,
    Dimension,
    FieldOffset,
    OffsetSelection,
    as_dims,
    dims_repr,
)
from .exceptions import ContractError, DimensionMismatch, ShapeError
from .ir import FieldType, ScalarType


def array_namespace(*arrays: Any):
    """Return ``jax.numpy`` when any operand is a JAX array, ``numpy`` otherwise."""
    jax = sys.modules.get("jax")
    if jax is not None:
        array_type = getattr(jax, "Array", None)
        if array_type is not None and any(isinstance(a, array_type) for a in arrays):
            import jax.numpy as jnp

            return jnp
    return np


def merge_dims(*sequences: Sequence[Dimension]) -> Tuple[Dimension, ...]:
    """Ordered union of dimension sequences respecting every sequence's order.

    Dimensions are placed in order of first appearance unless a sequence requires
    another dimension to come first. Raises ``ShapeError`` when two sequences
    disagree on the relative order of a pair of dimensions.
    """
    seen: List[Dimension] = []
    preds: Dict[int, set] = {}
    for seq in sequences:
        for pos, dim in enumerate(seq):
            if dim not in seen:
                seen.append(dim)
            preds.setdefault(id(dim), set()).update(id(d) for d in seq[:pos])
    placed: List[Dimension] = []
    placed_ids: set = set()
    while len(placed) < len(seen):
        for dim in seen:
            if id(dim) in placed_ids:
                continue
            if preds[id(dim)] <= placed_ids:
                placed.append(dim)
                placed_ids.add(id(dim))
                break
        else:
            listing = ", ".join(dims_repr(tuple(s)) for s in sequences)
            raise ShapeError(f"Dimensions appear in conflicting orders: {listing}")
    return tuple(placed)


def _is_subsequence(sub: Sequence[Dimension], full: Sequence[Dimension]) -> bool:
    it = iter(full)
    return all(any(d is f for f in it) for d in sub)


def _is_scalar(value: Any) -> bool:
    if isinstance(value, (Number, np.generic)):
        return True
    return getattr(value, "ndim", None) == 0 and not isinstance(value, Field)


class Field:
    """Array whose axes are tagged with dimensions.

    ``broadcast_dims`` lists the dimensions the field logically spans; axes in
    ``broadcast_dims`` but not in ``dims`` hold no data and broadcast. ``origin``
    gives the first index of the domain along each data axis, so Cartesian
    shifts move the origin instead of the data. ``valid`` marks neighbors that
    exist after a connectivity gather.
    """

    __array_priority__ = 1000
    __hash__ = None  # type: ignore[assignment]

    def __init__(
        self,
        dims: Any,
        data: Any,
        broadcast_dims: Any = None,
        *,
        origin: Union[Mapping[Dimension, int], Sequence[int], None] = None,
        valid: Any = None,
    ):
        dims = as_dims(dims)
        if not (hasattr(data, "ndim") and hasattr(data, "dtype") and hasattr(data, "shape")):
            data = np.asarray(data)
        bdims = as_dims(broadcast_dims) if broadcast_dims is not None else dims
        if data.ndim == 0:
            missing = [d for d in dims if d not in bdims]
            if missing:
                raise ShapeError(
                    f"broadcast_dims {dims_repr(bdims)} must contain dims {dims_repr(dims)}"
                )
            dims = ()
        elif len(dims) != data.ndim:
            raise ShapeError(
                f"Field with dims {dims_repr(dims)} needs {len(dims)}-d data, got shape {tuple(data.shape)}"
            )
        if not _is_subsequence(dims, bdims):
            raise ShapeError(
                f"broadcast_dims {dims_repr(bdims)} must contain dims {dims_repr(dims)} in the same order"
            )
        if valid is not None and tuple(valid.shape) != tuple(data.shape):
            raise ShapeError(f"valid mask shape {tuple(valid.shape)} differs from data shape {tuple(data.shape)}")
        self.dims: Tuple[Dimension, ...] = dims
        self.data = data
        self.broadcast_dims: Tuple[Dimension, ...] = bdims
        self.origin: Tuple[int, ...] = _normalize_origin(origin, dims)
        self.valid = valid

    @classmethod
    def _from_parts(cls, dims, data, broadcast_dims, origin, valid=None) -> "Field":
        obj = object.__new__(cls)
        obj.dims = dims
        obj.data = data
        obj.broadcast_dims = broadcast_dims
        obj.origin = origin
        obj.valid = valid
        return obj

    def __class_getitem__(cls, params: Any) -> FieldType:
        """``Field[[Cell, K], np.float64]`` builds an annotation type."""
        if not isinstance(params, tuple) or len(params) != 2:
            raise TypeError("Field annotations take two parameters: Field[dims, dtype]")
        dims_spec, dtype = params
        return FieldType(as_dims(dims_spec), ScalarType.from_dtype(dtype))

    # Introspection ------------------------------------------------------------
    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(int(n) for n in self.data.shape)

    @property
    def dtype(self):
        return self.data.dtype

    @property
    def ndim(self) -> int:
        return len(self.dims)

    @property
    def domain(self) -> Tuple[range, ...]:
        return tuple(range(o, o + n) for o, n in zip(self.origin, self.shape))

    def axis_of(self, dim: Dimension) -> int:
        for idx, d in enumerate(self.dims):
            if d is dim:
                return idx
        raise DimensionMismatch(f"Dimension {dim.name} not in field dims {dims_repr(self.dims)}")

    def __repr__(self) -> str:
        bdims = ""
        if self.broadcast_dims != self.dims:
            bdims = f", broadcast_dims={dims_repr(self.broadcast_dims)}"
        origin = ""
        if any(self.origin):
            origin = f", origin={self.origin}"
        return f"Field(dims={dims_repr(self.dims)}{bdims}{origin}, dtype={self.dtype}, data={self.data!r})"

    def __bool__(self):
        raise TypeError(
            "The truth value of a Field is ambiguous; use where(), & or | for elementwise logic"
        )

    def __array__(self, dtype=None, copy=None):
        arr = np.asarray(self.data)
        if dtype is not None:
            arr = arr.astype(dtype, copy=False)
        return arr

    def __array_ufunc__(self, ufunc, method, *inputs, **kwargs):
        if method != "__call__" or kwargs or ufunc.nout != 1:
            return NotImplemented
        if not all(isinstance(x, Field) or _is_scalar(x) for x in inputs):
            return NotImplemented
        xp = array_namespace(*[x.data for x in inputs if isinstance(x, Field)])
        fn = ufunc if xp is np else getattr(xp, ufunc.__name__, None)
        if fn is None:
            return NotImplemented
        return elementwise(fn, *inputs)

    def __array_function__(self, func, types, args, kwargs):
        # np.where and friends route to the field builtins
        from .builtins import BUILTINS, builtin_name

        name = builtin_name(func)
        if name is None or kwargs:
            return NotImplemented
        return BUILTINS[name](*args)

    # Offsets ------------------------------------------------------------------
    def __call__(self, offset: Union[FieldOffset, OffsetSelection], *, provider=None) -> "Field":
        if provider is None:
            from .offset_provider import current_provider

            provider = current_provider()
            if provider is None:
                raise ContractError(
                    "No offset provider is active; offsets can only be applied inside a field operator call"
                )
        return apply_offset(self, offset, provider)

    def astype(self, dtype: Any) -> "Field":
        return Field._from_parts(
            self.dims, self.data.astype(np.dtype(dtype)), self.broadcast_dims, self.origin, self.valid
        )


def _normalize_origin(origin, dims: Tuple[Dimension, ...]) -> Tuple[int, ...]:
    if origin is None:
        return (0,) * len(dims)
    if isinstance(origin, Mapping):
        for dim in origin:
            if dim not in dims:
                raise DimensionMismatch(f"origin given for {dim!r} which is not in {dims_repr(dims)}")
        return tuple(int(origin.get(d, 0)) for d in dims)
    values = tuple(int(v) for v in origin)
    if len(values) != len(dims):
        raise ShapeError(f"origin {values} does not match dims {dims_repr(dims)}")
    return values


def _make_binary(fn, reflected: bool = False):
    def method(self, other):
        if not (isinstance(other, Field) or _is_scalar(other)):
            return NotImplemented
        if reflected:
            return elementwise(fn, other, self)
        return elementwise(fn, self, other)

    return method


def _make_unary(fn):
    def method(self):
        return elementwise(fn, self)

    return method


_BINARY_OPERATORS = {
    "add": operator.add,
    "sub": operator.sub,
    "mul": operator.mul,
    "truediv": operator.truediv,
    "floordiv": operator.floordiv,
    "mod": operator.mod,
    "pow": operator.pow,
    "and": operator.and_,
    "or": operator.or_,
    "xor": operator.xor,
}

for _name, _fn in _BINARY_OPERATORS.items():
    setattr(Field, f"__{_name}__", _make_binary(_fn))
    setattr(Field, f"__r{_name}__", _make_binary(_fn, reflected=True))

for _name, _fn in {
    "eq": operator.eq,
    "ne": operator.ne,
    "lt": operator.lt,
    "le": operator.le,
    "gt": operator.gt,
    "ge": operator.ge,
}.items():
    setattr(Field, f"__{_name}__", _make_binary(_fn))

for _name, _fn in {
    "neg": operator.neg,
    "pos": operator.pos,
    "invert": operator.invert,
    "abs": abs,
}.items():
    setattr(Field, f"__{_name}__", _make_unary(_fn))


# Elementwise alignment ----------------------------------------------------------


def elementwise(fn, *operands: Any) -> Any:
    """Apply ``fn`` to operands aligned on the union of their dimensions.

    Scalars pass through unchanged so that Python literals keep their weak
    typing. Along each result dimension only the intersection of the operand
    domains is computed.
    """
    fields = [op for op in operands if isinstance(op, Field)]
    if not fields:
        return fn(*operands)
    target = merge_dims(*[f.broadcast_dims for f in fields])
    result_dims = tuple(d for d in target if any(d in f.dims for f in fields))
    bounds: List[Tuple[int, int]] = []
    for dim in result_dims:
        lo = None
        hi = None
        for f in fields:
            if dim not in f.dims:
                continue
            rng = f.domain[f.axis_of(dim)]
            lo = rng.start if lo is None else max(lo, rng.start)
            hi = rng.stop if hi is None else min(hi, rng.stop)
        if hi <= lo:
            raise ShapeError(f"Operands have disjoint domains along {dim.name}")
        bounds.append((lo, hi))

    args = [
        _align(op.data, op, result_dims, bounds) if isinstance(op, Field) else op
        for op in operands
    ]
    data = fn(*args)
    valid = None
    for f in fields:
        if f.valid is None:
            continue
        aligned = _align(f.valid, f, result_dims, bounds)
        valid = aligned if valid is None else valid & aligned
    if valid is not None and tuple(valid.shape) != tuple(data.shape):
        xp = array_namespace(data, valid)
        valid = xp.broadcast_to(valid, data.shape)
    if getattr(data, "ndim", 0) != len(result_dims):
        xp = array_namespace(data)
        data = xp.broadcast_to(data, tuple(hi - lo for lo, hi in bounds))
    return Field._from_parts(result_dims, data, target, tuple(lo for lo, _ in bounds), valid)


def _align(arr, f: Field, result_dims, bounds):
    if f.ndim == 0:
        return arr
    xp = array_namespace(arr)
    index = []
    shape = []
    for dim, (lo, hi) in zip(result_dims, bounds):
        if dim in f.dims:
            axis = f.axis_of(dim)
            start = lo - f.origin[axis]
            index.append(slice(start, start + hi - lo))
            shape.append(hi - lo)
        else:
            shape.append(1)
    sliced = arr[tuple(index)]
    return xp.reshape(sliced, tuple(shape))


# Offset transform --------------------------------------------------------------


def apply_offset(field: Field, offset: Union[FieldOffset, OffsetSelection], provider) -> Field:
    index: Optional[int] = None
    if isinstance(offset, OffsetSelection):
        index = offset.index
        offset = offset.offset
    if not isinstance(offset, FieldOffset):
        raise TypeError(f"Fields can only be called with offsets, got {type(offset).__name__}")
    entry = provider.lookup(offset.name)
    if isinstance(entry, Dimension):
        return _shift(field, offset, entry, index)
    return _remap(field, offset, entry, index)


def _shift(field: Field, offset: FieldOffset, dim: Dimension, shift: Optional[int]) -> Field:
    if offset.has_local_target or offset.source is not dim or offset.target[0] is not dim:
        raise DimensionMismatch(
            f"Offset '{offset.name}' is provided by dimension {dim.name} but maps "
            f"{offset.source.name} -> {dims_repr(offset.target)}"
        )
    if shift is None:
        raise ContractError(f"Cartesian offset '{offset.name}' needs a shift, e.g. {offset.name}[1]")
    if dim not in field.dims:
        raise DimensionMismatch(
            f"Offset '{offset.name}' shifts {dim.name} which is not in field dims {dims_repr(field.dims)}"
        )
    axis = field.axis_of(dim)
    origin = list(field.origin)
    origin[axis] -= shift
    return Field._from_parts(field.dims, field.data, field.broadcast_dims, tuple(origin), field.valid)


def _remap(field: Field, offset: FieldOffset, conn: Connectivity, column: Optional[int]) -> Field:
    if conn.source is not offset.source or conn.target is not offset.target[0]:
        raise DimensionMismatch(
            f"Connectivity for '{offset.name}' maps {conn.source.name} -> {conn.target.name}, "
            f"offset declares {offset.source.name} -> {dims_repr(offset.target)}"
        )
    if offset.source not in field.dims:
        raise DimensionMismatch(
            f"Offset '{offset.name}' has source {offset.source.name} which is not in field dims "
            f"{dims_repr(field.dims)}"
        )
    axis = field.axis_of(offset.source)
    start = field.origin[axis]
    extent = field.shape[axis]
    if start != 0:
        raise ShapeError(f"Offset '{offset.name}' needs the {offset.source.name} domain to start at 0")
    if conn.max_index > extent:
        raise ShapeError(
            f"Connectivity '{offset.name}' references {offset.source.name} index {conn.max_index} "
            f"but the field only has {extent} elements"
        )

    table = conn.table
    if column is not None:
        if not offset.has_local_target:
            raise DimensionMismatch(f"Offset '{offset.name}' has no local dimension to select from")
        if column >= table.shape[1]:
            raise ShapeError(
                f"Neighbor slot {column + 1} out of range for '{offset.name}' with {table.shape[1]} neighbors"
            )
        idx = table[:, column]
        target_dims = (offset.target[0],)
    elif offset.has_local_target:
        idx = table
        target_dims = offset.target
    else:
        if table.shape[1] != 1:
            raise ShapeError(f"Offset '{offset.name}' has no local dimension but its table has several columns")
        idx = table[:, 0]
        target_dims = offset.target

    rest = tuple(d for d in field.dims if d is not offset.source)
    for dim in target_dims:
        if dim in rest:
            raise ShapeError(f"Offset '{offset.name}' target {dim.name} already present in field dims")

    xp = array_namespace(field.data, table)
    valid = idx >= 1
    safe = xp.where(valid, idx - 1, 0)
    moved = xp.moveaxis(field.data, axis, 0)
    gathered = xp.take(moved, safe, axis=0)
    mask = xp.reshape(valid, tuple(valid.shape) + (1,) * len(rest))
    data = xp.where(mask, gathered, xp.zeros((), dtype=gathered.dtype))
    new_valid = xp.broadcast_to(mask, data.shape)
    if field.valid is not None:
        new_valid = new_valid & xp.take(xp.moveaxis(field.valid, axis, 0), safe, axis=0)

    rest_origin = tuple(o for d, o in zip(field.dims, field.origin) if d is not offset.source)
    bdims = target_dims + tuple(d for d in field.broadcast_dims if d is not offset.source)
    return Field._from_parts(
        target_dims + rest,
        data,
        bdims,
        (0,) * len(target_dims) + rest_origin,
        new_valid,
    )


# Output --------------------------------------------------------------------------


def copy_into(result: Any, out: Any) -> None:
    """Write ``result`` into the caller-owned ``out`` over their common domain."""
    if isinstance(out, tuple):
        if not isinstance(result, tuple) or len(result) != len(out):
            raise ShapeError(
                f"Operator returned {_describe(result)} but out is a tuple of {len(out)} fields"
            )
        for res, dst in zip(result, out):
            copy_into(res, dst)
        return
    if not isinstance(out, Field):
        raise ContractError(f"out must be a Field or a tuple of Fields, got {type(out).__name__}")
    if not isinstance(out.data, np.ndarray) or not out.data.flags.writeable:
        raise ContractError("out must wrap a writable numpy array")
    if isinstance(result, tuple):
        raise ShapeError(f"Operator returned {_describe(result)} but out is a single field")
    if not isinstance(result, Field):
        out.data[...] = np.asarray(result).astype(out.dtype)
        return

    for dim in result.dims:
        if dim not in out.dims:
            raise ShapeError(
                f"Result dims {dims_repr(result.dims)} are not contained in out dims {dims_repr(out.dims)}"
            )
    for dim in out.dims:
        if dim not in result.dims and dim not in result.broadcast_dims:
            raise ShapeError(
                f"out dimension {dim.name} is neither a dimension nor a broadcast dimension of the result"
            )

    dst_index = []
    src_index = []
    for axis, dim in enumerate(out.dims):
        out_rng = out.domain[axis]
        if dim not in result.dims:
            dst_index.append(slice(None))
            continue
        res_rng = result.domain[result.axis_of(dim)]
        lo = max(out_rng.start, res_rng.start)
        hi = min(out_rng.stop, res_rng.stop)
        if hi <= lo:
            raise ShapeError(f"Result and out do not overlap along {dim.name}")
        dst_index.append(slice(lo - out_rng.start, hi - out_rng.start))
        src_index.append((dim, slice(lo - res_rng.start, hi - res_rng.start)))

    src = np.asarray(result.data)
    if src_index:
        src_index.sort(key=lambda item: result.axis_of(item[0]))
        src = src[tuple(sl for _, sl in src_index)]
        order = [dim for dim in out.dims if dim in result.dims]
        src = np.transpose(src, [result.axis_of(dim) for dim in order])
    expanded = tuple(slice(None) if dim in result.dims else np.newaxis for dim in out.dims)
    src = np.asarray(src)[expanded + (Ellipsis,)]
    target = out.data[tuple(dst_index) + (Ellipsis,)]
    target[...] = np.broadcast_to(src, target.shape).astype(out.dtype, copy=False)


def _describe(value: Any) -> str:
    if isinstance(value, tuple):
        return f"a tuple of {len(value)}"
    if isinstance(value, Field):
        return f"a field over {dims_repr(value.dims)}"
    return f"a {type(value).__name__}"

