from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple, Union

import numpy as np

from .exceptions import ShapeError


class DimensionKind(Enum):
    HORIZONTAL = "horizontal"
    VERTICAL = "vertical"
    LOCAL = "local"


HORIZONTAL = DimensionKind.HORIZONTAL
VERTICAL = DimensionKind.VERTICAL
LOCAL = DimensionKind.LOCAL


class Dimension:
    """Named axis tag. Two dimensions are the same only if they are the same object."""

    __slots__ = ("_name", "_kind")

    def __init__(self, name: str, kind: DimensionKind = DimensionKind.HORIZONTAL):
        if not isinstance(kind, DimensionKind):
            kind = DimensionKind(str(kind).lower())
        object.__setattr__(self, "_name", str(name))
        object.__setattr__(self, "_kind", kind)

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> DimensionKind:
        return self._kind

    def __setattr__(self, key, value):
        raise AttributeError("Dimension objects are immutable")

    def __repr__(self) -> str:
        return f"Dimension({self._name!r}, {self._kind.name})"

    def __str__(self) -> str:
        return self._name


DimsLike = Union[Dimension, Tuple[Dimension, ...], list]


def as_dims(value: Any) -> Tuple[Dimension, ...]:
    if value is None:
        return ()
    if isinstance(value, Dimension):
        return (value,)
    dims = tuple(value)
    for dim in dims:
        if not isinstance(dim, Dimension):
            raise TypeError(f"Expected Dimension, got {type(dim).__name__}: {dim!r}")
    if len(set(map(id, dims))) != len(dims):
        raise ShapeError(f"Duplicate dimension in {dims_repr(dims)}")
    return dims


def dims_repr(dims: Tuple[Dimension, ...]) -> str:
    return "(" + ", ".join(d.name for d in dims) + ")"


class FieldOffset:
    """Named relation from a source dimension to one target or a (target, LOCAL) pair.

    ``offset[i]`` selects a single neighbor slot (1-based) when the offset has a
    local target, and a signed shift otherwise.
    """

    __slots__ = ("name", "source", "target")

    def __init__(self, name: str, source: DimsLike, target: DimsLike):
        source_dims = as_dims(source)
        target_dims = as_dims(target)
        if len(source_dims) != 1:
            raise ValueError(f"Offset '{name}' needs exactly one source dimension")
        if len(target_dims) not in (1, 2):
            raise ValueError(f"Offset '{name}' needs one or two target dimensions")
        if len(target_dims) == 2 and target_dims[1].kind is not DimensionKind.LOCAL:
            raise ValueError("Second dimension in offset must be a local dimension.")
        self.name = str(name)
        self.source: Dimension = source_dims[0]
        self.target: Tuple[Dimension, ...] = target_dims

    @property
    def has_local_target(self) -> bool:
        return len(self.target) == 2

    def __getitem__(self, index: int) -> "OffsetSelection":
        if isinstance(index, bool) or not isinstance(index, (int, np.integer)):
            raise TypeError(f"Offset '{self.name}' must be indexed with an integer, got {index!r}")
        index = int(index)
        if self.has_local_target:
            if index < 1:
                raise IndexError(f"Neighbor slots of '{self.name}' are 1-based, got {index}")
            return OffsetSelection(self, index - 1)
        return OffsetSelection(self, index)

    def __repr__(self) -> str:
        return f"FieldOffset({self.name!r}, source={self.source.name}, target={dims_repr(self.target)})"


@dataclass(frozen=True)
class OffsetSelection:
    # 0-based table column for local offsets, signed shift for Cartesian ones
    offset: FieldOffset
    index: int


class Connectivity:
    """Adjacency table realizing an offset on a concrete mesh.

    ``table[e, k]`` holds the 1-based index along ``source`` of the k-th neighbor of
    element ``e`` along ``target``; ``0`` and ``-1`` mark a missing neighbor.
    """

    def __init__(
        self,
        table: Any,
        source: Dimension,
        target: Dimension,
        max_neighbors: Optional[int] = None,
    ):
        arr = np.asarray(table)
        if arr.dtype == bool or not np.issubdtype(arr.dtype, np.integer):
            if arr.size and np.issubdtype(arr.dtype, np.floating) and np.all(arr == np.round(arr)):
                arr = arr.astype(np.int64)
            elif arr.size:
                raise ShapeError(f"Connectivity table must hold integers, got dtype {arr.dtype}")
            else:
                arr = arr.astype(np.int64)
        if arr.ndim == 1:
            arr = arr.reshape(-1, 1)
        if arr.ndim != 2:
            raise ShapeError(f"Connectivity table must be 2-d, got rank {arr.ndim}")
        if max_neighbors is None:
            max_neighbors = arr.shape[1]
        if arr.shape[1] > int(max_neighbors):
            raise ShapeError(
                f"Connectivity table has {arr.shape[1]} columns but max_neighbors={max_neighbors}"
            )
        if arr.size and int(arr.min()) < -1:
            raise ShapeError(
                f"Connectivity table holds {int(arr.min())}; valid entries are >= 1, sentinels are 0 or -1"
            )
        if not isinstance(source, Dimension) or not isinstance(target, Dimension):
            raise TypeError("Connectivity source and target must be Dimension objects")
        self.table = arr
        self.source = source
        self.target = target
        self.max_neighbors = int(max_neighbors)
        self.max_index = int(arr.max()) if arr.size else 0

    @classmethod
    def _from_parts(cls, table, source, target, max_neighbors, max_index) -> "Connectivity":
        conn = object.__new__(cls)
        conn.table = table
        conn.source = source
        conn.target = target
        conn.max_neighbors = max_neighbors
        conn.max_index = max_index
        return conn

    @property
    def shape(self) -> Tuple[int, ...]:
        return tuple(self.table.shape)

    def __repr__(self) -> str:
        return (
            f"Connectivity(shape={self.shape}, source={self.source.name}, "
            f"target={self.target.name}, max_neighbors={self.max_neighbors})"
        )
