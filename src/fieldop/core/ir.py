from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .dims import Dimension, FieldOffset, dims_repr


# Types -----------------------------------------------------------------------


class ScalarKind(Enum):
    BOOL = "bool"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"


_KIND_BY_DTYPE = {np.dtype(kind.value): kind for kind in ScalarKind}


@dataclass(frozen=True)
class ScalarType:
    kind: ScalarKind
    weak: bool = False  # python literal, adopts the dtype of a field operand

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self.kind.value)

    @classmethod
    def from_dtype(cls, dtype: Any, weak: bool = False) -> "ScalarType":
        if dtype is bool:
            return cls(ScalarKind.BOOL, weak)
        if dtype is int:
            return cls(ScalarKind.INT64, weak)
        if dtype is float:
            return cls(ScalarKind.FLOAT64, weak)
        try:
            np_dtype = np.dtype(dtype)
        except TypeError as exc:
            raise TypeError(f"Unsupported scalar type {dtype!r}") from exc
        kind = _KIND_BY_DTYPE.get(np_dtype)
        if kind is None:
            raise TypeError(f"Unsupported scalar type {np_dtype}")
        return cls(kind, weak)

    @classmethod
    def of_value(cls, value: Any) -> "ScalarType":
        if isinstance(value, (bool, int, float)):
            return cls.from_dtype(type(value), weak=True)
        return cls.from_dtype(np.asarray(value).dtype)

    def sample(self) -> Any:
        """A one-element prototype with this type, used for dtype inference."""
        if self.weak:
            return {ScalarKind.BOOL: True, ScalarKind.INT64: 1, ScalarKind.FLOAT64: 1.0}.get(
                self.kind, self.dtype.type(1)
            )
        return np.ones((1,), dtype=self.dtype)


@dataclass(frozen=True)
class FieldType:
    dims: Tuple[Dimension, ...]
    dtype: ScalarType


@dataclass(frozen=True)
class TupleType:
    elements: Tuple[Any, ...]


@dataclass(frozen=True)
class OffsetType:
    offset: FieldOffset
    index: Optional[int] = None


@dataclass(frozen=True)
class DimensionType:
    dim: Dimension


@dataclass(frozen=True)
class FunctionType:
    name: str
    kind: str  # "builtin" | "operator" | "type"


def same_type(a: Any, b: Any) -> bool:
    """Structural equality ignoring literal weakness."""
    if isinstance(a, ScalarType) and isinstance(b, ScalarType):
        return a.kind == b.kind
    if isinstance(a, FieldType) and isinstance(b, FieldType):
        return a.dims == b.dims and a.dtype.kind == b.dtype.kind
    if isinstance(a, TupleType) and isinstance(b, TupleType):
        return len(a.elements) == len(b.elements) and all(
            same_type(x, y) for x, y in zip(a.elements, b.elements)
        )
    return a == b


def format_type(t: Any) -> str:
    if t is None:
        return "?"
    if isinstance(t, ScalarType):
        return t.kind.value + ("~" if t.weak else "")
    if isinstance(t, FieldType):
        return f"Field[{dims_repr(t.dims)}, {t.dtype.kind.value}]"
    if isinstance(t, TupleType):
        return "tuple[" + ", ".join(format_type(e) for e in t.elements) + "]"
    if isinstance(t, OffsetType):
        suffix = "" if t.index is None else f"[{t.index}]"
        return f"Offset[{t.offset.name}]{suffix}"
    if isinstance(t, DimensionType):
        return f"Dimension[{t.dim.name}]"
    if isinstance(t, FunctionType):
        return f"{t.kind}:{t.name}"
    return repr(t)


# Nodes -----------------------------------------------------------------------


@dataclass(frozen=True)
class SourceLocation:
    filename: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    line_text: Optional[str] = None

    def __str__(self) -> str:
        name = self.filename or "<unknown>"
        return f"{name}:{self.line}:{self.column}"


@dataclass
class Node:
    location: Optional[SourceLocation] = field(default=None, repr=False, compare=False)
    type: Any = field(default=None, repr=False, compare=False)


Expr = Any  # Name | Constant | TupleExpr | Subscript | OffsetSelect | BinOp | ...


@dataclass
class Name(Node):
    id: str = ""


@dataclass
class Constant(Node):
    value: Any = None


@dataclass
class TupleExpr(Node):
    elts: List[Expr] = field(default_factory=list)


@dataclass
class Subscript(Node):
    value: Expr = None
    index: int = 0


@dataclass
class OffsetSelect(Node):
    # index is a 0-based table column for local offsets and a shift otherwise
    offset: Expr = None
    index: int = 0


@dataclass
class BinOp(Node):
    op: str = ""
    left: Expr = None
    right: Expr = None


@dataclass
class UnaryOp(Node):
    op: str = ""
    operand: Expr = None


@dataclass
class Compare(Node):
    op: str = ""
    left: Expr = None
    right: Expr = None


@dataclass
class Conjunction(Node):
    left: Expr = None
    right: Expr = None


@dataclass
class TernaryExpr(Node):
    condition: Expr = None
    true_expr: Expr = None
    false_expr: Expr = None


@dataclass
class Call(Node):
    func: Expr = None
    args: List[Expr] = field(default_factory=list)
    kwargs: Dict[str, Expr] = field(default_factory=dict)


# Statements ------------------------------------------------------------------


@dataclass
class BlockStmt(Node):
    stmts: List[Any] = field(default_factory=list)


@dataclass
class Assign(Node):
    target: str = ""
    value: Expr = None


@dataclass
class TupleTargetAssign(Node):
    targets: List[str] = field(default_factory=list)
    value: Expr = None


@dataclass
class IfStmt(Node):
    condition: Expr = None
    true_branch: BlockStmt = None  # type: ignore
    false_branch: Optional[BlockStmt] = None


@dataclass
class Return(Node):
    value: Expr = None


# Symbols ---------------------------------------------------------------------


@dataclass
class DataSymbol(Node):
    id: str = ""


@dataclass
class ClosureSymbol(Node):
    id: str = ""
    kind: str = ""  # "dimension" | "offset" | "scalar" | "operator" | "builtin" | "type"
    value: Any = None


@dataclass
class FunctionDefinition(Node):
    id: str = ""
    params: List[DataSymbol] = field(default_factory=list)
    body: BlockStmt = None  # type: ignore
    closure_vars: List[ClosureSymbol] = field(default_factory=list)
    returns: Any = None  # annotated return type, if any
    filename: Optional[str] = None
    source: Optional[str] = None

    def closure_map(self) -> Dict[str, ClosureSymbol]:
        return {sym.id: sym for sym in self.closure_vars}


# Formatting ------------------------------------------------------------------

_BINOP_SYMBOLS = {
    "add": "+",
    "sub": "-",
    "mult": "*",
    "div": "/",
    "floordiv": "//",
    "mod": "%",
    "pow": "**",
    "bitand": "&",
    "bitor": "|",
    "bitxor": "^",
}
_UNARY_SYMBOLS = {"neg": "-", "pos": "+", "invert": "~"}
_COMPARE_SYMBOLS = {"eq": "==", "ne": "!=", "lt": "<", "le": "<=", "gt": ">", "ge": ">="}


def format_expr(expr: Expr) -> str:
    if isinstance(expr, Name):
        return expr.id
    if isinstance(expr, Constant):
        return repr(expr.value)
    if isinstance(expr, TupleExpr):
        inner = ", ".join(format_expr(e) for e in expr.elts)
        return f"({inner},)" if len(expr.elts) == 1 else f"({inner})"
    if isinstance(expr, Subscript):
        return f"{format_expr(expr.value)}[{expr.index}]"
    if isinstance(expr, OffsetSelect):
        return f"{format_expr(expr.offset)}<{expr.index}>"
    if isinstance(expr, BinOp):
        return f"({format_expr(expr.left)} {_BINOP_SYMBOLS[expr.op]} {format_expr(expr.right)})"
    if isinstance(expr, UnaryOp):
        return f"{_UNARY_SYMBOLS[expr.op]}{format_expr(expr.operand)}"
    if isinstance(expr, Compare):
        return f"({format_expr(expr.left)} {_COMPARE_SYMBOLS[expr.op]} {format_expr(expr.right)})"
    if isinstance(expr, Conjunction):
        return f"({format_expr(expr.left)} && {format_expr(expr.right)})"
    if isinstance(expr, TernaryExpr):
        return (
            f"({format_expr(expr.true_expr)} if {format_expr(expr.condition)} "
            f"else {format_expr(expr.false_expr)})"
        )
    if isinstance(expr, Call):
        parts = [format_expr(a) for a in expr.args]
        parts.extend(f"{k}={format_expr(v)}" for k, v in expr.kwargs.items())
        return f"{format_expr(expr.func)}({', '.join(parts)})"
    return repr(expr)


def format_ir(defn: FunctionDefinition) -> str:
    lines: List[str] = []
    params = ", ".join(f"{p.id}: {format_type(p.type)}" for p in defn.params)
    returns = format_type(defn.returns) if defn.returns is not None else "?"
    lines.append(f"def {defn.id}({params}) -> {returns}:")
    for sym in defn.closure_vars:
        lines.append(f"  # closure {sym.id} ({sym.kind}) = {_short_value(sym.value)}")
    _format_block(defn.body, lines, indent=1)
    return "\n".join(lines)


def _short_value(value: Any) -> str:
    name = getattr(value, "__name__", None)
    if name is not None and not isinstance(value, (Dimension, FieldOffset)):
        return name
    return repr(value)


def _format_block(block: BlockStmt, lines: List[str], indent: int) -> None:
    pad = "  " * indent
    for stmt in block.stmts:
        if isinstance(stmt, Assign):
            lines.append(f"{pad}{stmt.target} = {format_expr(stmt.value)}  # {format_type(stmt.value.type)}")
        elif isinstance(stmt, TupleTargetAssign):
            lines.append(f"{pad}{', '.join(stmt.targets)} = {format_expr(stmt.value)}")
        elif isinstance(stmt, IfStmt):
            lines.append(f"{pad}if {format_expr(stmt.condition)}:")
            _format_block(stmt.true_branch, lines, indent + 1)
            if stmt.false_branch is not None and stmt.false_branch.stmts:
                lines.append(f"{pad}else:")
                _format_block(stmt.false_branch, lines, indent + 1)
        elif isinstance(stmt, Return):
            lines.append(f"{pad}return {format_expr(stmt.value)}  # {format_type(stmt.value.type)}")
        else:
            lines.append(f"{pad}{stmt!r}")


def json_ready(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (np.integer, np.floating, np.bool_)):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Dimension):
        return {"dimension": value.name, "kind": value.kind.value}
    if isinstance(value, FieldOffset):
        return {
            "offset": value.name,
            "source": value.source.name,
            "target": [d.name for d in value.target],
        }
    if isinstance(value, (ScalarType, FieldType, TupleType, OffsetType, DimensionType, FunctionType)):
        return format_type(value)
    if isinstance(value, SourceLocation):
        return {"file": value.filename, "line": value.line, "column": value.column}
    if is_dataclass(value) and not isinstance(value, type):
        payload: Dict[str, Any] = {"node": type(value).__name__}
        for f in fields(value):
            item = getattr(value, f.name)
            if f.name == "type" and item is None:
                continue
            if f.name == "value" and isinstance(value, ClosureSymbol):
                payload["value"] = _short_value(item)
                continue
            payload[f.name] = json_ready(item)
        return payload
    if isinstance(value, dict):
        return {str(k): json_ready(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_ready(v) for v in value]
    return str(value)
