from __future__ import annotations

import operator
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .builtins import MATH_FUNCTIONS
from .dims import DimensionKind, dims_repr
from .exceptions import ShapeError, TranslationError
from .field import merge_dims
from .ir import (
    Assign,
    BinOp,
    BlockStmt,
    Call,
    ClosureSymbol,
    Compare,
    Conjunction,
    Constant,
    DimensionType,
    FieldType,
    FunctionDefinition,
    FunctionType,
    IfStmt,
    Name,
    OffsetSelect,
    OffsetType,
    Return,
    ScalarKind,
    ScalarType,
    Subscript,
    TernaryExpr,
    TupleExpr,
    TupleTargetAssign,
    TupleType,
    UnaryOp,
    format_type,
    same_type,
)

_BINARY_FUNCS: Dict[str, Callable[[Any, Any], Any]] = {
    "add": operator.add,
    "sub": operator.sub,
    "mult": operator.mul,
    "div": operator.truediv,
    "floordiv": operator.floordiv,
    "mod": operator.mod,
    "pow": operator.pow,
    "bitand": operator.and_,
    "bitor": operator.or_,
    "bitxor": operator.xor,
}
_UNARY_FUNCS = {"neg": operator.neg, "pos": operator.pos, "invert": operator.invert}
_REDUCTIONS = {"neighbor_sum", "max_over", "min_over"}

BOOL = ScalarType(ScalarKind.BOOL)


def _sample(t: Any) -> Any:
    if isinstance(t, FieldType):
        return np.ones((1,), dtype=t.dtype.dtype)
    return t.sample()


class TypeChecker:
    """Assigns a type to every IR expression and validates the return annotation."""

    def __init__(
        self,
        definition: FunctionDefinition,
        *,
        validate_return: bool = True,
        resolve_operator: Optional[Callable[[Any], FunctionDefinition]] = None,
    ):
        self.definition = definition
        self.validate_return = validate_return
        self.resolve_operator = resolve_operator or (lambda op: op.definition)
        self.closure: Dict[str, ClosureSymbol] = definition.closure_map()
        self.return_type: Any = None

    def error(self, message: str, node: Any) -> TranslationError:
        loc = getattr(node, "location", None)
        if loc is None:
            return TranslationError(message)
        return TranslationError(
            message,
            filename=loc.filename,
            line=loc.line,
            column=loc.column,
            line_text=loc.line_text,
        )

    # Entry ------------------------------------------------------------------
    def check(self) -> FunctionDefinition:
        env: Dict[str, Any] = {p.id: p.type for p in self.definition.params}
        self.block(self.definition.body, env)
        returns = self.definition.returns
        if returns is not None and self.validate_return and not same_type(self.return_type, returns):
            raise self.error(
                f"returned {format_type(self.return_type)} but the annotation says {format_type(returns)}",
                self._return_node() or self.definition,
            )
        self.definition.type = returns if returns is not None else self.return_type
        return self.definition

    def _return_node(self) -> Optional[Return]:
        stmts = self.definition.body.stmts
        return stmts[-1] if stmts and isinstance(stmts[-1], Return) else None

    # Statements -------------------------------------------------------------
    def block(self, block: BlockStmt, env: Dict[str, Any]) -> None:
        for stmt in block.stmts:
            self.stmt(stmt, env)

    def stmt(self, stmt: Any, env: Dict[str, Any]) -> None:
        if isinstance(stmt, Assign):
            env[stmt.target] = self.expr(stmt.value, env)
            return
        if isinstance(stmt, TupleTargetAssign):
            value = self.expr(stmt.value, env)
            if not isinstance(value, TupleType) or len(value.elements) != len(stmt.targets):
                raise self.error(
                    f"cannot unpack {format_type(value)} into {len(stmt.targets)} names", stmt
                )
            for name, t in zip(stmt.targets, value.elements):
                env[name] = t
            return
        if isinstance(stmt, IfStmt):
            cond = self.expr(stmt.condition, env)
            self._require_scalar_bool(cond, stmt.condition, "if condition")
            true_env = dict(env)
            self.block(stmt.true_branch, true_env)
            false_env = dict(env)
            if stmt.false_branch is not None:
                self.block(stmt.false_branch, false_env)
            self._merge(env, true_env, false_env, stmt)
            return
        if isinstance(stmt, Return):
            self.return_type = self.expr(stmt.value, env)
            return
        raise self.error(f"unexpected statement {type(stmt).__name__}", stmt)

    def _merge(self, env, true_env, false_env, stmt) -> None:
        for name in set(true_env) | set(false_env):
            in_true = name in true_env
            in_false = name in false_env
            if in_true and in_false:
                if not same_type(true_env[name], false_env[name]):
                    raise self.error(
                        f"'{name}' is {format_type(true_env[name])} in one branch and "
                        f"{format_type(false_env[name])} in the other",
                        stmt,
                    )
                env[name] = true_env[name]
            else:
                # assigned in a single branch only
                env.pop(name, None)

    def _require_scalar_bool(self, t: Any, node: Any, what: str) -> None:
        if not (isinstance(t, ScalarType) and t.kind is ScalarKind.BOOL):
            raise self.error(f"{what} must be a scalar bool, got {format_type(t)}", node)

    # Expressions ------------------------------------------------------------
    def expr(self, node: Any, env: Dict[str, Any]) -> Any:
        t = self._expr(node, env)
        node.type = t
        return t

    def _expr(self, node: Any, env: Dict[str, Any]) -> Any:
        if isinstance(node, Constant):
            return ScalarType.of_value(node.value)
        if isinstance(node, Name):
            return self._name(node, env)
        if isinstance(node, TupleExpr):
            return TupleType(tuple(self.expr(e, env) for e in node.elts))
        if isinstance(node, Subscript):
            value = self.expr(node.value, env)
            if not isinstance(value, TupleType):
                raise self.error(f"only tuples can be subscripted, got {format_type(value)}", node)
            if not -len(value.elements) <= node.index < len(value.elements):
                raise self.error(f"tuple index {node.index} out of range for {format_type(value)}", node)
            return value.elements[node.index]
        if isinstance(node, OffsetSelect):
            base = self.expr(node.offset, env)
            if not isinstance(base, OffsetType):
                raise self.error(f"{format_type(base)} cannot be indexed like an offset", node)
            return OffsetType(base.offset, node.index)
        if isinstance(node, BinOp):
            return self._elementwise(_BINARY_FUNCS[node.op], [node.left, node.right], env, node)
        if isinstance(node, UnaryOp):
            return self._elementwise(_UNARY_FUNCS[node.op], [node.operand], env, node)
        if isinstance(node, Compare):
            fn = getattr(operator, node.op)
            return self._elementwise(fn, [node.left, node.right], env, node)
        if isinstance(node, Conjunction):
            for side in (node.left, node.right):
                t = self.expr(side, env)
                if isinstance(t, FieldType):
                    raise self.error(
                        "chained comparisons of fields are not supported; combine the comparisons with &",
                        node,
                    )
                self._require_scalar_bool(t, side, "chained comparison operand")
            return BOOL
        if isinstance(node, TernaryExpr):
            cond = self.expr(node.condition, env)
            self._require_scalar_bool(cond, node.condition, "conditional expression condition")
            t_true = self.expr(node.true_expr, env)
            t_false = self.expr(node.false_expr, env)
            if not same_type(t_true, t_false):
                raise self.error(
                    f"conditional expression branches differ: {format_type(t_true)} vs {format_type(t_false)}",
                    node,
                )
            return t_true
        if isinstance(node, Call):
            return self._call(node, env)
        raise self.error(f"unexpected expression {type(node).__name__}", node)

    def _name(self, node: Name, env: Dict[str, Any]) -> Any:
        if node.id in env:
            return env[node.id]
        sym = self.closure.get(node.id)
        if sym is None:
            raise self.error(f"name '{node.id}' is not defined on every path", node)
        if sym.kind == "dimension":
            return DimensionType(sym.value)
        if sym.kind == "offset":
            return OffsetType(sym.value)
        if sym.kind == "scalar":
            return ScalarType.of_value(sym.value)
        if sym.kind == "builtin":
            return FunctionType(sym.value, "builtin")
        return FunctionType(sym.id, sym.kind)

    def _elementwise(self, fn, operands: List[Any], env, node, types: Optional[List[Any]] = None) -> Any:
        if types is None:
            types = [self.expr(op, env) for op in operands]
        for t in types:
            if not isinstance(t, (FieldType, ScalarType)):
                raise self.error(f"operand of type {format_type(t)} is not a field or scalar", node)
        field_types = [t for t in types if isinstance(t, FieldType)]
        try:
            dims = merge_dims(*[t.dims for t in field_types])
        except ShapeError as exc:
            raise self.error(str(exc), node) from None
        try:
            with np.errstate(all="ignore"):
                result = fn(*[_sample(t) for t in types])
        except TypeError as exc:
            described = ", ".join(format_type(t) for t in types)
            raise self.error(f"operation not defined for {described}: {exc}", node) from None
        try:
            if not field_types and isinstance(result, (bool, int, float)):
                dtype = ScalarType.of_value(result)
            else:
                dtype = ScalarType.from_dtype(np.asarray(result).dtype)
        except TypeError as exc:
            raise self.error(str(exc), node) from None
        if field_types:
            return FieldType(dims, ScalarType(dtype.kind))
        return dtype

    # Calls ------------------------------------------------------------------
    def _call(self, node: Call, env: Dict[str, Any]) -> Any:
        callee = self.expr(node.func, env)
        if isinstance(callee, FieldType):
            return self._offset_call(callee, node, env)
        if not isinstance(callee, FunctionType):
            raise self.error(f"{format_type(callee)} is not callable", node)
        if callee.kind == "builtin":
            return self._builtin_call(callee.name, node, env)
        if callee.kind == "type":
            return self._type_call(node, env)
        if callee.kind == "operator":
            return self._operator_call(node, env)
        raise self.error(f"{format_type(callee)} is not callable", node)

    def _offset_call(self, field_type: FieldType, node: Call, env) -> FieldType:
        if len(node.args) != 1 or node.kwargs:
            raise self.error("fields are called with exactly one offset", node)
        off = self.expr(node.args[0], env)
        if not isinstance(off, OffsetType):
            raise self.error(f"fields can only be called with offsets, got {format_type(off)}", node)
        offset = off.offset
        if offset.source not in field_type.dims:
            raise self.error(
                f"offset '{offset.name}' has source {offset.source.name} which is not in "
                f"{dims_repr(field_type.dims)}",
                node,
            )
        if not offset.has_local_target and offset.target[0] is offset.source:
            if off.index is None:
                raise self.error(f"Cartesian offset '{offset.name}' needs a shift, e.g. {offset.name}[1]", node)
            return field_type
        rest = tuple(d for d in field_type.dims if d is not offset.source)
        targets = offset.target if off.index is None else offset.target[:1]
        for dim in targets:
            if dim in rest:
                raise self.error(f"offset '{offset.name}' target {dim.name} is already a field dimension", node)
        return FieldType(targets + rest, field_type.dtype)

    def _args(self, node: Call, env, names: List[str], required: int) -> List[Any]:
        if len(node.args) > len(names):
            raise self.error(f"too many arguments ({len(node.args)} > {len(names)})", node)
        bound: Dict[str, Any] = dict(zip(names, node.args))
        for key, value in node.kwargs.items():
            if key not in names:
                raise self.error(f"unexpected keyword argument '{key}'", node)
            if key in bound:
                raise self.error(f"argument '{key}' given twice", node)
            bound[key] = value
        missing = [n for n in names[:required] if n not in bound]
        if missing:
            raise self.error(f"missing argument(s): {', '.join(missing)}", node)
        return [bound.get(n) for n in names]

    def _builtin_call(self, name: str, node: Call, env) -> Any:
        if name in _REDUCTIONS:
            field_node, axis_node = self._args(node, env, ["field", "axis"], 2)
            ft = self.expr(field_node, env)
            at = self.expr(axis_node, env)
            if not isinstance(ft, FieldType):
                raise self.error(f"{name} expects a field, got {format_type(ft)}", node)
            if not isinstance(at, DimensionType) or at.dim.kind is not DimensionKind.LOCAL:
                raise self.error(f"{name} axis must be a local dimension, got {format_type(at)}", node)
            if at.dim not in ft.dims:
                raise self.error(f"{name} axis {at.dim.name} is not in {dims_repr(ft.dims)}", node)
            dtype = ft.dtype
            if name == "neighbor_sum" and dtype.kind is ScalarKind.BOOL:
                dtype = ScalarType(ScalarKind.INT64)
            return FieldType(tuple(d for d in ft.dims if d is not at.dim), dtype)
        if name == "where":
            mask_node, a_node, b_node = self._args(node, env, ["mask", "a", "b"], 3)
            mask = self.expr(mask_node, env)
            if not (isinstance(mask, (FieldType, ScalarType)) and _kind(mask) is ScalarKind.BOOL):
                raise self.error(f"where mask must be boolean, got {format_type(mask)}", node)
            return self._where(mask, self.expr(a_node, env), self.expr(b_node, env), node)
        if name == "broadcast":
            value_node, dims_node = self._args(node, env, ["value", "dims"], 2)
            vt = self.expr(value_node, env)
            dt = self.expr(dims_node, env)
            members = dt.elements if isinstance(dt, TupleType) else (dt,)
            if not all(isinstance(m, DimensionType) for m in members):
                raise self.error("broadcast dims must be a tuple of dimensions", node)
            dims = tuple(m.dim for m in members)
            if isinstance(vt, FieldType):
                if [d for d in dims if d in vt.dims] != list(vt.dims):
                    raise self.error(
                        f"cannot broadcast {format_type(vt)} to {dims_repr(dims)}", node
                    )
                return FieldType(dims, vt.dtype)
            if isinstance(vt, ScalarType):
                return FieldType(dims, ScalarType(vt.kind))
            raise self.error(f"cannot broadcast {format_type(vt)}", node)
        if name == "astype":
            value_node, type_node = self._args(node, env, ["value", "dtype"], 2)
            vt = self.expr(value_node, env)
            target = self._type_target(type_node, env)
            return _cast(vt, target, lambda: self.error(f"cannot cast {format_type(vt)}", node))
        np_name = MATH_FUNCTIONS.get(name)
        if np_name is None:
            raise self.error(f"unknown builtin '{name}'", node)
        if node.kwargs:
            raise self.error(f"{name} takes no keyword arguments", node)
        return self._elementwise(getattr(np, np_name), node.args, env, node)

    def _where(self, mask: Any, a: Any, b: Any, node: Call) -> Any:
        if isinstance(a, TupleType) or isinstance(b, TupleType):
            if not (isinstance(a, TupleType) and isinstance(b, TupleType)) or len(a.elements) != len(b.elements):
                raise self.error("where branches must be tuples of the same length", node)
            return TupleType(tuple(self._where(mask, x, y, node) for x, y in zip(a.elements, b.elements)))
        return self._elementwise(np.where, [], None, node, types=[mask, a, b])

    def _type_target(self, node: Any, env) -> ScalarType:
        t = self.expr(node, env)
        sym = self.closure.get(node.id) if isinstance(node, Name) else None
        if not isinstance(t, FunctionType) or t.kind != "type" or sym is None:
            raise self.error(f"expected a scalar type, got {format_type(t)}", node)
        weak = any(sym.value is py for py in (bool, int, float))
        return ScalarType.from_dtype(sym.value, weak=weak)

    def _type_call(self, node: Call, env) -> Any:
        target = self._type_target(node.func, env)
        if len(node.args) != 1 or node.kwargs:
            raise self.error("type constructors take exactly one argument", node)
        vt = self.expr(node.args[0], env)
        if not isinstance(vt, ScalarType):
            raise self.error(
                f"type constructors apply to scalars, got {format_type(vt)}; use astype for fields", node
            )
        return target

    def _operator_call(self, node: Call, env) -> Any:
        sym = self.closure[node.func.id]
        callee = self.resolve_operator(sym.value)
        if node.kwargs:
            raise self.error("nested operators take positional arguments only", node)
        if len(node.args) != len(callee.params):
            raise self.error(
                f"'{callee.id}' takes {len(callee.params)} arguments, got {len(node.args)}", node
            )
        for arg, param in zip(node.args, callee.params):
            at = self.expr(arg, env)
            literal = isinstance(param.type, ScalarType) and isinstance(at, ScalarType) and at.weak
            if not literal and not same_type(at, param.type):
                raise self.error(
                    f"parameter '{param.id}' of '{callee.id}' expects {format_type(param.type)}, "
                    f"got {format_type(at)}",
                    arg,
                )
        return callee.type


def _kind(t: Any) -> ScalarKind:
    return t.dtype.kind if isinstance(t, FieldType) else t.kind


def _cast(t: Any, target: ScalarType, fail: Callable[[], Exception]) -> Any:
    if isinstance(t, TupleType):
        return TupleType(tuple(_cast(e, target, fail) for e in t.elements))
    if isinstance(t, FieldType):
        return FieldType(t.dims, ScalarType(target.kind))
    if isinstance(t, ScalarType):
        return target
    raise fail()


def check_definition(
    definition: FunctionDefinition,
    *,
    validate_return: bool = True,
    resolve_operator: Optional[Callable[[Any], FunctionDefinition]] = None,
) -> FunctionDefinition:
    return TypeChecker(
        definition, validate_return=validate_return, resolve_operator=resolve_operator
    ).check()
