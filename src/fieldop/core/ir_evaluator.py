from __future__ import annotations

import operator
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .builtins import BUILTINS, astype
from .dims import FieldOffset, OffsetSelection
from .exceptions import TranslationError
from .field import Field, apply_offset
from .ir import (
    Assign,
    BinOp,
    BlockStmt,
    Call,
    Compare,
    Conjunction,
    Constant,
    FunctionDefinition,
    IfStmt,
    Name,
    OffsetSelect,
    Return,
    Subscript,
    TernaryExpr,
    TupleExpr,
    TupleTargetAssign,
    UnaryOp,
)
from .offset_provider import OffsetProvider

_BINARY: Dict[str, Callable[[Any, Any], Any]] = {
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
_UNARY = {"neg": operator.neg, "pos": operator.pos, "invert": operator.invert}


class IREvaluator:
    """Interprets a typed ``FunctionDefinition`` over Field values.

    Used by the compiled pipeline both eagerly on NumPy arrays and under
    ``jax.jit`` tracing. Offsets are resolved through the explicit ``provider``
    instead of the process-wide registry.
    """

    def __init__(
        self,
        definition: FunctionDefinition,
        provider: OffsetProvider,
        *,
        resolve_operator: Optional[Callable[[Any], FunctionDefinition]] = None,
    ):
        self.definition = definition
        self.provider = provider
        self.resolve_operator = resolve_operator or (lambda op: op.definition)
        self.closure = definition.closure_map()

    def run(self, args: Sequence[Any]) -> Any:
        params = self.definition.params
        if len(args) != len(params):
            raise TypeError(f"'{self.definition.id}' takes {len(params)} arguments, got {len(args)}")
        env: Dict[str, Any] = {p.id: value for p, value in zip(params, args)}
        returned, value = self.block(self.definition.body, env)
        if returned:
            return value
        raise TranslationError(f"'{self.definition.id}' finished without returning")

    # Statements -------------------------------------------------------------
    def block(self, block: BlockStmt, env: Dict[str, Any]) -> Tuple[bool, Any]:
        for stmt in block.stmts:
            if isinstance(stmt, Assign):
                env[stmt.target] = self.eval(stmt.value, env)
            elif isinstance(stmt, TupleTargetAssign):
                values = self.eval(stmt.value, env)
                for name, value in zip(stmt.targets, values):
                    env[name] = value
            elif isinstance(stmt, IfStmt):
                if bool(self.eval(stmt.condition, env)):
                    self.block(stmt.true_branch, env)
                elif stmt.false_branch is not None:
                    self.block(stmt.false_branch, env)
            elif isinstance(stmt, Return):
                return True, self.eval(stmt.value, env)
            else:
                raise TranslationError(f"unexpected statement {type(stmt).__name__}")
        return False, None

    # Expressions ------------------------------------------------------------
    def eval(self, node: Any, env: Dict[str, Any]) -> Any:
        if isinstance(node, Constant):
            return node.value
        if isinstance(node, Name):
            if node.id in env:
                return env[node.id]
            sym = self.closure[node.id]
            if sym.kind == "builtin":
                return BUILTINS[sym.value]
            return sym.value
        if isinstance(node, TupleExpr):
            return tuple(self.eval(e, env) for e in node.elts)
        if isinstance(node, Subscript):
            return self.eval(node.value, env)[node.index]
        if isinstance(node, OffsetSelect):
            offset: FieldOffset = self.eval(node.offset, env)
            return OffsetSelection(offset, node.index)
        if isinstance(node, BinOp):
            return _BINARY[node.op](self.eval(node.left, env), self.eval(node.right, env))
        if isinstance(node, UnaryOp):
            return _UNARY[node.op](self.eval(node.operand, env))
        if isinstance(node, Compare):
            return getattr(operator, node.op)(self.eval(node.left, env), self.eval(node.right, env))
        if isinstance(node, Conjunction):
            return bool(self.eval(node.left, env)) and bool(self.eval(node.right, env))
        if isinstance(node, TernaryExpr):
            if bool(self.eval(node.condition, env)):
                return self.eval(node.true_expr, env)
            return self.eval(node.false_expr, env)
        if isinstance(node, Call):
            return self.call(node, env)
        raise TranslationError(f"unexpected expression {type(node).__name__}")

    def call(self, node: Call, env: Dict[str, Any]) -> Any:
        args: List[Any] = [self.eval(a, env) for a in node.args]
        kwargs = {k: self.eval(v, env) for k, v in node.kwargs.items()}
        if isinstance(node.func, Name) and node.func.id not in env:
            sym = self.closure[node.func.id]
            if sym.kind == "operator":
                nested = self.resolve_operator(sym.value)
                return IREvaluator(nested, self.provider, resolve_operator=self.resolve_operator).run(args)
            if sym.kind == "type":
                return astype(args[0], sym.value)
        func = self.eval(node.func, env)
        if isinstance(func, Field):
            return apply_offset(func, args[0], self.provider)
        return func(*args, **kwargs)


def evaluate(
    definition: FunctionDefinition,
    args: Sequence[Any],
    provider: OffsetProvider,
    *,
    resolve_operator: Optional[Callable[[Any], FunctionDefinition]] = None,
) -> Any:
    return IREvaluator(definition, provider, resolve_operator=resolve_operator).run(args)
