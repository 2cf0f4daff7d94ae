from __future__ import annotations

import ast
import inspect
import linecache
import textwrap
import types
import typing
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import numpy as np

from .builtins import builtin_name
from .dims import Dimension, FieldOffset
from .exceptions import AnnotationError, CapabilityError, TranslationError
from .ir import (
    Assign,
    BinOp,
    BlockStmt,
    Call,
    ClosureSymbol,
    Compare,
    Conjunction,
    Constant,
    DataSymbol,
    FieldType,
    FunctionDefinition,
    IfStmt,
    Name,
    OffsetSelect,
    Return,
    ScalarType,
    SourceLocation,
    Subscript,
    TernaryExpr,
    TupleExpr,
    TupleTargetAssign,
    TupleType,
    UnaryOp,
)
from .preprocessing import CHAINED_ATTR, canonicalize

_BINOPS = {
    ast.Add: "add",
    ast.Sub: "sub",
    ast.Mult: "mult",
    ast.Div: "div",
    ast.FloorDiv: "floordiv",
    ast.Mod: "mod",
    ast.Pow: "pow",
    ast.BitAnd: "bitand",
    ast.BitOr: "bitor",
    ast.BitXor: "bitxor",
}
_UNARYOPS = {ast.USub: "neg", ast.UAdd: "pos", ast.Invert: "invert"}
_CMPOPS = {
    ast.Eq: "eq",
    ast.NotEq: "ne",
    ast.Lt: "lt",
    ast.LtE: "le",
    ast.Gt: "gt",
    ast.GtE: "ge",
}

# Names for constructs that have no IR counterpart.
_UNSUPPORTED = {
    ast.For: "for loop",
    ast.AsyncFor: "for loop",
    ast.While: "while loop",
    ast.With: "with statement",
    ast.AsyncWith: "with statement",
    ast.Try: "try statement",
    ast.Raise: "raise statement",
    ast.Assert: "assert statement",
    ast.Global: "global statement",
    ast.Nonlocal: "nonlocal statement",
    ast.Delete: "del statement",
    ast.Import: "import statement",
    ast.ImportFrom: "import statement",
    ast.FunctionDef: "nested function definition",
    ast.AsyncFunctionDef: "nested function definition",
    ast.ClassDef: "class definition",
    ast.Break: "break statement",
    ast.Continue: "continue statement",
    ast.Lambda: "lambda",
    ast.ListComp: "list comprehension",
    ast.SetComp: "set comprehension",
    ast.DictComp: "dict comprehension",
    ast.GeneratorExp: "generator expression",
    ast.List: "list literal",
    ast.Set: "set literal",
    ast.Dict: "dict literal",
    ast.JoinedStr: "f-string",
    ast.Starred: "starred expression",
    ast.NamedExpr: "assignment expression",
    ast.Slice: "slice",
    ast.Await: "await",
    ast.Yield: "yield",
    ast.YieldFrom: "yield",
}

# Python builtins a field operator may call.
_ALLOWED_PY_BUILTINS = {"abs", "float", "int", "bool"}


def _is_scalar_type(value: Any) -> bool:
    if value in (bool, int, float):
        return True
    return isinstance(value, type) and issubclass(value, np.generic)


def annotation_to_type(annotation: Any, what: str) -> Any:
    if isinstance(annotation, (FieldType, ScalarType, TupleType)):
        return annotation
    if annotation in (bool, int, float):
        return ScalarType.from_dtype(annotation, weak=True)
    if _is_scalar_type(annotation):
        try:
            return ScalarType.from_dtype(annotation)
        except TypeError as exc:
            raise AnnotationError(f"Unsupported annotation for {what}: {exc}") from None
    origin = typing.get_origin(annotation)
    if origin in (tuple, typing.Tuple):
        args = typing.get_args(annotation)
        if not args or Ellipsis in args:
            raise AnnotationError(f"Tuple annotation for {what} must list every element type")
        return TupleType(tuple(annotation_to_type(arg, what) for arg in args))
    raise AnnotationError(f"Unsupported annotation for {what}: {annotation!r}")


class _Lowerer:
    def __init__(
        self,
        func: Callable[..., Any],
        filename: Optional[str],
        file_lines: List[str],
        indent: int,
    ):
        self.func = func
        self.filename = filename
        self.file_lines = file_lines
        self.indent = indent
        self.locals: Set[str] = set()
        self.closure: Dict[str, ClosureSymbol] = {}
        self.namespace: Dict[str, Any] = {}
        self.py_builtins: Set[str] = set()

    # Locations --------------------------------------------------------------
    def loc(self, node: ast.AST) -> SourceLocation:
        line = getattr(node, "lineno", None)
        col = getattr(node, "col_offset", None)
        text = None
        if line is not None and 1 <= line <= len(self.file_lines):
            text = self.file_lines[line - 1].rstrip("\n")
        column = None if col is None else col + self.indent + 1
        return SourceLocation(self.filename, line, column, text)

    def error(self, message: str, node: ast.AST, cls=TranslationError):
        loc = self.loc(node)
        return cls(
            message,
            filename=loc.filename,
            line=loc.line,
            column=loc.column,
            line_text=loc.line_text,
        )

    # Entry ------------------------------------------------------------------
    def lower(self, fn_node: ast.FunctionDef) -> FunctionDefinition:
        self._collect_namespace()
        args = fn_node.args
        if args.vararg or args.kwarg or args.kwonlyargs or args.posonlyargs:
            raise self.error("field operators take plain positional parameters only", fn_node)
        if args.defaults:
            raise self.error("default parameter values are not supported", fn_node)
        annotations = self._annotations(fn_node)
        params: List[DataSymbol] = []
        for arg in args.args:
            if arg.arg not in annotations:
                raise self.error(f"parameter '{arg.arg}' needs a type annotation", arg, AnnotationError)
            try:
                ptype = annotation_to_type(annotations[arg.arg], f"parameter '{arg.arg}'")
            except AnnotationError as exc:
                raise self.error(str(exc), arg, AnnotationError) from None
            params.append(DataSymbol(id=arg.arg, type=ptype, location=self.loc(arg)))
            self.locals.add(arg.arg)
        returns = None
        if "return" in annotations:
            try:
                returns = annotation_to_type(annotations["return"], "the return value")
            except AnnotationError as exc:
                raise self.error(str(exc), fn_node, AnnotationError) from None

        for node in ast.walk(fn_node):
            if isinstance(node, ast.Name) and isinstance(node.ctx, ast.Store):
                self.locals.add(node.id)

        body = list(fn_node.body)
        if body and isinstance(body[0], ast.Expr) and isinstance(getattr(body[0], "value", None), ast.Constant):
            if isinstance(body[0].value.value, str):
                body = body[1:]
        if not body or not isinstance(body[-1], ast.Return):
            raise self.error("field operator must end with a return statement", fn_node)
        block = self.lower_block(body, top_level=True)
        return FunctionDefinition(
            id=fn_node.name,
            params=params,
            body=block,
            closure_vars=list(self.closure.values()),
            returns=returns,
            filename=self.filename,
            location=self.loc(fn_node),
        )

    def _annotations(self, fn_node: ast.FunctionDef) -> Dict[str, Any]:
        try:
            return dict(inspect.get_annotations(self.func, eval_str=True))
        except Exception as exc:
            raise self.error(f"cannot evaluate annotations: {exc}", fn_node, AnnotationError) from None

    def _collect_namespace(self) -> None:
        closure_vars = inspect.getclosurevars(self.func)
        self.py_builtins = set(closure_vars.builtins)
        self.namespace.update(closure_vars.builtins)
        self.namespace.update(closure_vars.globals)
        self.namespace.update(closure_vars.nonlocals)

    # Statements -------------------------------------------------------------
    def lower_block(self, stmts: List[ast.stmt], top_level: bool = False) -> BlockStmt:
        lowered = []
        for idx, stmt in enumerate(stmts):
            if isinstance(stmt, ast.Return):
                if not (top_level and idx == len(stmts) - 1):
                    raise self.error("return is only supported as the last statement of the operator", stmt)
                if stmt.value is None:
                    raise self.error("field operator must return a value", stmt)
                lowered.append(Return(value=self.lower_expr(stmt.value), location=self.loc(stmt)))
                continue
            result = self.lower_stmt(stmt)
            if result is not None:
                lowered.append(result)
        return BlockStmt(stmts=lowered, location=self.loc(stmts[0]) if stmts else None)

    def lower_stmt(self, stmt: ast.stmt):
        if isinstance(stmt, ast.Assign):
            if len(stmt.targets) != 1:
                raise self.error("chained assignment is not supported", stmt)
            return self._lower_assign(stmt.targets[0], stmt.value, stmt)
        if isinstance(stmt, ast.AnnAssign):
            if stmt.value is None:
                raise self.error("annotation without a value is not supported", stmt)
            return self._lower_assign(stmt.target, stmt.value, stmt)
        if isinstance(stmt, ast.AugAssign):
            if not isinstance(stmt.target, ast.Name):
                raise self.error("augmented assignment target must be a name", stmt)
            op = _BINOPS.get(type(stmt.op))
            if op is None:
                raise self.error(f"operator {type(stmt.op).__name__} is not supported", stmt)
            current = Name(id=stmt.target.id, location=self.loc(stmt.target))
            value = BinOp(op=op, left=current, right=self.lower_expr(stmt.value), location=self.loc(stmt))
            return Assign(target=stmt.target.id, value=value, location=self.loc(stmt))
        if isinstance(stmt, ast.If):
            return IfStmt(
                condition=self.lower_expr(stmt.test),
                true_branch=self.lower_block(stmt.body),
                false_branch=self.lower_block(stmt.orelse) if stmt.orelse else None,
                location=self.loc(stmt),
            )
        if isinstance(stmt, ast.Pass):
            return None
        if isinstance(stmt, ast.Expr):
            raise self.error("expression statements have no effect in a field operator", stmt)
        name = _UNSUPPORTED.get(type(stmt), type(stmt).__name__)
        raise self.error(f"{name} is not supported in field operators", stmt)

    def _lower_assign(self, target: ast.expr, value: ast.expr, stmt: ast.stmt):
        if isinstance(target, ast.Name):
            return Assign(target=target.id, value=self.lower_expr(value), location=self.loc(stmt))
        if isinstance(target, ast.Tuple) and all(isinstance(e, ast.Name) for e in target.elts):
            return TupleTargetAssign(
                targets=[e.id for e in target.elts],
                value=self.lower_expr(value),
                location=self.loc(stmt),
            )
        raise self.error("assignment target must be a name or a tuple of names", target)

    # Expressions ------------------------------------------------------------
    def lower_expr(self, node: ast.expr):
        loc = self.loc(node)
        if isinstance(node, ast.Constant):
            if isinstance(node.value, (bool, int, float)):
                return Constant(value=node.value, location=loc)
            raise self.error(f"constant {node.value!r} is not supported", node)
        if isinstance(node, ast.Name):
            return self._lower_name(node)
        if isinstance(node, ast.Attribute):
            return self._lower_attribute(node)
        if isinstance(node, ast.Tuple):
            return TupleExpr(elts=[self.lower_expr(e) for e in node.elts], location=loc)
        if isinstance(node, ast.BinOp):
            op = _BINOPS.get(type(node.op))
            if op is None:
                raise self.error(f"operator {type(node.op).__name__} is not supported", node)
            return BinOp(op=op, left=self.lower_expr(node.left), right=self.lower_expr(node.right), location=loc)
        if isinstance(node, ast.UnaryOp):
            if isinstance(node.op, ast.Not):
                raise self.error("'not' is not supported; use ~ for elementwise negation", node)
            return UnaryOp(op=_UNARYOPS[type(node.op)], operand=self.lower_expr(node.operand), location=loc)
        if isinstance(node, ast.Compare):
            if len(node.ops) != 1:
                raise self.error("chained comparison was not canonicalized", node)
            op = _CMPOPS.get(type(node.ops[0]))
            if op is None:
                raise self.error(f"comparison {type(node.ops[0]).__name__} is not supported", node)
            return Compare(
                op=op,
                left=self.lower_expr(node.left),
                right=self.lower_expr(node.comparators[0]),
                location=loc,
            )
        if isinstance(node, ast.BoolOp):
            if not getattr(node, CHAINED_ATTR, False) or not isinstance(node.op, ast.And):
                word = "and" if isinstance(node.op, ast.And) else "or"
                raise self.error(f"'{word}' is not supported; use & or | for elementwise logic", node)
            left, right = node.values
            return Conjunction(left=self.lower_expr(left), right=self.lower_expr(right), location=loc)
        if isinstance(node, ast.IfExp):
            return TernaryExpr(
                condition=self.lower_expr(node.test),
                true_expr=self.lower_expr(node.body),
                false_expr=self.lower_expr(node.orelse),
                location=loc,
            )
        if isinstance(node, ast.Call):
            return self._lower_call(node)
        if isinstance(node, ast.Subscript):
            return self._lower_subscript(node)
        name = _UNSUPPORTED.get(type(node), type(node).__name__)
        raise self.error(f"{name} is not supported in field operators", node)

    def _lower_name(self, node: ast.Name) -> Name:
        if node.id in self.locals:
            return Name(id=node.id, location=self.loc(node))
        if node.id not in self.namespace:
            raise self.error(f"name '{node.id}' is not defined", node)
        self._capture(node.id, self.namespace[node.id], node)
        return Name(id=node.id, location=self.loc(node))

    def _attribute_chain(self, node: ast.Attribute) -> Optional[Tuple[str, Any]]:
        """Resolve ``mod.sub.attr`` through captured modules."""
        parts: List[str] = []
        base: ast.expr = node
        while isinstance(base, ast.Attribute):
            parts.append(base.attr)
            base = base.value
        if not isinstance(base, ast.Name) or base.id in self.locals:
            return None
        value = self.namespace.get(base.id)
        if not isinstance(value, types.ModuleType):
            return None
        dotted = base.id
        for attr in reversed(parts):
            if not isinstance(value, types.ModuleType):
                return None
            try:
                value = getattr(value, attr)
            except AttributeError:
                raise self.error(f"module '{dotted}' has no attribute '{attr}'", node) from None
            dotted = f"{dotted}.{attr}"
        return dotted, value

    def _lower_attribute(self, node: ast.Attribute) -> Name:
        resolved = self._attribute_chain(node)
        if resolved is None:
            raise self.error(f"attribute access '.{node.attr}' is not supported", node)
        dotted, value = resolved
        self._capture(dotted, value, node)
        return Name(id=dotted, location=self.loc(node))

    def _lower_call(self, node: ast.Call) -> Call:
        loc = self.loc(node)
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise self.error("starred arguments are not supported", arg)
        kwargs = {}
        for kw in node.keywords:
            if kw.arg is None:
                raise self.error("**kwargs are not supported", kw.value)
            kwargs[kw.arg] = self.lower_expr(kw.value)
        args = [self.lower_expr(a) for a in node.args]
        func = node.func
        if isinstance(func, ast.Attribute) and self._attribute_chain(func) is None:
            if func.attr != "astype":
                raise self.error(f"method '{func.attr}' is not supported", func)
            if len(args) != 1 or kwargs:
                raise self.error("astype takes exactly one dtype argument", node)
            if "astype" not in self.closure:
                self.closure["astype"] = ClosureSymbol(id="astype", kind="builtin", value="astype", location=loc)
            receiver = self.lower_expr(func.value)
            return Call(func=Name(id="astype", location=self.loc(func)), args=[receiver] + args, location=loc)
        return Call(func=self.lower_expr(func), args=args, kwargs=kwargs, location=loc)

    def _lower_subscript(self, node: ast.Subscript):
        index = _constant_int(node.slice)
        if index is None:
            raise self.error("subscripts must be integer literals", node.slice)
        offset = self._offset_value(node.value)
        if offset is not None:
            base = self.lower_expr(node.value)
            if offset.has_local_target:
                if index < 1:
                    raise self.error(f"neighbor slots of '{offset.name}' are 1-based, got {index}", node.slice)
                return OffsetSelect(offset=base, index=index - 1, location=self.loc(node))
            return OffsetSelect(offset=base, index=index, location=self.loc(node))
        return Subscript(value=self.lower_expr(node.value), index=index, location=self.loc(node))

    def _offset_value(self, node: ast.expr) -> Optional[FieldOffset]:
        value = None
        if isinstance(node, ast.Name) and node.id not in self.locals:
            value = self.namespace.get(node.id)
        elif isinstance(node, ast.Attribute):
            resolved = self._attribute_chain(node)
            value = resolved[1] if resolved else None
        return value if isinstance(value, FieldOffset) else None

    # Captures ---------------------------------------------------------------
    def _capture(self, name: str, value: Any, node: ast.AST) -> None:
        if name in self.closure:
            return
        kind, stored = self._classify(name, value, node)
        if kind == "module":
            return
        self.closure[name] = ClosureSymbol(id=name, kind=kind, value=stored, location=self.loc(node))

    def _classify(self, name: str, value: Any, node: ast.AST) -> Tuple[str, Any]:
        from .operator import FieldOperator

        if isinstance(value, Dimension):
            return "dimension", value
        if isinstance(value, FieldOffset):
            return "offset", value
        if isinstance(value, FieldOperator):
            return "operator", value
        if isinstance(value, (bool, int, float, np.bool_, np.integer, np.floating)):
            return "scalar", value
        builtin = builtin_name(value)
        if builtin is not None:
            return "builtin", builtin
        if _is_scalar_type(value):
            try:
                ScalarType.from_dtype(value)
            except TypeError:
                raise self.error(f"type '{name}' is not supported", node, CapabilityError) from None
            return "type", value
        if isinstance(value, types.ModuleType):
            return "module", value
        if name in self.py_builtins and name not in _ALLOWED_PY_BUILTINS:
            raise self.error(f"builtin '{name}' is not supported in field operators", node)
        raise self.error(
            f"captured variable '{name}' of type {type(value).__name__} is not supported",
            node,
            CapabilityError,
        )


def _constant_int(node: ast.expr) -> Optional[int]:
    if isinstance(node, ast.Constant) and isinstance(node.value, int) and not isinstance(node.value, bool):
        return node.value
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        inner = _constant_int(node.operand)
        if inner is None:
            return None
        return -inner if isinstance(node.op, ast.USub) else inner
    return None


def parse_function(func: Callable[..., Any]) -> Tuple[ast.FunctionDef, Optional[str], List[str], int]:
    """Return the canonicalized ``def`` node of ``func`` with file line numbers."""
    name = getattr(func, "__name__", repr(func))
    try:
        source_lines, start = inspect.getsourcelines(func)
        filename = inspect.getsourcefile(func)
    except (OSError, TypeError) as exc:
        raise TranslationError(f"cannot read the source of '{name}': {exc}") from None
    first = source_lines[0]
    indent = len(first) - len(first.lstrip())
    source = textwrap.dedent("".join(source_lines))
    try:
        tree = ast.parse(source)
    except SyntaxError as exc:
        raise TranslationError(
            f"cannot parse the source of '{name}': {exc.msg}",
            filename=filename,
            line=(exc.lineno or 1) + start - 1,
        ) from None
    if not tree.body or not isinstance(tree.body[0], ast.FunctionDef):
        raise TranslationError(f"'{name}' is not defined with a def statement", filename=filename, line=start)
    ast.increment_lineno(tree, start - 1)
    file_lines = linecache.getlines(filename) if filename else []
    if not file_lines:
        file_lines = [""] * (start - 1) + source_lines
    fn_node = tree.body[0]
    fn_node.decorator_list = []
    tree = canonicalize(tree, filename, file_lines)
    return tree.body[0], filename, file_lines, indent


def lower_function(func: Callable[..., Any]) -> FunctionDefinition:
    fn_node, filename, file_lines, indent = parse_function(func)
    lowerer = _Lowerer(func, filename, file_lines, indent)
    definition = lowerer.lower(fn_node)
    definition.source = ast.unparse(fn_node)
    return definition
