"""Canonicalization passes run on the Python AST before lowering to IR.

Each pass is idempotent and the passes run in a fixed order:

1. ``SingleAssignTargetPass`` splits ``a, b = x, y`` into single assignments,
   evaluating every right-hand side into a temporary first.
2. ``UnchainComparePass`` turns ``a < b < c`` into ``a < b and b < c``.
3. ``BinaryBoolOpPass`` nests boolean operations with more than two operands
   left-associatively.

Boolean operations produced by pass 2 are tagged with ``CHAINED_ATTR`` so the
lowering can tell them apart from a user-written ``and``/``or``.
"""

from __future__ import annotations

import ast
from typing import List, Optional

from .exceptions import TranslationError

CHAINED_ATTR = "_fieldop_chained"


def _error(message: str, node: ast.AST, filename: Optional[str], lines: Optional[List[str]]):
    line = getattr(node, "lineno", None)
    column = getattr(node, "col_offset", None)
    text = None
    if lines and line is not None and 1 <= line <= len(lines):
        text = lines[line - 1].rstrip("\n")
    return TranslationError(
        message,
        filename=filename,
        line=line,
        column=None if column is None else column + 1,
        line_text=text,
    )


class _Pass(ast.NodeTransformer):
    def __init__(self, filename: Optional[str] = None, lines: Optional[List[str]] = None):
        self.filename = filename
        self.lines = lines


class SingleAssignTargetPass(_Pass):
    def __init__(self, filename: Optional[str] = None, lines: Optional[List[str]] = None):
        super().__init__(filename, lines)
        self._counter = 0

    def gensym(self, hint: str) -> str:
        name = f"__tuple_tmp{self._counter}_{hint}"
        self._counter += 1
        return name

    def visit_Assign(self, node: ast.Assign):
        if len(node.targets) != 1:
            return node
        target = node.targets[0]
        value = node.value
        if not (isinstance(target, ast.Tuple) and isinstance(value, ast.Tuple)):
            return node
        if any(isinstance(e, ast.Starred) for e in target.elts + value.elts):
            raise _error("starred assignment is not supported", node, self.filename, self.lines)
        if len(target.elts) != len(value.elts):
            raise _error(
                f"cannot assign {len(value.elts)} values to {len(target.elts)} targets",
                node,
                self.filename,
                self.lines,
            )
        temps: List[ast.stmt] = []
        finals: List[ast.stmt] = []
        for tgt, val in zip(target.elts, value.elts):
            hint = tgt.id if isinstance(tgt, ast.Name) else "elt"
            tmp = self.gensym(hint)
            temps.append(
                ast.copy_location(ast.Assign(targets=[ast.Name(id=tmp, ctx=ast.Store())], value=val), val)
            )
            assign = ast.Assign(targets=[tgt], value=ast.Name(id=tmp, ctx=ast.Load()))
            finals.append(ast.copy_location(assign, tgt))
        return [ast.fix_missing_locations(stmt) for stmt in temps + finals]


class UnchainComparePass(_Pass):
    def visit_Compare(self, node: ast.Compare):
        self.generic_visit(node)
        if len(node.ops) == 1:
            return node
        parts = []
        left = node.left
        for op, right in zip(node.ops, node.comparators):
            part = ast.copy_location(ast.Compare(left=left, ops=[op], comparators=[right]), node)
            parts.append(part)
            left = right
        chained = ast.copy_location(ast.BoolOp(op=ast.And(), values=parts), node)
        setattr(chained, CHAINED_ATTR, True)
        return chained


class BinaryBoolOpPass(_Pass):
    def visit_BoolOp(self, node: ast.BoolOp):
        self.generic_visit(node)
        if len(node.values) <= 2:
            return node
        chained = getattr(node, CHAINED_ATTR, False)
        acc = node.values[0]
        for value in node.values[1:]:
            acc = ast.copy_location(ast.BoolOp(op=node.op, values=[acc, value]), node)
            if chained:
                setattr(acc, CHAINED_ATTR, True)
        return acc


PASSES = (SingleAssignTargetPass, UnchainComparePass, BinaryBoolOpPass)


def canonicalize(
    tree: ast.AST,
    filename: Optional[str] = None,
    lines: Optional[List[str]] = None,
) -> ast.AST:
    for pass_cls in PASSES:
        tree = pass_cls(filename, lines).visit(tree)
    return ast.fix_missing_locations(tree)
