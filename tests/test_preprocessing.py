import ast
import textwrap

import pytest

from fieldop import TranslationError
from fieldop.core.preprocessing import CHAINED_ATTR, canonicalize


def _canon(src: str) -> ast.Module:
    return canonicalize(ast.parse(textwrap.dedent(src)))


def test_tuple_assignment_evaluates_all_values_first():
    tree = _canon("a, b = b, a\n")
    assert [ast.unparse(stmt) for stmt in tree.body] == [
        "__tuple_tmp0_a = b",
        "__tuple_tmp1_b = a",
        "a = __tuple_tmp0_a",
        "b = __tuple_tmp1_b",
    ]


def test_tuple_assignment_length_mismatch():
    with pytest.raises(TranslationError, match="cannot assign 3 values to 2 targets"):
        _canon("a, b = 1, 2, 3\n")


def test_starred_assignment_rejected():
    with pytest.raises(TranslationError, match="starred"):
        _canon("a, *b = 1, 2, 3\n")


def test_chained_comparison_becomes_conjunction():
    tree = _canon("x = 0 < y < 10\n")
    value = tree.body[0].value
    assert isinstance(value, ast.BoolOp)
    assert getattr(value, CHAINED_ATTR)
    assert ast.unparse(value) == "0 < y and y < 10"


def test_long_chains_nest_left():
    tree = _canon("x = a < b <= c < d\n")
    value = tree.body[0].value
    assert isinstance(value.values[0], ast.BoolOp)
    assert getattr(value.values[0], CHAINED_ATTR)
    assert getattr(value, CHAINED_ATTR)
    inner = value.values[0]
    assert [ast.unparse(v) for v in inner.values] == ["a < b", "b <= c"]
    assert ast.unparse(value.values[1]) == "c < d"


def test_user_bool_ops_are_not_marked_chained():
    tree = _canon("x = a and b and c\n")
    value = tree.body[0].value
    assert len(value.values) == 2
    assert not getattr(value, CHAINED_ATTR, False)


def test_passes_are_idempotent():
    src = """
    def f(a, b, c):
        a, b = b, a
        x = a < b < c
        y = a and b and c
        return x
    """
    once = _canon(src)
    twice = canonicalize(once)
    assert ast.dump(twice) == ast.dump(_canon(src))
