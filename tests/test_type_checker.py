import numpy as np
import pytest

from fieldop import Field, TranslationError, broadcast, field_operator, max_over, neighbor_sum, where
from fieldop.core.ast_lowering import lower_function
from fieldop.core.ir import FieldType, ScalarKind, ScalarType, format_type
from fieldop.core.type_checker import check_definition
from fieldop.meshes import C2E, E2C, Cell, E2CDim, Edge, K, Koff


def _check(fn, **kwargs):
    return check_definition(lower_function(fn), **kwargs)


def test_return_type_is_inferred_without_annotation():
    def op(a: Field[[Cell], np.float32], b: Field[[K], np.float32]):
        return a * b + 1.0

    definition = _check(op)
    assert definition.type == FieldType((Cell, K), ScalarType(ScalarKind.FLOAT32))


def test_python_literals_adopt_field_dtype():
    def op(a: Field[[Cell], np.int32]):
        return a + 1

    assert _check(op).type.dtype.kind is ScalarKind.INT32


def test_strong_scalars_promote():
    def op(a: Field[[Cell], np.float32], s: np.float64):
        return a * s

    assert _check(op).type.dtype.kind is ScalarKind.FLOAT64


def test_division_of_ints_is_float():
    def op(a: Field[[Cell], np.int64], b: Field[[Cell], np.int64]):
        return a / b

    assert _check(op).type.dtype.kind is ScalarKind.FLOAT64


def test_every_expression_gets_a_type():
    def op(a: Field[[Cell], np.float64]) -> Field[[Edge], np.float64]:
        gathered = a(E2C)
        return neighbor_sum(gathered, axis=E2CDim)

    definition = _check(op)
    assign = definition.body.stmts[0]
    assert format_type(assign.value.type) == "Field[(Edge, E2CDim), float64]"
    assert format_type(definition.body.stmts[1].value.type) == "Field[(Edge), float64]"


def test_return_type_mismatch():
    def op(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float32]:
        return a

    with pytest.raises(TranslationError, match="returned Field\\[\\(Cell\\), float64\\] but the annotation says"):
        _check(op)
    assert _check(op, validate_return=False).type.dtype.kind is ScalarKind.FLOAT32


def test_field_condition_rejected():
    def op(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        if a > 0.0:
            b = a
        else:
            b = -a
        return b

    with pytest.raises(TranslationError, match="if condition must be a scalar bool"):
        _check(op)


def test_chained_comparison_of_fields_rejected():
    def op(a: Field[[Cell], np.float64], b: Field[[Cell], np.float64]) -> Field[[Cell], np.bool_]:
        return a < b < a

    with pytest.raises(TranslationError, match="combine the comparisons with &"):
        _check(op)


def test_branch_types_must_agree():
    def op(a: Field[[Cell], np.float64], x: int) -> Field[[Cell], np.float64]:
        if x > 0:
            b = a
        else:
            b = a.astype(np.int32)
        return a

    with pytest.raises(TranslationError, match="'b' is Field\\[\\(Cell\\), float64\\] in one branch"):
        _check(op)


def test_name_bound_in_one_branch_is_not_visible_after():
    def op(a: Field[[Cell], np.float64], x: int) -> Field[[Cell], np.float64]:
        if x > 0:
            b = a
        return b

    with pytest.raises(TranslationError, match="name 'b' is not defined on every path"):
        _check(op)


def test_reassigning_an_existing_name_in_one_branch():
    def op(a: Field[[Cell], np.float64], x: int) -> Field[[Cell], np.float64]:
        b = a
        if x > 0:
            b = a * 2.0
        return b

    assert _check(op).type.dtype.kind is ScalarKind.FLOAT64


def test_offset_source_must_be_in_field():
    def op(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return a(C2E)

    with pytest.raises(TranslationError, match="offset 'C2E' has source Edge"):
        _check(op)


def test_cartesian_offset_needs_shift():
    def op(a: Field[[K], np.float64]) -> Field[[K], np.float64]:
        return a(Koff)

    with pytest.raises(TranslationError, match="needs a shift"):
        _check(op)


def test_reduction_axis_must_be_local():
    def op(a: Field[[Cell, K], np.float64]) -> Field[[Cell], np.float64]:
        return max_over(a, axis=K)

    with pytest.raises(TranslationError, match="axis must be a local dimension"):
        _check(op)


def test_where_mask_must_be_boolean():
    def op(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return where(a, a, 0.0)

    with pytest.raises(TranslationError, match="where mask must be boolean"):
        _check(op)


def test_where_over_tuples():
    def op(a: Field[[Cell], np.float64], b: Field[[Cell], np.int32]):
        return where(a > 0.0, (a, b), (a * 2.0, b + 1))

    t = _check(op).type
    assert [format_type(e) for e in t.elements] == ["Field[(Cell), float64]", "Field[(Cell), int32]"]


def test_broadcast_cannot_reorder_dims():
    def op(a: Field[[Cell, K], np.float64]):
        return broadcast(a, (K, Cell))

    with pytest.raises(TranslationError, match="cannot broadcast"):
        _check(op)


def test_type_constructors_apply_to_scalars_only():
    def ok(x: int) -> np.float32:
        return np.float32(x)

    assert _check(ok).type == ScalarType(ScalarKind.FLOAT32)

    def bad(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float32]:
        return np.float32(a)

    with pytest.raises(TranslationError, match="use astype for fields"):
        _check(bad)


def test_nested_operator_arity_checked():
    @field_operator
    def inner(a: Field[[Cell], np.float64], b: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return a + b

    def outer(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return inner(a)

    with pytest.raises(TranslationError, match="'inner' takes 2 arguments, got 1"):
        _check(outer)


def test_nested_operator_result_type_flows_through():
    @field_operator
    def inner(a: Field[[Cell], np.float64]) -> Field[[Edge], np.float64]:
        return neighbor_sum(a(E2C), axis=E2CDim)

    def outer(a: Field[[Cell], np.float64]):
        return inner(a) * 2.0

    assert format_type(_check(outer).type) == "Field[(Edge), float64]"


def test_recursive_operator_rejected():
    @field_operator
    def loop(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return loop(a)

    with pytest.raises(TranslationError, match="recursive"):
        loop.definition


def test_python_type_constructors_stay_weak():
    def op(a: Field[[Cell], np.float32], s: float) -> Field[[Cell], np.float32]:
        return a * float(s)

    definition = _check(op)
    call = definition.body.stmts[0].value.right
    assert call.type == ScalarType(ScalarKind.FLOAT64, weak=True)
    assert definition.type.dtype.kind is ScalarKind.FLOAT32


def test_nested_operator_argument_types_checked():
    @field_operator
    def ident(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
        return a

    def misuse(b: Field[[Edge], np.int32]) -> Field[[Cell], np.float64]:
        return ident(b)

    with pytest.raises(
        TranslationError,
        match="parameter 'a' of 'ident' expects Field\\[\\(Cell\\), float64\\], got Field\\[\\(Edge\\), int32\\]",
    ):
        _check(misuse)


def test_nested_operator_accepts_literals_for_scalar_params():
    @field_operator
    def shifted(a: Field[[Cell], np.float64], by: np.float64) -> Field[[Cell], np.float64]:
        return a + by

    def outer(a: Field[[Cell], np.float64]):
        return shifted(a, 1)

    assert format_type(_check(outer).type) == "Field[(Cell), float64]"


def test_boolean_neighbor_sum_is_int64():
    def op(a: Field[[Cell], np.bool_]):
        return neighbor_sum(a(E2C), axis=E2CDim)

    assert format_type(_check(op).type) == "Field[(Edge), int64]"
