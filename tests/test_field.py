import numpy as np
import pytest

from fieldop import ContractError, Dimension, Field, ShapeError
from fieldop.core.field import apply_offset, copy_into, merge_dims
from fieldop.core.offset_provider import OffsetProvider
from fieldop.meshes import Cell, IDim, Ioff, JDim, K


def test_add_fields_with_opposite_values_is_zero():
    a = Field((Cell,), np.arange(1.0, 16.0))
    b = Field((Cell,), -np.arange(1.0, 16.0))
    result = a + b
    assert result.dims == (Cell,)
    np.testing.assert_array_equal(result.data, np.zeros(15))


def test_field_rank_must_match_dims():
    with pytest.raises(ShapeError, match="needs 2-d data"):
        Field((Cell, K), np.zeros(3))


def test_duplicate_dims_rejected():
    with pytest.raises(ShapeError, match="Duplicate dimension"):
        Field((Cell, Cell), np.zeros((2, 2)))


def test_dimensions_compare_by_identity():
    other = Dimension("Cell")
    assert other is not Cell
    assert other != Cell
    a = Field((Cell,), np.ones(3))
    b = Field((other,), np.ones(3))
    assert (a + b).dims == (Cell, other)


def test_merge_dims_keeps_relative_order():
    assert merge_dims((K,), (Cell, K)) == (Cell, K)
    assert merge_dims((Cell,), (K,)) == (Cell, K)
    with pytest.raises(ShapeError, match="conflicting orders"):
        merge_dims((Cell, K), (K, Cell))


def test_outer_broadcast_over_disjoint_dims():
    a = Field((Cell,), np.array([1.0, 2.0, 3.0]))
    b = Field((K,), np.array([10.0, 20.0]))
    result = a * b
    assert result.dims == (Cell, K)
    np.testing.assert_array_equal(result.data, np.outer([1.0, 2.0, 3.0], [10.0, 20.0]))


def test_python_scalar_keeps_field_dtype():
    a = Field((Cell,), np.ones(4, dtype=np.float32))
    assert (a * 2.5).dtype == np.float32
    assert (2 + a).dtype == np.float32


def test_truth_value_of_field_is_ambiguous():
    a = Field((Cell,), np.ones(2))
    with pytest.raises(TypeError, match="ambiguous"):
        bool(a)


def test_numpy_ufunc_returns_field():
    a = Field((Cell,), np.array([0.0, np.pi / 2]))
    result = np.sin(a)
    assert isinstance(result, Field)
    np.testing.assert_allclose(result.data, [0.0, 1.0])


def test_numpy_where_returns_field():
    a = Field((Cell,), np.array([-1.0, 2.0, -3.0]))
    result = np.where(a > 0.0, a, 0.0)
    assert isinstance(result, Field)
    np.testing.assert_array_equal(result.data, [0.0, 2.0, 0.0])


def test_cartesian_shift_intersects_domains():
    provider = OffsetProvider({"Ioff": IDim})
    a = Field((IDim,), np.arange(5.0))
    shifted = apply_offset(a, Ioff[1], provider)
    assert shifted.domain == (range(-1, 4),)
    result = a + shifted
    assert result.domain == (range(0, 4),)
    np.testing.assert_array_equal(result.data, [1.0, 3.0, 5.0, 7.0])


def test_shifted_domains_that_do_not_overlap_raise():
    provider = OffsetProvider({"Ioff": IDim})
    a = Field((IDim,), np.arange(2.0))
    far = apply_offset(a, Ioff[5], provider)
    with pytest.raises(ShapeError, match="disjoint"):
        a + far


def test_calling_a_field_outside_an_operator_needs_a_provider():
    a = Field((IDim,), np.arange(3.0))
    with pytest.raises(ContractError, match="No offset provider is active"):
        a(Ioff[1])


def test_copy_into_writes_the_result_domain_only():
    provider = OffsetProvider({"Ioff": IDim})
    a = Field((IDim,), np.arange(5.0))
    result = a + apply_offset(a, Ioff[1], provider) + apply_offset(a, Ioff[-1], provider)
    out = Field((IDim,), np.full(5, -1.0))
    copy_into(result, out)
    np.testing.assert_array_equal(out.data, [-1.0, 3.0, 6.0, 9.0, -1.0])


def test_copy_into_broadcasts_missing_out_dims():
    a = Field((Cell,), np.array([1.0, 2.0]), broadcast_dims=(Cell, K))
    out = Field((Cell, K), np.zeros((2, 3)))
    copy_into(a, out)
    np.testing.assert_array_equal(out.data, [[1.0] * 3, [2.0] * 3])


def test_copy_into_rejects_dims_missing_from_out():
    a = Field((Cell, K), np.zeros((2, 2)))
    out = Field((Cell,), np.zeros(2))
    with pytest.raises(ShapeError, match="not contained"):
        copy_into(a, out)


def test_copy_into_rejects_out_dims_the_result_cannot_broadcast_to():
    a = Field((Cell,), np.zeros(2))
    out = Field((Cell, JDim), np.zeros((2, 2)))
    with pytest.raises(ShapeError, match="neither a dimension"):
        copy_into(a, out)


def test_copy_into_needs_writable_out():
    data = np.zeros(3)
    data.setflags(write=False)
    with pytest.raises(ContractError, match="writable"):
        copy_into(Field((Cell,), np.ones(3)), Field((Cell,), data))


def test_copy_into_casts_to_out_dtype():
    out = Field((Cell,), np.zeros(3, dtype=np.int32))
    copy_into(Field((Cell,), np.array([1.7, 2.2, 3.9])), out)
    assert out.dtype == np.int32
    np.testing.assert_array_equal(out.data, [1, 2, 3])


def test_scalar_result_fills_out():
    out = Field((Cell,), np.zeros(4))
    copy_into(3.0, out)
    np.testing.assert_array_equal(out.data, np.full(4, 3.0))
