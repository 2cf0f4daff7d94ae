import numpy as np
import pytest

from fieldop import Connectivity, DimensionMismatch, Field, field_operator, max_over, min_over, neighbor_sum
from fieldop.core.field import apply_offset
from fieldop.core.offset_provider import OffsetProvider
from fieldop.meshes import E2C, EDGE_TO_CELL, Cell, E2CDim, Edge, K, simple_offset_provider


def _gather(values, provider=None):
    a = Field((Cell,), np.asarray(values))
    return apply_offset(a, E2C, OffsetProvider(provider or simple_offset_provider()))


def _reference(values, reduce):
    values = np.asarray(values)
    rows = []
    for row in EDGE_TO_CELL:
        picked = [values[i - 1] for i in row if i >= 1]
        rows.append(reduce(picked))
    return np.asarray(rows)


def test_neighbor_sum_skips_missing_neighbors():
    values = np.arange(1.0, 7.0)
    result = neighbor_sum(_gather(values), axis=E2CDim)
    assert result.dims == (Edge,)
    np.testing.assert_array_equal(result.data, _reference(values, sum))


def test_max_over_ignores_padding_for_negative_values():
    values = -np.arange(1.0, 7.0)
    result = max_over(_gather(values), axis=E2CDim)
    np.testing.assert_array_equal(result.data, _reference(values, max))


def test_min_over_ignores_padding():
    values = np.arange(1.0, 7.0)
    result = min_over(_gather(values), axis=E2CDim)
    np.testing.assert_array_equal(result.data, _reference(values, min))


def test_rows_without_neighbors_reduce_to_zero():
    provider = {"E2C": Connectivity(np.array([[-1, -1], [2, 0]]), Cell, Edge, 2)}
    gathered = _gather([5, 7], provider)
    np.testing.assert_array_equal(neighbor_sum(gathered, axis=E2CDim).data, [0, 7])
    np.testing.assert_array_equal(max_over(gathered, axis=E2CDim).data, [0, 7])
    np.testing.assert_array_equal(min_over(gathered, axis=E2CDim).data, [0, 7])


def test_integer_sum_keeps_dtype():
    gathered = _gather(np.arange(1, 7, dtype=np.int32))
    result = neighbor_sum(gathered, axis=E2CDim)
    assert result.dtype == np.int32


def test_boolean_neighbor_sum_counts_true_neighbors():
    gathered = _gather(np.ones(6, dtype=bool))
    result = neighbor_sum(gathered, axis=E2CDim)
    assert result.dtype == np.int64
    np.testing.assert_array_equal(result.data, (EDGE_TO_CELL >= 1).sum(axis=1))
    assert result.data[6] == 2


@field_operator
def count_true(a: Field[[Cell], np.bool_]) -> Field[[Edge], np.int64]:
    return neighbor_sum(a(E2C), axis=E2CDim)


@pytest.mark.parametrize("backend", ["embedded", "compiled"])
def test_boolean_neighbor_sum_in_operator(backend):
    a = Field((Cell,), np.array([True, True, False, True, False, True]))
    out = Field((Edge,), np.zeros(len(EDGE_TO_CELL), dtype=np.int64))
    count_true(a, out=out, offset_provider=simple_offset_provider(), backend=backend)
    expected = _reference(a.data, lambda picked: sum(int(p) for p in picked))
    np.testing.assert_array_equal(out.data, expected)


def test_reduction_over_extra_dims_keeps_them():
    a = Field((Cell, K), np.ones((6, 3)))
    gathered = apply_offset(a, E2C, OffsetProvider(simple_offset_provider()))
    result = neighbor_sum(gathered, axis=E2CDim)
    assert result.dims == (Edge, K)
    counts = (EDGE_TO_CELL >= 1).sum(axis=1)
    np.testing.assert_array_equal(result.data, np.repeat(counts[:, None], 3, axis=1))


def test_reduction_axis_must_be_local():
    a = Field((Cell, K), np.ones((6, 3)))
    with pytest.raises(DimensionMismatch, match="local dimension"):
        neighbor_sum(a, axis=K)


def test_reduction_axis_must_be_present():
    a = Field((Cell,), np.ones(6))
    with pytest.raises(DimensionMismatch, match="not a dimension of the field"):
        neighbor_sum(a, axis=E2CDim)
