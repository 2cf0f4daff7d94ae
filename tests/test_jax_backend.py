import numpy as np
import pytest

from fieldop import BackendError, ContractError, DTypeError, ExecutionConfig, Field, field_operator, neighbor_sum
from fieldop.jax_backend import compile as jax_compile
from fieldop.meshes import E2C, EDGE_TO_CELL, NUM_CELLS, NUM_EDGES, Cell, E2CDim, Edge, simple_offset_provider

jax = pytest.importorskip("jax", reason="JAX backend not available")


@field_operator(backend="compiled")
def scale(a: Field[[Cell], np.float64], s: float) -> Field[[Cell], np.float64]:
    return a * s


@field_operator(backend="compiled")
def edge_sum(a: Field[[Cell], np.float64]) -> Field[[Edge], np.float64]:
    return neighbor_sum(a(E2C), axis=E2CDim)


def test_compiled_kernel_uses_jax():
    kernel = scale.compile()
    assert kernel.backend == "jax"
    assert kernel.name == "scale"
    assert kernel._xla_callable is not None


def test_trace_is_reused_for_same_static_scalars():
    a = Field([Cell], np.arange(NUM_CELLS, dtype=np.float64))
    out = Field([Cell], np.zeros(NUM_CELLS))
    op = field_operator(scale.function, backend="compiled", config=ExecutionConfig(device="cpu"))

    op(a, 2.0, out=out)
    kernel = op.compile()
    first = kernel.traces
    op(a, 2.0, out=out)
    assert kernel.traces == first
    assert kernel.calls == 2
    np.testing.assert_allclose(out.data, 2.0 * np.arange(NUM_CELLS))

    op(a, 3.0, out=out)
    assert kernel.traces == first + 1
    np.testing.assert_allclose(out.data, 3.0 * np.arange(NUM_CELLS))


def test_connectivity_crosses_jit_boundary():
    a = Field([Cell], np.arange(1.0, NUM_CELLS + 1.0))
    out = Field([Edge], np.zeros(NUM_EDGES))
    edge_sum(a, out=out, offset_provider=simple_offset_provider())
    expected = np.where(EDGE_TO_CELL > 0, EDGE_TO_CELL, 0).sum(axis=1).astype(np.float64)
    np.testing.assert_allclose(out.data, expected)
    assert isinstance(out.data, np.ndarray)


def test_argument_checks_run_before_tracing():
    out = Field([Cell], np.zeros(NUM_CELLS))
    with pytest.raises(DTypeError, match="dtype int64, expected float64"):
        scale(Field([Cell], np.arange(NUM_CELLS)), 2.0, out=out)
    with pytest.raises(ContractError, match="missing argument"):
        scale(Field([Cell], np.zeros(NUM_CELLS)), out=out)


def test_field_pytree_roundtrip_keeps_metadata():
    jax_compile.register_pytrees()
    f = Field([Cell], np.arange(3.0), origin=[1])
    leaves, treedef = jax.tree_util.tree_flatten(f)
    assert len(leaves) == 1
    rebuilt = jax.tree_util.tree_unflatten(treedef, leaves)
    assert rebuilt.dims == f.dims
    assert rebuilt.origin == (1,)
    assert rebuilt.valid is None


def test_resolve_device_cpu():
    assert jax_compile._resolve_device("auto") is None
    dev = jax_compile._resolve_device("cpu")
    assert dev.platform == "cpu"
    with pytest.raises(ValueError, match="Unsupported JAX device spec"):
        jax_compile._resolve_device("fpga")


def test_missing_jax_device_index_raises():
    with pytest.raises(BackendError, match="not found"):
        jax_compile._resolve_device("cpu:4096")
