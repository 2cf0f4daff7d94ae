import numpy as np
import pytest

from fieldop import BackendError, BackendKind, ExecutionConfig, Field, field_operator
from fieldop.jax_backend import compile as jax_compile
from fieldop.meshes import NUM_CELLS, Cell


def _double(a: Field[[Cell], np.float64]) -> Field[[Cell], np.float64]:
    return a * 2.0


def test_execution_config_normalization_handles_backend_device_fallback():
    cfg = ExecutionConfig(backend=" Compiled ", device="GPU:1", fallback="NUMPY", explain_timings=0).normalized()
    assert cfg.backend == "compiled"
    assert cfg.device == "cuda:1"
    assert cfg.fallback == "numpy"
    assert cfg.explain_timings is False


def test_execution_config_defaults():
    cfg = ExecutionConfig().normalized()
    assert cfg.backend == BackendKind.EMBEDDED.value
    assert cfg.device == "auto"
    assert cfg.validate_return is True
    assert cfg.cache_dir is None


def test_execution_config_expands_cache_dirs():
    cfg = ExecutionConfig(cache_dir="~/fieldop-cache").normalized()
    assert not cfg.cache_dir.startswith("~")


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"backend": "torch"}, "Unsupported backend"),
        ({"device": "fpga"}, "Unsupported device"),
        ({"fallback": "python"}, "Unsupported fallback"),
    ],
)
def test_execution_config_rejects_unknown_values(kwargs, message):
    with pytest.raises(ValueError, match=message):
        ExecutionConfig(**kwargs).normalized()


def test_operator_backend_argument_overrides_config():
    op = field_operator(_double, backend="compiled", config=ExecutionConfig(backend="embedded"))
    assert op.config.backend == "compiled"
    assert op.with_backend(BackendKind.EMBEDDED).config.backend == "embedded"


def test_compiled_without_jax_falls_back_to_numpy(monkeypatch):
    monkeypatch.setattr(jax_compile, "jax", None)
    op = field_operator(_double, backend="compiled")
    a = Field([Cell], np.arange(NUM_CELLS, dtype=np.float64))
    out = Field([Cell], np.zeros(NUM_CELLS))
    op(a, out=out)
    np.testing.assert_allclose(out.data, 2.0 * np.arange(NUM_CELLS))
    assert op.compile().backend == "numpy"
    assert "backend=compiled/numpy" in op.explain()


def test_compiled_without_jax_can_refuse(monkeypatch):
    monkeypatch.setattr(jax_compile, "jax", None)
    op = field_operator(_double, config=ExecutionConfig(backend="compiled", fallback="error"))
    a = Field([Cell], np.zeros(NUM_CELLS))
    with pytest.raises(BackendError, match="needs JAX"):
        op(a, out=Field([Cell], np.zeros(NUM_CELLS)))
