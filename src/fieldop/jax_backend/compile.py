from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

import numpy as np

from ..core.dims import Connectivity, dims_repr
from ..core.exceptions import BackendError, ContractError, DimensionMismatch, DTypeError
from ..core.execution import ExecutionConfig
from ..core.field import Field, _is_scalar
from ..core.ir import FieldType, FunctionDefinition, ScalarType, TupleType, format_type
from ..core.ir_evaluator import IREvaluator, evaluate
from ..core.offset_provider import OffsetProvider

try:
    import jax
except Exception:  # pragma: no cover - jax optional
    jax = None

try:  # pragma: no cover - optional cache
    from jax.experimental import compilation_cache as _jax_compilation_cache
except Exception:  # pragma: no cover - cache optional
    _jax_compilation_cache = None

_COMPILATION_CACHE_ENABLED: Optional[str] = None
_PYTREES_REGISTERED = False


def _maybe_enable_compilation_cache(cfg: ExecutionConfig) -> None:
    global _COMPILATION_CACHE_ENABLED
    if not cfg.jax_enable_xla_cache or _COMPILATION_CACHE_ENABLED is not None:
        return
    if _jax_compilation_cache is None:
        return
    cache_dir = cfg.jax_cache_dir or str(Path.home() / ".cache" / "fieldop" / "jax")
    cache_path = Path(cache_dir).expanduser()
    cache_path.mkdir(parents=True, exist_ok=True)
    try:
        _jax_compilation_cache.set_cache_dir(str(cache_path))
        _COMPILATION_CACHE_ENABLED = str(cache_path)
    except Exception:
        _COMPILATION_CACHE_ENABLED = ""


def _flatten_field(f: Field):
    return (f.data, f.valid), (f.dims, f.broadcast_dims, f.origin)


def _unflatten_field(aux, children) -> Field:
    dims, broadcast_dims, origin = aux
    data, valid = children
    return Field._from_parts(dims, data, broadcast_dims, origin, valid)


def _flatten_connectivity(conn: Connectivity):
    return (conn.table,), (conn.source, conn.target, conn.max_neighbors, conn.max_index)


def _unflatten_connectivity(aux, children) -> Connectivity:
    source, target, max_neighbors, max_index = aux
    return Connectivity._from_parts(children[0], source, target, max_neighbors, max_index)


def register_pytrees() -> None:
    """Let Fields and Connectivities cross ``jax.jit`` boundaries."""
    global _PYTREES_REGISTERED
    if jax is None or _PYTREES_REGISTERED:
        return
    jax.tree_util.register_pytree_node(Field, _flatten_field, _unflatten_field)
    jax.tree_util.register_pytree_node(Connectivity, _flatten_connectivity, _unflatten_connectivity)
    _PYTREES_REGISTERED = True


def _resolve_device(device_spec: str):
    if jax is None:
        raise BackendError("JAX is not available")
    spec = (device_spec or "auto").strip().lower()
    if not spec or spec == "auto":
        return None
    index: Optional[int] = None
    if ":" in spec:
        base, index_str = spec.split(":", 1)
        spec = base
        if index_str:
            try:
                index = int(index_str)
            except ValueError as exc:  # pragma: no cover - invalid user input
                raise ValueError(f"Invalid device index in '{device_spec}'") from exc
    platform = "gpu" if spec in {"cuda", "gpu"} else spec
    if platform not in {"cpu", "gpu", "tpu"}:
        raise ValueError(f"Unsupported JAX device spec '{device_spec}'")
    try:
        devices = jax.devices(platform)
    except RuntimeError as exc:
        raise BackendError(f"No JAX devices available for platform '{platform}'") from exc
    if index is not None:
        for dev in devices:
            if getattr(dev, "id", None) == index:
                return dev
        raise BackendError(f"JAX device index {index} not found for platform '{platform}'")
    return devices[0]


@dataclass
class CompiledKernel:
    definition: FunctionDefinition
    config: ExecutionConfig
    backend: str  # "jax" | "numpy"
    resolve_operator: Optional[Callable[[Any], FunctionDefinition]] = None
    device: Any = None
    traces: int = 0
    calls: int = 0
    _xla_callable: Any = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.definition.id


def translate(
    definition: FunctionDefinition,
    config: Optional[ExecutionConfig] = None,
    *,
    resolve_operator: Optional[Callable[[Any], FunctionDefinition]] = None,
) -> CompiledKernel:
    """Prepare a typed definition for execution.

    With JAX available the definition is staged through ``jax.jit``; without it
    the IR is interpreted on NumPy arrays, unless ``config.fallback == "error"``.
    """
    cfg = (config or ExecutionConfig()).normalized()
    if jax is None:
        if cfg.fallback == "error":
            raise BackendError(
                "The compiled backend needs JAX; install fieldop[jax] or use fallback='numpy'"
            )
        return CompiledKernel(definition, cfg, "numpy", resolve_operator)
    _maybe_enable_compilation_cache(cfg)
    if cfg.jax_enable_x64:
        jax.config.update("jax_enable_x64", True)
    register_pytrees()
    kernel = CompiledKernel(
        definition,
        cfg,
        "jax",
        resolve_operator,
        device=_resolve_device(cfg.device),
    )
    kernel._xla_callable = _build_xla_callable(kernel)
    return kernel


def _build_xla_callable(kernel: CompiledKernel):
    definition = kernel.definition

    def _run(dynamic, connectivities, static):
        kernel.traces += 1
        scalars, dimensions = static
        provider = OffsetProvider({**connectivities, **dict(dimensions)})
        values = {**dynamic, **dict(scalars)}
        args = [values[p.id] for p in definition.params]
        evaluator = IREvaluator(definition, provider, resolve_operator=kernel.resolve_operator)
        return evaluator.run(args)

    return jax.jit(_run, static_argnums=(2,))


def _bind(definition: FunctionDefinition, args: Sequence[Any], kwargs: Mapping[str, Any]) -> Dict[str, Any]:
    names = [p.id for p in definition.params]
    if len(args) > len(names):
        raise ContractError(f"'{definition.id}' takes {len(names)} arguments, got {len(args)}")
    bound = dict(zip(names, args))
    for key, value in kwargs.items():
        if key not in names:
            raise ContractError(f"'{definition.id}' got an unexpected argument '{key}'")
        if key in bound:
            raise ContractError(f"'{definition.id}' got multiple values for '{key}'")
        bound[key] = value
    missing = [n for n in names if n not in bound]
    if missing:
        raise ContractError(f"'{definition.id}' is missing argument(s): {', '.join(missing)}")
    return bound


def _check_argument(name: str, expected: Any, value: Any) -> Any:
    if isinstance(expected, FieldType):
        if not isinstance(value, Field):
            raise DTypeError(f"argument '{name}' must be a Field, got {type(value).__name__}")
        if value.broadcast_dims != expected.dims:
            raise DimensionMismatch(
                f"argument '{name}' has dims {dims_repr(value.broadcast_dims)}, "
                f"expected {dims_repr(expected.dims)}"
            )
        if np.dtype(value.dtype) != expected.dtype.dtype:
            raise DTypeError(f"argument '{name}' has dtype {value.dtype}, expected {expected.dtype.dtype}")
        return value
    if isinstance(expected, TupleType):
        if not isinstance(value, tuple) or len(value) != len(expected.elements):
            raise DTypeError(f"argument '{name}' must be {format_type(expected)}")
        return tuple(_check_argument(f"{name}[{i}]", t, v) for i, (t, v) in enumerate(zip(expected.elements, value)))
    if isinstance(expected, ScalarType):
        if not _is_scalar(value):
            raise DTypeError(f"argument '{name}' must be a scalar, got {type(value).__name__}")
        if expected.weak:
            return {"bool": bool, "int64": int, "float64": float}[expected.kind.value](value)
        return expected.dtype.type(value)
    raise DTypeError(f"argument '{name}' has unsupported type {format_type(expected)}")


def _is_static(t: Any) -> bool:
    return isinstance(t, ScalarType)


def invoke(
    kernel: CompiledKernel,
    args: Sequence[Any],
    kwargs: Mapping[str, Any],
    provider: OffsetProvider,
) -> Any:
    """Run ``kernel`` and return host-side results."""
    definition = kernel.definition
    bound = _bind(definition, args, kwargs)
    checked = {p.id: _check_argument(p.id, p.type, bound[p.id]) for p in definition.params}
    kernel.calls += 1
    if kernel.backend == "numpy":
        return evaluate(
            definition,
            [checked[p.id] for p in definition.params],
            provider,
            resolve_operator=kernel.resolve_operator,
        )

    dynamic = {p.id: checked[p.id] for p in definition.params if not _is_static(p.type)}
    scalars = tuple((p.id, checked[p.id]) for p in definition.params if _is_static(p.type))
    dimensions = tuple(sorted(provider.dimensions().items()))
    connectivities = provider.connectivities()
    if kernel.device is not None:
        dynamic = jax.device_put(dynamic, kernel.device)
        connectivities = jax.device_put(connectivities, kernel.device)
    try:
        result = kernel._xla_callable(dynamic, connectivities, (scalars, dimensions))
    except TypeError as exc:
        raise BackendError(f"JAX could not trace '{definition.id}': {exc}") from exc
    return jax.tree_util.tree_map(np.asarray, jax.device_get(result))
