from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Optional, Union


class BackendKind(Enum):
    EMBEDDED = "embedded"
    COMPILED = "compiled"


def _normalize_device_spec(spec: str) -> str:
    device = (spec or "").strip()
    if not device:
        return "auto"
    lowered = device.lower()
    if lowered == "gpu":
        return "cuda"
    if lowered.startswith("gpu:"):
        return "cuda:" + lowered.split(":", 1)[1]
    if lowered in {"auto", "cpu", "tpu"} or lowered.startswith("cuda"):
        return lowered
    raise ValueError(f"Unsupported device: {spec}")


def normalize_backend(backend: Union[str, BackendKind, None]) -> str:
    if isinstance(backend, BackendKind):
        return backend.value
    name = (backend or "embedded").strip().lower()
    try:
        return BackendKind(name).value
    except ValueError:
        raise ValueError(
            f"Unsupported backend: {backend} (expected 'embedded' or 'compiled')"
        ) from None


@dataclass(frozen=True)
class ExecutionConfig:
    """
    Switches shared by the embedded and compiled execution paths.

    Key behaviors:
    * ``backend`` picks direct Python execution (``"embedded"``) or the IR pipeline
      (``"compiled"``); a call-site ``backend=`` overrides it.
    * ``fallback`` decides what ``"compiled"`` does when JAX is not importable:
      interpret the IR with NumPy (``"numpy"``) or raise ``BackendError`` (``"error"``).
    * ``jax_enable_x64`` keeps float64/int64 operands in double precision under JAX.
    """

    backend: str = "embedded"  # "embedded" | "compiled"
    device: str = "auto"  # "auto" | "cpu" | "cuda" | "cuda:N" | "tpu"
    validate_return: bool = True
    explain_timings: bool = True
    cache_dir: Optional[str] = None
    jax_enable_x64: bool = True
    jax_enable_xla_cache: bool = False
    jax_cache_dir: Optional[str] = None
    fallback: str = "numpy"  # "numpy" | "error"

    def normalized(self) -> "ExecutionConfig":
        backend = normalize_backend(self.backend)
        device = _normalize_device_spec(self.device)
        fallback = (self.fallback or "numpy").lower()
        if fallback not in {"numpy", "error"}:
            raise ValueError(f"Unsupported fallback: {self.fallback}")
        cache_dir = self.cache_dir
        if cache_dir is not None:
            cache_dir = str(Path(cache_dir).expanduser())
        jax_cache_dir = self.jax_cache_dir
        if jax_cache_dir is not None:
            jax_cache_dir = str(Path(jax_cache_dir).expanduser())
        return replace(
            self,
            backend=backend,
            device=device,
            validate_return=bool(self.validate_return),
            explain_timings=bool(self.explain_timings),
            cache_dir=cache_dir,
            jax_enable_x64=bool(self.jax_enable_x64),
            jax_enable_xla_cache=bool(self.jax_enable_xla_cache),
            jax_cache_dir=jax_cache_dir,
            fallback=fallback,
        )
