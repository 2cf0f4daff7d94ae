from __future__ import annotations

import functools
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Union

from .ast_lowering import lower_function
from .cache import TRANSLATION_CACHE, CacheManager, build_cache_key
from .exceptions import ContractError
from .execution import BackendKind, ExecutionConfig, normalize_backend
from .field import Field, copy_into
from .ir import FunctionDefinition, format_ir, json_ready
from .offset_provider import OffsetProvider, activate, current_provider, is_active
from .type_checker import check_definition


def _resolve_definition(op: "FieldOperator") -> FunctionDefinition:
    return op.definition


class FieldOperator:
    """A Python function over Fields, callable eagerly or through the compiled backend.

    The first call that needs IR lowers and type-checks the function once per
    function identity; compiled kernels are then kept per ``ExecutionConfig``.
    """

    def __init__(
        self,
        function: Callable[..., Any],
        *,
        backend: Union[str, BackendKind, None] = None,
        config: Optional[ExecutionConfig] = None,
    ):
        cfg = config or ExecutionConfig()
        if backend is not None:
            cfg = replace(cfg, backend=normalize_backend(backend))
        self.function = function
        self.config = cfg.normalized()
        self.logs: List[Dict[str, Any]] = []
        self._kernels: Dict[ExecutionConfig, Any] = {}
        functools.update_wrapper(self, function)

    def __repr__(self) -> str:
        return f"FieldOperator({self.__name__}, backend={self.config.backend!r})"

    # Translation ------------------------------------------------------------
    @property
    def definition(self) -> FunctionDefinition:
        return TRANSLATION_CACHE.get_or_translate(self.function, self._translate)

    def _translate(self, function: Callable[..., Any]) -> FunctionDefinition:
        started = time.perf_counter()
        definition = check_definition(
            lower_function(function),
            validate_return=self.config.validate_return,
            resolve_operator=_resolve_definition,
        )
        entry: Dict[str, Any] = {"kind": "translate", "operator": definition.id}
        if self.config.explain_timings:
            entry["duration_ms"] = (time.perf_counter() - started) * 1000.0
        if self.config.cache_dir:
            entry["cache_path"] = str(self._write_cache_metadata(definition))
        self.logs.append(entry)
        return definition

    def _write_cache_metadata(self, definition: FunctionDefinition):
        manager = CacheManager(self.config.cache_dir)
        key = build_cache_key(
            source=definition.source or "",
            kind="ir",
            operator=definition.id,
            execution_config=self.config,
        )
        metadata = {
            "operator": definition.id,
            "filename": definition.filename,
            "ir": format_ir(definition),
            "definition": json_ready(definition),
        }
        return manager.write_metadata("ir", key, metadata)

    def compile(self, config: Optional[ExecutionConfig] = None):
        """Return the compiled kernel for ``config`` (built on first use)."""
        from ..jax_backend.compile import translate

        cfg = (config or self.config).normalized()
        kernel = self._kernels.get(cfg)
        if kernel is None:
            kernel = translate(self.definition, cfg, resolve_operator=_resolve_definition)
            self._kernels[cfg] = kernel
            self.logs.append(
                {
                    "kind": "compile",
                    "operator": self.__name__,
                    "backend": kernel.backend,
                    "device": cfg.device,
                }
            )
        return kernel

    # Calling ----------------------------------------------------------------
    def __call__(
        self,
        *args: Any,
        out: Any = None,
        offset_provider: Optional[Any] = None,
        backend: Union[str, BackendKind, None] = None,
        config: Optional[ExecutionConfig] = None,
        **kwargs: Any,
    ) -> Any:
        cfg = (config or self.config).normalized()
        if backend is not None:
            cfg = replace(cfg, backend=normalize_backend(backend))

        if is_active():
            if out is not None:
                raise ContractError(f"'{self.__name__}' was called with out= from inside another operator")
            if offset_provider is not None:
                raise ContractError(
                    f"'{self.__name__}' was called with offset_provider= from inside another operator"
                )
            return self._dispatch(args, kwargs, cfg, current_provider(), outer=False)

        if out is None:
            raise ContractError(f"'{self.__name__}' needs out= when called from Python")
        _check_out(out)
        provider = (
            offset_provider
            if isinstance(offset_provider, OffsetProvider)
            else OffsetProvider(offset_provider or {})
        )
        self.logs.clear()
        with activate(provider):
            result = self._dispatch(args, kwargs, cfg, provider, outer=True)
            copy_into(result, out)
        return None

    def _dispatch(self, args, kwargs, cfg: ExecutionConfig, provider: OffsetProvider, *, outer: bool) -> Any:
        started = time.perf_counter()
        if cfg.backend == BackendKind.COMPILED.value:
            from ..jax_backend.compile import invoke

            kernel = self.compile(cfg)
            result = invoke(kernel, args, kwargs, provider)
            backend = f"compiled/{kernel.backend}"
        else:
            result = self.function(*args, **kwargs)
            backend = "embedded"
        entry: Dict[str, Any] = {
            "kind": "call",
            "operator": self.__name__,
            "backend": backend,
            "mode": "outer" if outer else "nested",
        }
        if cfg.explain_timings:
            entry["duration_ms"] = (time.perf_counter() - started) * 1000.0
        self.logs.append(entry)
        return result

    # Introspection ----------------------------------------------------------
    def with_backend(self, backend: Union[str, BackendKind]) -> "FieldOperator":
        return FieldOperator(self.function, backend=backend, config=self.config)

    def explain(self, *, json: bool = False):
        if json:
            return {"logs": [json_ready(entry) for entry in self.logs]}
        lines = []
        for entry in self.logs:
            kind = entry.get("kind")
            timing = entry.get("duration_ms")
            suffix = f" {timing:.3f}ms" if timing is not None else ""
            if kind == "translate":
                cache = entry.get("cache_path")
                cache_suffix = f" cache={cache}" if cache else ""
                lines.append(f"[translate] {entry['operator']}{suffix}{cache_suffix}")
            elif kind == "compile":
                lines.append(f"[compile] {entry['operator']} backend={entry['backend']} device={entry['device']}")
            elif kind == "call":
                lines.append(f"[{entry['mode']}] {entry['operator']} backend={entry['backend']}{suffix}")
            else:
                lines.append(str(entry))
        return "\n".join(lines)


def _check_out(out: Any) -> None:
    if isinstance(out, tuple):
        if not out:
            raise ContractError("out must not be an empty tuple")
        for item in out:
            _check_out(item)
        return
    if not isinstance(out, Field):
        raise ContractError(f"out must be a Field or a tuple of Fields, got {type(out).__name__}")


def field_operator(
    function: Optional[Callable[..., Any]] = None,
    *,
    backend: Union[str, BackendKind, None] = None,
    config: Optional[ExecutionConfig] = None,
):
    """Decorator turning a function over Fields into a ``FieldOperator``.

    Usable bare (``@field_operator``) or with options
    (``@field_operator(backend="compiled")``).
    """

    def wrap(fn: Callable[..., Any]) -> FieldOperator:
        return FieldOperator(fn, backend=backend, config=config)

    if function is None:
        return wrap
    return wrap(function)
