from __future__ import annotations

import hashlib
import importlib.metadata
import json
import os
import re
import uuid
import weakref
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Set

from .exceptions import CacheError, TranslationError
from .ir import json_ready

if TYPE_CHECKING:
    from .execution import ExecutionConfig
    from .ir import FunctionDefinition

CACHE_VERSION = "1"
_KEY_RE = re.compile(r"[0-9a-f]{64}")


def compute_source_hash(src: str) -> str:
    return hashlib.sha256(src.encode("utf-8")).hexdigest()


class TranslationCache:
    """Process-wide map from operator function to its typed IR.

    Entries are dropped together with the function they were built from.
    """

    def __init__(self):
        self._entries: "weakref.WeakKeyDictionary[Callable[..., Any], FunctionDefinition]" = (
            weakref.WeakKeyDictionary()
        )
        self._in_progress: Set[int] = set()
        self.hits = 0
        self.misses = 0

    def get(self, func: Callable[..., Any]) -> Optional["FunctionDefinition"]:
        return self._entries.get(func)

    def get_or_translate(
        self, func: Callable[..., Any], translate: Callable[[Callable[..., Any]], "FunctionDefinition"]
    ) -> "FunctionDefinition":
        cached = self._entries.get(func)
        if cached is not None:
            self.hits += 1
            return cached
        key = id(func)
        if key in self._in_progress:
            name = getattr(func, "__name__", repr(func))
            raise TranslationError(f"'{name}' calls itself; recursive field operators are not supported")
        self._in_progress.add(key)
        try:
            definition = translate(func)
        finally:
            self._in_progress.discard(key)
        self.misses += 1
        self._entries[func] = definition
        return definition

    def invalidate(self, func: Optional[Callable[..., Any]] = None) -> None:
        if func is None:
            self._entries.clear()
        else:
            self._entries.pop(func, None)

    def __contains__(self, func: Callable[..., Any]) -> bool:
        return func in self._entries

    def __len__(self) -> int:
        return len(self._entries)


TRANSLATION_CACHE = TranslationCache()


@dataclass
class CacheRecord:
    metadata: Dict[str, Any] = field(default_factory=dict)


class CacheManager:
    """Directory of JSON records, one per ``(kind, key)``.

    Records written by another ``CACHE_VERSION`` or left half-written are
    treated as missing.
    """

    def __init__(self, cache_dir: str):
        self.root = Path(cache_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, kind: str, key: str) -> Path:
        if not _KEY_RE.fullmatch(key):
            raise CacheError(f"Invalid cache key '{key}': expected a sha256 hex digest")
        return (self.root / kind.replace("/", "_") / key).with_suffix(".json")

    def load(self, kind: str, key: str) -> Optional[CacheRecord]:
        path = self.path_for(kind, key)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        if payload.get("cache_version") != CACHE_VERSION:
            return None
        return CacheRecord(metadata=payload.get("metadata", {}))

    def write_metadata(self, kind: str, key: str, metadata: Dict[str, Any]) -> Path:
        path = self.path_for(kind, key)
        path.parent.mkdir(parents=True, exist_ok=True)
        # write to a sibling temp file, then rename over the record
        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        payload = {"cache_version": CACHE_VERSION, "metadata": json_ready(metadata)}
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, path)
        return path


def _installed_version(dist: str) -> Optional[str]:
    try:
        return importlib.metadata.version(dist)
    except importlib.metadata.PackageNotFoundError:
        return None


def build_cache_key(
    *,
    source: str,
    kind: str,
    operator: Optional[str] = None,
    execution_config: Optional["ExecutionConfig"] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> str:
    """sha256 over the operator source, installed versions and the settings that shape the IR."""
    config = None
    if execution_config is not None:
        cfg = execution_config.normalized()
        config = [cfg.backend, cfg.device, cfg.validate_return, cfg.jax_enable_x64, cfg.fallback]
    fingerprint = {
        "cache_version": CACHE_VERSION,
        "kind": kind,
        "operator": operator,
        "source": compute_source_hash(source),
        "versions": {dist: _installed_version(dist) for dist in ("fieldop", "numpy", "jax")},
        "config": config,
        "extra": json_ready(extra) if extra else None,
    }
    canonical = json.dumps(fingerprint, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
