from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from .dims import Connectivity, Dimension
from .exceptions import ContractError

ProviderEntry = Union[Connectivity, Dimension]


class OffsetProvider(Mapping[str, ProviderEntry]):
    """Resolves offset names to a connectivity table or a Cartesian dimension."""

    def __init__(self, entries: Optional[Mapping[str, Any]] = None):
        resolved: Dict[str, ProviderEntry] = {}
        for name, entry in dict(entries or {}).items():
            if not isinstance(name, str):
                raise ContractError(f"Offset provider keys must be offset names, got {name!r}")
            if not isinstance(entry, (Connectivity, Dimension)):
                raise ContractError(
                    f"Offset provider entry '{name}' must be a Connectivity or a Dimension, "
                    f"got {type(entry).__name__}"
                )
            resolved[name] = entry
        self._entries = resolved

    def __getitem__(self, name: str) -> ProviderEntry:
        return self._entries[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, name: str) -> ProviderEntry:
        try:
            return self._entries[name]
        except KeyError:
            known = ", ".join(sorted(self._entries)) or "none"
            raise ContractError(
                f"Offset '{name}' is not in the offset provider (known: {known})"
            ) from None

    def connectivities(self) -> Dict[str, Connectivity]:
        return {k: v for k, v in self._entries.items() if isinstance(v, Connectivity)}

    def dimensions(self) -> Dict[str, Dimension]:
        return {k: v for k, v in self._entries.items() if isinstance(v, Dimension)}

    def __repr__(self) -> str:
        return f"OffsetProvider({self._entries!r})"


_ACTIVE: Optional[OffsetProvider] = None


def current_provider() -> Optional[OffsetProvider]:
    return _ACTIVE


def is_active() -> bool:
    return _ACTIVE is not None


@contextmanager
def activate(provider: OffsetProvider) -> Iterator[OffsetProvider]:
    """Install ``provider`` for the duration of an outer call."""
    global _ACTIVE
    if _ACTIVE is not None:
        raise ContractError("An outer field operator call is already in flight")
    _ACTIVE = provider
    try:
        yield provider
    finally:
        _ACTIVE = None
