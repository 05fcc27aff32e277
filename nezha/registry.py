"""Thread-safe keyed collections shared by the dashboard services."""

from __future__ import annotations

import threading
from collections.abc import Callable, Hashable, Iterable, Iterator, Mapping
from typing import Any, Generic, Optional, Protocol, TypeVar


class PermissionHolder(Protocol):
    """An entry that can tell whether a request context may touch it."""

    def has_permission(self, ctx: Any) -> bool: ...


K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class Registry(Generic[K, V]):
    """A keyed store with a cached sorted view, guarded by locks."""

    def __init__(
        self,
        entries: Optional[Mapping[K, V]] = None,
        sorted_entries: Optional[Iterable[V]] = None,
    ) -> None:
        self._entries: dict[K, V] = dict(entries or {})
        self._lock = threading.RLock()
        if sorted_entries is None:
            self._sorted: list[V] = list(self._entries.values())
        else:
            self._sorted = list(sorted_entries)
        self._sorted_lock = threading.RLock()

    def get(self, key: K) -> Optional[V]:
        """Return the entry stored under ``key`` or None."""
        with self._lock:
            return self._entries.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_list(self) -> dict[K, V]:
        """Return a shallow copy of the keyed entries."""
        with self._lock:
            return dict(self._entries)

    def get_sorted_list(self) -> list[V]:
        """Return a copy of the sorted view."""
        with self._sorted_lock:
            return list(self._sorted)

    def items(self) -> Iterator[tuple[K, V]]:
        """Iterate over a snapshot of the (key, entry) pairs."""
        with self._lock:
            snapshot = list(self._entries.items())
        yield from snapshot

    def check_permission(self, ctx: Any, ids: Iterable[K]) -> bool:
        """True unless one of the known ``ids`` denies access to ``ctx``."""
        with self._lock:
            return all(
                self._entries[key].has_permission(ctx)
                for key in ids
                if key in self._entries
            )

    def _resort(self, key: Callable[[V], Any]) -> None:
        with self._lock:
            values = sorted(self._entries.values(), key=key)
            with self._sorted_lock:
                self._sorted = values