"""
Memoization layer for derived statistics.

Results are cached per entity id and dropped by the mutation API.
"""

from typing import Callable, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class StatsCache(Generic[T]):
    """Per-key memo of computed results.

    Caching is purely an optimization: every value can be dropped and
    recomputed at any time, so ``invalidate`` and ``clear`` are always safe.
    """

    def __init__(self, should_cache: Optional[Callable[[T], bool]] = None):
        """Initialize an empty cache.

        Args:
            should_cache: Predicate deciding whether a computed value is
                stored; values it rejects are recomputed on every lookup
        """
        self._entries: Dict[str, T] = {}
        self._should_cache = should_cache
        self.hits = 0
        self.misses = 0

    def get_or_compute(self, key: str, compute: Callable[[], T]) -> T:
        """Return the cached value for ``key``, computing and storing it on a miss."""
        if key in self._entries:
            self.hits += 1
            return self._entries[key]
        self.misses += 1
        value = compute()
        if self._should_cache is None or self._should_cache(value):
            self._entries[key] = value
        return value

    def peek(self, key: str) -> Optional[T]:
        return self._entries.get(key)

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)
