"""Bounded LRU cache for decoded source maps.

Values are either a decoded map or ``ABSENT``, a negative entry recording that
a file has no usable source map, so it is not fetched again.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("console_analyzer.cache")

MAX_CACHE_SIZE = 50


class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


ABSENT = _Sentinel("ABSENT")  # Known to have no source map
MISS = _Sentinel("MISS")      # Not in the cache


def release_entry(value: Any) -> None:
    """Release a cached value if it holds decoded data."""
    release = getattr(value, "release", None)
    if callable(release):
        release()


class ResolutionCache:
    """Key -> SourceMap | ABSENT store with least-recently-used eviction.

    Entries that leave the cache (eviction, overwrite or clear) are handed to
    ``on_evict(key, value)`` when set, otherwise released immediately.
    """

    def __init__(self, max_size: int = MAX_CACHE_SIZE,
                 on_evict: Optional[Callable[[str, Any], None]] = None):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self.on_evict = on_evict
        self._entries: "OrderedDict[str, Any]" = OrderedDict()

        # Statistics
        self.stats: Dict[str, int] = {
            'hits': 0,
            'misses': 0,
            'evictions': 0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        return list(self._entries)

    def get(self, key: str) -> Any:
        """Return the cached value (a map or ABSENT), or MISS.

        A hit marks the key as most recently used.
        """
        if key not in self._entries:
            self.stats['misses'] += 1
            return MISS

        self._entries.move_to_end(key)
        self.stats['hits'] += 1
        return self._entries[key]

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite an entry, evicting the LRU entry past capacity."""
        if key in self._entries:
            previous = self._entries[key]
            self._entries.move_to_end(key)
            self._entries[key] = value
            if previous is not value:
                self._discard(key, previous)
            return

        self._entries[key] = value
        while len(self._entries) > self.max_size:
            oldest_key, oldest = self._entries.popitem(last=False)
            self.stats['evictions'] += 1
            logger.debug("Evicting source map cache entry: %s", oldest_key)
            self._discard(oldest_key, oldest)

    def clear(self) -> None:
        """Release and drop every entry."""
        entries = list(self._entries.items())
        self._entries.clear()
        for key, value in entries:
            self._discard(key, value)

    def _discard(self, key: str, value: Any) -> None:
        if self.on_evict is not None:
            self.on_evict(key, value)
        else:
            release_entry(value)
