"""Bounded, thread-safe LRU cache for per-image intermediate results.

Keys are content-derived (see ``utils.image_utils.content_key``) or supplied
by the caller as a frame key, so identical crops share one entry and
distinct crops never collide on object identity.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Hashable, Optional


class BoundedCache:
    """
    Least-recently-used mapping with a hard entry cap.

    Args:
        name:     Label used in stats and logs (e.g. 'quality').
        max_size: Maximum number of entries. 0 disables caching entirely.
    """

    def __init__(self, name: str, max_size: int = 1000) -> None:
        if max_size < 0:
            raise ValueError(f"max_size must be >= 0, got {max_size}")
        self.name = name
        self.max_size = max_size
        self._data: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._hits = 0
        self._misses = 0
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
                self._hits += 1
                return self._data[key]
            self._misses += 1
            return None

    def put(self, key: Hashable, value: Any) -> None:
        if self.max_size == 0:
            return
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """
        Return the cached value for *key*, computing and storing it on a miss.

        *compute* runs outside the lock; two racing misses may both compute,
        and the later result wins. Values must therefore be deterministic.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        value = compute()
        self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._hits = 0
            self._misses = 0

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "size": len(self._data),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._data
