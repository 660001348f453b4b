"""Thread-safe in-memory LRU cache for knowledge-search results.

Entries are bounded two ways: a total byte ceiling (estimated from the JSON
encoding of the value) and an optional time-to-live, so answers from the
hosted vector store are refreshed after the documentation sync job has had
a chance to update it.

>>> cache = LRUCache(max_bytes=5 * 1024 * 1024, ttl_seconds=600)
>>> cache.put("search:5:refund policy", hits)
>>> cache.get("search:5:refund policy")
[...]
>>> cache.invalidate_prefix("search:")
1
"""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_TTL_SECONDS = 600.0


class LRUCache:
    """Least-recently-used cache bounded by estimated size and entry age."""

    def __init__(
        self,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float | None = DEFAULT_TTL_SECONDS,
        clock=time.monotonic,
    ) -> None:
        self._max_bytes = max_bytes
        self._ttl = ttl_seconds
        self._clock = clock
        self._current_bytes = 0
        # key → (value, size_bytes, stored_at)
        self._entries: OrderedDict[str, tuple[Any, int, float]] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _estimate_bytes(value: Any) -> int:
        try:
            return len(json.dumps(value, default=str).encode("utf-8"))
        except (TypeError, ValueError, OverflowError):
            return len(str(value).encode("utf-8"))

    def _expired(self, stored_at: float) -> bool:
        return self._ttl is not None and self._clock() - stored_at >= self._ttl

    def _drop(self, key: str) -> None:
        _, size, _ = self._entries.pop(key)
        self._current_bytes -= size

    # ── Core operations ──────────────────────────────────────────────

    def get(self, key: str) -> Any | None:
        """Return the cached value (promoting it to MRU) or ``None``.

        Expired entries are removed on read.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, _, stored_at = entry
            if self._expired(stored_at):
                self._drop(key)
                self.misses += 1
                logger.debug("Cache: expired %s", key)
                return None
            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: str, value: Any) -> None:
        """Insert or overwrite *key*, evicting LRU entries to make room."""
        size = self._estimate_bytes(value)
        if size > self._max_bytes:
            logger.debug("Cache: skipping key %s (size %d > max %d)", key, size, self._max_bytes)
            return

        with self._lock:
            if key in self._entries:
                self._drop(key)
            while self._current_bytes + size > self._max_bytes and self._entries:
                evicted_key, (_, evicted_size, _) = self._entries.popitem(last=False)
                self._current_bytes -= evicted_size
                logger.debug("Cache: evicted %s (%d bytes)", evicted_key, evicted_size)
            self._entries[key] = (value, size, self._clock())
            self._current_bytes += size

    def invalidate(self, key: str) -> bool:
        with self._lock:
            if key in self._entries:
                self._drop(key)
                return True
            return False

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every key starting with *prefix*.  Returns count removed."""
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                self._drop(key)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._current_bytes = 0

    # ── Introspection ────────────────────────────────────────────────

    @property
    def current_bytes(self) -> int:
        return self._current_bytes

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def has(self, key: str) -> bool:
        """Check for a live entry without promoting it."""
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and not self._expired(entry[2])
