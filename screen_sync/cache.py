"""Dedup caches shared by the discovery thread and the worker pool."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

DEFAULT_MAX_KNOWN = 10_000


class KnownFileSet:
    """Insertion-ordered set of processed file ids with a hard size bound.

    When an insert pushes the size past ``max_size`` the oldest half is
    evicted, so the size never exceeds ``max_size``.
    """

    def __init__(self, max_size: int = DEFAULT_MAX_KNOWN):
        self._max_size = max(2, max_size)
        # dict keeps insertion order; values unused
        self._ids: dict[str, None] = {}
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, file_id: object) -> bool:
        with self._lock:
            return file_id in self._ids

    def add(self, file_id: str) -> None:
        with self._lock:
            self._insert(file_id)

    def update(self, file_ids: Iterable[str]) -> None:
        with self._lock:
            for file_id in file_ids:
                self._insert(file_id)

    def claim(self, file_id: str) -> bool:
        """Add *file_id* and return True, or return False if already known."""
        with self._lock:
            if file_id in self._ids:
                return False
            self._insert(file_id)
            return True

    def discard(self, file_id: str) -> None:
        """Forget *file_id* so a later cycle picks it up again."""
        with self._lock:
            self._ids.pop(file_id, None)

    def clear(self) -> None:
        with self._lock:
            self._ids.clear()

    def prune(self) -> int:
        """Evict the oldest half if at the bound; return the number evicted."""
        with self._lock:
            if len(self._ids) < self._max_size:
                return 0
            return self._evict()

    def _insert(self, file_id: str) -> None:
        if file_id in self._ids:
            return
        self._ids[file_id] = None
        if len(self._ids) > self._max_size:
            self._evict()

    def _evict(self) -> int:
        drop = len(self._ids) // 2
        for file_id in list(self._ids)[:drop]:
            del self._ids[file_id]
        logger.info("Known-file cache trimmed by %d (now %d)", drop, len(self._ids))
        return drop


def fingerprint(name: str, size: int, mtime: float) -> str:
    """Identity of a local file version: name, size and modification time."""
    return f"{name}:{size}:{int(mtime * 1000)}"


class FingerprintCache:
    """TTL cache collapsing duplicate filesystem events for the same file version."""

    def __init__(self, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl
        self._clock = clock
        self._seen: dict[str, float] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)

    def seen_recently(self, key: str) -> bool:
        """Record *key* and return True if it was already seen within the TTL."""
        now = self._clock()
        with self._lock:
            seen_at = self._seen.get(key)
            if seen_at is not None and now - seen_at < self._ttl:
                return True
            self._seen[key] = now
            return False

    def forget(self, key: str) -> None:
        with self._lock:
            self._seen.pop(key, None)

    def sweep(self) -> int:
        """Drop expired entries; return how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, t in self._seen.items() if now - t >= self._ttl]
            for key in expired:
                del self._seen[key]
        return len(expired)
