"""In-memory TTL cache of progress snapshots for polling clients.

An expired entry is removed on read, so after its TTL a task looks exactly
like one that never ran. Callers must not read failure into absence.
Entries nobody reads are swept by `set()`, at most once per purge interval.
"""

import logging
import threading
import time
from typing import Callable, Optional

from blog_pipeline.executor.schemas import ProgressSnapshot

logger = logging.getLogger(__name__)

# Cache TTL: 1 hour
DEFAULT_PROGRESS_TTL = 3600

# Minimum seconds between sweeps of expired entries
DEFAULT_PURGE_INTERVAL = 60


class _CacheEntry:
    """Cache entry with TTL."""

    __slots__ = ("snapshot", "expires_at")

    def __init__(self, snapshot: ProgressSnapshot, expires_at: float):
        self.snapshot = snapshot
        self.expires_at = expires_at


class ProgressCache:
    """Latest ProgressSnapshot per task, bounded by a TTL."""

    def __init__(
        self,
        default_ttl: float = DEFAULT_PROGRESS_TTL,
        clock: Callable[[], float] = time.monotonic,
        purge_interval: float = DEFAULT_PURGE_INTERVAL,
    ):
        self.default_ttl = default_ttl
        self.purge_interval = purge_interval
        self._clock = clock
        self._entries: dict[str, _CacheEntry] = {}
        self._lock = threading.Lock()
        self._next_purge_at = clock() + purge_interval

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def set(
        self,
        task_id: str,
        snapshot: ProgressSnapshot,
        ttl: Optional[float] = None,
    ) -> None:
        now = self._clock()
        effective_ttl = self.default_ttl if ttl is None else ttl
        entry = _CacheEntry(snapshot.model_copy(deep=True), now + effective_ttl)
        with self._lock:
            self._entries[task_id] = entry
            sweep = now >= self._next_purge_at
            if sweep:
                self._next_purge_at = now + self.purge_interval
        if sweep:
            self.purge_expired()

    def get(self, task_id: str) -> Optional[ProgressSnapshot]:
        with self._lock:
            entry = self._entries.get(task_id)
            if entry is None:
                return None
            if self._clock() >= entry.expires_at:
                del self._entries[task_id]
                return None
            return entry.snapshot.model_copy(deep=True)

    def delete(self, task_id: str) -> None:
        with self._lock:
            self._entries.pop(task_id, None)

    def purge_expired(self) -> int:
        """Drop all expired entries. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug(f"Purged {len(expired)} expired progress snapshots")
        return len(expired)
