"""Per-task shared state carried between stages.

Values are keyed by (task_id, scope, key) and stored serialized, so a reader
never holds a reference into another stage's objects. Writes to one key are
serialized by a per-key lock; a write replaces the stored value in one step,
so readers observe either the previous or the new value, never a partial one.
Keys of different tasks never share a lock.
"""

import asyncio
import json
import logging
import threading
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel

from blog_pipeline.executor.errors import MissingArtifactError

logger = logging.getLogger(__name__)

BLOG_STATE_SCOPE = "blog_state"

TASK_INFO_KEY = "task_info"
RESEARCH_KEY = "research"
DRAFT_KEY = "draft"
REVIEW_KEY = "review"
REWRITE_COUNT_KEY = "rewrite_count"

M = TypeVar("M", bound=BaseModel)

_Key = tuple[str, str, str]


def _serialize(value: Any) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, ensure_ascii=False)


class ArtifactStore:
    """Key-scoped value store shared by all concurrent runs."""

    def __init__(self):
        self._values: dict[_Key, str] = {}
        self._locks: dict[_Key, asyncio.Lock] = {}
        # Guards both dicts; held only for dict operations, never across awaits.
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: _Key) -> asyncio.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def put(self, task_id: str, scope: str, key: str, value: Any) -> None:
        """Queue a write; it is visible to every get issued after this returns."""
        full_key = (task_id, scope, key)
        serialized = _serialize(value)
        async with self._lock_for(full_key):
            with self._registry_lock:
                self._values[full_key] = serialized
        logger.debug(f"[task={task_id}] put {scope}/{key} ({len(serialized)} chars)")

    def get(
        self,
        task_id: str,
        scope: str,
        key: str,
        model: Optional[Type[M]] = None,
    ) -> Any:
        """Return the last completed write, or None if the key was never set."""
        with self._registry_lock:
            raw = self._values.get((task_id, scope, key))
        if raw is None:
            return None
        if model is not None:
            return model.model_validate_json(raw)
        return json.loads(raw)

    def require(self, task_id: str, scope: str, key: str, model: Type[M]) -> M:
        """Like get(), but a missing key is a precondition failure."""
        value = self.get(task_id, scope, key, model)
        if value is None:
            raise MissingArtifactError(task_id, f"{scope}/{key}")
        return value

    def keys(self, task_id: str) -> list[tuple[str, str]]:
        with self._registry_lock:
            return sorted((s, k) for (t, s, k) in self._values if t == task_id)

    def clear_task(self, task_id: str) -> int:
        """Drop every entry of a task. Returns the number of entries removed."""
        with self._registry_lock:
            doomed = [k for k in self._values if k[0] == task_id]
            for k in doomed:
                del self._values[k]
            for k in [k for k in self._locks if k[0] == task_id]:
                del self._locks[k]
        if doomed:
            logger.info(f"[task={task_id}] Cleared {len(doomed)} shared-state entries")
        return len(doomed)
