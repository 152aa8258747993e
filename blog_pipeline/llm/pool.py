"""Process-wide pool of model backends.

One backend (and so one underlying HTTP connection pool) per model id, created
on first use and closed explicitly at shutdown. Runs lease a backend for their
lifetime so the pool knows which tasks are still using it.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from blog_pipeline.llm.backends import ModelBackend
from blog_pipeline.llm.factory import get_backend

logger = logging.getLogger(__name__)


class BackendPool:
    """Lazily creates and caches backends per model id."""

    def __init__(
        self,
        default_model: str,
        factory: Callable[[str], ModelBackend] = get_backend,
    ):
        self.default_model = default_model
        self._factory = factory
        self._backends: dict[str, ModelBackend] = {}
        self._leases: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def active_leases(self) -> dict[str, int]:
        return dict(self._leases)

    async def open(self) -> None:
        self._open = True
        logger.info(f"Backend pool opened (default model: {self.default_model})")

    async def close(self) -> None:
        """Close every cached backend. Safe to call more than once."""
        async with self._lock:
            self._open = False
            backends = list(self._backends.items())
            self._backends.clear()

        for model_id, backend in backends:
            try:
                await backend.aclose()
            except Exception as e:
                logger.warning(f"Error closing backend {model_id}: {e}")
        if self._leases:
            logger.warning(f"Backend pool closed with active leases: {sorted(self._leases)}")
        logger.info(f"Backend pool closed ({len(backends)} backends)")

    async def get(self, model_id: Optional[str] = None) -> ModelBackend:
        """Return the cached backend for a model, creating it on first use.

        Raises:
            RuntimeError: If the pool has not been opened (or was closed)
        """
        model_id = model_id or self.default_model
        async with self._lock:
            if not self._open:
                raise RuntimeError("BackendPool is not open")
            backend = self._backends.get(model_id)
            if backend is None:
                backend = self._factory(model_id)
                self._backends[model_id] = backend
                logger.info(f"Created backend for {model_id}")
            return backend

    @asynccontextmanager
    async def lease(self, task_id: str, model_id: Optional[str] = None) -> AsyncIterator[ModelBackend]:
        """Hold a backend for the duration of a run."""
        backend = await self.get(model_id)
        self._leases[task_id] = self._leases.get(task_id, 0) + 1
        try:
            yield backend
        finally:
            remaining = self._leases.get(task_id, 1) - 1
            if remaining <= 0:
                self._leases.pop(task_id, None)
            else:
                self._leases[task_id] = remaining
