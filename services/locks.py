"""In-process per-project mutual exclusion for settlement operations."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class ProjectLocks:
    """
    One asyncio.Lock per project id. Operations on different projects never wait on each other.
    Cross-process exclusion comes from row locks and the projects.version counter.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, project_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        self._holders[project_id] = self._holders.get(project_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[project_id] -= 1
            if self._holders[project_id] == 0:
                del self._holders[project_id]
                del self._locks[project_id]

    def is_locked(self, project_id: str) -> bool:
        lock = self._locks.get(project_id)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
