"""Per-story exclusive sections for read-modify-write of timeline and block state."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator


class StoryLockRegistry:
    """One ``asyncio.Lock`` per story id.

    Writers for different stories never contend. The registry is a plain
    object so tests and tenants can hold their own instance and ``reset`` it.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, story_id: str) -> asyncio.Lock:
        lock = self._locks.get(story_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[story_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, story_id: str) -> AsyncIterator[None]:
        async with self.lock_for(story_id):
            yield

    def reset(self) -> None:
        self._locks.clear()


story_locks = StoryLockRegistry()
