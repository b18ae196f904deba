"""Per-key write serialization."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager


class KeyLockRegistry:
    """Hands out one asyncio.Lock per key id.

    Every mutation of a key's record, its model metadata or its quota runs
    under that key's lock. Holders must not call into another component
    that takes the same lock; asyncio locks are not reentrant.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, key_id: str) -> asyncio.Lock:
        lock = self._locks.get(key_id)
        if lock is None:
            lock = self._locks[key_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, key_id: str) -> AsyncIterator[None]:
        """Hold the write lock of ``key_id`` for the duration of the block."""
        async with self.lock_for(key_id):
            yield

    def is_locked(self, key_id: str) -> bool:
        lock = self._locks.get(key_id)
        return lock is not None and lock.locked()

    def discard(self, key_id: str) -> None:
        """Forget the lock of a deleted key if nobody holds it."""
        lock = self._locks.get(key_id)
        if lock is not None and not lock.locked():
            del self._locks[key_id]
