"""
Per-entity serialization for read-modify-write operations.

Two full-replace calls against the same entity must not interleave, or the
later write silently discards the earlier caller's intent. Every reconcile
holds its target's lock for the whole read-diff-write cycle. Locks are
in-process; several keys are always taken in sorted order.
"""
import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Dict, Tuple


LockKey = Tuple[str, str]


class EntityLockRegistry:
    """Lazily created asyncio locks keyed by (entity_type, entity_id)."""

    def __init__(self):
        self._locks: Dict[LockKey, asyncio.Lock] = {}
        self._waiters: Dict[LockKey, int] = {}

    def _checkout(self, key: LockKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        return lock

    def _checkin(self, key: LockKey) -> None:
        remaining = self._waiters[key] - 1
        if remaining:
            self._waiters[key] = remaining
        else:
            del self._waiters[key]
            del self._locks[key]

    def is_locked(self, entity_type: str, entity_id: str) -> bool:
        lock = self._locks.get((entity_type, entity_id))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, *keys: LockKey) -> AsyncIterator[None]:
        """
        Hold the locks for every key in ``keys``.

        Usage:
            async with locks.hold(("user", user_id)):
                ...
        """
        ordered = sorted(set(keys))
        held = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._checkin(key)
                    raise
                held.append((key, lock))
            yield
        finally:
            for key, lock in reversed(held):
                lock.release()
                self._checkin(key)


entity_locks = EntityLockRegistry()
