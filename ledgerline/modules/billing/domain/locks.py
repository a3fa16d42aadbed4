"""
Per-subscription serialization.

Within one process an asyncio.Lock per subscription id orders concurrent commands;
across processes the row is re-read with SELECT ... FOR UPDATE and the version
column rejects stale writes.
"""

import asyncio
import weakref
from contextlib import asynccontextmanager
from uuid import UUID


class SubscriptionLockRegistry:
    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _lock_for(self, subscription_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(subscription_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[subscription_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, subscription_id: UUID):
        lock = self._lock_for(subscription_id)
        async with lock:
            yield


# Shared by every state machine in the process
subscription_locks = SubscriptionLockRegistry()
