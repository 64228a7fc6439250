"""
Per-connection advisory locks.

Serializes work on one connection (sync, callback, delete, token refresh)
within the process while leaving other connections free to proceed.
"""

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Hashable


class KeyedLocks:
    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = defaultdict(asyncio.Lock)

    @asynccontextmanager
    async def hold(self, key: Hashable):
        async with self._locks[key]:
            yield

    def discard(self, key: Hashable):
        lock = self._locks.get(key)
        if lock is not None and not lock.locked():
            del self._locks[key]


class SyncLocks:
    """Lock registries shared by every service instance in the process."""

    def __init__(self):
        self.connections = KeyedLocks()
        self.refreshes = KeyedLocks()

    def forget(self, connection_id):
        self.connections.discard(connection_id)
        self.refreshes.discard(connection_id)
