"""
Per-key asyncio locks.

Serialises work on one key (an affiliate inside a clearance period) while
letting different keys proceed concurrently. Locks are created on demand and
dropped once nobody holds or waits for them, so the registry does not grow
with the number of affiliates ever processed.

This only covers one process; cross-process safety comes from the
conditional UPDATEs in the settlement engine.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, Tuple


class KeyedLockRegistry:

    def __init__(self):
        self._locks: Dict[Hashable, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def is_held(self, key: Hashable) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry[0].locked()

    def __len__(self) -> int:
        return len(self._locks)


# Shared by every request handled by this process
affiliate_locks = KeyedLockRegistry()
