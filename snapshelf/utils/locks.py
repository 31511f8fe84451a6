"""
Advisory asyncio locks keyed by an arbitrary hashable value.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Hashable, List


class KeyedLocks:
    """
    One asyncio.Lock per key, dropped once nobody holds or waits for it.

    Usage:
        async with locks.hold(key):
            ...
    """

    def __init__(self):
        # key -> [lock, number of holders and waiters]
        self._locks: Dict[Hashable, List] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable):
        slot = self._locks.get(key)
        if slot is None:
            slot = self._locks[key] = [asyncio.Lock(), 0]
        slot[1] += 1

        try:
            async with slot[0]:
                yield
        finally:
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    def __len__(self):
        return len(self._locks)

    def __contains__(self, key: Hashable):
        return key in self._locks
