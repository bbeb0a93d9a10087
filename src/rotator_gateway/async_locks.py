# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/rotator_gateway/async_locks.py
"""
Async keyed locks.

StripedLock hashes keys onto a fixed pool of asyncio.Lock. Two different
keys may share a stripe, which only costs contention, so it fits short
critical sections that never await I/O. KeyedLock gives every live key its
own lock and fits sections that stay held across a network call.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List


def create_lock_pool(count: int) -> List[asyncio.Lock]:
    """
    Create a pool of locks for striped locking.

    Args:
        count: Number of locks in the pool

    Returns:
        List of asyncio.Lock instances
    """
    if count < 1:
        raise ValueError("lock pool needs at least one lock")
    return [asyncio.Lock() for _ in range(count)]


def get_striped_lock(locks: List[asyncio.Lock], key: Any) -> asyncio.Lock:
    """Get the lock from a pool that guards the given hashable key."""
    return locks[hash(key) % len(locks)]


class StripedLock:
    """
    Keyed mutual exclusion over a fixed lock pool.

    Usage:
        locks = StripedLock(64)

        async with locks.hold(identity.key):
            ...  # check-and-update for this key only
    """

    def __init__(self, stripes: int = 64):
        self._locks = create_lock_pool(stripes)

    def lock_for(self, key: Any) -> asyncio.Lock:
        return get_striped_lock(self._locks, key)

    @asynccontextmanager
    async def hold(self, key: Any):
        async with self.lock_for(key):
            yield

    def locked(self, key: Any) -> bool:
        return self.lock_for(key).locked()


class KeyedLock:
    """
    One asyncio.Lock per live key, dropped when its last holder leaves.

    Distinct keys never wait on each other, so the lock may be held across
    awaits on slow I/O.

    Usage:
        locks = KeyedLock()

        async with locks.hold(license):
            ...  # authority round trip for this license only
    """

    def __init__(self):
        self._locks: Dict[Any, asyncio.Lock] = {}
        self._holders: Dict[Any, int] = {}

    @asynccontextmanager
    async def hold(self, key: Any):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def locked(self, key: Any) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)
