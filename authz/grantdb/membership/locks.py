"""
Per-anchor mutual exclusion for membership writes.

Two reconciliations against the same anchor (the same principal, or the same
authority) would otherwise read overlapping snapshots and issue conflicting
writes. AnchorLocks hands out one asyncio.Lock per anchor.

Invariants:
    - One lock per (field, value) while anyone holds or waits on it
    - Locks nobody references are dropped automatically

Limitations:
    - A principal-anchored and an authority-anchored call touching the same
      pairing take different locks and are not serialized against each other
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .record import MembershipField


class AnchorLocks:
    """Weak map of asyncio locks keyed by anchor."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def lock_for(self, anchor: MembershipField, value: str) -> asyncio.Lock:
        key = (anchor.value, value)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, anchor: MembershipField, value: str) -> AsyncIterator[None]:
        """Hold the lock for one anchor for the duration of the block."""
        lock = self.lock_for(anchor, value)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)
