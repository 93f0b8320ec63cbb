from __future__ import annotations

import asyncio


class UserLocks:
    """One asyncio lock per user around every balance read-then-write."""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def for_user(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock
