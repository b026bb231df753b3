import asyncio
from typing import Dict


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped once nobody holds
    or waits for it. Serializes check-then-insert sequences for the same key
    within this process.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    async def acquire(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

    def release(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            raise RuntimeError(f"Lock for key {key!r} is not held")
        lock.release()
        self._forget(key)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def _forget(self, key: str):
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)
