import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Iterable


class KeyedLocks:
    """Per-key asyncio locks, created on demand and dropped when idle."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, *keys: str):
        # Sorted acquisition keeps two multi-key holders from deadlocking
        ordered = sorted(set(keys))
        acquired = []
        for key in ordered:
            self._users[key] = self._users.get(key, 0) + 1
            lock = self._locks.setdefault(key, asyncio.Lock())
            try:
                await lock.acquire()
            except BaseException:
                self._forget(key)
                self._release_all(acquired)
                raise
            acquired.append(key)
        try:
            yield
        finally:
            self._release_all(acquired)

    def _release_all(self, keys: Iterable[str]):
        for key in reversed(list(keys)):
            self._locks[key].release()
            self._forget(key)

    def _forget(self, key: str):
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    def __len__(self):
        return len(self._locks)
