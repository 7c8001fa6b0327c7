import asyncio
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager


class KeyedLock:
    """In-process registry of asyncio locks keyed by an arbitrary hashable.

    Serializes work for one key (a user, a promo code) inside this process.
    Entries are dropped once nobody holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def acquire(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    @asynccontextmanager
    async def acquire_many(self, *keys: Hashable) -> AsyncIterator[None]:
        # Fixed order so two callers locking overlapping sets cannot deadlock.
        ordered = sorted(set(keys), key=repr)
        async with _nested(self, ordered):
            yield

    def is_locked(self, key: Hashable) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


@asynccontextmanager
async def _nested(registry: KeyedLock, keys: list) -> AsyncIterator[None]:
    if not keys:
        yield
        return
    async with registry.acquire(keys[0]):
        async with _nested(registry, keys[1:]):
            yield


ledger_locks = KeyedLock()


def user_lock_key(user_id: int) -> tuple[str, int]:
    return ('user', user_id)


def promocode_lock_key(code: str) -> tuple[str, str]:
    return ('promocode', code)
