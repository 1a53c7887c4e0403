"""Per (accountKey, poolAddress) guards for allocation and proof building."""
from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

from shinobi.errors import OperationInProgressError

GuardKey = Tuple[str, str, str]


def _guard_key(kind: str, account_key: int, pool_address: str) -> GuardKey:
    # never keep the raw account key around as a dict key
    digest = hashlib.sha256(str(account_key).encode()).hexdigest()
    return (kind, digest, pool_address.lower())


class OperationGuard:
    def __init__(self):
        self._locks: Dict[GuardKey, asyncio.Lock] = {}

    def _lock(self, key: GuardKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def is_held(self, kind: str, account_key: int, pool_address: str) -> bool:
        return self._lock(_guard_key(kind, account_key, pool_address)).locked()

    @asynccontextmanager
    async def hold(self, kind: str, account_key: int, pool_address: str, wait: bool = True) -> AsyncIterator[None]:
        """Hold the guard; with wait=False a busy guard raises OperationInProgressError."""
        lock = self._lock(_guard_key(kind, account_key, pool_address))
        if not wait and lock.locked():
            raise OperationInProgressError(f"{kind} already in progress for pool {pool_address}")
        async with lock:
            yield
