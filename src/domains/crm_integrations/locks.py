"""Per-integration serialisation of CRM logins."""

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator


class IntegrationLockRegistry:
    """
    One asyncio lock per integration id.

    Held from authentication through the dependent create or lookup calls so
    that one integration never sees parallel logins. Locks are weakly held and
    disappear once no operation is using them.
    """

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, integration_id: str) -> asyncio.Lock:
        lock = self._locks.get(integration_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[integration_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, integration_id: str) -> AsyncIterator[None]:
        lock = self.get(integration_id)
        async with lock:
            yield

    def __len__(self) -> int:
        return len(self._locks)


integration_locks = IntegrationLockRegistry()
