"""Per-rule async locks serializing writes to one pattern or composite.

Locks are held weakly: an entry lives only while a holder or waiter references
it, so the registry doesn't grow with every rule ever touched.
"""

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from expense_categorizer.core.enums import RuleKind


class RuleLocks:
    def __init__(self):
        self._locks: weakref.WeakValueDictionary[tuple[str, int], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, kind: RuleKind | str, rule_id: int) -> asyncio.Lock:
        key = (RuleKind(kind).value, rule_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, kind: RuleKind | str, rule_id: int) -> AsyncIterator[None]:
        lock = self.get(kind, rule_id)
        async with lock:
            yield


# Shared by services that don't get an explicit registry
default_rule_locks = RuleLocks()
