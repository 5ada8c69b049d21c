# locks.py - Per-entity mutual exclusion scopes
"""
Keyed asyncio locks. Mutations that touch the same campaign, the same task
template link set or the same task instance run one at a time; unrelated
entities proceed concurrently. Readers never take these locks.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Tuple

logger = logging.getLogger("compliance-engine.locks")


class EntityLocks:
    """Registry of asyncio locks keyed by (kind, entity id)"""

    def __init__(self):
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        self._holders: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, kind: str, entity_id: str):
        key = (kind, entity_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    def __len__(self):
        return len(self._locks)


_entity_locks = None


def get_entity_locks() -> EntityLocks:
    global _entity_locks
    if _entity_locks is None:
        _entity_locks = EntityLocks()
    return _entity_locks
