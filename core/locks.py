"""
Блокировки на уровне агрегатов.

Каждая группа — единица взаимного исключения: конкурентные обновления
прогресса, выход/исключение и смена лидера одной группы выполняются
последовательно, разные группы — независимо.
Формирование групп (join + batch matching) держит блокировку миссии,
затем блокировку группы. Обратного порядка нет.
"""

from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable


class AggregateLockRegistry:
    """Реестр asyncio.Lock по ключу агрегата"""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[Hashable, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _get(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def group(self, group_id: int) -> AsyncIterator[None]:
        lock = self._get(("group", group_id))
        async with lock:
            yield

    @asynccontextmanager
    async def mission(self, mission_id: int) -> AsyncIterator[None]:
        lock = self._get(("mission", mission_id))
        async with lock:
            yield

    def is_group_locked(self, group_id: int) -> bool:
        lock = self._locks.get(("group", group_id))
        return lock is not None and lock.locked()
