#/core/scheduler.py
"""
Планировщик фоновых задач движка:
- Пакетный матчинг по дедлайну формирования
- Отправка наград из outbox во внешний сервис
- Закрытие групп с истёкшим сроком миссии
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import settings
from services.context import EngineContext
from services.group_formation_service import GroupFormationService
from services.group_state_machine import GroupStateMachine
from services.reward_sink import RewardDispatcher

logger = logging.getLogger(__name__)


class MissionScheduler:
    """Периодические проходы; ошибка одного прохода логируется, цикл продолжается"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        context: EngineContext,
        matching_interval: int = settings.BATCH_MATCHING_INTERVAL_SECONDS,
        dispatch_interval: int = settings.REWARD_DISPATCH_INTERVAL_SECONDS,
        deadline_interval: int = settings.DEADLINE_CHECK_INTERVAL_SECONDS,
        dispatch_batch_size: int = settings.REWARD_DISPATCH_BATCH_SIZE,
    ):
        self.session_factory = session_factory
        self.context = context
        self.matching_interval = matching_interval
        self.dispatch_interval = dispatch_interval
        self.deadline_interval = deadline_interval
        self.dispatch_batch_size = dispatch_batch_size
        self.logger = logging.getLogger(__name__)
        self.running = False

    async def start_scheduler(self) -> None:
        """Запустить планировщик (запускается параллельно с polling)"""
        self.running = True
        self.logger.info("✅ Mission Scheduler started")

        tasks = [
            self._loop("batch matching", self.run_matching_once, self.matching_interval),
            self._loop("reward dispatch", self.dispatch_rewards_once, self.dispatch_interval),
            self._loop("deadline check", self.close_overdue_once, self.deadline_interval),
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            self.logger.info("Scheduler tasks cancelled")
        except Exception as e:
            self.logger.error(f"Scheduler error: {e}", exc_info=True)

    async def _loop(self, name: str, job: Callable[[], Awaitable[int]], interval: int) -> None:
        while self.running:
            try:
                await job()
            except Exception as e:
                self.logger.error(f"Error in {name} loop: {e}", exc_info=True)
            await asyncio.sleep(interval)

    # ========== ПРОХОДЫ ==========

    async def run_matching_once(self) -> int:
        async with self.session_factory() as session:
            matched = await GroupFormationService(session, self.context).run_batch_matching()
        if matched:
            self.logger.info(f"🤝 Batch matching placed {matched} users")
        return matched

    async def dispatch_rewards_once(self) -> int:
        async with self.session_factory() as session:
            return await RewardDispatcher(session, self.context).dispatch_pending(self.dispatch_batch_size)

    async def close_overdue_once(self) -> int:
        async with self.session_factory() as session:
            return await GroupStateMachine(session, self.context).fail_overdue_groups()

    async def stop(self) -> None:
        """Остановить планировщик"""
        self.running = False
        self.logger.info("Mission Scheduler stopped")
