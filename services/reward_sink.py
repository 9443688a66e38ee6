# services/reward_sink.py

"""
Выдача наград во внешний сервис (минт токенов/NFT).

Settlement пишет RewardEvent в той же транзакции, что и reward_paid;
RewardDispatcher отправляет их в RewardSink отдельно. Отправка at-least-once:
событие помечается dispatched только после успешного emit, ошибки остаются
в очереди со счётчиком попыток. Потребитель должен быть идемпотентным по
(group_id, member_id).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.reward import RewardEvent, RewardEventStatus
from services.base import BaseService

if TYPE_CHECKING:
    from services.context import EngineContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RewardDue:
    """Награда к выдаче одному участнику"""
    group_id: int
    mission_id: int
    member_id: int  # Telegram user id участника
    xp: int
    token_amount: float
    nft_requested: bool = False
    nft_type: Optional[str] = None
    nft_rarity: Optional[str] = None
    breakdown: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: RewardEvent) -> "RewardDue":
        return cls(
            group_id=event.group_id,
            mission_id=event.mission_id,
            member_id=event.user_id,
            xp=event.xp,
            token_amount=event.token_amount,
            nft_requested=event.nft_requested,
            nft_type=event.nft_type,
            nft_rarity=event.nft_rarity,
            breakdown=dict(event.breakdown or {}),
        )


class RewardSink(ABC):
    @abstractmethod
    async def emit(self, reward: RewardDue) -> None:
        """Передать награду внешнему сервису. Исключение = не доставлено"""


class LoggingRewardSink(RewardSink):
    """Sink по умолчанию: только пишет в лог"""

    async def emit(self, reward: RewardDue) -> None:
        logger.info(
            f"🎁 Reward due: group={reward.group_id} user={reward.member_id} "
            f"xp={reward.xp} tokens={reward.token_amount:g} nft={reward.nft_requested}"
        )


class RewardDispatcher(BaseService):
    """Отправка накопленных RewardEvent во внешний sink"""

    def __init__(self, db_session: AsyncSession, context: "EngineContext"):
        super().__init__(db_session, context)

    async def get_pending(self, limit: int) -> list[RewardEvent]:
        result = await self.db_session.execute(
            select(RewardEvent)
            .where(RewardEvent.status == RewardEventStatus.PENDING)
            .order_by(RewardEvent.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def dispatch_pending(self, limit: int = 100) -> int:
        """
        Отправить ожидающие события.

        Returns:
            Количество успешно отправленных
        """
        events = await self.get_pending(limit)
        if not events:
            return 0

        dispatched = 0
        for event in events:
            event.attempts = (event.attempts or 0) + 1
            try:
                await self.context.reward_sink.emit(RewardDue.from_event(event))
            except Exception as e:
                # Событие остаётся pending, следующий проход повторит отправку
                event.last_error = str(e)[:1000]
                self.logger.warning(
                    f"❌ Reward dispatch failed for group {event.group_id} user {event.user_id} "
                    f"(attempt {event.attempts}): {e}"
                )
            else:
                event.status = RewardEventStatus.DISPATCHED
                event.dispatched_at = self.context.now()
                event.last_error = None
                dispatched += 1
            # Коммит после каждого события: отправленное не уйдёт повторно после сбоя
            await self.commit()

        self.logger.info(f"✅ Dispatched {dispatched}/{len(events)} reward events")
        return dispatched
