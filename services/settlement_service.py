# services/settlement_service.py

"""
Расчёт наград завершённой группы.

Базовая награда группы делится (поровну или по вкладу), базовая награда
участника выдаётся целиком каждому. Бонусы независимы и суммируются:
полное выполнение, досрочное завершение, топ-участники.
Для каждого получателя пишется RewardEvent (outbox) в той же транзакции,
что и reward_paid. Повторный вызов для оплаченной группы ничего не делает.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Dict, List, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import AlreadySettled, GroupNotActive
from models.group_member import GroupMember
from models.mission_group import GroupStatus, MissionGroup
from models.reward import GroupRewardRecord, RewardEvent, RewardEventStatus
from schemas.mission_template import BaseReward, DistributionMethod, MissionTemplate, RewardAmount
from services.base import BaseService
from services.context import EngineContext
from services.contribution_scorer import ContributionScorer
from utils.numbers import round_amount

logger = logging.getLogger(__name__)


def split_pool(pool: RewardAmount, members: List[GroupMember], method: DistributionMethod) -> List[Tuple[int, float]]:
    """
    Доли группового пула: (xp, tokens) для каждого участника.
    xp округляется вниз, токены до 4 знаков.
    contribution_based без ненулевых оценок делится поровну.
    """
    if not members:
        return []
    weights = [1.0] * len(members)
    if method == DistributionMethod.CONTRIBUTION_BASED:
        scores = [float(m.final_score or 0) for m in members]
        if sum(scores) > 0:
            weights = scores
    total = sum(weights)
    return [
        (int(pool.xp * weight // total), round_amount(pool.token_amount * weight / total))
        for weight in weights
    ]


def top_contributor_cutoff(member_count: int, percentage: int) -> int:
    """Сколько участников получают бонус топ-вклада (минимум один)"""
    return max(1, math.ceil(member_count * percentage / 100))


class SettlementService(BaseService):
    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)

    async def settle(self, group_id: int) -> List[RewardEvent]:
        """
        Рассчитать награды завершённой группы.
        Returns:
            Созданные RewardEvent (пусто если группа уже оплачена)
        """

        async def operation() -> List[RewardEvent]:
            now = self.context.now()
            group = await self.load_group(group_id)
            if group.status != GroupStatus.COMPLETED:
                raise GroupNotActive(group_id, group.status.value, "settle rewards")
            template = await self.get_template(group.mission_id)
            if group.rewards is not None and group.rewards.reward_paid:
                self.logger.info(f"Group {group_id} already settled, skipping")
                return []
            events = self.settle_group(group, template, now)
            await self.commit()
            return events

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("settle rewards", operation)

    def settle_group(self, group: MissionGroup, template: MissionTemplate, now: datetime) -> List[RewardEvent]:
        """
        Settlement внутри текущей транзакции (без commit).
        Вызывающий код отвечает за актуальный вклад (ContributionScorer.score_group).
        """
        record = group.rewards
        if record is None:
            record = GroupRewardRecord(distribution_method=template.rewards.distribution_method)
            group.rewards = record
        if record.reward_paid:
            raise AlreadySettled(group.id)

        rewards = template.rewards
        recipients = group.participating_members
        if any(member.rank is None for member in recipients):
            ContributionScorer(self.db_session, self.context).score_group(group, template)

        shares = split_pool(rewards.group_rewards, recipients, rewards.distribution_method)
        full_completion = group.all_objectives_completed
        early = bool(group.completed_early)
        cutoff = top_contributor_cutoff(len(recipients), rewards.bonus_rewards.top_contributor.percentage)
        nft = self._nft_for(rewards.group_rewards, rewards.member_rewards)

        events: List[RewardEvent] = []
        bonus_xp, bonus_tokens = 0, 0.0
        for member, (share_xp, share_tokens) in zip(recipients, shares):
            breakdown: Dict[str, Dict[str, float]] = {
                "group_share": {"xp": share_xp, "token_amount": share_tokens},
                "member_base": {"xp": rewards.member_rewards.xp, "token_amount": rewards.member_rewards.token_amount},
            }
            bonuses = {
                "full_completion": full_completion,
                "early_completion": early,
                "top_contributor": member.rank is not None and member.rank <= cutoff,
            }
            for name, earned in bonuses.items():
                bonus = getattr(rewards.bonus_rewards, name)
                if earned and not bonus.is_empty:
                    breakdown[name] = {"xp": bonus.xp, "token_amount": bonus.token_amount}
                    bonus_xp += bonus.xp
                    bonus_tokens += bonus.token_amount

            xp = sum(int(part["xp"]) for part in breakdown.values())
            tokens = round_amount(sum(part["token_amount"] for part in breakdown.values()))
            event = RewardEvent(
                group_id=group.id,
                mission_id=group.mission_id,
                user_id=member.user_id,
                xp=xp,
                token_amount=tokens,
                nft_requested=nft is not None,
                nft_type=nft.type.value if nft else None,
                nft_rarity=nft.rarity.value if nft else None,
                breakdown=breakdown,
                status=RewardEventStatus.PENDING,
                attempts=0,
                created_at=now,
            )
            self.db_session.add(event)
            events.append(event)

            member.base_reward_paid = True
            member.base_reward_paid_at = now
            member.nft_requested = nft is not None

        record.distribution_method = rewards.distribution_method
        record.xp = rewards.group_rewards.xp
        record.token_amount = rewards.group_rewards.token_amount
        record.bonus_reward_paid = bonus_xp > 0 or bonus_tokens > 0
        record.bonus_xp = bonus_xp
        record.bonus_token_amount = round_amount(bonus_tokens)
        record.nft_requested = nft is not None
        record.reward_paid = True
        record.paid_at = now
        group.touch(now)

        if recipients:
            self.logger.info(f"💰 Group {group.id} settled: {len(events)} reward events queued")
        else:
            self.logger.warning(f"Group {group.id} settled with no participating members, nothing to pay")
        return events

    @staticmethod
    def _nft_for(group_reward: BaseReward, member_reward: BaseReward):
        """NFT участника приоритетнее группового"""
        if member_reward.nft.issue:
            return member_reward.nft
        if group_reward.nft.issue:
            return group_reward.nft
        return None
