# services/contribution_scorer.py

"""
Оценка вклада участников (0-100), ранг и перцентиль.

Стратегия выбирается один раз по interactions.contribution_tracking шаблона.
Пересчёт — производное состояние: не берёт блокировку группы и не мешает
обновлению прогресса; конфликт версии просто пропускается (следующий
триггер пересчитает заново).
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.exceptions import FeatureDisabled, GroupMissionError, GroupNotActive, InvalidRating
from models.group_member import ActivityType, FeedbackAspect, GroupMember, PeerRating
from models.mission_group import GroupStatus, MissionGroup
from schemas.mission_template import ContributionTracking, MissionTemplate
from services.base import BaseService
from services.context import EngineContext
from utils.numbers import round_amount, round_half_up

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5


# ========== ВХОДНЫЕ ОЦЕНКИ ==========

def activity_scores(members: List[GroupMember]) -> List[float]:
    """Сумма activity_score, нормированная на максимум (все нули -> все 100)"""
    totals = [member.total_activity_score for member in members]
    top = max(totals, default=0)
    if top <= 0:
        return [100.0] * len(members)
    return [total / top * 100 for total in totals]


def _latest_by_rater(ratings: List[PeerRating]) -> Dict[int, int]:
    latest: Dict[int, int] = {}
    for rating in ratings:  # отсортированы по id
        latest[rating.rater_user_id] = rating.rating
    return latest


def peer_score(member: GroupMember) -> float:
    """Среднее последних оценок каждого участника / 5 * 100; нет оценок -> 0"""
    latest = _latest_by_rater([r for r in member.ratings_received if not r.by_leader])
    if not latest:
        return 0.0
    return sum(latest.values()) / len(latest) / MAX_RATING * 100


def leader_score(member: GroupMember) -> float:
    """Последняя оценка лидера / 5 * 100; нет оценки -> 0"""
    by_leader = [r for r in member.ratings_received if r.by_leader]
    if not by_leader:
        return 0.0
    return by_leader[-1].rating / MAX_RATING * 100


# ========== СТРАТЕГИИ ==========

class ContributionStrategy:
    tracking: ContributionTracking

    def score(self, members: List[GroupMember]) -> List[float]:
        raise NotImplementedError


class EqualContribution(ContributionStrategy):
    tracking = ContributionTracking.EQUAL

    def score(self, members: List[GroupMember]) -> List[float]:
        return [100.0] * len(members)


class ActivityContribution(ContributionStrategy):
    tracking = ContributionTracking.ACTIVITY

    def score(self, members: List[GroupMember]) -> List[float]:
        return activity_scores(members)


class PeerRatingContribution(ContributionStrategy):
    tracking = ContributionTracking.PEER_RATING

    def score(self, members: List[GroupMember]) -> List[float]:
        return [peer_score(member) for member in members]


class LeaderRatingContribution(ContributionStrategy):
    tracking = ContributionTracking.LEADER_RATING

    def score(self, members: List[GroupMember]) -> List[float]:
        return [leader_score(member) for member in members]


STRATEGIES = {
    strategy.tracking: strategy
    for strategy in (EqualContribution(), ActivityContribution(), PeerRatingContribution(), LeaderRatingContribution())
}


def contribution_strategy_for(template: MissionTemplate) -> ContributionStrategy:
    return STRATEGIES[template.interactions.contribution_tracking]


def rank_members(members: List[GroupMember]) -> None:
    """rank по убыванию final_score (равные — по времени вступления), percentile"""
    ordered = sorted(members, key=lambda m: (-(m.final_score or 0), m.joined_at, m.id or 0))
    total = len(ordered)
    for position, member in enumerate(ordered):
        member.rank = position + 1
        member.percentile = round_half_up((total - member.rank + 1) / total * 100)


class ContributionScorer(BaseService):
    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)

    def score_group(self, group: MissionGroup, template: MissionTemplate) -> None:
        """Пересчитать вклад всех участвующих (в памяти, без commit)"""
        strategy = contribution_strategy_for(template)
        scored = group.participating_members

        for member in group.members:
            if not member.is_participating:
                member.reset_contribution()
        if not scored:
            return

        finals = strategy.score(scored)
        autos = activity_scores(scored)
        for member, final, auto in zip(scored, finals, autos):
            member.auto_score = round_amount(auto, 2)
            member.peer_score = round_amount(peer_score(member), 2)
            member.leader_score = round_amount(leader_score(member), 2)
            member.final_score = round_amount(final, 2)
        rank_members(scored)

    async def recompute(self, group_id: int) -> bool:
        """
        Обновить вклад группы. Не бросает при конфликте версии.
        Returns:
            True если пересчёт сохранён
        """
        try:
            group = await self.load_group(group_id)
            if group.is_terminal:
                self.logger.info(f"Group {group_id} is {group.status.value}, contribution scores are frozen")
                return False
            template = await self.get_template(group.mission_id)
            self.score_group(group, template)
            group.touch(self.context.now())
            await self.commit()
            return True
        except StaleDataError:
            self.logger.info(f"Contribution recompute for group {group_id} skipped: group changed concurrently")
            return False

    async def refresh_after(self, group_id: int) -> None:
        """Пересчёт как последующий шаг: ошибки логируются и не влияют на вызвавшую операцию"""
        try:
            await self.recompute(group_id)
        except (GroupMissionError, SQLAlchemyError) as e:
            await self.rollback()
            self.logger.warning(f"Contribution recompute for group {group_id} failed: {e}")

    # ========== ОЦЕНКИ ==========

    async def submit_rating(
        self,
        group_id: int,
        rater_user_id: int,
        ratee_user_id: int,
        rating: int,
        aspect: FeedbackAspect = FeedbackAspect.OVERALL,
        comment: Optional[str] = None,
        anonymous: bool = False,
    ) -> PeerRating:
        """
        Оценка участника 1-5.
        В режиме leader_rating оценка лидера идёт в leader_score (в т.ч. себе),
        остальные оценки — peer (нужен enable_peer_rating или режим peer_rating).
        """
        if not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
            raise InvalidRating(f"Rating must be an integer from {MIN_RATING} to {MAX_RATING}, got {rating!r}")

        async def operation() -> PeerRating:
            now = self.context.now()
            group = await self.load_group(group_id)
            if group.status != GroupStatus.ACTIVE:
                raise GroupNotActive(group_id, group.status.value, "rate members")
            template = await self.get_template(group.mission_id)

            rater = self.require_member(group, rater_user_id)
            ratee = self.require_member(group, ratee_user_id)

            tracking = template.interactions.contribution_tracking
            by_leader = tracking == ContributionTracking.LEADER_RATING and group.is_leader(rater_user_id)
            if not by_leader:
                if not (template.interactions.enable_peer_rating or tracking == ContributionTracking.PEER_RATING):
                    raise FeatureDisabled("Peer rating", group.mission_id)
                if rater_user_id == ratee_user_id:
                    raise InvalidRating("Members cannot rate themselves")

            entry = ratee.add_rating(
                rater_user_id,
                rating,
                now,
                by_leader=by_leader,
                aspect=aspect,
                comment=comment,
                anonymous=anonymous,
            )
            rater.log_activity(ActivityType.REVIEW, now, details={"ratee": ratee_user_id})
            group.touch(now)
            await self.commit()
            self.logger.info(
                f"⭐ {'Leader' if by_leader else 'Peer'} rating {rating} for {ratee_user_id} "
                f"from {rater_user_id} in group {group_id}"
            )
            return entry

        async with self.context.locks.group(group_id):
            entry = await self.run_with_retry("rate a member", operation)
        await self.refresh_after(group_id)
        return entry
