# services/objective_tracker.py

"""
Прогресс целей группы и участников.

Прогресс зажимается в [0, target], уменьшение возможно только явной
коррекцией, каждое изменение пишется в историю. После каждого изменения
completion_percentage пересчитывается по критерию шаблона; при 100%
группа завершается и рассчитываются награды в той же транзакции.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import GroupNotActive, NotGroupMember
from models.group_member import ActivityType, MemberStatus
from models.mission_group import GroupStatus, MissionGroup
from models.objective import ObjectiveMixin
from schemas.mission_template import CompletionCriteria, MissionTemplate
from services.base import BaseService
from services.context import EngineContext
from services.contribution_scorer import ContributionScorer
from services.group_state_machine import GroupStateMachine
from services.settlement_service import SettlementService
from utils.numbers import round_half_up

logger = logging.getLogger(__name__)


class ObjectiveScope(str, enum.Enum):
    GROUP = "group"
    MEMBER = "member"


# ========== КРИТЕРИИ ВЫПОЛНЕНИЯ ==========

class CompletionStrategy:
    def percentage(self, objectives: Sequence[ObjectiveMixin]) -> float:
        raise NotImplementedError


class AllObjectivesCompletion(CompletionStrategy):
    """Среднее min(progress/target, 1) по всем целям"""

    def percentage(self, objectives: Sequence[ObjectiveMixin]) -> float:
        if not objectives:
            return 0.0
        return sum(objective.ratio for objective in objectives) / len(objectives) * 100


class ThresholdCompletion(CompletionStrategy):
    """
    Доля выполненных целей от ceil(total * threshold / 100).
    Частичный прогресс не учитывается, считаются только завершённые цели.
    """

    def __init__(self, threshold: int):
        self.threshold = threshold

    def required_count(self, total: int) -> int:
        return -(-total * self.threshold // 100)

    def percentage(self, objectives: Sequence[ObjectiveMixin]) -> float:
        required = self.required_count(len(objectives))
        if required <= 0:
            return 0.0
        done = sum(1 for objective in objectives if objective.completed)
        return min(done / required, 1.0) * 100


def completion_strategy_for(template: MissionTemplate) -> CompletionStrategy:
    settings = template.objectives
    if settings.completion_criteria == CompletionCriteria.PERCENTAGE:
        return ThresholdCompletion(settings.completion_percentage)
    return AllObjectivesCompletion()


@dataclass(frozen=True)
class ProgressResult:
    group_id: int
    objective_id: int
    delta: float
    progress: float
    objective_completed: bool
    completion_percentage: int
    group_completed: bool = False
    rewards_queued: int = 0


class ObjectiveTracker(BaseService):
    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)
        self.state_machine = GroupStateMachine(db_session, context)
        self.scorer = ContributionScorer(db_session, context)
        self.settlement = SettlementService(db_session, context)

    async def apply_progress(
        self,
        group_id: int,
        scope: ObjectiveScope,
        objective_id: int,
        new_value: float,
        acting_user_id: int,
        note: Optional[str] = None,
        correction: bool = False,
    ) -> ProgressResult:
        """
        Установить прогресс цели.

        Args:
            scope: group — общая цель, member — личная цель acting_user_id
            new_value: новое абсолютное значение (зажимается в [0, target])
            correction: разрешить уменьшение прогресса (пишется как коррекция)
        """
        scope = ObjectiveScope(scope)

        async def operation() -> ProgressResult:
            return await self._apply(group_id, scope, objective_id, new_value, acting_user_id, note, correction)

        async with self.context.locks.group(group_id):
            result = await self.run_with_retry("update objective progress", operation)

        # Вклад пересчитывается после commit и не влияет на результат обновления
        if result.delta and not result.group_completed:
            await self.scorer.refresh_after(group_id)
        return result

    async def _apply(
        self,
        group_id: int,
        scope: ObjectiveScope,
        objective_id: int,
        new_value: float,
        acting_user_id: int,
        note: Optional[str],
        correction: bool,
    ) -> ProgressResult:
        now = self.context.now()
        group = await self.load_group(group_id)
        if group.status != GroupStatus.ACTIVE:
            raise GroupNotActive(group_id, group.status.value, "update progress")

        member = group.get_member(acting_user_id, (MemberStatus.ACTIVE, MemberStatus.COMPLETED))
        if member is None:
            self.logger.warning(f"User {acting_user_id} tried to update progress in group {group_id} without membership")
            raise NotGroupMember(acting_user_id, group_id)

        objective = group.find_objective(objective_id) if scope == ObjectiveScope.GROUP else member.find_objective(objective_id)
        delta = objective.record_progress(new_value, acting_user_id, now, note=note, correction=correction)
        if delta == 0:
            self.logger.info(
                f"No progress change for {scope.value} objective {objective_id} in group {group_id} "
                f"(value {new_value:g} clamps to current {objective.progress:g})"
            )
            return ProgressResult(
                group_id=group_id,
                objective_id=objective_id,
                delta=0.0,
                progress=objective.progress,
                objective_completed=bool(objective.completed),
                completion_percentage=group.completion_percentage,
            )

        if scope == ObjectiveScope.MEMBER and member.status == MemberStatus.ACTIVE and member.all_objectives_completed:
            member.status = MemberStatus.COMPLETED
            self.logger.info(f"✅ User {acting_user_id} completed all personal objectives in group {group_id}")
        member.log_activity(
            ActivityType.PROGRESS_UPDATE,
            now,
            activity_score=max(delta, 1),
            details={"scope": scope.value, "objective_id": objective_id, "delta": delta},
        )

        template = await self.get_template(group.mission_id)
        percentage = self.recalculate(group, template)
        group.touch(now)

        events = []
        completed = False
        if percentage >= 100 and group.status != GroupStatus.COMPLETED:
            self.state_machine.complete(group, template, now)
            self.scorer.score_group(group, template)
            events = self.settlement.settle_group(group, template, now)
            completed = True

        await self.commit()
        self.logger.info(
            f"📈 {scope.value.capitalize()} objective {objective_id} in group {group_id}: "
            f"{delta:+g} -> {objective.progress:g}/{objective.target:g}, group {group.completion_percentage}%"
        )
        return ProgressResult(
            group_id=group_id,
            objective_id=objective_id,
            delta=delta,
            progress=objective.progress,
            objective_completed=bool(objective.completed),
            completion_percentage=group.completion_percentage,
            group_completed=completed,
            rewards_queued=len(events),
        )

    @staticmethod
    def recalculate(group: MissionGroup, template: MissionTemplate) -> float:
        """Пересчитать completion_percentage из текущего состояния целей"""
        objectives: List[ObjectiveMixin] = group.completion_objectives()
        percentage = completion_strategy_for(template).percentage(objectives)
        # 100% показывается только при выполненном критерии
        group.completion_percentage = 100 if percentage >= 100 else min(round_half_up(percentage), 99)
        return percentage
