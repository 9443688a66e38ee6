# services/group_state_machine.py

"""
Жизненный цикл группы.

forming -> active -> {completed, failed, disbanded}, active <-> paused.
Из терминальных статусов переходов нет (таблица в models.mission_group).

Здесь же: выход/исключение участников с передачей лидерства,
смена лидера и прохождение этапов многоэтапных миссий.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    GroupMissionError,
    GroupNotActive,
    NotEnoughMembers,
    StageNotFound,
    StageOrderViolation,
    ValidationFailed,
)
from models.group_member import GroupMember, MemberStatus, PARTICIPATING_STATUSES
from models.group_mission import GroupMission
from models.interaction import NotificationType
from models.mission_group import GroupStatus, MissionGroup, StageProgress, StageStatus
from models.pending_join import PendingJoinRequest, PendingJoinStatus
from schemas.mission_template import MissionTemplate
from services.base import BaseService
from services.context import EngineContext
from utils.numbers import ceil_days

logger = logging.getLogger(__name__)

# Статусы участника, из которых можно выйти
LEAVABLE_STATUSES = (MemberStatus.INVITED, MemberStatus.PENDING, MemberStatus.ACTIVE, MemberStatus.PAUSED, MemberStatus.COMPLETED)


class GroupStateMachine(BaseService):
    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)

    # ========== ПЕРЕХОДЫ (в памяти, без commit) ==========

    def start(self, group: MissionGroup, template: MissionTemplate, now: datetime) -> None:
        """forming -> active; проверяет границы размера группы"""
        active = len(group.active_members)
        if not template.min_members <= active <= template.max_members:
            raise NotEnoughMembers(group.id, active, template.min_members, template.max_members)
        group.transition_to(GroupStatus.ACTIVE, now)
        group.started_at = now
        group.start_first_stage(now)
        group.touch(now)
        self.logger.info(f"✅ Group {group.id} started with {active} members")

    def complete(self, group: MissionGroup, template: MissionTemplate, now: datetime) -> None:
        """
        active -> completed. Вызывается только ObjectiveTracker после
        проверки критерия выполнения.
        """
        group.transition_to(GroupStatus.COMPLETED, now)
        group.completed_at = now
        group.completion_percentage = 100

        end_date = template.time_settings.end_date
        group.completed_early = now < end_date
        group.days_completed_early = ceil_days((end_date - now).total_seconds()) if group.completed_early else 0

        stage = group.current_stage
        if stage is not None:
            stage.status = StageStatus.COMPLETED
            stage.completed_at = now

        group.add_notification(
            NotificationType.MILESTONE,
            "Mission completed",
            "The group completed the mission"
            + (f" {group.days_completed_early} day(s) early" if group.completed_early else ""),
            now,
        )
        group.touch(now)
        self.logger.info(f"🏁 Group {group.id} completed (early={group.completed_early})")

    def fail(self, group: MissionGroup, now: datetime, reason: str) -> None:
        group.transition_to(GroupStatus.FAILED, now)
        group.add_notification(NotificationType.STATUS_CHANGE, "Mission failed", reason, now)
        group.touch(now)
        self.logger.info(f"Group {group.id} failed: {reason}")

    def disband(self, group: MissionGroup, now: datetime, reason: str) -> None:
        group.transition_to(GroupStatus.DISBANDED, now)
        group.vacate_leadership(now, reason)
        group.touch(now)
        self.logger.info(f"Group {group.id} disbanded: {reason}")

    def _handle_departure(self, group: MissionGroup, member: GroupMember, now: datetime, reason: str) -> None:
        """Передача лидерства или роспуск после ухода участника"""
        if group.is_leader(member.user_id):
            successor = group.succession_candidate(exclude_user_id=member.user_id)
            if successor is not None:
                group.assign_leader(successor.user_id, now, f"Previous leader left: {reason}")
                self.logger.info(f"👑 Group {group.id}: leadership passed to {successor.user_id}")
            elif not group.is_terminal:
                self.disband(group, now, f"No active members left: {reason}")
                return

        if not group.participating_members and not group.is_terminal:
            self.disband(group, now, f"No active members left: {reason}")

    # ========== ОПЕРАЦИИ ==========

    async def activate(self, group_id: int, actor_user_id: int) -> MissionGroup:
        """Запуск группы лидером или админом"""

        async def operation() -> MissionGroup:
            now = self.context.now()
            group = await self.load_group(group_id)
            self.require_leader_or_admin(group, actor_user_id, "start the group")
            template = await self.get_template(group.mission_id)
            self.start(group, template, now)
            await self.commit()
            return group

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("start the group", operation)

    async def pause(self, group_id: int, actor_user_id: int) -> MissionGroup:
        return await self._simple_transition(group_id, actor_user_id, GroupStatus.PAUSED, "pause the group")

    async def resume(self, group_id: int, actor_user_id: int) -> MissionGroup:
        return await self._simple_transition(group_id, actor_user_id, GroupStatus.ACTIVE, "resume the group")

    async def _simple_transition(self, group_id: int, actor_user_id: int, target: GroupStatus, action: str) -> MissionGroup:
        async def operation() -> MissionGroup:
            now = self.context.now()
            group = await self.load_group(group_id)
            self.require_leader_or_admin(group, actor_user_id, action)
            group.transition_to(target, now)
            group.touch(now)
            await self.commit()
            self.logger.info(f"Group {group_id} -> {target.value} by {actor_user_id}")
            return group

        async with self.context.locks.group(group_id):
            return await self.run_with_retry(action, operation)

    async def leave(self, group_id: int, user_id: int, reason: Optional[str] = None) -> MissionGroup:
        """Выход участника. Лидер передаётся раньше всех вступившему активному участнику"""
        reason = reason or "Left the group"

        async def operation() -> MissionGroup:
            now = self.context.now()
            group = await self.load_group(group_id)
            if group.is_terminal:
                raise GroupNotActive(group_id, group.status.value, "leave the group")
            member = self.require_member(group, user_id, LEAVABLE_STATUSES)
            self._depart(group, member, MemberStatus.LEFT, now, reason)
            await self.commit()
            return group

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("leave the group", operation)

    async def kick(self, group_id: int, actor_user_id: int, user_id: int, reason: Optional[str] = None) -> MissionGroup:
        reason = reason or f"Removed by {actor_user_id}"

        async def operation() -> MissionGroup:
            now = self.context.now()
            group = await self.load_group(group_id)
            self.require_leader_or_admin(group, actor_user_id, "remove a member")
            if group.is_terminal:
                raise GroupNotActive(group_id, group.status.value, "remove a member")
            if actor_user_id == user_id:
                raise ValidationFailed("Use leave to exit the group yourself")
            member = self.require_member(group, user_id, LEAVABLE_STATUSES)
            self._depart(group, member, MemberStatus.KICKED, now, reason)
            await self.commit()
            return group

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("remove a member", operation)

    def _depart(self, group: MissionGroup, member: GroupMember, status: MemberStatus, now: datetime, reason: str) -> None:
        member.mark_departed(status, now, reason)
        group.add_notification(
            NotificationType.MEMBER_LEAVE,
            "Member left" if status == MemberStatus.LEFT else "Member removed",
            f"User {member.user_id}: {reason}",
            now,
            related_user_id=member.user_id,
        )
        self._handle_departure(group, member, now, reason)
        group.touch(now)
        self.logger.info(f"User {member.user_id} -> {status.value} in group {group.id} ({reason})")

    async def leave_mission(self, mission_id: int, user_id: int, reason: Optional[str] = None) -> Optional[MissionGroup]:
        """
        Выйти из миссии: покинуть текущую группу и/или отменить ожидающую заявку.
        Returns:
            Группу, из которой вышел пользователь (None если был только в очереди)
        """

        async def cancel_requests() -> bool:
            requests = await self.db_session.execute(
                select(PendingJoinRequest).where(
                    and_(
                        PendingJoinRequest.mission_id == mission_id,
                        PendingJoinRequest.user_id == user_id,
                        PendingJoinRequest.status == PendingJoinStatus.PENDING,
                    )
                )
            )
            cancelled = False
            for request in requests.scalars().all():
                request.status = PendingJoinStatus.CANCELLED
                request.resolved_at = self.context.now()
                request.note = "Left the mission"
                cancelled = True
            if cancelled:
                await self.commit()
            return cancelled

        # Очередь делит блокировку миссии с пакетным матчингом: группу ищем
        # после отмены, чтобы увидеть распределение уже прошедшего матчинга
        async with self.context.locks.mission(mission_id):
            cancelled = await self.run_with_retry("cancel pending join requests", cancel_requests)
            result = await self.db_session.execute(
                select(GroupMember.group_id)
                .join(MissionGroup, MissionGroup.id == GroupMember.group_id)
                .where(
                    and_(
                        GroupMember.mission_id == mission_id,
                        GroupMember.user_id == user_id,
                        GroupMember.status.in_(LEAVABLE_STATUSES),
                        MissionGroup.status.in_((GroupStatus.FORMING, GroupStatus.ACTIVE, GroupStatus.PAUSED)),
                    )
                )
                .order_by(GroupMember.joined_at.desc())
                .limit(1)
            )
            group_id = result.scalar_one_or_none()

        if group_id is None:
            if not cancelled:
                raise ValidationFailed(f"User {user_id} does not participate in mission {mission_id}")
            return None
        return await self.leave(group_id, user_id, reason)

    async def transfer_leadership(self, group_id: int, actor_user_id: int, new_leader_user_id: int) -> MissionGroup:
        async def operation() -> MissionGroup:
            now = self.context.now()
            group = await self.load_group(group_id)
            self.require_leader_or_admin(group, actor_user_id, "transfer leadership")
            if group.is_terminal:
                raise GroupNotActive(group_id, group.status.value, "transfer leadership")
            self.require_member(group, new_leader_user_id, PARTICIPATING_STATUSES)
            if group.is_leader(new_leader_user_id):
                self.logger.info(f"User {new_leader_user_id} already leads group {group_id}, nothing to transfer")
                return group
            group.assign_leader(new_leader_user_id, now, f"Transferred by {actor_user_id}")
            group.touch(now)
            await self.commit()
            return group

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("transfer leadership", operation)

    # ========== ДЕДЛАЙНЫ ==========

    async def fail_overdue_groups(self, now: Optional[datetime] = None) -> int:
        """
        Группы, у миссии которых прошла end_date:
        active/paused -> failed, forming -> disbanded.
        Returns:
            Количество закрытых групп
        """
        now = now or self.context.now()
        result = await self.db_session.execute(
            select(MissionGroup.id)
            .join(GroupMission, GroupMission.id == MissionGroup.mission_id)
            .where(
                and_(
                    MissionGroup.status.in_((GroupStatus.FORMING, GroupStatus.ACTIVE, GroupStatus.PAUSED)),
                    GroupMission.end_date <= now,
                )
            )
            .order_by(MissionGroup.id)
        )
        group_ids = list(result.scalars().all())

        closed = 0
        for group_id in group_ids:
            async def operation(group_id: int = group_id) -> bool:
                group = await self.load_group(group_id)
                if group.status == GroupStatus.FORMING:
                    self.disband(group, now, "Mission ended before the group was formed")
                elif group.status in (GroupStatus.ACTIVE, GroupStatus.PAUSED):
                    self.fail(group, now, "Mission deadline passed before completion")
                else:
                    return False
                await self.commit()
                return True

            async with self.context.locks.group(group_id):
                try:
                    if await self.run_with_retry("close an overdue group", operation):
                        closed += 1
                except GroupMissionError as e:
                    # Группа останется открытой, следующий проход повторит
                    self.logger.error(f"❌ Closing overdue group {group_id} postponed: {e.reason}")

        if closed:
            self.logger.info(f"⏰ Closed {closed} overdue groups")
        return closed

    # ========== ЭТАПЫ ==========

    async def complete_stage(self, group_id: int, actor_user_id: int, stage_index: int) -> StageProgress:
        return await self._finish_stage(group_id, actor_user_id, stage_index, StageStatus.COMPLETED)

    async def skip_stage(self, group_id: int, actor_user_id: int, stage_index: int) -> StageProgress:
        return await self._finish_stage(group_id, actor_user_id, stage_index, StageStatus.SKIPPED)

    async def _finish_stage(self, group_id: int, actor_user_id: int, stage_index: int, outcome: StageStatus) -> StageProgress:
        action = "complete a stage" if outcome == StageStatus.COMPLETED else "skip a stage"

        async def operation() -> StageProgress:
            now = self.context.now()
            group = await self.load_group(group_id)
            self.require_leader_or_admin(group, actor_user_id, action)
            if group.status != GroupStatus.ACTIVE:
                raise GroupNotActive(group_id, group.status.value, action)

            stage = self._find_stage(group, stage_index)
            if stage.is_finished:
                raise StageOrderViolation(f"Stage '{stage.name}' is already {stage.status.value}")
            if stage.status == StageStatus.NOT_STARTED and stage.requires_previous_stage:
                previous = self._previous_stage(group.stages, stage_index)
                if previous is not None and not previous.is_finished:
                    raise StageOrderViolation(
                        f"Stage '{stage.name}' cannot start before stage '{previous.name}' is finished"
                    )

            stage.status = outcome
            stage.started_at = stage.started_at or now
            stage.completed_at = now

            following = self._next_stage(group.stages, stage_index)
            if following is not None and following.status == StageStatus.NOT_STARTED:
                following.status = StageStatus.IN_PROGRESS
                following.started_at = now

            group.add_notification(
                NotificationType.STAGE_COMPLETE,
                f"Stage {outcome.value}",
                f"Stage '{stage.name}' {outcome.value}"
                + (f", next: '{following.name}'" if following is not None else ""),
                now,
            )
            group.touch(now)
            await self.commit()
            return stage

        async with self.context.locks.group(group_id):
            return await self.run_with_retry(action, operation)

    @staticmethod
    def _find_stage(group: MissionGroup, stage_index: int) -> StageProgress:
        for stage in group.stages:
            if stage.stage_index == stage_index:
                return stage
        raise StageNotFound(group.id, stage_index)

    @staticmethod
    def _previous_stage(stages: List[StageProgress], stage_index: int) -> Optional[StageProgress]:
        earlier = [s for s in stages if s.stage_index < stage_index]
        return earlier[-1] if earlier else None

    @staticmethod
    def _next_stage(stages: List[StageProgress], stage_index: int) -> Optional[StageProgress]:
        later = [s for s in stages if s.stage_index > stage_index]
        return later[0] if later else None
