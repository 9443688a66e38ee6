# services/group_formation_service.py

"""
Формирование групп: вступление пользователя (сразу или в очередь)
и пакетный матчинг по дедлайну формирования.

Порядок блокировок: миссия -> группа. Под блокировкой миссии пользователь
не может попасть в две группы одной миссии, а проверка вместимости и
добавление участника выполняются атомарно.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    AlreadyParticipating,
    ConcurrentModification,
    ExternalDependencyError,
    GroupMissionError,
    JoinRequirementNotMet,
    MissionNotJoinable,
    RequirementCheckTimeout,
    RequirementServiceUnavailable,
    ValidationFailed,
)
from models.group_member import ActivityType, GroupMember, MemberStatus
from models.interaction import NotificationType
from models.mission_group import FormationType, GroupStatus, MissionGroup
from models.pending_join import PendingJoinRequest, PendingJoinStatus
from models.user import User
from schemas.mission_template import MissionStatus, MissionTemplate
from services.base import BaseService
from services.context import EngineContext
from services.group_state_machine import GroupStateMachine
from services.template_store import MissionTemplateStore
from services.user_service import UserService

logger = logging.getLogger(__name__)

CREATE_GROUP_ACTIVITY_SCORE = 5
# Минимальный балл совпадения по уровню, при котором группа подходит
LEVEL_SCORE_THRESHOLD = 5
MAX_LEVEL_SCORE = 10

# Участие, которое блокирует повторное вступление в ту же миссию
BLOCKING_MEMBER_STATUSES = (MemberStatus.ACTIVE, MemberStatus.PENDING, MemberStatus.COMPLETED)
BLOCKING_GROUP_STATUSES = (GroupStatus.FORMING, GroupStatus.ACTIVE, GroupStatus.PAUSED, GroupStatus.COMPLETED)


class JoinStatus(str, enum.Enum):
    JOINED = "joined"    # Добавлен в существующую группу
    CREATED = "created"  # Создал новую группу и стал лидером
    PENDING = "pending"  # Ждёт пакетного матчинга


@dataclass(frozen=True)
class JoinResult:
    status: JoinStatus
    group_id: Optional[int]
    member_status: Optional[MemberStatus]
    message: str


# ========== МАТЧИНГ ==========

def interest_score(user: User, profiles: List[User]) -> float:
    """Среднее число общих тегов интересов с активными участниками"""
    if not profiles:
        return 0.0
    return sum(user.shares_interests_with(profile.interests or []) for profile in profiles) / len(profiles)


def level_score(user: User, profiles: List[User]) -> float:
    """10 - min(|средний уровень группы - уровень пользователя|, 10)"""
    if not profiles:
        return 0.0
    average = sum(profile.level or 1 for profile in profiles) / len(profiles)
    return MAX_LEVEL_SCORE - min(abs(average - (user.level or 1)), MAX_LEVEL_SCORE)


def pick_group(
    template: MissionTemplate,
    user: User,
    candidates: List[MissionGroup],
    profiles: Dict[int, User],
) -> Optional[MissionGroup]:
    """
    Лучшая группа для пользователя среди forming-групп со свободным местом.
    Интересы (балл > 0), затем уровень (балл > 5), иначе самая
    заполненная группа (быстрее наберёт минимум).
    """
    if not candidates:
        return None

    def active_profiles(group: MissionGroup) -> List[User]:
        return [profiles[m.user_id] for m in group.active_members if m.user_id in profiles]

    criteria = template.group_settings.matching_criteria
    if criteria.by_interest:
        best, best_score = None, 0.0
        for group in candidates:
            score = interest_score(user, active_profiles(group))
            if score > best_score:
                best, best_score = group, score
        if best is not None:
            logger.debug(f"Matched user {user.user_id} to group {best.id} by interest ({best_score:.2f})")
            return best

    if criteria.by_level:
        best, best_score = None, float(LEVEL_SCORE_THRESHOLD)
        for group in candidates:
            score = level_score(user, active_profiles(group))
            if score > best_score:
                best, best_score = group, score
        if best is not None:
            logger.debug(f"Matched user {user.user_id} to group {best.id} by level ({best_score:.2f})")
            return best

    return max(candidates, key=lambda group: group.seat_count)


class GroupFormationService(BaseService):
    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)
        self.users = UserService(db_session)
        self.state_machine = GroupStateMachine(db_session, context)

    # ========== ТРЕБОВАНИЯ ==========

    async def check_requirements(self, user: User, template: MissionTemplate) -> None:
        """Проверить требования миссии; JoinRequirementNotMet с причиной при отказе"""
        requirements = template.join_requirements
        if user.is_banned:
            raise JoinRequirementNotMet(f"User {user.user_id} is banned")
        if (user.level or 1) < requirements.min_level:
            raise JoinRequirementNotMet(f"Level {requirements.min_level} required, user has level {user.level}")
        if requirements.required_tags and not user.shares_interests_with(requirements.required_tags):
            raise JoinRequirementNotMet(
                f"At least one of the interests is required: {', '.join(requirements.required_tags)}"
            )
        if not requirements.needs_external_check:
            return

        timeout = self.context.requirement_check_timeout
        try:
            result = await asyncio.wait_for(
                self.context.requirement_checker.check_requirements(user.user_id, requirements),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            self.logger.warning(f"❌ Requirement check for user {user.user_id} timed out after {timeout}s")
            raise RequirementCheckTimeout(user.user_id, timeout)
        except GroupMissionError:
            raise
        except Exception as e:
            self.logger.error(f"Requirement service failed for user {user.user_id}: {e}", exc_info=True)
            raise RequirementServiceUnavailable(f"Requirement check is unavailable: {e}") from e
        if not result.ok:
            raise JoinRequirementNotMet(result.reason or "Token or NFT holding requirement not met")

    async def _ensure_not_participating(self, mission_id: int, user_id: int, include_requests: bool = True) -> None:
        result = await self.db_session.execute(
            select(func.count(GroupMember.id))
            .join(MissionGroup, MissionGroup.id == GroupMember.group_id)
            .where(
                and_(
                    GroupMember.mission_id == mission_id,
                    GroupMember.user_id == user_id,
                    GroupMember.status.in_(BLOCKING_MEMBER_STATUSES),
                    MissionGroup.status.in_(BLOCKING_GROUP_STATUSES),
                )
            )
        )
        if result.scalar_one():
            raise AlreadyParticipating(user_id, mission_id)
        if include_requests and await self.get_pending_request(mission_id, user_id) is not None:
            raise AlreadyParticipating(user_id, mission_id)

    async def get_pending_request(self, mission_id: int, user_id: int) -> Optional[PendingJoinRequest]:
        result = await self.db_session.execute(
            select(PendingJoinRequest).where(
                and_(
                    PendingJoinRequest.mission_id == mission_id,
                    PendingJoinRequest.user_id == user_id,
                    PendingJoinRequest.status == PendingJoinStatus.PENDING,
                )
            )
        )
        return result.scalars().first()

    # ========== ВСТУПЛЕНИЕ ==========

    async def request_join(self, mission_id: int, user_id: int, auto_join: bool = True) -> JoinResult:
        """
        Вступить в миссию.

        auto_join + auto_match: лучшая forming-группа со свободным местом,
        иначе новая группа. Без auto_match: своя группа (self-form).
        auto_match без auto_join: заявка ждёт пакетного матчинга.
        """
        template = await self.get_template(mission_id)
        if not template.is_joinable:
            raise MissionNotJoinable(mission_id, template.status.value)

        user = await self.users.get_user(user_id)
        # Внешняя проверка до блокировки миссии: медленный сервис не держит других
        await self.check_requirements(user, template)

        async with self.context.locks.mission(mission_id):
            return await self.run_with_retry(
                "join the mission",
                lambda: self._join(template, user_id, auto_join),
            )

    async def _join(self, template: MissionTemplate, user_id: int, auto_join: bool) -> JoinResult:
        now = self.context.now()
        mission_id = template.id
        await self._ensure_not_participating(mission_id, user_id)
        member_status = MemberStatus.PENDING if template.join_requirements.require_approval else MemberStatus.ACTIVE
        settings = template.group_settings

        if settings.auto_match and auto_join:
            user = await self.users.get_user(user_id)
            candidates = await self._open_groups(template)
            group = await self._choose_group(template, user, candidates, {})
            if group is not None:
                return await self._add_to_group(group.id, template, user_id, now, member_status)
            group = await self._create_group(template, user_id, now, FormationType.AUTO_MATCH)
            await self.commit()
            return JoinResult(JoinStatus.CREATED, group.id, MemberStatus.ACTIVE, "No open group found, a new group was created")

        if not settings.auto_match:
            group = await self._create_group(template, user_id, now, FormationType.SELF_FORM)
            await self.commit()
            return JoinResult(JoinStatus.CREATED, group.id, MemberStatus.ACTIVE, "Group created, you are the leader")

        request = PendingJoinRequest(
            mission_id=mission_id,
            user_id=user_id,
            status=PendingJoinStatus.PENDING,
            requested_at=now,
        )
        self.db_session.add(request)
        await self.commit()
        self.logger.info(f"⏳ User {user_id} queued for batch matching in mission {mission_id}")
        deadline = settings.formation_deadline
        return JoinResult(
            JoinStatus.PENDING,
            None,
            None,
            "Queued for matching" + (f" at {deadline:%Y-%m-%d %H:%M} UTC" if deadline else ""),
        )

    async def _add_to_group(
        self,
        group_id: int,
        template: MissionTemplate,
        user_id: int,
        now: datetime,
        member_status: MemberStatus,
    ) -> JoinResult:
        async with self.context.locks.group(group_id):
            group = await self.load_group(group_id)
            group.add_member(template, user_id, now, member_status)
            group.touch(now)
            await self.commit()
        self.logger.info(f"✅ User {user_id} joined group {group_id} as {member_status.value}")
        message = "Joined the group" if member_status == MemberStatus.ACTIVE else "Join request sent to the group leader"
        return JoinResult(JoinStatus.JOINED, group_id, member_status, message)

    async def _create_group(
        self,
        template: MissionTemplate,
        leader_user_id: int,
        now: datetime,
        formation_type: FormationType,
    ) -> MissionGroup:
        """Новая группа с пользователем-лидером (flush, без commit)"""
        count = await self.db_session.execute(
            select(func.count(MissionGroup.id)).where(MissionGroup.mission_id == template.id)
        )
        name = f"{template.title} #{(count.scalar_one() or 0) + 1}"
        group = MissionGroup.create(template, leader_user_id, now, name=name, formation_type=formation_type)
        leader = group.members[0]
        leader.log_activity(ActivityType.CREATE_GROUP, now, activity_score=CREATE_GROUP_ACTIVITY_SCORE)
        self.db_session.add(group)
        await self.flush()
        self.logger.info(f"✅ Group {group.id} created for mission {template.id} by {leader_user_id} ({formation_type.value})")
        return group

    async def _open_groups(self, template: MissionTemplate) -> List[MissionGroup]:
        """forming-группы миссии со свободным местом"""
        result = await self.db_session.execute(
            select(MissionGroup)
            .where(and_(MissionGroup.mission_id == template.id, MissionGroup.status == GroupStatus.FORMING))
            .order_by(MissionGroup.id)
            .execution_options(populate_existing=True)
        )
        return [group for group in result.scalars().all() if group.has_capacity(template.max_members)]

    async def _choose_group(
        self,
        template: MissionTemplate,
        user: User,
        candidates: List[MissionGroup],
        profiles: Dict[int, User],
    ) -> Optional[MissionGroup]:
        missing = {m.user_id for group in candidates for m in group.active_members} - profiles.keys()
        if missing:
            profiles.update(await self.users.get_profiles(missing))
        return pick_group(template, user, candidates, profiles)

    async def cancel_join(self, mission_id: int, user_id: int) -> bool:
        """
        Отменить ожидающую заявку.
        Под блокировкой миссии: идущий пакетный матчинг либо уже распределил
        заявку (отмена вернёт False), либо увидит её отменённой.
        """

        async def operation() -> bool:
            request = await self.get_pending_request(mission_id, user_id)
            if request is None:
                self.logger.info(f"No pending join request of user {user_id} in mission {mission_id} to cancel")
                return False
            request.status = PendingJoinStatus.CANCELLED
            request.resolved_at = self.context.now()
            request.note = "Cancelled by user"
            await self.commit()
            self.logger.info(f"User {user_id} cancelled join request in mission {mission_id}")
            return True

        async with self.context.locks.mission(mission_id):
            return await self.run_with_retry("cancel a join request", operation)

    async def approve_member(self, group_id: int, approver_user_id: int, user_id: int) -> GroupMember:
        """Лидер подтверждает участника: pending -> active"""

        async def operation() -> GroupMember:
            now = self.context.now()
            group = await self.load_group(group_id)
            self.require_leader_or_admin(group, approver_user_id, "approve members")
            if group.is_terminal:
                raise ValidationFailed(f"Group {group_id} is already {group.status.value}")
            member = self.require_member(group, user_id, (MemberStatus.PENDING,))
            member.status = MemberStatus.ACTIVE
            group.add_notification(
                NotificationType.MEMBER_JOIN,
                "Member approved",
                f"User {user_id} was approved by {approver_user_id}",
                now,
                related_user_id=user_id,
            )
            group.touch(now)
            await self.commit()
            self.logger.info(f"✅ User {user_id} approved in group {group_id}")
            return member

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("approve a member", operation)

    # ========== ПАКЕТНЫЙ МАТЧИНГ ==========

    async def run_batch_matching(self, now: Optional[datetime] = None) -> int:
        """
        Распределить очереди миссий с прошедшим дедлайном формирования.
        Returns:
            Количество распределённых пользователей (повторный запуск -> 0)
        """
        now = now or self.context.now()
        missions = await MissionTemplateStore(self.db_session).find_needing_matching(now)
        mission_ids = [mission.id for mission in missions]
        if not mission_ids:
            return 0

        total = 0
        for mission_id in mission_ids:
            async with self.context.locks.mission(mission_id):
                try:
                    matched = await self.run_with_retry(
                        "run batch matching",
                        lambda: self._match_mission(mission_id, now),
                    )
                except ConcurrentModification as e:
                    # Миссия останется в forming_groups, следующий проход повторит
                    self.logger.error(f"❌ Batch matching for mission {mission_id} postponed: {e}")
                    continue
            total += matched

        self.logger.info(f"✅ Batch matching finished: {total} users matched in {len(mission_ids)} missions")
        return total

    async def _match_mission(self, mission_id: int, now: datetime) -> int:
        template = await MissionTemplateStore(self.db_session).get(mission_id)
        result = await self.db_session.execute(
            select(PendingJoinRequest)
            .where(
                and_(
                    PendingJoinRequest.mission_id == mission_id,
                    PendingJoinRequest.status == PendingJoinStatus.PENDING,
                )
            )
            .order_by(PendingJoinRequest.requested_at, PendingJoinRequest.id)
        )
        requests = list(result.scalars().all())
        member_status = MemberStatus.PENDING if template.join_requirements.require_approval else MemberStatus.ACTIVE

        groups = await self._open_groups(template)
        profiles: Dict[int, User] = {}
        matched = 0
        for request in requests:
            try:
                user = await self.users.get_user(request.user_id)
                await self._ensure_not_participating(mission_id, user.user_id, include_requests=False)
                # Ошибка проверки отменяет только эту заявку, не весь проход
                await self.check_requirements(user, template)
            except (ValidationFailed, ExternalDependencyError) as e:
                request.status = PendingJoinStatus.CANCELLED
                request.resolved_at = now
                request.note = e.reason[:255]
                self.logger.info(f"Pending join of user {request.user_id} in mission {mission_id} dropped: {e.reason}")
                continue

            profiles[user.user_id] = user
            open_groups = [g for g in groups if g.has_capacity(template.max_members)]
            group = await self._choose_group(template, user, open_groups, profiles)
            if group is None:
                group = await self._create_group(template, user.user_id, now, FormationType.AUTO_MATCH)
                groups.append(group)
            else:
                async with self.context.locks.group(group.id):
                    group.add_member(template, user.user_id, now, member_status)
                    group.touch(now)

            request.status = PendingJoinStatus.MATCHED
            request.group_id = group.id
            request.resolved_at = now
            matched += 1
        await self.flush()

        for group in groups:
            if group.status != GroupStatus.FORMING:
                continue
            if len(group.active_members) >= template.min_members:
                async with self.context.locks.group(group.id):
                    self.state_machine.start(group, template, now)
            else:
                self.logger.warning(
                    f"Group {group.id} stays forming after batch matching: "
                    f"{len(group.active_members)}/{template.min_members} active members"
                )

        await MissionTemplateStore(self.db_session).advance_status(
            mission_id, MissionStatus.FORMING_GROUPS, MissionStatus.IN_PROGRESS
        )
        await self.commit()
        self.logger.info(f"Mission {mission_id}: {matched}/{len(requests)} pending users matched")
        return matched
