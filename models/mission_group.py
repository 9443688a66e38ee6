# models/mission_group.py

"""
Группа участников групповой миссии — корень агрегата.
Участники, цели, этапы, история лидеров и журналы принадлежат группе
и изменяются только через её методы и сервисы движка.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import relationship

from core.exceptions import (
    AlreadyParticipating,
    GroupFull,
    InvalidStatusTransition,
    ObjectiveNotFound,
)
from models.base import Base
from models.group_member import GroupMember, MemberStatus
from models.interaction import ChatMessage, GroupNotification, GroupVote, NotificationType
from models.objective import GroupObjective, ObjectiveMixin
from models.reward import GroupRewardRecord
from schemas.mission_template import MissionTemplate


class GroupStatus(enum.Enum):
    """Жизненный цикл группы"""
    FORMING = "forming"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    DISBANDED = "disbanded"


TERMINAL_STATUSES = (GroupStatus.COMPLETED, GroupStatus.FAILED, GroupStatus.DISBANDED)

ALLOWED_TRANSITIONS = {
    GroupStatus.FORMING: {GroupStatus.ACTIVE, GroupStatus.DISBANDED},
    GroupStatus.ACTIVE: {GroupStatus.PAUSED, GroupStatus.COMPLETED, GroupStatus.FAILED, GroupStatus.DISBANDED},
    GroupStatus.PAUSED: {GroupStatus.ACTIVE, GroupStatus.FAILED, GroupStatus.DISBANDED},
    GroupStatus.COMPLETED: set(),
    GroupStatus.FAILED: set(),
    GroupStatus.DISBANDED: set(),
}


class FormationType(enum.Enum):
    AUTO_MATCH = "auto_match"
    SELF_FORM = "self_form"
    ADMIN_ASSIGNED = "admin_assigned"


class StageStatus(enum.Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class StageProgress(Base):
    __tablename__ = "group_stage_progress"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    stage_index = Column(Integer, nullable=False)
    name = Column(String(255), nullable=False)
    duration_days = Column(Integer, default=1, nullable=False)
    requires_previous_stage = Column(Boolean, default=True, nullable=False)
    status = Column(SQLEnum(StageStatus), default=StageStatus.NOT_STARTED, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_finished(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.SKIPPED)


class LeaderHistoryEntry(Base):
    """Журнал лидерства: запись закрывается при передаче лидерства"""
    __tablename__ = "group_leader_history"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=True)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    reason = Column(String(500), nullable=True)
    successor_id = Column(BigInteger, nullable=True)


class MissionGroup(Base):
    __tablename__ = "mission_groups"

    id = Column(Integer, primary_key=True, index=True)
    mission_id = Column(Integer, ForeignKey("group_missions.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    formation_type = Column(SQLEnum(FormationType), default=FormationType.SELF_FORM, nullable=False)
    formed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    leader_id = Column(BigInteger, nullable=True)

    # Статус
    status = Column(SQLEnum(GroupStatus), default=GroupStatus.FORMING, nullable=False, index=True)
    status_updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completion_percentage = Column(Integer, default=0, nullable=False)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    completed_early = Column(Boolean, default=False, nullable=False)
    days_completed_early = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Оптимистическая блокировка: UPDATE с устаревшей версией -> StaleDataError
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    # Relationships
    members = relationship("GroupMember", order_by=[GroupMember.joined_at, GroupMember.id], cascade="all, delete-orphan", lazy="selectin")
    objectives = relationship("GroupObjective", order_by=GroupObjective.definition_index, cascade="all, delete-orphan", lazy="selectin")
    stages = relationship("StageProgress", order_by=StageProgress.stage_index, cascade="all, delete-orphan", lazy="selectin")
    leader_history = relationship("LeaderHistoryEntry", order_by=LeaderHistoryEntry.id, cascade="all, delete-orphan", lazy="selectin")
    chat_messages = relationship("ChatMessage", order_by=ChatMessage.id, cascade="all, delete-orphan", lazy="selectin")
    votes = relationship("GroupVote", order_by=GroupVote.id, cascade="all, delete-orphan", lazy="selectin")
    notifications = relationship("GroupNotification", order_by=GroupNotification.id, cascade="all, delete-orphan", lazy="selectin")
    rewards = relationship("GroupRewardRecord", uselist=False, cascade="all, delete-orphan", lazy="selectin")

    # ========== СОЗДАНИЕ ==========

    @classmethod
    def create(
        cls,
        template: MissionTemplate,
        leader_user_id: int,
        now: datetime,
        name: Optional[str] = None,
        formation_type: FormationType = FormationType.SELF_FORM,
    ) -> "MissionGroup":
        """
        Новая группа в статусе forming: лидер, скелеты целей из шаблона,
        первый этап (если есть) сразу in_progress.
        """
        group = cls(
            mission_id=template.id,
            name=name or f"Group of {leader_user_id}",
            description=f"Group for mission '{template.title}'",
            formation_type=formation_type,
            formed_at=now,
            leader_id=leader_user_id,
            status=GroupStatus.FORMING,
            status_updated_at=now,
            completion_percentage=0,
            completed_early=False,
            days_completed_early=0,
            created_at=now,
            updated_at=now,
            members=[],
            objectives=[
                GroupObjective(
                    definition_index=index,
                    description=definition.description,
                    target=definition.target,
                    unit=definition.unit,
                    optional=definition.optional,
                    progress=0.0,
                    progress_percentage=0,
                    completed=False,
                    history=[],
                )
                for index, definition in enumerate(template.objectives.group_objectives)
            ],
            stages=[
                StageProgress(
                    stage_index=index,
                    name=stage.name,
                    duration_days=stage.duration_days,
                    requires_previous_stage=stage.requires_previous_stage,
                    status=StageStatus.IN_PROGRESS if index == 0 else StageStatus.NOT_STARTED,
                    started_at=now if index == 0 else None,
                )
                for index, stage in enumerate(template.time_settings.stages)
            ],
            leader_history=[LeaderHistoryEntry(user_id=leader_user_id, started_at=now, reason="Group created")],
            chat_messages=[],
            votes=[],
            notifications=[],
            rewards=GroupRewardRecord(
                distribution_method=template.rewards.distribution_method,
                reward_paid=False,
                xp=0,
                token_amount=0.0,
                bonus_reward_paid=False,
                bonus_xp=0,
                bonus_token_amount=0.0,
                nft_requested=False,
            ),
        )
        group.members.append(
            GroupMember.create(template.id, leader_user_id, template.objectives.member_objectives, now)
        )
        return group

    # ========== УЧАСТНИКИ ==========

    def get_member(self, user_id: int, statuses: Optional[Iterable[MemberStatus]] = None) -> Optional[GroupMember]:
        """Последняя запись участника (пользователь мог выйти и вернуться)"""
        allowed = tuple(statuses) if statuses is not None else None
        for member in reversed(self.members):
            if member.user_id == user_id and (allowed is None or member.status in allowed):
                return member
        return None

    @property
    def active_members(self) -> List[GroupMember]:
        return [m for m in self.members if m.status == MemberStatus.ACTIVE]

    @property
    def participating_members(self) -> List[GroupMember]:
        return [m for m in self.members if m.is_participating]

    @property
    def seat_count(self) -> int:
        """active + pending"""
        return sum(1 for m in self.members if m.holds_seat)

    def has_capacity(self, max_members: int) -> bool:
        return self.seat_count < max_members

    def add_member(
        self,
        template: MissionTemplate,
        user_id: int,
        now: datetime,
        status: MemberStatus = MemberStatus.ACTIVE,
    ) -> GroupMember:
        if self.get_member(user_id, (MemberStatus.ACTIVE, MemberStatus.PENDING)):
            raise AlreadyParticipating(user_id, self.mission_id)
        if not self.has_capacity(template.max_members):
            raise GroupFull(self.id, template.max_members)

        member = GroupMember.create(self.mission_id, user_id, template.objectives.member_objectives, now, status)
        self.members.append(member)
        self.add_notification(
            NotificationType.MEMBER_JOIN,
            "New member",
            f"User {user_id} joined the group" + (" (awaiting approval)" if status == MemberStatus.PENDING else ""),
            now,
            related_user_id=user_id,
        )
        return member

    def succession_candidate(self, exclude_user_id: Optional[int] = None) -> Optional[GroupMember]:
        """Раньше всех вступивший из оставшихся участвующих"""
        candidates = [m for m in self.participating_members if m.user_id != exclude_user_id]
        if not candidates:
            return None
        return min(candidates, key=lambda m: (m.joined_at, m.id or 0))

    # ========== ЛИДЕРСТВО ==========

    def _close_leadership(self, now: datetime, reason: str, successor_id: Optional[int]) -> None:
        for entry in reversed(self.leader_history):
            if entry.ended_at is None:
                entry.ended_at = now
                entry.reason = reason
                entry.successor_id = successor_id
                return
        # Журнал пуст (старые данные), фиксируем уход текущего лидера
        self.leader_history.append(LeaderHistoryEntry(
            user_id=self.leader_id, started_at=self.formed_at, ended_at=now, reason=reason, successor_id=successor_id,
        ))

    def assign_leader(self, user_id: int, now: datetime, reason: str) -> None:
        """Немедленная смена лидера с записью в журнал"""
        previous = self.leader_id
        self._close_leadership(now, reason, successor_id=user_id)
        self.leader_id = user_id
        self.leader_history.append(LeaderHistoryEntry(user_id=user_id, started_at=now, reason=reason))
        self.add_notification(
            NotificationType.LEADER_CHANGE,
            "New leader",
            f"User {user_id} is now the group leader (previous: {previous})",
            now,
            related_user_id=user_id,
        )

    def vacate_leadership(self, now: datetime, reason: str) -> None:
        self._close_leadership(now, reason, successor_id=None)
        self.leader_id = None

    def is_leader(self, user_id: int) -> bool:
        return self.leader_id is not None and self.leader_id == user_id

    # ========== СТАТУС ==========

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, target: GroupStatus) -> bool:
        return target in ALLOWED_TRANSITIONS.get(self.status, set())

    def transition_to(self, target: GroupStatus, now: datetime) -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(self.status.value, target.value, self.id)
        self.status = target
        self.status_updated_at = now
        self.add_notification(
            NotificationType.STATUS_CHANGE,
            "Group status changed",
            f"Group is now {target.value}",
            now,
        )

    # ========== ЦЕЛИ ==========

    def find_objective(self, objective_id: int) -> GroupObjective:
        for objective in self.objectives:
            if objective.id == objective_id:
                return objective
        raise ObjectiveNotFound(objective_id, "group")

    def completion_objectives(self) -> List[ObjectiveMixin]:
        """
        Цели, по которым считается выполнение группы: все групповые
        (optional тоже входит в порог), а если у шаблона нет групповых целей,
        то личные цели участвующих.
        """
        if self.objectives:
            return list(self.objectives)
        return [o for m in self.participating_members for o in m.objectives]

    @property
    def all_objectives_completed(self) -> bool:
        """Все групповые и все личные цели участвующих выполнены на 100%"""
        objectives: List[ObjectiveMixin] = list(self.objectives)
        for member in self.participating_members:
            objectives.extend(member.objectives)
        return bool(objectives) and all(o.completed for o in objectives)

    # ========== ЭТАПЫ ==========

    @property
    def current_stage(self) -> Optional[StageProgress]:
        for stage in self.stages:
            if stage.status == StageStatus.IN_PROGRESS:
                return stage
        return None

    def start_first_stage(self, now: datetime) -> None:
        if not self.stages:
            return
        first = self.stages[0]
        if first.status == StageStatus.NOT_STARTED:
            first.status = StageStatus.IN_PROGRESS
        if first.status == StageStatus.IN_PROGRESS and first.started_at is None:
            first.started_at = now

    # ========== ЖУРНАЛЫ ==========

    def add_notification(
        self,
        notification_type: NotificationType,
        title: str,
        content: Optional[str],
        now: datetime,
        related_user_id: Optional[int] = None,
    ) -> GroupNotification:
        notification = GroupNotification(
            notification_type=notification_type,
            title=title,
            content=content,
            related_user_id=related_user_id,
            timestamp=now,
        )
        self.notifications.append(notification)
        return notification

    def touch(self, now: datetime) -> None:
        """Любое изменение агрегата обновляет строку группы (и её версию)"""
        self.updated_at = now

    def __repr__(self):
        return f"<MissionGroup {self.id} mission={self.mission_id} {self.status.value if self.status else None}>"
