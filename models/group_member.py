# models/group_member.py

from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, Float, ForeignKey, JSON, Enum as SQLEnum
from sqlalchemy.orm import relationship

from core.exceptions import ObjectiveNotFound
from models.base import Base
from models.objective import MemberObjective
from schemas.mission_template import ObjectiveDefinition


class MemberStatus(enum.Enum):
    """Статус участника в группе"""
    INVITED = "invited"
    PENDING = "pending"      # Ждёт одобрения лидера
    ACTIVE = "active"
    PAUSED = "paused"
    LEFT = "left"
    KICKED = "kicked"
    COMPLETED = "completed"  # Выполнил все личные цели


# Занимают место в группе
SEAT_HOLDING_STATUSES = (MemberStatus.ACTIVE, MemberStatus.PENDING)
# Участвуют в целях, оценках и наградах
PARTICIPATING_STATUSES = (MemberStatus.ACTIVE, MemberStatus.COMPLETED)


class ActivityType(enum.Enum):
    CREATE_GROUP = "create_group"
    PROGRESS_UPDATE = "progress_update"
    CHAT_MESSAGE = "chat_message"
    UPLOAD = "upload"
    COMMENT = "comment"
    VOTE = "vote"
    REVIEW = "review"
    CUSTOM = "custom"


class FeedbackAspect(enum.Enum):
    COMMUNICATION = "communication"
    CONTRIBUTION = "contribution"
    HELPFULNESS = "helpfulness"
    LEADERSHIP = "leadership"
    OVERALL = "overall"


class ActivityLogEntry(Base):
    """Активность участника (вход для activity-based вклада)"""
    __tablename__ = "member_activity_log"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("group_members.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_type = Column(SQLEnum(ActivityType), nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    details = Column(JSON, default=dict)
    activity_score = Column(Float, default=1, nullable=False)


class PeerRating(Base):
    """Оценка участника другим участником или лидером (1-5)"""
    __tablename__ = "member_ratings"

    id = Column(Integer, primary_key=True, index=True)
    ratee_member_id = Column(Integer, ForeignKey("group_members.id", ondelete="CASCADE"), nullable=False, index=True)
    rater_user_id = Column(BigInteger, nullable=False)
    rating = Column(Integer, nullable=False)
    aspect = Column(SQLEnum(FeedbackAspect), default=FeedbackAspect.OVERALL, nullable=False)
    comment = Column(Text, nullable=True)
    anonymous = Column(Boolean, default=False, nullable=False)
    by_leader = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class GroupMember(Base):
    """Участник группы. Изменяется только через методы MissionGroup и сервисы"""
    __tablename__ = "group_members"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    mission_id = Column(Integer, ForeignKey("group_missions.id"), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False, index=True)

    status = Column(SQLEnum(MemberStatus), default=MemberStatus.ACTIVE, nullable=False)
    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    left_at = Column(DateTime, nullable=True)
    leave_reason = Column(String(500), nullable=True)

    # Вклад (0-100)
    auto_score = Column(Float, default=0, nullable=False)
    peer_score = Column(Float, default=0, nullable=False)
    leader_score = Column(Float, default=0, nullable=False)
    final_score = Column(Float, default=0, nullable=False)
    rank = Column(Integer, nullable=True)
    percentile = Column(Integer, nullable=True)

    # Расчёт наград
    base_reward_paid = Column(Boolean, default=False, nullable=False)
    base_reward_paid_at = Column(DateTime, nullable=True)
    nft_requested = Column(Boolean, default=False, nullable=False)

    objectives = relationship(
        "MemberObjective",
        order_by=MemberObjective.definition_index,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    activity_log = relationship(
        "ActivityLogEntry",
        order_by=ActivityLogEntry.id,
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    ratings_received = relationship(
        "PeerRating",
        order_by=PeerRating.id,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @classmethod
    def create(
        cls,
        mission_id: int,
        user_id: int,
        member_objectives: List[ObjectiveDefinition],
        now: datetime,
        status: MemberStatus = MemberStatus.ACTIVE,
    ) -> "GroupMember":
        """Новый участник со скелетом личных целей из шаблона"""
        return cls(
            mission_id=mission_id,
            user_id=user_id,
            status=status,
            joined_at=now,
            auto_score=0,
            peer_score=0,
            leader_score=0,
            final_score=0,
            base_reward_paid=False,
            nft_requested=False,
            objectives=[
                MemberObjective(
                    definition_index=index,
                    description=definition.description,
                    target=definition.target,
                    unit=definition.unit,
                    optional=definition.optional,
                    progress=0.0,
                    completed=False,
                    history=[],
                )
                for index, definition in enumerate(member_objectives)
            ],
            activity_log=[],
            ratings_received=[],
        )

    # ========== СТАТУС ==========

    @property
    def holds_seat(self) -> bool:
        return self.status in SEAT_HOLDING_STATUSES

    @property
    def is_participating(self) -> bool:
        return self.status in PARTICIPATING_STATUSES

    def mark_departed(self, status: MemberStatus, now: datetime, reason: Optional[str]) -> None:
        self.status = status
        self.left_at = now
        self.leave_reason = reason

    # ========== ЦЕЛИ ==========

    def find_objective(self, objective_id: int) -> MemberObjective:
        for objective in self.objectives:
            if objective.id == objective_id:
                return objective
        raise ObjectiveNotFound(objective_id, "member")

    @property
    def all_objectives_completed(self) -> bool:
        return all(objective.completed for objective in self.objectives)

    # ========== АКТИВНОСТЬ ==========

    def log_activity(
        self,
        activity_type: ActivityType,
        now: datetime,
        activity_score: float = 1,
        details: Optional[dict] = None,
    ) -> ActivityLogEntry:
        entry = ActivityLogEntry(
            activity_type=activity_type,
            timestamp=now,
            details=details or {},
            activity_score=activity_score,
        )
        self.activity_log.append(entry)
        return entry

    @property
    def total_activity_score(self) -> float:
        return float(sum(entry.activity_score or 0 for entry in self.activity_log))

    # ========== ОЦЕНКИ ==========

    def add_rating(
        self,
        rater_user_id: int,
        rating: int,
        now: datetime,
        by_leader: bool = False,
        aspect: FeedbackAspect = FeedbackAspect.OVERALL,
        comment: Optional[str] = None,
        anonymous: bool = False,
    ) -> PeerRating:
        entry = PeerRating(
            rater_user_id=rater_user_id,
            rating=rating,
            aspect=aspect,
            comment=comment,
            anonymous=anonymous,
            by_leader=by_leader,
            created_at=now,
        )
        self.ratings_received.append(entry)
        return entry

    def reset_contribution(self) -> None:
        self.auto_score = 0
        self.peer_score = 0
        self.leader_score = 0
        self.final_score = 0
        self.rank = None
        self.percentile = None

    def __repr__(self):
        return f"<GroupMember user_id={self.user_id} group_id={self.group_id} {self.status.value}>"
