# models/interaction.py

"""
Журналы взаимодействия внутри группы: чат, голосования, уведомления.
Только запись (append-only); доставка — забота внешних сервисов.
"""

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, ForeignKey, JSON, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.orm import relationship

from models.base import Base


class NotificationType(enum.Enum):
    MILESTONE = "milestone"
    REMINDER = "reminder"
    MEMBER_JOIN = "member_join"
    MEMBER_LEAVE = "member_leave"
    STAGE_COMPLETE = "stage_complete"
    STATUS_CHANGE = "status_change"
    LEADER_CHANGE = "leader_change"
    CHAT = "chat"
    VOTE = "vote"
    CUSTOM = "custom"


class VoteType(enum.Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"


class VoteStatus(enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChatMessage(Base):
    __tablename__ = "group_chat_messages"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(BigInteger, nullable=False)
    content = Column(Text, nullable=False)
    attachments = Column(JSON, default=list)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)


class GroupNotification(Base):
    __tablename__ = "group_notifications"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    notification_type = Column(SQLEnum(NotificationType), nullable=False)
    title = Column(String(200), nullable=False)
    content = Column(Text, nullable=True)
    related_user_id = Column(BigInteger, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)


class VoteOption(Base):
    __tablename__ = "group_vote_options"

    id = Column(Integer, primary_key=True, index=True)
    vote_id = Column(Integer, ForeignKey("group_votes.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    text = Column(String(300), nullable=False)
    votes = Column(Integer, default=0, nullable=False)


class VoteBallot(Base):
    __tablename__ = "group_vote_ballots"

    id = Column(Integer, primary_key=True, index=True)
    vote_id = Column(Integer, ForeignKey("group_votes.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False)
    selected_options = Column(JSON, default=list)
    voted_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("vote_id", "user_id", name="uq_vote_ballot_user"),
    )


class GroupVote(Base):
    __tablename__ = "group_votes"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_by = Column(BigInteger, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    vote_type = Column(SQLEnum(VoteType), default=VoteType.SINGLE, nullable=False)
    status = Column(SQLEnum(VoteStatus), default=VoteStatus.ACTIVE, nullable=False)
    results_visible = Column(Boolean, default=True, nullable=False)

    options = relationship("VoteOption", order_by=VoteOption.position, cascade="all, delete-orphan", lazy="selectin")
    ballots = relationship("VoteBallot", order_by=VoteBallot.id, cascade="all, delete-orphan", lazy="selectin")

    def is_open(self, now: datetime) -> bool:
        return self.status == VoteStatus.ACTIVE and self.expires_at > now

    def has_voted(self, user_id: int) -> bool:
        return any(ballot.user_id == user_id for ballot in self.ballots)

    def results(self) -> dict:
        return {option.text: option.votes for option in self.options}
