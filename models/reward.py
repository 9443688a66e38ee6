# models/reward.py

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, Float, ForeignKey, JSON, UniqueConstraint, Enum as SQLEnum

from models.base import Base
from schemas.mission_template import DistributionMethod


class GroupRewardRecord(Base):
    """Итог расчёта наград группы (заполняется один раз при settlement)"""
    __tablename__ = "group_reward_records"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, unique=True)
    distribution_method = Column(SQLEnum(DistributionMethod), default=DistributionMethod.EQUAL, nullable=False)

    reward_paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime, nullable=True)
    xp = Column(Integer, default=0, nullable=False)
    token_amount = Column(Float, default=0, nullable=False)

    bonus_reward_paid = Column(Boolean, default=False, nullable=False)
    bonus_xp = Column(Integer, default=0, nullable=False)
    bonus_token_amount = Column(Float, default=0, nullable=False)

    nft_requested = Column(Boolean, default=False, nullable=False)


class RewardEventStatus(enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"


class RewardEvent(Base):
    """
    Outbox запись "награда к выдаче".
    Создаётся в одной транзакции с reward_paid, во внешний сервис
    уходит отдельно (at-least-once).
    """
    __tablename__ = "reward_events"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id"), nullable=False, index=True)
    mission_id = Column(Integer, ForeignKey("group_missions.id"), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False, index=True)

    xp = Column(Integer, default=0, nullable=False)
    token_amount = Column(Float, default=0, nullable=False)
    nft_requested = Column(Boolean, default=False, nullable=False)
    nft_type = Column(String(50), nullable=True)
    nft_rarity = Column(String(50), nullable=True)
    breakdown = Column(JSON, default=dict)

    status = Column(SQLEnum(RewardEventStatus), default=RewardEventStatus.PENDING, nullable=False, index=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    dispatched_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_reward_event_group_user"),
    )

    def __repr__(self):
        return f"<RewardEvent group={self.group_id} user={self.user_id} xp={self.xp} tokens={self.token_amount}>"
