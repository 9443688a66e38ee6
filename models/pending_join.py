# models/pending_join.py

import enum
from datetime import datetime

from sqlalchemy import Column, Integer, BigInteger, String, DateTime, ForeignKey, Enum as SQLEnum

from models.base import Base


class PendingJoinStatus(enum.Enum):
    PENDING = "pending"
    MATCHED = "matched"
    CANCELLED = "cancelled"


class PendingJoinRequest(Base):
    """Заявка, ожидающая пакетного матчинга по дедлайну формирования"""
    __tablename__ = "pending_join_requests"

    id = Column(Integer, primary_key=True, index=True)
    mission_id = Column(Integer, ForeignKey("group_missions.id"), nullable=False, index=True)
    user_id = Column(BigInteger, nullable=False, index=True)
    status = Column(SQLEnum(PendingJoinStatus), default=PendingJoinStatus.PENDING, nullable=False, index=True)
    requested_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id"), nullable=True)
    note = Column(String(255), nullable=True)
    # Статус заявки меняется только с её текущей версии
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self):
        return f"<PendingJoinRequest mission={self.mission_id} user={self.user_id} {self.status.value}>"
