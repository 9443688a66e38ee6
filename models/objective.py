# models/objective.py

"""
Цели группы и участников.
Прогресс никогда не превышает target и не уменьшается без явной коррекции.
Каждое изменение пишется в историю.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, Float, ForeignKey
from sqlalchemy.orm import relationship

from core.exceptions import ProgressRegression
from models.base import Base
from utils.numbers import round_half_up


class ObjectiveProgressEntry(Base):
    """Запись истории прогресса (append-only)"""
    __tablename__ = "objective_progress_history"

    id = Column(Integer, primary_key=True, index=True)
    group_objective_id = Column(Integer, ForeignKey("group_objectives.id", ondelete="CASCADE"), nullable=True, index=True)
    member_objective_id = Column(Integer, ForeignKey("member_objectives.id", ondelete="CASCADE"), nullable=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    delta = Column(Float, nullable=False)
    total_progress = Column(Float, nullable=False)
    progress_percentage = Column(Integer, nullable=True)
    acting_user_id = Column(BigInteger, nullable=True)
    note = Column(String(500), nullable=True)
    is_correction = Column(Boolean, default=False, nullable=False)

    def __repr__(self):
        return f"<ObjectiveProgressEntry delta={self.delta:+g} total={self.total_progress:g}>"


class ObjectiveMixin:
    """Общая логика прогресса для целей группы и участника"""

    definition_index = Column(Integer, nullable=False, default=0)  # Индекс в шаблоне
    description = Column(String(500), nullable=False)
    target = Column(Float, nullable=False)
    unit = Column(String(50), default="times")
    optional = Column(Boolean, default=False, nullable=False)

    progress = Column(Float, default=0, nullable=False)
    completed = Column(Boolean, default=False, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=True)

    @property
    def ratio(self) -> float:
        if not self.target:
            return 0.0
        return min((self.progress or 0) / self.target, 1.0)

    @property
    def percentage(self) -> int:
        return round_half_up(self.ratio * 100)

    def clamp(self, value: float) -> float:
        return max(0.0, min(float(value), float(self.target)))

    def record_progress(
        self,
        new_value: float,
        acting_user_id: Optional[int],
        now: datetime,
        note: Optional[str] = None,
        correction: bool = False,
    ) -> float:
        """
        Установить новое значение прогресса.

        Returns:
            Применённая дельта (0 — изменений нет, история не пишется)
        """
        current = float(self.progress or 0)
        clamped = self.clamp(new_value)
        delta = clamped - current
        if delta == 0:
            return 0.0
        if delta < 0 and not correction:
            raise ProgressRegression(self.id, current, clamped)

        self.progress = clamped
        self.last_updated = now

        # Завершение фиксируется один раз и не снимается
        if clamped >= self.target and not self.completed:
            self.completed = True
            self.completed_at = now

        self._on_progress_changed()

        if note is None:
            note = f"{'Correction' if correction else 'Progress update'}: {delta:+g}"
        self.history.append(ObjectiveProgressEntry(
            timestamp=now,
            delta=delta,
            total_progress=clamped,
            progress_percentage=self.percentage,
            acting_user_id=acting_user_id,
            note=note,
            is_correction=correction,
        ))
        return delta

    def _on_progress_changed(self) -> None:
        pass


class GroupObjective(ObjectiveMixin, Base):
    """Общая цель группы"""
    __tablename__ = "group_objectives"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(Integer, ForeignKey("mission_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    progress_percentage = Column(Integer, default=0, nullable=False)

    history = relationship(
        "ObjectiveProgressEntry",
        foreign_keys=[ObjectiveProgressEntry.group_objective_id],
        order_by=[ObjectiveProgressEntry.timestamp, ObjectiveProgressEntry.id],
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def _on_progress_changed(self) -> None:
        self.progress_percentage = self.percentage

    def __repr__(self):
        return f"<GroupObjective {self.id} {self.progress:g}/{self.target:g}>"


class MemberObjective(ObjectiveMixin, Base):
    """Личная цель участника"""
    __tablename__ = "member_objectives"

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, ForeignKey("group_members.id", ondelete="CASCADE"), nullable=False, index=True)

    history = relationship(
        "ObjectiveProgressEntry",
        foreign_keys=[ObjectiveProgressEntry.member_objective_id],
        order_by=[ObjectiveProgressEntry.timestamp, ObjectiveProgressEntry.id],
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self):
        return f"<MemberObjective {self.id} {self.progress:g}/{self.target:g}>"
