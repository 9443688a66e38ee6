# models/group_mission.py

from sqlalchemy import Column, Integer, BigInteger, String, Text, Boolean, DateTime, JSON, Enum as SQLEnum
from datetime import datetime

from models.base import Base
from schemas.mission_template import MissionStatus, MissionTemplate


class GroupMission(Base):
    """
    Шаблон групповой миссии.
    Поля, по которым идут выборки (статус, дедлайн, даты), лежат в колонках,
    остальная конфигурация — в JSON `config` и валидируется MissionTemplate.
    """
    __tablename__ = "group_missions"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    mission_type = Column(String(50), default="social")
    difficulty = Column(Integer, default=2)

    status = Column(SQLEnum(MissionStatus), default=MissionStatus.DRAFT, nullable=False, index=True)

    # Формирование групп
    auto_match = Column(Boolean, default=True, nullable=False)
    formation_deadline = Column(DateTime, nullable=True)

    # Временное окно миссии
    start_date = Column(DateTime, nullable=False)
    end_date = Column(DateTime, nullable=False)

    # group_settings (без auto_match/deadline), stages, objectives, rewards,
    # interactions, join_requirements
    config = Column(JSON, default=dict, nullable=False)

    tags = Column(JSON, default=list)
    is_public = Column(Boolean, default=True)
    created_by = Column(BigInteger, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_template(self) -> MissionTemplate:
        """Собрать неизменяемый шаблон из строки БД"""
        config = dict(self.config or {})
        group_settings = dict(config.get("group_settings") or {})
        group_settings["auto_match"] = self.auto_match
        group_settings["formation_deadline"] = self.formation_deadline

        time_settings = dict(config.get("time_settings") or {})
        time_settings["start_date"] = self.start_date
        time_settings["end_date"] = self.end_date

        return MissionTemplate.model_validate({
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "created_by": self.created_by,
            "group_settings": group_settings,
            "time_settings": time_settings,
            "objectives": config.get("objectives") or {},
            "rewards": config.get("rewards") or {},
            "interactions": config.get("interactions") or {},
            "join_requirements": config.get("join_requirements") or {},
        })

    def __repr__(self):
        return f"<GroupMission {self.id} '{self.title}' ({self.status.value if self.status else None})>"
