# services/template_store.py

"""
Хранилище шаблонов миссий. Для движка только чтение;
единственная запись — перевод статуса миссии после пакетного матчинга.
"""

import logging
from datetime import datetime
from typing import Dict, List

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import MissionNotFound
from models.group_mission import GroupMission
from schemas.mission_template import JOINABLE_MISSION_STATUSES, MissionStatus, MissionTemplate

logger = logging.getLogger(__name__)


class MissionTemplateStore:
    def __init__(self, db_session: AsyncSession):
        self.db_session = db_session
        self._cache: Dict[int, MissionTemplate] = {}

    async def get_mission(self, mission_id: int) -> GroupMission:
        result = await self.db_session.execute(select(GroupMission).where(GroupMission.id == mission_id).execution_options(populate_existing=True))
        mission = result.scalar_one_or_none()
        if not mission:
            raise MissionNotFound(mission_id)
        return mission

    async def get(self, mission_id: int) -> MissionTemplate:
        """Шаблон миссии по ID (MissionNotFound если нет)"""
        template = self._cache.get(mission_id)
        if template is None:
            mission = await self.get_mission(mission_id)
            template = mission.to_template()
            self._cache[mission_id] = template
        return template

    async def list_joinable(self, limit: int = 20) -> List[GroupMission]:
        """Публичные миссии, открытые для вступления"""
        result = await self.db_session.execute(
            select(GroupMission)
            .where(
                and_(
                    GroupMission.status.in_(JOINABLE_MISSION_STATUSES),
                    GroupMission.is_public == True,
                )
            )
            .order_by(GroupMission.start_date, GroupMission.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_needing_matching(self, now: datetime) -> List[GroupMission]:
        """Миссии с авто-матчингом, у которых прошёл дедлайн формирования"""
        result = await self.db_session.execute(
            select(GroupMission)
            .where(
                and_(
                    GroupMission.status == MissionStatus.FORMING_GROUPS,
                    GroupMission.auto_match == True,
                    GroupMission.formation_deadline.is_not(None),
                    GroupMission.formation_deadline <= now,
                )
            )
            .order_by(GroupMission.formation_deadline, GroupMission.id)
        )
        return list(result.scalars().all())

    async def advance_status(self, mission_id: int, from_status: MissionStatus, to_status: MissionStatus) -> bool:
        """
        Перевести миссию из from_status в to_status (без commit).
        Returns:
            False если миссия уже не в from_status
        """
        result = await self.db_session.execute(
            update(GroupMission)
            .where(and_(GroupMission.id == mission_id, GroupMission.status == from_status))
            .values(status=to_status, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        self._cache.pop(mission_id, None)
        if result.rowcount:
            logger.info(f"Mission {mission_id}: {from_status.value} -> {to_status.value}")
            return True
        logger.info(f"Mission {mission_id} is no longer {from_status.value}, status left unchanged")
        return False
