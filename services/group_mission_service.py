# services/group_mission_service.py

from __future__ import annotations

import logging
from typing import Any, Dict, List

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import UnauthorizedAccess
from models.group_member import GroupMember, MemberStatus
from models.mission_group import GroupStatus, MissionGroup
from services.base import BaseService
from services.context import EngineContext
from services.contribution_scorer import ContributionScorer
from services.group_formation_service import GroupFormationService
from services.group_interaction_service import GroupInteractionService
from services.group_state_machine import GroupStateMachine
from services.objective_tracker import ObjectiveTracker
from services.settlement_service import SettlementService
from services.template_store import MissionTemplateStore

logger = logging.getLogger(__name__)

# Участники, видящие группу в "моих группах"
VISIBLE_MEMBER_STATUSES = (MemberStatus.PENDING, MemberStatus.ACTIVE, MemberStatus.PAUSED, MemberStatus.COMPLETED)


class GroupMissionService(BaseService):
    """
    Точка входа движка для handlers: все компоненты, созданные
    на одной сессии и одном контексте, плюс запросы на чтение.
    """

    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)
        self.templates = MissionTemplateStore(db_session)
        self.formation = GroupFormationService(db_session, context)
        self.state_machine = GroupStateMachine(db_session, context)
        self.objectives = ObjectiveTracker(db_session, context)
        self.scorer = ContributionScorer(db_session, context)
        self.settlement = SettlementService(db_session, context)
        self.interactions = GroupInteractionService(db_session, context)

    # ========== ЧТЕНИЕ ==========

    async def get_group_details(self, group_id: int, user_id: int) -> MissionGroup:
        """Группа целиком: участникам (в т.ч. бывшим), автору миссии и админам"""
        group = await self.load_group(group_id)
        if group.get_member(user_id) is not None or self.is_admin(user_id):
            return group
        template = await self.get_template(group.mission_id)
        if template.created_by is not None and template.created_by == user_id:
            return group
        raise UnauthorizedAccess(user_id, "view group details")

    async def get_user_groups(self, user_id: int) -> List[MissionGroup]:
        """Группы, где пользователь сейчас состоит (новые первыми)"""
        result = await self.db_session.execute(
            select(MissionGroup)
            .join(GroupMember, GroupMember.group_id == MissionGroup.id)
            .where(
                and_(
                    GroupMember.user_id == user_id,
                    GroupMember.status.in_(VISIBLE_MEMBER_STATUSES),
                )
            )
            .order_by(MissionGroup.created_at.desc(), MissionGroup.id.desc())
            .distinct()
        )
        return list(result.scalars().all())

    async def get_mission_stats(self, mission_id: int) -> Dict[str, Any]:
        """Сводка по группам миссии"""
        await self.templates.get(mission_id)

        rows = await self.db_session.execute(
            select(MissionGroup.status, func.count(MissionGroup.id), func.avg(MissionGroup.completion_percentage))
            .where(MissionGroup.mission_id == mission_id)
            .group_by(MissionGroup.status)
        )
        by_status: Dict[GroupStatus, int] = {}
        weighted_completion = 0.0
        for status, count, average in rows.all():
            by_status[status] = count
            if status in (GroupStatus.ACTIVE, GroupStatus.COMPLETED):
                weighted_completion += float(average or 0) * count

        participants = await self.db_session.execute(
            select(func.count(func.distinct(GroupMember.user_id))).where(
                and_(
                    GroupMember.mission_id == mission_id,
                    GroupMember.status.in_((MemberStatus.ACTIVE, MemberStatus.COMPLETED)),
                )
            )
        )

        progressing = by_status.get(GroupStatus.ACTIVE, 0) + by_status.get(GroupStatus.COMPLETED, 0)
        return {
            "mission_id": mission_id,
            "total_groups": sum(by_status.values()),
            "forming_groups": by_status.get(GroupStatus.FORMING, 0),
            "active_groups": by_status.get(GroupStatus.ACTIVE, 0),
            "completed_groups": by_status.get(GroupStatus.COMPLETED, 0),
            "failed_groups": by_status.get(GroupStatus.FAILED, 0),
            "disbanded_groups": by_status.get(GroupStatus.DISBANDED, 0),
            "total_participants": participants.scalar_one() or 0,
            "average_completion": round(weighted_completion / progressing, 1) if progressing else 0.0,
        }
