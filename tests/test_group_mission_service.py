"""Чтение: детали группы, мои группы, статистика миссии"""

import pytest

from core.exceptions import MissionNotFound, UnauthorizedAccess
from models.mission_group import GroupStatus
from services.group_mission_service import GroupMissionService
from services.objective_tracker import ObjectiveScope
from tests.conftest import ADMIN_ID


class TestGroupDetails:
    @pytest.mark.asyncio
    async def test_visibility(self, db_session, context, make_mission, make_users):
        mission = await make_mission(created_by=50)
        await make_users(1, 2)
        service = GroupMissionService(db_session, context)
        group_id = (await service.formation.request_join(mission.id, 1)).group_id

        assert (await service.get_group_details(group_id, 1)).id == group_id
        assert (await service.get_group_details(group_id, ADMIN_ID)).id == group_id
        assert (await service.get_group_details(group_id, 50)).id == group_id
        with pytest.raises(UnauthorizedAccess):
            await service.get_group_details(group_id, 2)

    @pytest.mark.asyncio
    async def test_user_groups_hide_departed(self, db_session, context, make_mission, make_users):
        first = await make_mission(title="Run", min_members=1)
        second = await make_mission(title="Read", min_members=1)
        await make_users(1)
        service = GroupMissionService(db_session, context)
        first_group = (await service.formation.request_join(first.id, 1)).group_id
        second_group = (await service.formation.request_join(second.id, 1)).group_id

        await service.state_machine.leave(first_group, 1)

        assert [g.id for g in await service.get_user_groups(1)] == [second_group]


class TestMissionStats:
    @pytest.mark.asyncio
    async def test_stats_by_status(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1, max_members=1)
        await make_users(1, 2, 3)
        service = GroupMissionService(db_session, context)
        active_id, _, disbanded_id = [
            (await service.formation.request_join(mission.id, user_id)).group_id for user_id in (1, 2, 3)
        ]
        await service.state_machine.activate(active_id, 1)
        objective_id = (await service.load_group(active_id)).objectives[0].id
        await service.objectives.apply_progress(active_id, ObjectiveScope.GROUP, objective_id, 5, 1)
        group = await service.state_machine.leave(disbanded_id, 3)
        assert group.status == GroupStatus.DISBANDED

        stats = await service.get_mission_stats(mission.id)

        assert stats["total_groups"] == 3
        assert (stats["forming_groups"], stats["active_groups"], stats["disbanded_groups"]) == (1, 1, 1)
        assert stats["total_participants"] == 2
        assert stats["average_completion"] == 50.0

    @pytest.mark.asyncio
    async def test_unknown_mission(self, db_session, context):
        with pytest.raises(MissionNotFound):
            await GroupMissionService(db_session, context).get_mission_stats(404)
