"""Жизненный цикл группы: запуск, пауза, выход с передачей лидерства, этапы, дедлайны"""

from datetime import timedelta

import pytest

from core.exceptions import (
    GroupNotActive,
    InvalidStatusTransition,
    NotEnoughMembers,
    NotGroupMember,
    StageOrderViolation,
    UnauthorizedAccess,
    ValidationFailed,
)
from models.group_member import MemberStatus
from models.mission_group import GroupStatus, StageStatus
from services.group_formation_service import GroupFormationService
from services.group_state_machine import GroupStateMachine
from tests.conftest import ADMIN_ID, NOW


async def form_group(db_session, context, clock, mission, user_ids):
    """Первый пользователь создаёт группу, остальные вступают с интервалом в час"""
    formation = GroupFormationService(db_session, context)
    group_id = None
    for user_id in user_ids:
        result = await formation.request_join(mission.id, user_id)
        group_id = group_id or result.group_id
        assert result.group_id == group_id
        clock.advance(hours=1)
    return group_id


class TestActivation:
    @pytest.mark.asyncio
    async def test_start_requires_min_members(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=2)
        await make_users(1)
        group_id = await form_group(db_session, context, clock, mission, [1])
        machine = GroupStateMachine(db_session, context)

        with pytest.raises(NotEnoughMembers):
            await machine.activate(group_id, 1)

        group = await machine.load_group(group_id)
        assert group.status == GroupStatus.FORMING

    @pytest.mark.asyncio
    async def test_only_leader_or_admin_starts(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=2)
        await make_users(1, 2)
        group_id = await form_group(db_session, context, clock, mission, [1, 2])
        machine = GroupStateMachine(db_session, context)

        with pytest.raises(UnauthorizedAccess):
            await machine.activate(group_id, 2)

        group = await machine.activate(group_id, ADMIN_ID)
        assert group.status == GroupStatus.ACTIVE
        assert group.started_at == clock()

    @pytest.mark.asyncio
    async def test_pause_resume_cycle(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = await form_group(db_session, context, clock, mission, [1])
        machine = GroupStateMachine(db_session, context)

        with pytest.raises(InvalidStatusTransition):
            await machine.pause(group_id, 1)

        await machine.activate(group_id, 1)
        assert (await machine.pause(group_id, 1)).status == GroupStatus.PAUSED
        assert (await machine.resume(group_id, 1)).status == GroupStatus.ACTIVE


class TestLeaderSuccession:
    @pytest.mark.asyncio
    async def test_earliest_joined_member_becomes_leader(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1, 2, 3)
        group_id = await form_group(db_session, context, clock, mission, [1, 2, 3])
        machine = GroupStateMachine(db_session, context)

        group = await machine.leave(group_id, 1, "Moving away")
        assert group.leader_id == 2
        assert group.get_member(1).status == MemberStatus.LEFT
        assert group.leader_history[0].successor_id == 2

        group = await machine.leave(group_id, 2)
        assert group.leader_id == 3
        assert group.status == GroupStatus.FORMING

        group = await machine.leave(group_id, 3)
        assert group.status == GroupStatus.DISBANDED
        assert group.leader_id is None
        assert all(entry.ended_at is not None for entry in group.leader_history)

    @pytest.mark.asyncio
    async def test_regular_member_leaving_keeps_leader(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1, 2)
        group_id = await form_group(db_session, context, clock, mission, [1, 2])
        machine = GroupStateMachine(db_session, context)

        group = await machine.leave(group_id, 2)

        assert group.leader_id == 1
        assert len(group.leader_history) == 1

    @pytest.mark.asyncio
    async def test_kick_requires_leader(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1, 2, 3)
        group_id = await form_group(db_session, context, clock, mission, [1, 2, 3])
        machine = GroupStateMachine(db_session, context)

        with pytest.raises(UnauthorizedAccess):
            await machine.kick(group_id, 2, 3)

        group = await machine.kick(group_id, 1, 3, "Inactive")
        assert group.get_member(3).status == MemberStatus.KICKED
        assert group.get_member(3).leave_reason == "Inactive"

    @pytest.mark.asyncio
    async def test_transfer_leadership(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1, 2)
        group_id = await form_group(db_session, context, clock, mission, [1, 2])
        machine = GroupStateMachine(db_session, context)

        with pytest.raises(NotGroupMember):
            await machine.transfer_leadership(group_id, 1, 77)

        group = await machine.transfer_leadership(group_id, 1, 2)
        assert group.leader_id == 2
        assert group.is_leader(2) and not group.is_leader(1)

    @pytest.mark.asyncio
    async def test_leave_mission_cancels_queue(self, db_session, context, make_mission, make_users):
        mission = await make_mission(formation_deadline=NOW + timedelta(hours=1))
        await make_users(1)
        await GroupFormationService(db_session, context).request_join(mission.id, 1, auto_join=False)
        machine = GroupStateMachine(db_session, context)

        assert await machine.leave_mission(mission.id, 1) is None
        with pytest.raises(ValidationFailed):
            await machine.leave_mission(mission.id, 1)


class TestStages:
    @pytest.mark.asyncio
    async def test_stages_complete_in_order(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(
            min_members=1,
            stages=[{"name": "Warm-up"}, {"name": "Distance"}, {"name": "Cool-down", "requires_previous_stage": False}],
        )
        await make_users(1)
        group_id = await form_group(db_session, context, clock, mission, [1])
        machine = GroupStateMachine(db_session, context)
        await machine.activate(group_id, 1)

        with pytest.raises(StageOrderViolation):
            await machine.complete_stage(group_id, 1, 1)

        stage = await machine.complete_stage(group_id, 1, 0)
        assert stage.status == StageStatus.COMPLETED

        group = await machine.load_group(group_id)
        assert group.current_stage.name == "Distance"

        skipped = await machine.skip_stage(group_id, 1, 1)
        assert skipped.status == StageStatus.SKIPPED

        group = await machine.load_group(group_id)
        assert group.current_stage.name == "Cool-down"

    @pytest.mark.asyncio
    async def test_stage_needs_active_group(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1, stages=[{"name": "Warm-up"}])
        await make_users(1)
        group_id = await form_group(db_session, context, clock, mission, [1])

        with pytest.raises(GroupNotActive):
            await GroupStateMachine(db_session, context).complete_stage(group_id, 1, 0)


class TestDeadlines:
    @pytest.mark.asyncio
    async def test_overdue_groups_are_closed(self, db_session, context, clock, make_mission, make_users):
        mission = await make_mission(min_members=1, max_members=1, end_date=NOW + timedelta(days=1))
        await make_users(1, 2)
        machine = GroupStateMachine(db_session, context)
        active_id = await form_group(db_session, context, clock, mission, [1])
        forming_id = await form_group(db_session, context, clock, mission, [2])
        await machine.activate(active_id, 1)

        assert await machine.fail_overdue_groups(now=NOW + timedelta(hours=12)) == 0
        assert await machine.fail_overdue_groups(now=NOW + timedelta(days=2)) == 2

        assert (await machine.load_group(active_id)).status == GroupStatus.FAILED
        assert (await machine.load_group(forming_id)).status == GroupStatus.DISBANDED
        assert await machine.fail_overdue_groups(now=NOW + timedelta(days=3)) == 0
