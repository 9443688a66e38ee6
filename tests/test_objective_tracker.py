"""Прогресс целей, критерии выполнения и завершение группы"""

import pytest
from sqlalchemy import func, select

from core.exceptions import GroupNotActive, NotGroupMember, ObjectiveNotFound, ProgressRegression
from models.group_member import ActivityType, MemberStatus
from models.mission_group import GroupStatus, MissionGroup
from models.reward import RewardEvent
from services.group_formation_service import GroupFormationService
from services.group_state_machine import GroupStateMachine
from services.objective_tracker import (
    AllObjectivesCompletion,
    ObjectiveScope,
    ObjectiveTracker,
    ThresholdCompletion,
)
from tests.conftest import NOW


async def start_group(db_session, context, mission, user_ids):
    formation = GroupFormationService(db_session, context)
    group_id = None
    for user_id in user_ids:
        result = await formation.request_join(mission.id, user_id)
        group_id = group_id or result.group_id
    await GroupStateMachine(db_session, context).activate(group_id, user_ids[0])
    return group_id


class TestCompletionStrategies:
    def test_all_objectives_averages_capped_ratios(self, make_template):
        template = make_template(group_objectives=[
            {"description": "A", "target": 10},
            {"description": "B", "target": 4},
        ])
        group = MissionGroup.create(template, 1, NOW)
        group.objectives[0].record_progress(5, 1, NOW)
        group.objectives[1].record_progress(4, 1, NOW)

        assert AllObjectivesCompletion().percentage(group.objectives) == 75

    def test_threshold_counts_only_finished_objectives(self, make_template):
        template = make_template(group_objectives=[{"description": str(i), "target": 2} for i in range(5)])
        group = MissionGroup.create(template, 1, NOW)
        strategy = ThresholdCompletion(80)
        for objective in group.objectives:
            objective.record_progress(1, 1, NOW)

        assert strategy.required_count(5) == 4
        assert strategy.percentage(group.objectives) == 0

    def test_recalculate_caps_display_below_completion(self, make_template):
        template = make_template(group_objectives=[{"description": "Steps", "target": 1000}])
        group = MissionGroup.create(template, 1, NOW)
        group.objectives[0].record_progress(999.9, 1, NOW)

        percentage = ObjectiveTracker.recalculate(group, template)

        assert percentage < 100
        assert group.completion_percentage == 99


class TestApplyProgress:
    @pytest.mark.asyncio
    async def test_member_objective_clamps_and_completes_once(self, db_session, context, make_mission, make_users):
        """target=10, шаги +3, +4, +5: выполнено только после третьего, прогресс 10"""
        mission = await make_mission(
            min_members=1,
            group_objectives=[],
            member_objectives=[{"description": "Push-ups", "target": 10}],
        )
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        group = await tracker.load_group(group_id)
        objective_id = group.get_member(1).objectives[0].id

        first = await tracker.apply_progress(group_id, ObjectiveScope.MEMBER, objective_id, 3, 1)
        second = await tracker.apply_progress(group_id, ObjectiveScope.MEMBER, objective_id, 7, 1)
        third = await tracker.apply_progress(group_id, ObjectiveScope.MEMBER, objective_id, 12, 1)

        assert (first.progress, first.objective_completed) == (3, False)
        assert (second.progress, second.objective_completed) == (7, False)
        assert second.completion_percentage == 70
        assert (third.progress, third.delta, third.objective_completed) == (10, 3, True)
        assert third.group_completed
        assert third.completion_percentage == 100

        group = await tracker.load_group(group_id)
        member = group.get_member(1)
        assert member.status == MemberStatus.COMPLETED
        assert [entry.delta for entry in member.objectives[0].history] == [3, 4, 3]
        assert group.status == GroupStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_progress_never_decreases_silently(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        objective_id = (await tracker.load_group(group_id)).objectives[0].id

        await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 6, 1)
        with pytest.raises(ProgressRegression):
            await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 2, 1)

        group = await tracker.load_group(group_id)
        assert group.objectives[0].progress == 6

        corrected = await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 2, 1, correction=True)
        assert corrected.delta == -4
        assert corrected.completion_percentage == 20

    @pytest.mark.asyncio
    async def test_same_value_is_a_noop(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        objective_id = (await tracker.load_group(group_id)).objectives[0].id

        await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 4, 1)
        result = await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 4, 1)

        assert result.delta == 0
        group = await tracker.load_group(group_id)
        assert len(group.objectives[0].history) == 1

    @pytest.mark.asyncio
    async def test_threshold_completion_at_four_of_five(self, db_session, context, make_mission, make_users):
        mission = await make_mission(
            min_members=1,
            group_objectives=[{"description": f"Task {i}", "target": 1} for i in range(5)],
            objectives={"completion_criteria": "percentage", "completion_percentage": 80},
        )
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        objective_ids = [o.id for o in (await tracker.load_group(group_id)).objectives]

        results = [
            await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 1, 1)
            for objective_id in objective_ids[:4]
        ]

        assert [r.group_completed for r in results] == [False, False, False, True]
        assert [r.completion_percentage for r in results] == [25, 50, 75, 100]
        # Пятая цель после завершения уже не принимается
        with pytest.raises(GroupNotActive):
            await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_ids[4], 1, 1)

    @pytest.mark.asyncio
    async def test_optional_objective_counts_toward_threshold(self, db_session, context, make_mission, make_users):
        mission = await make_mission(
            min_members=1,
            group_objectives=[
                *({"description": f"Task {i}", "target": 1} for i in range(4)),
                {"description": "Bonus photo", "target": 1, "optional": True},
            ],
            objectives={"completion_criteria": "percentage", "completion_percentage": 80},
        )
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        objective_ids = [o.id for o in (await tracker.load_group(group_id)).objectives]

        for objective_id in objective_ids[:3]:
            await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 1, 1)
        result = await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_ids[4], 1, 1)

        assert result.group_completed
        assert result.completion_percentage == 100

    @pytest.mark.asyncio
    async def test_progress_logs_activity(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1, group_objectives=[{"description": "Km", "target": 100}])
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        objective_id = (await tracker.load_group(group_id)).objectives[0].id

        await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 0.5, 1)
        await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 20.5, 1)

        group = await tracker.load_group(group_id)
        updates = [e for e in group.get_member(1).activity_log if e.activity_type == ActivityType.PROGRESS_UPDATE]
        assert [e.activity_score for e in updates] == [1, 20]

    @pytest.mark.asyncio
    async def test_completion_settles_rewards(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=2, rewards={"group_rewards": {"xp": 100}})
        await make_users(1, 2)
        group_id = await start_group(db_session, context, mission, [1, 2])
        tracker = ObjectiveTracker(db_session, context)
        objective_id = (await tracker.load_group(group_id)).objectives[0].id

        result = await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 10, 2)

        assert result.group_completed
        assert result.rewards_queued == 2
        count = await db_session.execute(select(func.count(RewardEvent.id)).where(RewardEvent.group_id == group_id))
        assert count.scalar_one() == 2
        group = await tracker.load_group(group_id)
        assert group.rewards.reward_paid
        assert group.completed_early


class TestProgressAccess:
    @pytest.mark.asyncio
    async def test_non_member_is_rejected(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])
        tracker = ObjectiveTracker(db_session, context)
        objective_id = (await tracker.load_group(group_id)).objectives[0].id

        with pytest.raises(NotGroupMember):
            await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 1, 42)

    @pytest.mark.asyncio
    async def test_unknown_objective(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = await start_group(db_session, context, mission, [1])

        with pytest.raises(ObjectiveNotFound):
            await ObjectiveTracker(db_session, context).apply_progress(group_id, ObjectiveScope.GROUP, 9999, 1, 1)

    @pytest.mark.asyncio
    async def test_forming_group_rejects_progress(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=2)
        await make_users(1)
        result = await GroupFormationService(db_session, context).request_join(mission.id, 1)
        tracker = ObjectiveTracker(db_session, context)
        objective_id = (await tracker.load_group(result.group_id)).objectives[0].id

        with pytest.raises(GroupNotActive):
            await tracker.apply_progress(result.group_id, ObjectiveScope.GROUP, objective_id, 1, 1)
