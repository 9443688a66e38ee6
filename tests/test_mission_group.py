"""Агрегат MissionGroup без БД: участники, лидерство, переходы статусов, цели"""

from datetime import timedelta

import pytest

from core.exceptions import AlreadyParticipating, GroupFull, InvalidStatusTransition, ProgressRegression
from models.group_member import MemberStatus
from models.interaction import NotificationType
from models.mission_group import GroupStatus, MissionGroup, StageStatus
from tests.conftest import NOW


class TestGroupCreation:
    def test_leader_is_first_active_member(self, make_template):
        template = make_template(member_objectives=[{"description": "Read", "target": 3}])
        group = MissionGroup.create(template, 1, NOW)

        assert group.status == GroupStatus.FORMING
        assert group.leader_id == 1
        assert [m.user_id for m in group.active_members] == [1]
        assert len(group.members[0].objectives) == 1
        assert group.leader_history[0].user_id == 1
        assert group.leader_history[0].ended_at is None
        assert group.rewards.reward_paid is False

    def test_objectives_seeded_from_template(self, make_template):
        template = make_template(group_objectives=[
            {"description": "Steps", "target": 10},
            {"description": "Photos", "target": 2, "optional": True},
        ])
        group = MissionGroup.create(template, 1, NOW)

        assert [o.description for o in group.objectives] == ["Steps", "Photos"]
        assert all(o.progress == 0 and not o.completed for o in group.objectives)
        # Необязательная цель тоже входит в критерий выполнения
        assert [o.description for o in group.completion_objectives()] == ["Steps", "Photos"]

    def test_first_stage_starts_immediately(self, make_template):
        template = make_template(stages=[{"name": "Warm-up"}, {"name": "Marathon"}])
        group = MissionGroup.create(template, 1, NOW)

        assert group.current_stage.name == "Warm-up"
        assert group.stages[1].status == StageStatus.NOT_STARTED


class TestMembership:
    def test_capacity_counts_pending_members(self, make_template):
        template = make_template(min_members=2, max_members=3)
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW, MemberStatus.PENDING)
        group.add_member(template, 3, NOW)

        assert group.seat_count == 3
        with pytest.raises(GroupFull):
            group.add_member(template, 4, NOW)

    def test_member_cannot_join_twice(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)

        with pytest.raises(AlreadyParticipating):
            group.add_member(template, 1, NOW)

    def test_join_adds_notification(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW)

        assert group.notifications[-1].notification_type == NotificationType.MEMBER_JOIN
        assert group.notifications[-1].related_user_id == 2

    def test_succession_prefers_earliest_joined(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 3, NOW + timedelta(hours=2))
        group.add_member(template, 2, NOW + timedelta(hours=1))

        assert group.succession_candidate(exclude_user_id=1).user_id == 2

    def test_assign_leader_closes_history(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW)
        group.assign_leader(2, NOW + timedelta(hours=1), "Transferred")

        assert group.leader_id == 2
        first, second = group.leader_history
        assert first.ended_at == NOW + timedelta(hours=1)
        assert first.successor_id == 2
        assert second.user_id == 2 and second.ended_at is None


class TestStatusTransitions:
    def test_forming_cannot_complete(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)

        with pytest.raises(InvalidStatusTransition):
            group.transition_to(GroupStatus.COMPLETED, NOW)

    def test_terminal_statuses_are_final(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)
        group.transition_to(GroupStatus.DISBANDED, NOW)

        assert group.is_terminal
        for target in GroupStatus:
            assert not group.can_transition_to(target)

    def test_pause_and_resume(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)
        group.transition_to(GroupStatus.ACTIVE, NOW)
        group.transition_to(GroupStatus.PAUSED, NOW)
        group.transition_to(GroupStatus.ACTIVE, NOW)

        assert group.status == GroupStatus.ACTIVE
        assert group.notifications[-1].notification_type == NotificationType.STATUS_CHANGE


class TestObjectiveProgress:
    def test_progress_clamps_to_target(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)
        objective = group.objectives[0]

        delta = objective.record_progress(25, 1, NOW)

        assert delta == 10
        assert objective.progress == 10
        assert objective.completed
        assert objective.progress_percentage == 100
        assert objective.history[-1].total_progress == 10

    def test_unchanged_value_writes_no_history(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)
        objective = group.objectives[0]
        objective.record_progress(4, 1, NOW)

        assert objective.record_progress(4, 1, NOW) == 0
        assert len(objective.history) == 1

    def test_decrease_requires_correction(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)
        objective = group.objectives[0]
        objective.record_progress(6, 1, NOW)

        with pytest.raises(ProgressRegression):
            objective.record_progress(2, 1, NOW)

        assert objective.record_progress(2, 1, NOW, correction=True) == -4
        assert objective.history[-1].is_correction

    def test_completion_is_not_revoked_by_correction(self, make_template):
        group = MissionGroup.create(make_template(), 1, NOW)
        objective = group.objectives[0]
        objective.record_progress(10, 1, NOW)
        objective.record_progress(8, 1, NOW, correction=True)

        assert objective.completed
