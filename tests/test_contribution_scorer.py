"""Вклад участников: стратегии, ранги, оценки"""

from datetime import timedelta

import pytest

from core.exceptions import FeatureDisabled, GroupNotActive, InvalidRating, NotGroupMember
from models.group_member import ActivityType, MemberStatus
from models.mission_group import MissionGroup
from services.contribution_scorer import (
    ContributionScorer,
    activity_scores,
    leader_score,
    peer_score,
    rank_members,
)
from services.group_formation_service import GroupFormationService
from services.group_state_machine import GroupStateMachine
from tests.conftest import NOW


def build_group(make_template, user_ids, **config):
    template = make_template(**config)
    group = MissionGroup.create(template, user_ids[0], NOW)
    for offset, user_id in enumerate(user_ids[1:], start=1):
        group.add_member(template, user_id, NOW + timedelta(minutes=offset))
    return template, group


class TestScoreInputs:
    def test_activity_scores_normalised_to_top(self, make_template):
        _, group = build_group(make_template, [1, 2, 3])
        a, b, c = group.members
        a.log_activity(ActivityType.PROGRESS_UPDATE, NOW, activity_score=8)
        b.log_activity(ActivityType.CHAT_MESSAGE, NOW, activity_score=2)

        assert activity_scores([a, b, c]) == [100, 25, 0]

    def test_no_activity_means_equal_scores(self, make_template):
        _, group = build_group(make_template, [1, 2])

        assert activity_scores(group.members) == [100, 100]

    def test_peer_score_uses_latest_rating_per_rater(self, make_template):
        _, group = build_group(make_template, [1, 2, 3])
        ratee = group.members[0]
        ratee.add_rating(2, 1, NOW)
        ratee.add_rating(2, 5, NOW)
        ratee.add_rating(3, 3, NOW)

        assert peer_score(ratee) == 80

    def test_leader_score_ignores_peer_ratings(self, make_template):
        _, group = build_group(make_template, [1, 2])
        ratee = group.members[1]
        ratee.add_rating(2, 5, NOW)

        assert leader_score(ratee) == 0
        ratee.add_rating(1, 4, NOW, by_leader=True)
        assert leader_score(ratee) == 80


class TestRanking:
    def test_ties_break_by_join_time(self, make_template):
        _, group = build_group(make_template, [1, 2, 3])
        for member, score in zip(group.members, [50, 90, 50]):
            member.final_score = score

        rank_members(group.members)

        assert [(m.user_id, m.rank, m.percentile) for m in group.members] == [(1, 2, 67), (2, 1, 100), (3, 3, 33)]

    def test_score_group_uses_mission_strategy(self, make_template):
        template, group = build_group(
            make_template, [1, 2],
            interactions={"contribution_tracking": "activity"},
        )
        group.members[1].log_activity(ActivityType.PROGRESS_UPDATE, NOW, activity_score=4)
        group.members[0].log_activity(ActivityType.CHAT_MESSAGE, NOW, activity_score=1)

        ContributionScorer(None, None).score_group(group, template)

        assert [m.final_score for m in group.members] == [25, 100]
        assert [m.rank for m in group.members] == [2, 1]

    def test_departed_members_are_not_scored(self, make_template):
        template, group = build_group(make_template, [1, 2])
        group.members[1].mark_departed(MemberStatus.LEFT, NOW, "bye")

        ContributionScorer(None, None).score_group(group, template)

        assert group.members[0].rank == 1
        assert group.members[1].rank is None
        assert group.members[1].final_score == 0


class TestRatings:
    async def _active_group(self, db_session, context, make_mission, make_users, **config):
        mission = await make_mission(min_members=2, **config)
        await make_users(1, 2, 3)
        formation = GroupFormationService(db_session, context)
        group_id = (await formation.request_join(mission.id, 1)).group_id
        await formation.request_join(mission.id, 2)
        await formation.request_join(mission.id, 3)
        await GroupStateMachine(db_session, context).activate(group_id, 1)
        return group_id

    @pytest.mark.asyncio
    async def test_peer_rating_updates_scores(self, db_session, context, make_mission, make_users):
        group_id = await self._active_group(
            db_session, context, make_mission, make_users,
            interactions={"contribution_tracking": "peer_rating"},
        )
        scorer = ContributionScorer(db_session, context)

        await scorer.submit_rating(group_id, 1, 2, 5)
        await scorer.submit_rating(group_id, 3, 2, 4)

        group = await scorer.load_group(group_id)
        member = group.get_member(2)
        assert member.peer_score == 90
        assert member.final_score == 90
        assert member.rank == 1
        # Оценивший получает активность за отзыв
        assert any(e.activity_type == ActivityType.REVIEW for e in group.get_member(3).activity_log)

    @pytest.mark.asyncio
    async def test_peer_rating_disabled(self, db_session, context, make_mission, make_users):
        group_id = await self._active_group(db_session, context, make_mission, make_users)

        with pytest.raises(FeatureDisabled):
            await ContributionScorer(db_session, context).submit_rating(group_id, 1, 2, 5)

    @pytest.mark.asyncio
    async def test_invalid_ratings(self, db_session, context, make_mission, make_users):
        group_id = await self._active_group(
            db_session, context, make_mission, make_users,
            interactions={"enable_peer_rating": True},
        )
        scorer = ContributionScorer(db_session, context)

        with pytest.raises(InvalidRating):
            await scorer.submit_rating(group_id, 1, 2, 6)
        with pytest.raises(InvalidRating):
            await scorer.submit_rating(group_id, 2, 2, 5)
        with pytest.raises(NotGroupMember):
            await scorer.submit_rating(group_id, 1, 42, 3)

    @pytest.mark.asyncio
    async def test_leader_rating_mode(self, db_session, context, make_mission, make_users):
        group_id = await self._active_group(
            db_session, context, make_mission, make_users,
            interactions={"contribution_tracking": "leader_rating"},
        )
        scorer = ContributionScorer(db_session, context)

        await scorer.submit_rating(group_id, 1, 3, 5)
        await scorer.submit_rating(group_id, 1, 1, 3)

        group = await scorer.load_group(group_id)
        assert group.get_member(3).leader_score == 100
        assert group.get_member(1).leader_score == 60
        assert group.get_member(2).final_score == 0
        assert [group.get_member(u).rank for u in (3, 1, 2)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_rating_requires_active_group(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=2, interactions={"enable_peer_rating": True})
        await make_users(1, 2)
        formation = GroupFormationService(db_session, context)
        group_id = (await formation.request_join(mission.id, 1)).group_id
        await formation.request_join(mission.id, 2)

        with pytest.raises(GroupNotActive):
            await ContributionScorer(db_session, context).submit_rating(group_id, 1, 2, 4)

    @pytest.mark.asyncio
    async def test_recompute_skips_finished_groups(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = (await GroupFormationService(db_session, context).request_join(mission.id, 1)).group_id
        await GroupStateMachine(db_session, context).leave(group_id, 1)

        assert await ContributionScorer(db_session, context).recompute(group_id) is False
