"""Расчёт наград, бонусы, идемпотентность и отправка outbox"""

import dataclasses
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from core.exceptions import AlreadySettled, GroupNotActive
from models.group_member import ActivityType
from models.mission_group import MissionGroup
from models.reward import RewardEvent, RewardEventStatus
from schemas.mission_template import DistributionMethod, RewardAmount
from services.contribution_scorer import ContributionScorer
from services.group_formation_service import GroupFormationService
from services.group_state_machine import GroupStateMachine
from services.objective_tracker import ObjectiveScope, ObjectiveTracker
from services.reward_sink import RewardDispatcher, RewardDue, RewardSink
from services.settlement_service import SettlementService, split_pool, top_contributor_cutoff
from tests.conftest import NOW

REWARDS = {
    "group_rewards": {"xp": 100, "token_amount": 10},
    "member_rewards": {"xp": 10, "nft": {"issue": True, "type": "badge", "rarity": "rare"}},
    "bonus_rewards": {
        "full_completion": {"xp": 20},
        "early_completion": {"xp": 5, "token_amount": 0.5},
        "top_contributor": {"xp": 50, "percentage": 20},
    },
}


class TestSplitPool:
    def test_equal_split_floors_xp(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW)
        group.add_member(template, 3, NOW)

        shares = split_pool(RewardAmount(xp=100, token_amount=10), group.members, DistributionMethod.EQUAL)

        assert shares == [(33, 3.3333)] * 3

    def test_contribution_based_split(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW)
        group.members[0].final_score = 75
        group.members[1].final_score = 25

        shares = split_pool(RewardAmount(xp=100, token_amount=1), group.members, DistributionMethod.CONTRIBUTION_BASED)

        assert shares == [(75, 0.75), (25, 0.25)]

    def test_contribution_based_without_scores_splits_equally(self, make_template):
        template = make_template()
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW)

        shares = split_pool(RewardAmount(xp=10), group.members, DistributionMethod.CONTRIBUTION_BASED)

        assert shares == [(5, 0.0), (5, 0.0)]

    @pytest.mark.parametrize("members,percentage,expected", [(1, 20, 1), (5, 20, 1), (6, 20, 2), (10, 50, 5)])
    def test_top_contributor_cutoff(self, members, percentage, expected):
        assert top_contributor_cutoff(members, percentage) == expected


async def complete_group(db_session, context, make_mission, make_users, **config):
    mission = await make_mission(min_members=2, rewards=REWARDS, **config)
    await make_users(1, 2)
    formation = GroupFormationService(db_session, context)
    group_id = (await formation.request_join(mission.id, 1)).group_id
    await formation.request_join(mission.id, 2)
    await GroupStateMachine(db_session, context).activate(group_id, 1)
    tracker = ObjectiveTracker(db_session, context)
    objective_id = (await tracker.load_group(group_id)).objectives[0].id
    await tracker.apply_progress(group_id, ObjectiveScope.GROUP, objective_id, 10, 2)
    return group_id


async def reward_events(db_session, group_id):
    result = await db_session.execute(
        select(RewardEvent).where(RewardEvent.group_id == group_id).order_by(RewardEvent.user_id)
    )
    return list(result.scalars().all())


class TestSettlement:
    @pytest.mark.asyncio
    async def test_rewards_with_bonuses(self, db_session, context, make_mission, make_users):
        group_id = await complete_group(db_session, context, make_mission, make_users)

        leader, member = await reward_events(db_session, group_id)

        # Равный вклад: топ-бонус получает раньше вступивший
        assert leader.xp == 50 + 10 + 20 + 5 + 50
        assert member.xp == 50 + 10 + 20 + 5
        assert leader.token_amount == member.token_amount == 5.5
        assert leader.nft_requested and leader.nft_rarity == "rare"
        assert set(leader.breakdown) == {"group_share", "member_base", "full_completion", "early_completion", "top_contributor"}
        assert "top_contributor" not in member.breakdown
        assert leader.status == RewardEventStatus.PENDING

        group = await SettlementService(db_session, context).load_group(group_id)
        assert group.rewards.reward_paid
        assert group.rewards.bonus_xp == 20 + 5 + 50 + 20 + 5
        assert all(m.base_reward_paid for m in group.participating_members)

    @pytest.mark.asyncio
    async def test_settle_is_idempotent(self, db_session, context, make_mission, make_users):
        group_id = await complete_group(db_session, context, make_mission, make_users)
        service = SettlementService(db_session, context)

        assert await service.settle(group_id) == []
        assert await service.settle(group_id) == []

        count = await db_session.execute(select(func.count(RewardEvent.id)).where(RewardEvent.group_id == group_id))
        assert count.scalar_one() == 2

        group = await service.load_group(group_id)
        template = await service.get_template(group.mission_id)
        with pytest.raises(AlreadySettled):
            service.settle_group(group, template, NOW)

    @pytest.mark.asyncio
    async def test_settle_requires_completed_group(self, db_session, context, make_mission, make_users):
        mission = await make_mission(min_members=1)
        await make_users(1)
        group_id = (await GroupFormationService(db_session, context).request_join(mission.id, 1)).group_id

        with pytest.raises(GroupNotActive):
            await SettlementService(db_session, context).settle(group_id)

    def test_contribution_based_distribution(self, make_template):
        template = make_template(
            rewards={**REWARDS, "distribution_method": "contribution_based"},
            interactions={"contribution_tracking": "activity"},
        )
        group = MissionGroup.create(template, 1, NOW)
        group.add_member(template, 2, NOW)
        group.members[0].log_activity(ActivityType.CUSTOM, NOW, activity_score=4)
        group.members[1].log_activity(ActivityType.CUSTOM, NOW, activity_score=1)
        ContributionScorer(None, None).score_group(group, template)

        shares = split_pool(template.rewards.group_rewards, group.participating_members, template.rewards.distribution_method)

        assert shares == [(80, 8.0), (20, 2.0)]


class TestRewardDispatcher:
    @pytest.mark.asyncio
    async def test_dispatch_marks_events(self, db_session, context, make_mission, make_users):
        group_id = await complete_group(db_session, context, make_mission, make_users)
        sink = AsyncMock(spec=RewardSink)
        dispatcher = RewardDispatcher(db_session, dataclasses.replace(context, reward_sink=sink))

        assert await dispatcher.dispatch_pending() == 2
        assert await dispatcher.dispatch_pending() == 0

        emitted = [call.args[0] for call in sink.emit.await_args_list]
        assert all(isinstance(reward, RewardDue) for reward in emitted)
        assert {reward.member_id for reward in emitted} == {1, 2}
        events = await reward_events(db_session, group_id)
        assert all(e.status == RewardEventStatus.DISPATCHED and e.attempts == 1 for e in events)

    @pytest.mark.asyncio
    async def test_failed_dispatch_stays_pending(self, db_session, context, make_mission, make_users):
        group_id = await complete_group(db_session, context, make_mission, make_users)
        sink = AsyncMock(spec=RewardSink)
        sink.emit.side_effect = RuntimeError("mint service down")
        dispatcher = RewardDispatcher(db_session, dataclasses.replace(context, reward_sink=sink))

        assert await dispatcher.dispatch_pending() == 0

        events = await reward_events(db_session, group_id)
        assert all(e.status == RewardEventStatus.PENDING for e in events)
        assert all(e.attempts == 1 and e.last_error == "mint service down" for e in events)

        sink.emit.side_effect = None
        assert await dispatcher.dispatch_pending() == 2
        assert all(e.attempts == 2 for e in await reward_events(db_session, group_id))
