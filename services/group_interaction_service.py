# services/group_interaction_service.py

"""
Чат и голосования внутри группы.
Движок только записывает сообщения и бюллетени; доставка внешняя.
Каждое действие пишется в журнал активности участника.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import FeatureDisabled, GroupNotActive, InvalidVote, UnauthorizedAccess, ValidationFailed
from models.group_member import ActivityType
from models.interaction import ChatMessage, GroupVote, NotificationType, VoteBallot, VoteOption, VoteStatus, VoteType
from services.base import BaseService
from services.context import EngineContext
from services.contribution_scorer import ContributionScorer

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000
MIN_VOTE_OPTIONS = 2


class GroupInteractionService(BaseService):
    def __init__(self, db_session: AsyncSession, context: EngineContext):
        super().__init__(db_session, context)
        self.scorer = ContributionScorer(db_session, context)

    async def send_chat_message(
        self,
        group_id: int,
        user_id: int,
        content: str,
        attachments: Optional[List[str]] = None,
    ) -> ChatMessage:
        content = (content or "").strip()
        if not content:
            raise ValidationFailed("Message cannot be empty")
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationFailed(f"Message is longer than {MAX_MESSAGE_LENGTH} characters")

        async def operation() -> ChatMessage:
            now = self.context.now()
            group = await self.load_group(group_id)
            template = await self.get_template(group.mission_id)
            if not template.interactions.enable_chat:
                raise FeatureDisabled("Group chat", group.mission_id)
            if group.is_terminal:
                raise GroupNotActive(group_id, group.status.value, "send messages")
            member = self.require_member(group, user_id)

            message = ChatMessage(sender_id=user_id, content=content, attachments=list(attachments or []), timestamp=now)
            group.chat_messages.append(message)
            member.log_activity(ActivityType.CHAT_MESSAGE, now)
            group.touch(now)
            await self.commit()
            return message

        async with self.context.locks.group(group_id):
            message = await self.run_with_retry("send a chat message", operation)
        await self.scorer.refresh_after(group_id)
        return message

    # ========== ГОЛОСОВАНИЯ ==========

    async def create_vote(
        self,
        group_id: int,
        user_id: int,
        title: str,
        options: List[str],
        expires_at: datetime,
        vote_type: VoteType = VoteType.SINGLE,
        description: Optional[str] = None,
    ) -> GroupVote:
        options = [option.strip() for option in options if option and option.strip()]
        if len(options) < MIN_VOTE_OPTIONS or len(set(options)) != len(options):
            raise InvalidVote(f"A vote needs at least {MIN_VOTE_OPTIONS} distinct options")
        if not (title or "").strip():
            raise InvalidVote("A vote needs a title")

        async def operation() -> GroupVote:
            now = self.context.now()
            if expires_at <= now:
                raise InvalidVote("Vote expiry must be in the future")
            group = await self.load_group(group_id)
            template = await self.get_template(group.mission_id)
            if not template.interactions.enable_voting:
                raise FeatureDisabled("Voting", group.mission_id)
            if group.is_terminal:
                raise GroupNotActive(group_id, group.status.value, "create votes")
            self.require_member(group, user_id)

            vote = GroupVote(
                title=title.strip(),
                description=description,
                created_by=user_id,
                created_at=now,
                expires_at=expires_at,
                vote_type=vote_type,
                status=VoteStatus.ACTIVE,
                results_visible=True,
                options=[VoteOption(position=i, text=text, votes=0) for i, text in enumerate(options)],
                ballots=[],
            )
            group.votes.append(vote)
            group.add_notification(NotificationType.VOTE, "New vote", vote.title, now, related_user_id=user_id)
            group.touch(now)
            await self.commit()
            self.logger.info(f"🗳 Vote '{vote.title}' created in group {group_id} by {user_id}")
            return vote

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("create a vote", operation)

    async def _group_id_for_vote(self, vote_id: int) -> int:
        result = await self.db_session.execute(select(GroupVote.group_id).where(GroupVote.id == vote_id))
        group_id = result.scalar_one_or_none()
        if group_id is None:
            raise InvalidVote(f"Vote {vote_id} not found")
        return group_id

    @staticmethod
    def _find_vote(group, vote_id: int) -> GroupVote:
        for vote in group.votes:
            if vote.id == vote_id:
                return vote
        raise InvalidVote(f"Vote {vote_id} not found")

    async def cast_vote(self, vote_id: int, user_id: int, selected_options: List[int]) -> VoteBallot:
        """selected_options — позиции вариантов (с 0)"""
        group_id = await self._group_id_for_vote(vote_id)

        async def operation() -> VoteBallot:
            now = self.context.now()
            group = await self.load_group(group_id)
            vote = self._find_vote(group, vote_id)
            member = self.require_member(group, user_id)
            if not vote.is_open(now):
                raise InvalidVote(f"Vote '{vote.title}' is closed")
            if vote.has_voted(user_id):
                raise InvalidVote("You have already voted")

            selected = sorted(set(selected_options))
            if not selected:
                raise InvalidVote("Select at least one option")
            if vote.vote_type == VoteType.SINGLE and len(selected) != 1:
                raise InvalidVote("This vote allows exactly one option")
            positions = {option.position: option for option in vote.options}
            unknown = [index for index in selected if index not in positions]
            if unknown:
                raise InvalidVote(f"Unknown option(s): {unknown}")

            for index in selected:
                positions[index].votes += 1
            ballot = VoteBallot(user_id=user_id, selected_options=selected, voted_at=now)
            vote.ballots.append(ballot)
            member.log_activity(ActivityType.VOTE, now, details={"vote_id": vote_id})
            group.touch(now)
            await self.commit()
            return ballot

        async with self.context.locks.group(group_id):
            ballot = await self.run_with_retry("cast a vote", operation)
        await self.scorer.refresh_after(group_id)
        return ballot

    async def close_vote(self, vote_id: int, user_id: int) -> GroupVote:
        """Завершить голосование (автор, лидер или админ)"""
        group_id = await self._group_id_for_vote(vote_id)

        async def operation() -> GroupVote:
            now = self.context.now()
            group = await self.load_group(group_id)
            vote = self._find_vote(group, vote_id)
            if not (vote.created_by == user_id or group.is_leader(user_id) or self.is_admin(user_id)):
                raise UnauthorizedAccess(user_id, "close the vote")
            if vote.status != VoteStatus.ACTIVE:
                raise InvalidVote(f"Vote '{vote.title}' is already {vote.status.value}")
            vote.status = VoteStatus.COMPLETED
            results = ", ".join(f"{text}: {count}" for text, count in vote.results().items())
            group.add_notification(NotificationType.VOTE, f"Vote closed: {vote.title}", results, now)
            group.touch(now)
            await self.commit()
            return vote

        async with self.context.locks.group(group_id):
            return await self.run_with_retry("close the vote", operation)
