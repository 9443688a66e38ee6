# models/__init__.py
# ВАЖНО: Base импортируется первым, до любых импортов моделей
from .base import Base

from .user import User
from .group_mission import GroupMission
from .objective import GroupObjective, MemberObjective, ObjectiveProgressEntry
from .group_member import GroupMember, MemberStatus, ActivityLogEntry, ActivityType, PeerRating, FeedbackAspect
from .interaction import ChatMessage, GroupNotification, GroupVote, VoteOption, VoteBallot, NotificationType, VoteType, VoteStatus
from .reward import GroupRewardRecord, RewardEvent, RewardEventStatus
from .mission_group import MissionGroup, GroupStatus, FormationType, StageProgress, StageStatus, LeaderHistoryEntry
from .pending_join import PendingJoinRequest, PendingJoinStatus

__all__ = [
    "Base",
    "User",
    "GroupMission",
    "GroupObjective",
    "MemberObjective",
    "ObjectiveProgressEntry",
    "GroupMember",
    "MemberStatus",
    "ActivityLogEntry",
    "ActivityType",
    "PeerRating",
    "FeedbackAspect",
    "ChatMessage",
    "GroupNotification",
    "GroupVote",
    "VoteOption",
    "VoteBallot",
    "NotificationType",
    "VoteType",
    "VoteStatus",
    "GroupRewardRecord",
    "RewardEvent",
    "RewardEventStatus",
    "MissionGroup",
    "GroupStatus",
    "FormationType",
    "StageProgress",
    "StageStatus",
    "LeaderHistoryEntry",
    "PendingJoinRequest",
    "PendingJoinStatus",
]
