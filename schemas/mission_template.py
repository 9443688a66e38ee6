# schemas/mission_template.py

"""
Конфигурация групповой миссии (шаблон).
Шаблон неизменяем в рамках запуска: движок только читает его.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class MissionStatus(str, enum.Enum):
    DRAFT = "draft"
    REGISTRATION = "registration"
    FORMING_GROUPS = "forming_groups"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


JOINABLE_MISSION_STATUSES = (MissionStatus.REGISTRATION, MissionStatus.FORMING_GROUPS)


class CompletionCriteria(str, enum.Enum):
    ALL = "all"
    PERCENTAGE = "percentage"


class ContributionTracking(str, enum.Enum):
    EQUAL = "equal"
    ACTIVITY = "activity"
    PEER_RATING = "peer_rating"
    LEADER_RATING = "leader_rating"


class DistributionMethod(str, enum.Enum):
    EQUAL = "equal"
    CONTRIBUTION_BASED = "contribution_based"


class NftType(str, enum.Enum):
    BADGE = "badge"
    ARTWORK = "artwork"
    CERTIFICATE = "certificate"
    CUSTOM = "custom"


class NftRarity(str, enum.Enum):
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


class TemplateModel(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)


# ========== GROUP SETTINGS ==========

class MatchingCriteria(TemplateModel):
    by_interest: bool = True
    by_activity: bool = False
    by_level: bool = True
    by_location: bool = False


class GroupSettings(TemplateModel):
    min_members: int = Field(default=2, ge=1)
    max_members: int = Field(default=5, ge=1)
    auto_match: bool = True
    matching_criteria: MatchingCriteria = MatchingCriteria()
    formation_deadline: Optional[datetime] = None

    @model_validator(mode="after")
    def check_bounds(self) -> "GroupSettings":
        if self.max_members < self.min_members:
            raise ValueError("max_members must be greater than or equal to min_members")
        return self


# ========== TIME SETTINGS ==========

class StageDefinition(TemplateModel):
    name: str
    description: Optional[str] = None
    duration_days: int = Field(default=1, ge=1)
    requires_previous_stage: bool = True


class TimeSettings(TemplateModel):
    start_date: datetime
    end_date: datetime
    stages: List[StageDefinition] = []

    @property
    def has_stages(self) -> bool:
        return len(self.stages) > 0

    @model_validator(mode="after")
    def check_window(self) -> "TimeSettings":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


# ========== OBJECTIVES ==========

class ObjectiveDefinition(TemplateModel):
    description: str
    target: float = Field(gt=0)
    unit: str = "times"
    optional: bool = False


class ObjectiveSettings(TemplateModel):
    group_objectives: List[ObjectiveDefinition] = []
    member_objectives: List[ObjectiveDefinition] = []
    completion_criteria: CompletionCriteria = CompletionCriteria.ALL
    completion_percentage: int = Field(default=80, ge=1, le=100)


# ========== REWARDS ==========

class NftReward(TemplateModel):
    issue: bool = False
    type: NftType = NftType.BADGE
    rarity: NftRarity = NftRarity.COMMON


class RewardAmount(TemplateModel):
    xp: int = Field(default=0, ge=0)
    token_amount: float = Field(default=0, ge=0)

    @property
    def is_empty(self) -> bool:
        return self.xp == 0 and self.token_amount == 0


class BaseReward(RewardAmount):
    nft: NftReward = NftReward()


class TopContributorBonus(RewardAmount):
    percentage: int = Field(default=20, ge=1, le=50)


class BonusRewards(TemplateModel):
    full_completion: RewardAmount = RewardAmount()
    early_completion: RewardAmount = RewardAmount()
    top_contributor: TopContributorBonus = TopContributorBonus()


class RewardSettings(TemplateModel):
    group_rewards: BaseReward = BaseReward()
    member_rewards: BaseReward = BaseReward()
    bonus_rewards: BonusRewards = BonusRewards()
    distribution_method: DistributionMethod = DistributionMethod.EQUAL


# ========== INTERACTIONS ==========

class InteractionSettings(TemplateModel):
    enable_chat: bool = True
    share_progress: bool = True
    enable_peer_rating: bool = False
    enable_voting: bool = False
    contribution_tracking: ContributionTracking = ContributionTracking.EQUAL


# ========== JOIN REQUIREMENTS ==========

class NftRequirement(TemplateModel):
    active: bool = False
    contract_address: Optional[str] = None
    token_ids: List[str] = []


class TokenHoldingRequirement(TemplateModel):
    active: bool = False
    amount: float = Field(default=0, ge=0)


class JoinRequirements(TemplateModel):
    require_approval: bool = False
    min_level: int = Field(default=0, ge=0)
    require_nft: NftRequirement = NftRequirement()
    min_token_holding: TokenHoldingRequirement = TokenHoldingRequirement()
    required_tags: List[str] = []

    @property
    def needs_external_check(self) -> bool:
        """NFT и баланс токенов проверяет внешний сервис"""
        return self.require_nft.active or self.min_token_holding.active


# ========== TEMPLATE ==========

class MissionTemplate(TemplateModel):
    id: int
    title: str
    description: Optional[str] = None
    status: MissionStatus = MissionStatus.DRAFT
    created_by: Optional[int] = None
    group_settings: GroupSettings = GroupSettings()
    time_settings: TimeSettings
    objectives: ObjectiveSettings = ObjectiveSettings()
    rewards: RewardSettings = RewardSettings()
    interactions: InteractionSettings = InteractionSettings()
    join_requirements: JoinRequirements = JoinRequirements()

    @property
    def min_members(self) -> int:
        return self.group_settings.min_members

    @property
    def max_members(self) -> int:
        return self.group_settings.max_members

    @property
    def is_joinable(self) -> bool:
        return self.status in JOINABLE_MISSION_STATUSES
