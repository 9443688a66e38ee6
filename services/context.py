# services/context.py

"""
Зависимости движка, передаваемые сервисам явно (без глобального состояния).
Создаётся один раз при старте бота и передаётся в сервисы через middleware.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, FrozenSet

from core.locks import AggregateLockRegistry
from services.requirement_checker import AllowAllRequirementChecker, RequirementChecker
from services.reward_sink import LoggingRewardSink, RewardSink


@dataclass
class EngineContext:
    requirement_checker: RequirementChecker = field(default_factory=AllowAllRequirementChecker)
    reward_sink: RewardSink = field(default_factory=LoggingRewardSink)
    locks: AggregateLockRegistry = field(default_factory=AggregateLockRegistry)
    clock: Callable[[], datetime] = field(default=datetime.utcnow)
    requirement_check_timeout: float = 5.0
    conflict_retries: int = 1
    admin_ids: FrozenSet[int] = frozenset()

    def now(self) -> datetime:
        return self.clock()

    def is_admin(self, user_id: int) -> bool:
        return user_id in self.admin_ids

    @classmethod
    def from_settings(cls, settings, **overrides) -> "EngineContext":
        """Контекст из настроек приложения (core.config.settings)"""
        values = dict(
            requirement_check_timeout=settings.REQUIREMENT_CHECK_TIMEOUT_SECONDS,
            conflict_retries=settings.CONFLICT_RETRY_ATTEMPTS,
            admin_ids=frozenset(settings.ADMIN_IDS),
        )
        values.update(overrides)
        return cls(**values)
