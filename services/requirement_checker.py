# services/requirement_checker.py

"""
Внешняя проверка требований для вступления (владение NFT, баланс токенов).
Движок вызывает её только когда шаблон этого требует, с ограничением по времени.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from schemas.mission_template import JoinRequirements

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequirementCheckResult:
    ok: bool
    reason: Optional[str] = None


class RequirementChecker(ABC):
    """Интерфейс внешнего сервиса проверки требований"""

    @abstractmethod
    async def check_requirements(self, user_id: int, requirements: JoinRequirements) -> RequirementCheckResult:
        ...


class AllowAllRequirementChecker(RequirementChecker):
    """Заглушка по умолчанию: пропускает всех (внешний сервис не подключён)"""

    async def check_requirements(self, user_id: int, requirements: JoinRequirements) -> RequirementCheckResult:
        logger.debug(f"Requirement check skipped for user {user_id}: no external checker configured")
        return RequirementCheckResult(ok=True)
