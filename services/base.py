#/services/base.py

"""
Базовый класс для сервисов движка.
Инкапсулирует работу с БД: commit/rollback, загрузку агрегата группы
и повтор операции при конфликте версий.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Iterable, Optional, TypeVar, TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from core.exceptions import ConcurrentModification, GroupMissionError, GroupNotFound, NotGroupMember, UnauthorizedAccess
from models.group_member import GroupMember, MemberStatus, PARTICIPATING_STATUSES
from models.mission_group import MissionGroup
from schemas.mission_template import MissionTemplate

if TYPE_CHECKING:
    from services.context import EngineContext

R = TypeVar("R")


class BaseService:
    """
    Базовый сервис для работы с агрегатами.
    Содержит повторяющуюся логику.
    """

    def __init__(self, db_session: AsyncSession, context: Optional["EngineContext"] = None):
        """
        Args:
            db_session: Асинхронная сессия SQLAlchemy
            context: Зависимости движка (блокировки, часы, внешние сервисы)
        """
        self.db_session = db_session
        self.context = context
        self.logger = logging.getLogger(self.__class__.__name__)

    async def commit(self) -> None:
        """Сохранить изменения в БД"""
        try:
            await self.db_session.commit()
        except Exception as e:
            self.logger.error(f"Commit failed: {e}", exc_info=not isinstance(e, StaleDataError))
            await self.db_session.rollback()
            raise

    async def flush(self) -> None:
        """Flush изменения без commit (для единовременных операций)"""
        try:
            await self.db_session.flush()
        except Exception as e:
            self.logger.error(f"Flush failed: {e}", exc_info=not isinstance(e, StaleDataError))
            raise

    async def rollback(self) -> None:
        """Откатить все изменения"""
        await self.db_session.rollback()

    # ========== КОНКУРЕНТНОСТЬ ==========

    async def run_with_retry(self, description: str, operation: Callable[[], Awaitable[R]]) -> R:
        """
        Выполнить read-modify-write операцию.
        Конфликт версии группы -> откат и повтор на свежем агрегате
        (context.conflict_retries раз), затем ConcurrentModification.
        """
        attempts = self.context.conflict_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except StaleDataError:
                await self.db_session.rollback()
                if attempt >= attempts:
                    self.logger.warning(f"❌ Version conflict persisted while trying to {description}")
                    raise ConcurrentModification(description)
                self.logger.info(f"🔁 Version conflict while trying to {description}, retrying with fresh state")
            except GroupMissionError:
                # Незакоммиченные изменения отклонённой операции не должны попасть в следующий commit
                await self.db_session.rollback()
                raise
        raise ConcurrentModification(description)

    # ========== ЗАГРУЗКА ==========

    async def load_group(self, group_id: int) -> MissionGroup:
        """Свежая версия агрегата из БД (перезаписывает identity map)"""
        result = await self.db_session.execute(
            select(MissionGroup)
            .where(MissionGroup.id == group_id)
            .execution_options(populate_existing=True)
        )
        group = result.scalar_one_or_none()
        if not group:
            raise GroupNotFound(group_id)
        return group

    async def get_template(self, mission_id: int) -> MissionTemplate:
        from services.template_store import MissionTemplateStore

        return await MissionTemplateStore(self.db_session).get(mission_id)

    # ========== ПРАВА ==========

    def is_admin(self, user_id: int) -> bool:
        return self.context is not None and self.context.is_admin(user_id)

    def require_member(
        self,
        group: MissionGroup,
        user_id: int,
        statuses: Iterable[MemberStatus] = PARTICIPATING_STATUSES,
    ) -> GroupMember:
        member = group.get_member(user_id, statuses)
        if member is None:
            raise NotGroupMember(user_id, group.id)
        return member

    def require_leader_or_admin(self, group: MissionGroup, user_id: int, action: str) -> None:
        if group.is_leader(user_id) or self.is_admin(user_id):
            return
        self.logger.warning(f"User {user_id} tried to {action} in group {group.id} without rights")
        raise UnauthorizedAccess(user_id, action)
