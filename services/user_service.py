# services/user_service.py

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Dict, Iterable, List, Optional

from core.exceptions import UserNotFound
from models.user import User


class UserService:
    def __init__(self, db_session: AsyncSession):
        self.db_session = db_session

    async def get_or_create_user(self, user_id: int, username: Optional[str] = None) -> User:
        """Получить пользователя или создать нового (без commit)"""
        result = await self.db_session.execute(
            select(User).where(User.user_id == user_id)
        )
        user = result.scalar_one_or_none()

        if not user:
            user = User(user_id=user_id, username=username, level=1, xp=0, interests=[])
            self.db_session.add(user)
            # ✅ Только flush, commit сделает вызывающий код
            await self.db_session.flush()

        return user

    async def get_user(self, user_id: int) -> User:
        result = await self.db_session.execute(select(User).where(User.user_id == user_id))
        user = result.scalar_one_or_none()
        if not user:
            raise UserNotFound(user_id)
        return user

    async def get_profiles(self, user_ids: Iterable[int]) -> Dict[int, User]:
        """Профили пользователей по Telegram ID"""
        ids = set(user_ids)
        if not ids:
            return {}
        result = await self.db_session.execute(select(User).where(User.user_id.in_(ids)))
        return {user.user_id: user for user in result.scalars().all()}

    async def set_interests(self, user_id: int, tags: List[str]) -> User:
        """Заменить теги интересов (без commit)"""
        user = await self.get_or_create_user(user_id)
        user.interests = sorted({tag.strip().lower() for tag in tags if tag.strip()})
        await self.db_session.flush()
        return user
