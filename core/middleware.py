#/core/middleware.py
from typing import Callable, Awaitable, Any
from aiogram import BaseMiddleware
from aiogram.types import TelegramObject
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.context import EngineContext


class DatabaseSessionMiddleware(BaseMiddleware):
    """
    Middleware для автоматического внедрения AsyncSession и EngineContext в хендлеры.
    """
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine_context: EngineContext):
        self.session_factory = session_factory
        self.engine_context = engine_context

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any]
    ) -> Any:
        # Сессия закрывается при выходе из контекста
        async with self.session_factory() as session:
            data["db_session"] = session
            data["engine_context"] = self.engine_context
            return await handler(event, data)
