#/core/database.py
"""
Движок и фабрика сессий для групповых миссий.
Одна фабрика обслуживает и хендлеры (через DatabaseSessionMiddleware),
и фоновые проходы MissionScheduler: каждая операция открывает свою сессию.
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy import inspect, text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)

from core.config import settings
import models  # noqa: F401  регистрирует все модели в Base.metadata
from models.base import Base

logger = logging.getLogger(__name__)

# Без этих таблиц очередь матчинга и выдача наград не работают
REQUIRED_TABLES = ("group_missions", "mission_groups", "group_members", "pending_join_requests", "reward_events")


def engine_options(url: str) -> Dict[str, Any]:
    """Параметры пула: SQLite (локальный запуск через DATABASE_DSN) пула не имеет"""
    options: Dict[str, Any] = {"echo": settings.DEBUG}
    if make_url(url).get_backend_name() == "sqlite":
        return options
    options.update(
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_pre_ping=True,  # Проверка соединения перед использованием
    )
    return options


# ========== ENGINE ==========
engine: AsyncEngine = create_async_engine(settings.DATABASE_URL, **engine_options(settings.DATABASE_URL))

# ========== SESSION FACTORY ==========
# expire_on_commit=False: агрегат группы читается после commit без lazy-load
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ========== INITIALIZATION ==========
async def init_db() -> None:
    """Создать недостающие таблицы движка (вызывать до запуска бота и планировщика)"""
    try:
        logger.info(f"Initializing database ({engine.url.get_backend_name()})...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in tables]
        if missing:
            raise RuntimeError(f"Tables were not created: {', '.join(missing)}")
        logger.info(f"✅ Database initialized: {len(tables)} tables")
    except Exception as e:
        logger.error(f"❌ Database initialization failed: {e}", exc_info=True)
        raise


async def test_connection() -> bool:
    """Проверка подключения к БД"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        logger.info(f"✅ Database connection successful: {engine.url.render_as_string(hide_password=True)}")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection failed: {e}")
        return False


async def dispose_db() -> None:
    """Закрытие всех соединений (при остановке бота и планировщика)"""
    await engine.dispose()
    logger.info("Database connections disposed")
