"""Общие фикстуры: in-memory SQLite, фиксированные часы, фабрики миссий и пользователей"""

import os

# Settings() читается при импорте core.config
os.environ.setdefault("BOT_TOKEN", "123456:TEST-TOKEN")
os.environ.setdefault("DATABASE_PASSWORD", "test")

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from models import Base, GroupMission, User
from schemas.mission_template import MissionStatus, MissionTemplate
from services.context import EngineContext

NOW = datetime(2026, 3, 1, 12, 0, 0)
ADMIN_ID = 999


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def context(clock):
    return EngineContext(clock=clock, admin_ids=frozenset({ADMIN_ID}), requirement_check_timeout=0.2)


def mission_config(
    min_members: int = 2,
    max_members: int = 5,
    group_objectives: Optional[list] = None,
    member_objectives: Optional[list] = None,
    stages: Optional[list] = None,
    **sections: Dict[str, Any],
) -> Dict[str, Any]:
    objectives = {
        "group_objectives": group_objectives if group_objectives is not None else [{"description": "Steps", "target": 10}],
        "member_objectives": member_objectives or [],
    }
    objectives.update(sections.pop("objectives", {}))
    return {
        "group_settings": {"min_members": min_members, "max_members": max_members, **sections.pop("group_settings", {})},
        "time_settings": {"stages": stages or []},
        "objectives": objectives,
        **sections,
    }


@pytest.fixture
def make_mission(db_session):
    async def factory(
        title: str = "Morning run",
        status: MissionStatus = MissionStatus.REGISTRATION,
        auto_match: bool = True,
        formation_deadline: Optional[datetime] = None,
        start_date: datetime = NOW - timedelta(days=1),
        end_date: datetime = NOW + timedelta(days=10),
        created_by: Optional[int] = None,
        **config,
    ) -> GroupMission:
        mission = GroupMission(
            title=title,
            description=f"{title} together",
            status=status,
            auto_match=auto_match,
            formation_deadline=formation_deadline,
            start_date=start_date,
            end_date=end_date,
            config=mission_config(**config),
            tags=[],
            is_public=True,
            created_by=created_by,
        )
        db_session.add(mission)
        await db_session.commit()
        return mission

    return factory


@pytest.fixture
def make_users(db_session):
    async def factory(*user_ids: int, level: int = 1, interests: Optional[list] = None) -> list:
        users = [
            User(user_id=user_id, username=f"user{user_id}", level=level, xp=0, interests=list(interests or []))
            for user_id in user_ids
        ]
        db_session.add_all(users)
        await db_session.commit()
        return users

    return factory


@pytest.fixture
def make_template():
    """Шаблон без БД (для тестов агрегата и чистых функций)"""
    def factory(mission_id: int = 1, title: str = "Morning run", **config):
        data = mission_config(**config)
        data["time_settings"].update({"start_date": NOW - timedelta(days=1), "end_date": NOW + timedelta(days=10)})
        return MissionTemplate.model_validate({
            "id": mission_id,
            "title": title,
            "status": MissionStatus.REGISTRATION,
            **data,
        })

    return factory
