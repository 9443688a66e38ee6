# scripts/seed_group_missions.py

"""
Загрузить шаблоны групповых миссий из JSON-файла.
Миссии с уже существующим названием пропускаются.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import select

from core.config import settings
from core.database import AsyncSessionLocal, init_db
from models.group_mission import GroupMission
from utils.mission_validation import validate_template_payload

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEFAULT_PATH = Path(__file__).parent.parent / "data" / "group_missions.json"

# Поля шаблона, которые хранятся в GroupMission.config
CONFIG_SECTIONS = ("objectives", "rewards", "interactions", "join_requirements")


def to_row(payload: dict) -> GroupMission:
    template = validate_template_payload(payload, settings.DEFAULT_FORMATION_LEAD_HOURS)
    dumped = template.model_dump(mode="json")

    group_settings = dict(dumped["group_settings"])
    group_settings.pop("auto_match")
    group_settings.pop("formation_deadline")
    config = {section: dumped[section] for section in CONFIG_SECTIONS}
    config["group_settings"] = group_settings
    config["time_settings"] = {"stages": dumped["time_settings"]["stages"]}

    return GroupMission(
        title=template.title,
        description=template.description,
        mission_type=payload.get("mission_type", "social"),
        difficulty=payload.get("difficulty", 2),
        status=template.status,
        auto_match=template.group_settings.auto_match,
        formation_deadline=template.group_settings.formation_deadline,
        start_date=template.time_settings.start_date,
        end_date=template.time_settings.end_date,
        config=config,
        tags=payload.get("tags", []),
        is_public=payload.get("is_public", True),
        created_by=template.created_by,
    )


async def seed_group_missions(json_path: Path = DEFAULT_PATH) -> int:
    if not json_path.exists():
        logger.error(f"❌ Файл не найден: {json_path}")
        return 0

    with open(json_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    await init_db()
    created = 0
    async with AsyncSessionLocal() as session:
        for payload in data["missions"]:
            existing = await session.execute(select(GroupMission.id).where(GroupMission.title == payload["title"]))
            if existing.scalar_one_or_none() is not None:
                logger.info(f"Миссия уже есть, пропускаем: {payload['title']}")
                continue
            try:
                session.add(to_row(payload))
            except ValueError as e:
                logger.error(f"❌ {e}")
                continue
            created += 1
            logger.info(f"✅ Создана миссия: {payload['title']}")
        await session.commit()

    logger.info(f"🎉 Загружено миссий: {created}")
    return created


if __name__ == "__main__":
    path = Path(sys.argv[1]) if len(sys.argv) > 1 else DEFAULT_PATH
    asyncio.run(seed_group_missions(path))
