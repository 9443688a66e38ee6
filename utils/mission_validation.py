# utils/mission_validation.py

"""
Разбор и проверка шаблонов групповых миссий из JSON (seed, импорт).
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import ValidationError

from schemas.mission_template import MissionStatus, MissionTemplate


def parse_tags(raw: str) -> list[str]:
    # raw может быть "-" или пусто
    if not raw:
        return []
    s = raw.strip()
    if s in {"-", "—"}:
        return []
    # "спорт, сон, вода" -> ["спорт","сон","вода"]
    parts = [p.strip() for p in s.split(",")]
    return [p for p in parts if p]


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or isinstance(raw, datetime):
        return raw
    return datetime.fromisoformat(str(raw).replace("Z", "+00:00")).replace(tzinfo=None)


def default_formation_deadline(start_date: datetime, lead_hours: int) -> datetime:
    """Дедлайн формирования по умолчанию: за lead_hours до старта"""
    return start_date - timedelta(hours=lead_hours)


def validate_template_payload(payload: Dict[str, Any], lead_hours: int = 24) -> MissionTemplate:
    """
    Проверить описание миссии из JSON.
    Для auto_match без дедлайна проставляется дедлайн по умолчанию.

    Raises:
        ValueError: с перечнем ошибок валидации
    """
    data = dict(payload)
    data.setdefault("id", 0)
    data.setdefault("status", MissionStatus.DRAFT.value)

    time_settings = dict(data.get("time_settings") or {})
    time_settings["start_date"] = parse_datetime(time_settings.get("start_date"))
    time_settings["end_date"] = parse_datetime(time_settings.get("end_date"))
    data["time_settings"] = time_settings

    group_settings = dict(data.get("group_settings") or {})
    deadline = parse_datetime(group_settings.get("formation_deadline"))
    if deadline is None and group_settings.get("auto_match", True) and time_settings["start_date"] is not None:
        deadline = default_formation_deadline(time_settings["start_date"], lead_hours)
    group_settings["formation_deadline"] = deadline
    data["group_settings"] = group_settings

    try:
        return MissionTemplate.model_validate(data)
    except ValidationError as e:
        errors = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ValueError(f"Invalid mission template '{data.get('title')}': {errors}") from e
