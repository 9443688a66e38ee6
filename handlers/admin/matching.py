#/handlers/admin/matching.py

"""
Admin handler для движка групповых миссий:
- Ручной запуск пакетного матчинга
- Повторный расчёт наград группы
- Закрытие просроченных групп
- Статистика миссии
"""

from __future__ import annotations

import logging

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import GroupMissionError
from services.context import EngineContext
from services.group_mission_service import GroupMissionService
from utils.admin import is_admin

router = Router()
logger = logging.getLogger(__name__)


@router.message(Command("run_matching"))
async def cmd_run_matching(message: Message, db_session: AsyncSession, engine_context: EngineContext) -> None:
    if not is_admin(message.from_user.id):
        await message.answer("❌ У вас нет прав администратора.")
        return

    try:
        service = GroupMissionService(db_session, engine_context)
        matched = await service.formation.run_batch_matching()
        await message.answer(f"🤝 Матчинг завершён: распределено пользователей — {matched}.")
    except Exception as e:
        logger.error(f"Error in /run_matching: {e}", exc_info=True)
        await message.answer("❌ Ошибка при запуске матчинга.")


@router.message(Command("settle"))
async def cmd_settle(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/settle <group_id> — рассчитать награды завершённой группы"""
    if not is_admin(message.from_user.id):
        await message.answer("❌ У вас нет прав администратора.")
        return

    try:
        group_id = int((command.args or "").strip())
    except ValueError:
        await message.answer("Использование: /settle <group_id>")
        return

    try:
        service = GroupMissionService(db_session, engine_context)
        events = await service.settlement.settle(group_id)
        if events:
            await message.answer(f"💰 Награды рассчитаны: {len(events)} получателей.")
        else:
            await message.answer("ℹ️ Награды этой группы уже были рассчитаны.")
    except GroupMissionError as e:
        await message.answer(f"❌ {e.reason}")
    except Exception as e:
        logger.error(f"Error in /settle: {e}", exc_info=True)
        await message.answer("❌ Ошибка при расчёте наград.")


@router.message(Command("close_overdue"))
async def cmd_close_overdue(message: Message, db_session: AsyncSession, engine_context: EngineContext) -> None:
    if not is_admin(message.from_user.id):
        await message.answer("❌ У вас нет прав администратора.")
        return

    try:
        service = GroupMissionService(db_session, engine_context)
        closed = await service.state_machine.fail_overdue_groups()
        await message.answer(f"⏰ Закрыто просроченных групп: {closed}.")
    except Exception as e:
        logger.error(f"Error in /close_overdue: {e}", exc_info=True)
        await message.answer("❌ Ошибка при закрытии групп.")


@router.message(Command("mission_stats"))
async def cmd_mission_stats(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    if not is_admin(message.from_user.id):
        await message.answer("❌ У вас нет прав администратора.")
        return

    try:
        mission_id = int((command.args or "").strip())
    except ValueError:
        await message.answer("Использование: /mission_stats <mission_id>")
        return

    try:
        stats = await GroupMissionService(db_session, engine_context).get_mission_stats(mission_id)
        await message.answer(
            f"📊 <b>Миссия {mission_id}</b>\n\n"
            f"Групп всего: {stats['total_groups']}\n"
            f"🧩 Формируются: {stats['forming_groups']}\n"
            f"🔥 Активны: {stats['active_groups']}\n"
            f"✅ Завершены: {stats['completed_groups']}\n"
            f"❌ Провалены: {stats['failed_groups']}\n"
            f"🪦 Распущены: {stats['disbanded_groups']}\n"
            f"👥 Участников: {stats['total_participants']}\n"
            f"📈 Средний прогресс: {stats['average_completion']}%",
            parse_mode="HTML",
        )
    except GroupMissionError as e:
        await message.answer(f"❌ {e.reason}")
    except Exception as e:
        logger.error(f"Error in /mission_stats: {e}", exc_info=True)
        await message.answer("❌ Ошибка при получении статистики.")
