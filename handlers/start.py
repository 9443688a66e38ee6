#/handlers/start.py
"""
Основные команды бота: /start, /help, /interests.
"""

from __future__ import annotations

import logging

from aiogram import Router
from aiogram.filters import Command, CommandObject
from aiogram.types import Message
from sqlalchemy.ext.asyncio import AsyncSession

from services.user_service import UserService
from utils.mission_validation import parse_tags

router = Router()
logger = logging.getLogger(__name__)

HELP_TEXT = (
    "📋 <b>Групповые миссии:</b>\n"
    "• <b>/missions</b> — открытые миссии\n"
    "• <b>/join</b> id — вступить в группу (или создать свою)\n"
    "• <b>/wait</b> id — встать в очередь подбора группы\n"
    "• <b>/cancel_join</b> id — отменить заявку\n"
    "• <b>/leave</b> id — покинуть миссию\n"
    "• <b>/my_groups</b> — мои группы\n"
    "• <b>/group</b> id — детали группы\n"
    "• <b>/progress</b> group_id group|member objective_id значение\n"
    "• <b>/rate</b> group_id user_id 1-5 — оценить участника\n"
    "• <b>/chat</b> group_id текст, <b>/vote</b> group_id вопрос | вариант | вариант\n"
    "• <b>/interests</b> спорт, книги — теги для подбора группы\n"
)


@router.message(Command("start"))
async def cmd_start(message: Message, db_session: AsyncSession) -> None:
    """
    Команда /start — приветствие и инициализация пользователя.

    Args:
        message: Telegram сообщение
        db_session: Сессия БД (из middleware)
    """
    try:
        user_service = UserService(db_session)
        await user_service.get_or_create_user(message.from_user.id, message.from_user.username)
        await db_session.commit()

        await message.answer(
            "🎯 <b>Добро пожаловать!</b>\n\n"
            "Выполняйте миссии вместе с другими игроками и получайте XP, токены и NFT.\n\n"
            + HELP_TEXT,
            parse_mode="HTML",
        )
    except Exception as e:
        logger.error(f"Error in /start: {e}", exc_info=True)
        await message.answer("❌ Произошла ошибка. Попробуйте позже.")


@router.message(Command("help"))
async def cmd_help(message: Message) -> None:
    await message.answer(HELP_TEXT, parse_mode="HTML")


@router.message(Command("interests"))
async def cmd_interests(message: Message, command: CommandObject, db_session: AsyncSession) -> None:
    """/interests тег, тег — заменить теги интересов"""
    try:
        user_service = UserService(db_session)
        tags = parse_tags(command.args or "")
        if not tags:
            user = await user_service.get_or_create_user(message.from_user.id, message.from_user.username)
            await db_session.commit()
            current = ", ".join(user.interests or []) or "не заданы"
            await message.answer(f"🏷 Ваши интересы: {current}\nИзменить: /interests спорт, книги")
            return

        user = await user_service.set_interests(message.from_user.id, tags)
        await db_session.commit()
        await message.answer(f"✅ Интересы обновлены: {', '.join(user.interests)}")
    except Exception as e:
        logger.error(f"Error in /interests: {e}", exc_info=True)
        await message.answer("❌ Произошла ошибка. Попробуйте позже.")
