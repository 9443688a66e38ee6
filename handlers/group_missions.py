#/handlers/group_missions.py

"""
Handler'ы групповых миссий для пользователей:
- Список миссий, вступление, очередь матчинга, выход
- Мои группы, детали группы, запуск лидером
- Прогресс целей, оценки, чат, голосования
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional

from aiogram import F, Router
from aiogram.filters import Command, CommandObject
from aiogram.types import CallbackQuery, Message
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import GroupMissionError
from keyboards.group_kb import get_group_actions_keyboard, get_missions_keyboard, get_vote_keyboard
from models.interaction import VoteType
from models.mission_group import MissionGroup
from services.context import EngineContext
from services.group_formation_service import JoinStatus
from services.group_mission_service import GroupMissionService
from services.objective_tracker import ObjectiveScope

router = Router()
logger = logging.getLogger(__name__)

GENERIC_ERROR = "❌ Произошла ошибка. Попробуйте позже."
VOTE_DURATION = timedelta(hours=24)

STATUS_LABELS = {
    "forming": "🧩 Формируется",
    "active": "🔥 Активна",
    "paused": "⏸ На паузе",
    "completed": "✅ Завершена",
    "failed": "❌ Провалена",
    "disbanded": "🪦 Распущена",
}


def _args(command: CommandObject) -> List[str]:
    return (command.args or "").split()


def _int_arg(args: List[str], index: int) -> Optional[int]:
    try:
        return int(args[index])
    except (IndexError, ValueError):
        return None


async def _fail(message: Message, error: Exception, action: str) -> None:
    """Ответ на ошибку: причина для ошибок движка, общий текст для остальных"""
    if isinstance(error, GroupMissionError):
        logger.info(f"{action} rejected for {message.chat.id}: {error.reason}")
        await message.answer(f"❌ {error.reason}")
        return
    logger.error(f"Error in {action}: {error}", exc_info=True)
    await message.answer(GENERIC_ERROR)


def format_group(group: MissionGroup) -> str:
    text = (
        f"👥 <b>{group.name}</b> (ID: <code>{group.id}</code>)\n"
        f"Статус: {STATUS_LABELS.get(group.status.value, group.status.value)}\n"
        f"Прогресс: {group.completion_percentage}%\n"
        f"Лидер: <code>{group.leader_id}</code>\n\n"
    )

    if group.objectives:
        text += "🎯 <b>Цели группы:</b>\n"
        for objective in group.objectives:
            mark = "✅" if objective.completed else "▫️"
            text += (
                f"{mark} [{objective.id}] {objective.description}: "
                f"{objective.progress:g}/{objective.target:g} {objective.unit}\n"
            )
        text += "\n"

    text += "🧑‍🤝‍🧑 <b>Участники:</b>\n"
    for member in group.members:
        if not member.holds_seat and not member.is_participating:
            continue
        crown = "👑 " if member.user_id == group.leader_id else ""
        rank = f" #{member.rank}" if member.rank else ""
        text += f"{crown}<code>{member.user_id}</code> — {member.status.value}, вклад {member.final_score:g}{rank}\n"

    if group.stages:
        current = group.current_stage
        if current is not None:
            text += f"\n🗺 Этап: {current.name} ({current.stage_index + 1}/{len(group.stages)})\n"
    return text


# ========== МИССИИ ==========

@router.message(Command("missions"))
async def cmd_missions(message: Message, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """Открытые для вступления групповые миссии"""
    try:
        service = GroupMissionService(db_session, engine_context)
        missions = await service.templates.list_joinable()
        if not missions:
            await message.answer("📭 Сейчас нет открытых групповых миссий.")
            return

        text = "🌍 <b>Групповые миссии</b>\n\n"
        for mission in missions:
            text += (
                f"• <b>{mission.title}</b> (ID: <code>{mission.id}</code>)\n"
                f"  {mission.description or 'Нет описания'}\n"
                f"  {mission.start_date:%d.%m.%Y} — {mission.end_date:%d.%m.%Y}\n\n"
            )
        await message.answer(text, parse_mode="HTML", reply_markup=get_missions_keyboard(missions))
    except Exception as e:
        await _fail(message, e, "/missions")


async def _join(message: Message, user_id: int, mission_id: int, auto_join: bool, db_session: AsyncSession, engine_context: EngineContext) -> None:
    try:
        service = GroupMissionService(db_session, engine_context)
        result = await service.formation.request_join(mission_id, user_id, auto_join=auto_join)
        if result.status == JoinStatus.PENDING:
            await message.answer(f"⏳ {result.message}")
        elif result.status == JoinStatus.CREATED:
            await message.answer(f"🆕 {result.message}\nГруппа: <code>{result.group_id}</code>", parse_mode="HTML")
        else:
            await message.answer(f"✅ {result.message}\nГруппа: <code>{result.group_id}</code>", parse_mode="HTML")
    except Exception as e:
        await _fail(message, e, "join")


@router.message(Command("join"))
async def cmd_join(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/join <mission_id> — вступить в группу (или создать свою)"""
    mission_id = _int_arg(_args(command), 0)
    if mission_id is None:
        await message.answer("Использование: /join <mission_id>")
        return
    await _join(message, message.from_user.id, mission_id, True, db_session, engine_context)


@router.message(Command("wait"))
async def cmd_wait(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/wait <mission_id> — встать в очередь пакетного матчинга"""
    mission_id = _int_arg(_args(command), 0)
    if mission_id is None:
        await message.answer("Использование: /wait <mission_id>")
        return
    await _join(message, message.from_user.id, mission_id, False, db_session, engine_context)


@router.callback_query(F.data.startswith("gm_join:") | F.data.startswith("gm_wait:"))
async def cb_join(callback: CallbackQuery, db_session: AsyncSession, engine_context: EngineContext) -> None:
    action, mission_id = callback.data.split(":", 1)
    await callback.answer()
    await _join(callback.message, callback.from_user.id, int(mission_id), action == "gm_join", db_session, engine_context)


@router.message(Command("cancel_join"))
async def cmd_cancel_join(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    mission_id = _int_arg(_args(command), 0)
    if mission_id is None:
        await message.answer("Использование: /cancel_join <mission_id>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        if await service.formation.cancel_join(mission_id, message.from_user.id):
            await message.answer("✅ Заявка отменена.")
        else:
            await message.answer("ℹ️ У вас нет заявки в очереди этой миссии.")
    except Exception as e:
        await _fail(message, e, "/cancel_join")


@router.message(Command("leave"))
async def cmd_leave(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/leave <mission_id> [причина]"""
    args = _args(command)
    mission_id = _int_arg(args, 0)
    if mission_id is None:
        await message.answer("Использование: /leave <mission_id> [причина]")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        reason = " ".join(args[1:]) or None
        group = await service.state_machine.leave_mission(mission_id, message.from_user.id, reason)
        if group is None:
            await message.answer("✅ Заявка в очереди отменена.")
        else:
            await message.answer(f"🚪 Вы покинули группу «{group.name}».")
    except Exception as e:
        await _fail(message, e, "/leave")


@router.callback_query(F.data.startswith("gm_leave:"))
async def cb_leave(callback: CallbackQuery, db_session: AsyncSession, engine_context: EngineContext) -> None:
    group_id = int(callback.data.split(":", 1)[1])
    await callback.answer()
    try:
        service = GroupMissionService(db_session, engine_context)
        group = await service.state_machine.leave(group_id, callback.from_user.id)
        await callback.message.answer(f"🚪 Вы покинули группу «{group.name}».")
    except Exception as e:
        await _fail(callback.message, e, "leave callback")


# ========== ГРУППЫ ==========

async def _show_my_groups(message: Message, user_id: int, db_session: AsyncSession, engine_context: EngineContext) -> None:
    try:
        service = GroupMissionService(db_session, engine_context)
        groups = await service.get_user_groups(user_id)
        if not groups:
            await message.answer("📭 Вы пока не состоите в группах. Посмотрите /missions")
            return
        text = "👥 <b>Мои группы</b>\n\n"
        for group in groups:
            text += (
                f"• <b>{group.name}</b> (ID: <code>{group.id}</code>) — "
                f"{STATUS_LABELS.get(group.status.value, group.status.value)}, {group.completion_percentage}%\n"
            )
        await message.answer(text, parse_mode="HTML")
    except Exception as e:
        await _fail(message, e, "/my_groups")


@router.message(Command("my_groups"))
async def cmd_my_groups(message: Message, db_session: AsyncSession, engine_context: EngineContext) -> None:
    await _show_my_groups(message, message.from_user.id, db_session, engine_context)


@router.callback_query(F.data == "gm_my_groups")
async def cb_my_groups(callback: CallbackQuery, db_session: AsyncSession, engine_context: EngineContext) -> None:
    await callback.answer()
    await _show_my_groups(callback.message, callback.from_user.id, db_session, engine_context)


@router.message(Command("group"))
async def cmd_group(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/group <group_id> — детали группы"""
    group_id = _int_arg(_args(command), 0)
    if group_id is None:
        await message.answer("Использование: /group <group_id>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        group = await service.get_group_details(group_id, message.from_user.id)
        await message.answer(
            format_group(group),
            parse_mode="HTML",
            reply_markup=get_group_actions_keyboard(group, message.from_user.id),
        )
    except Exception as e:
        await _fail(message, e, "/group")


@router.message(Command("start_group"))
async def cmd_start_group(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    group_id = _int_arg(_args(command), 0)
    if group_id is None:
        await message.answer("Использование: /start_group <group_id>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        group = await service.state_machine.activate(group_id, message.from_user.id)
        await message.answer(f"🚀 Группа «{group.name}» начала миссию!")
    except Exception as e:
        await _fail(message, e, "/start_group")


@router.callback_query(F.data.regexp(r"^gm_(start|pause|resume):\d+$"))
async def cb_group_status(callback: CallbackQuery, db_session: AsyncSession, engine_context: EngineContext) -> None:
    action, group_id = callback.data.split(":", 1)
    await callback.answer()
    try:
        machine = GroupMissionService(db_session, engine_context).state_machine
        operations = {"gm_start": machine.activate, "gm_pause": machine.pause, "gm_resume": machine.resume}
        group = await operations[action](int(group_id), callback.from_user.id)
        await callback.message.answer(
            f"Статус группы «{group.name}»: {STATUS_LABELS.get(group.status.value, group.status.value)}"
        )
    except Exception as e:
        await _fail(callback.message, e, action)


@router.message(Command("approve"))
async def cmd_approve(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/approve <group_id> <user_id> — лидер подтверждает участника"""
    args = _args(command)
    group_id, user_id = _int_arg(args, 0), _int_arg(args, 1)
    if group_id is None or user_id is None:
        await message.answer("Использование: /approve <group_id> <user_id>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        await service.formation.approve_member(group_id, message.from_user.id, user_id)
        await message.answer(f"✅ Участник <code>{user_id}</code> подтверждён.", parse_mode="HTML")
    except Exception as e:
        await _fail(message, e, "/approve")


@router.message(Command("stage_done"))
async def cmd_stage_done(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/stage_done <group_id> <stage_number>"""
    args = _args(command)
    group_id, stage_number = _int_arg(args, 0), _int_arg(args, 1)
    if group_id is None or stage_number is None:
        await message.answer("Использование: /stage_done <group_id> <номер этапа>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        stage = await service.state_machine.complete_stage(group_id, message.from_user.id, stage_number - 1)
        await message.answer(f"🗺 Этап «{stage.name}» завершён.")
    except Exception as e:
        await _fail(message, e, "/stage_done")


# ========== ПРОГРЕСС И ВКЛАД ==========

@router.message(Command("progress"))
async def cmd_progress(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/progress <group_id> <group|member> <objective_id> <значение> [fix]"""
    args = _args(command)
    group_id, objective_id = _int_arg(args, 0), _int_arg(args, 2)
    try:
        scope = ObjectiveScope(args[1])
        value = float(args[3])
    except (IndexError, ValueError):
        scope, value = None, None
    if group_id is None or objective_id is None or scope is None:
        await message.answer("Использование: /progress <group_id> <group|member> <objective_id> <значение> [fix]")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        result = await service.objectives.apply_progress(
            group_id,
            scope,
            objective_id,
            value,
            message.from_user.id,
            correction=len(args) > 4 and args[4] == "fix",
        )
        if not result.delta:
            await message.answer("ℹ️ Прогресс не изменился.")
            return
        text = f"📈 Прогресс: {result.progress:g} ({result.delta:+g}). Группа: {result.completion_percentage}%"
        if result.group_completed:
            text += "\n🏁 Группа выполнила миссию! Награды начислены."
        await message.answer(text)
    except Exception as e:
        await _fail(message, e, "/progress")


@router.message(Command("rate"))
async def cmd_rate(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/rate <group_id> <user_id> <1-5> [комментарий]"""
    args = _args(command)
    group_id, ratee_id, rating = _int_arg(args, 0), _int_arg(args, 1), _int_arg(args, 2)
    if group_id is None or ratee_id is None or rating is None:
        await message.answer("Использование: /rate <group_id> <user_id> <1-5> [комментарий]")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        await service.scorer.submit_rating(
            group_id,
            message.from_user.id,
            ratee_id,
            rating,
            comment=" ".join(args[3:]) or None,
        )
        await message.answer("⭐ Оценка сохранена.")
    except Exception as e:
        await _fail(message, e, "/rate")


# ========== ЧАТ И ГОЛОСОВАНИЯ ==========

@router.message(Command("chat"))
async def cmd_chat(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/chat <group_id> <текст>"""
    args = (command.args or "").split(maxsplit=1)
    group_id = _int_arg(args, 0)
    if group_id is None or len(args) < 2:
        await message.answer("Использование: /chat <group_id> <текст>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        await service.interactions.send_chat_message(group_id, message.from_user.id, args[1])
        await message.answer("💬 Сообщение отправлено в группу.")
    except Exception as e:
        await _fail(message, e, "/chat")


@router.message(Command("vote"))
async def cmd_vote(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    """/vote <group_id> Вопрос | вариант 1 | вариант 2 ..."""
    args = (command.args or "").split(maxsplit=1)
    group_id = _int_arg(args, 0)
    parts = [part.strip() for part in args[1].split("|")] if len(args) > 1 else []
    if group_id is None or len(parts) < 3:
        await message.answer("Использование: /vote <group_id> Вопрос | вариант 1 | вариант 2")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        vote = await service.interactions.create_vote(
            group_id,
            message.from_user.id,
            parts[0],
            parts[1:],
            expires_at=engine_context.now() + VOTE_DURATION,
            vote_type=VoteType.SINGLE,
        )
        await message.answer(f"🗳 <b>{vote.title}</b>", parse_mode="HTML", reply_markup=get_vote_keyboard(vote))
    except Exception as e:
        await _fail(message, e, "/vote")


@router.callback_query(F.data.startswith("gm_vote:"))
async def cb_cast_vote(callback: CallbackQuery, db_session: AsyncSession, engine_context: EngineContext) -> None:
    _, vote_id, position = callback.data.split(":")
    try:
        service = GroupMissionService(db_session, engine_context)
        await service.interactions.cast_vote(int(vote_id), callback.from_user.id, [int(position)])
        await callback.answer("✅ Голос учтён")
    except GroupMissionError as e:
        await callback.answer(f"❌ {e.reason}", show_alert=True)
    except Exception as e:
        logger.error(f"Error casting vote: {e}", exc_info=True)
        await callback.answer(GENERIC_ERROR, show_alert=True)


@router.message(Command("close_vote"))
async def cmd_close_vote(message: Message, command: CommandObject, db_session: AsyncSession, engine_context: EngineContext) -> None:
    vote_id = _int_arg(_args(command), 0)
    if vote_id is None:
        await message.answer("Использование: /close_vote <vote_id>")
        return
    try:
        service = GroupMissionService(db_session, engine_context)
        vote = await service.interactions.close_vote(vote_id, message.from_user.id)
        results = "\n".join(f"• {text}: {count}" for text, count in vote.results().items())
        await message.answer(f"🗳 <b>{vote.title}</b> — итоги:\n{results}", parse_mode="HTML")
    except Exception as e:
        await _fail(message, e, "/close_vote")
