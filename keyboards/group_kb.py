# keyboards/group_kb.py

from aiogram.types import InlineKeyboardMarkup, InlineKeyboardButton
from typing import List

from models.group_mission import GroupMission
from models.interaction import GroupVote
from models.mission_group import GroupStatus, MissionGroup


def get_missions_keyboard(missions: List[GroupMission]) -> InlineKeyboardMarkup:
    """Список открытых миссий: вступить сразу или встать в очередь матчинга"""
    buttons = []

    if not missions:
        buttons.append([InlineKeyboardButton(text="❌ Нет открытых миссий", callback_data="noop")])
    else:
        for mission in missions:
            row = [InlineKeyboardButton(text=f"🚀 {mission.title}", callback_data=f"gm_join:{mission.id}")]
            if mission.auto_match:
                row.append(InlineKeyboardButton(text="⏳ В очередь", callback_data=f"gm_wait:{mission.id}"))
            buttons.append(row)

    return InlineKeyboardMarkup(inline_keyboard=buttons)


def get_group_actions_keyboard(group: MissionGroup, user_id: int) -> InlineKeyboardMarkup:
    """Действия с группой: лидеру — запуск/пауза, всем — выход"""
    buttons = []
    is_leader = group.leader_id == user_id

    if is_leader and group.status == GroupStatus.FORMING:
        buttons.append([InlineKeyboardButton(text="▶️ Запустить группу", callback_data=f"gm_start:{group.id}")])
    if is_leader and group.status == GroupStatus.ACTIVE:
        buttons.append([InlineKeyboardButton(text="⏸ Пауза", callback_data=f"gm_pause:{group.id}")])
    if is_leader and group.status == GroupStatus.PAUSED:
        buttons.append([InlineKeyboardButton(text="▶️ Продолжить", callback_data=f"gm_resume:{group.id}")])
    if not group.is_terminal:
        buttons.append([InlineKeyboardButton(text="🚪 Покинуть группу", callback_data=f"gm_leave:{group.id}")])

    buttons.append([InlineKeyboardButton(text="🔙 Мои группы", callback_data="gm_my_groups")])
    return InlineKeyboardMarkup(inline_keyboard=buttons)


def get_vote_keyboard(vote: GroupVote) -> InlineKeyboardMarkup:
    buttons = [
        [InlineKeyboardButton(text=option.text, callback_data=f"gm_vote:{vote.id}:{option.position}")]
        for option in vote.options
    ]
    return InlineKeyboardMarkup(inline_keyboard=buttons)
