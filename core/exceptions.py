"""
Кастомные исключения движка групповых миссий.
Для удобной обработки ошибок в handlers и services.

Иерархия повторяет таксономию ошибок:
- ValidationFailed      — неверные данные/переходы, не повторяются
- AuthorizationFailed   — нет прав на действие
- StateConflict         — конкурентное изменение, повтор на свежей версии
- ExternalDependencyError — таймауты и недоступность внешних сервисов
"""

from typing import Optional


class GroupMissionError(Exception):
    """Базовое исключение для всех ошибок движка"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# ========== VALIDATION ==========

class ValidationFailed(GroupMissionError):
    """Запрос отклонён валидацией"""


class MissionNotFound(ValidationFailed):
    """Миссия не найдена в БД"""
    def __init__(self, mission_id: int):
        self.mission_id = mission_id
        super().__init__(f"Mission {mission_id} not found")


class GroupNotFound(ValidationFailed):
    """Группа не найдена"""
    def __init__(self, group_id: int):
        self.group_id = group_id
        super().__init__(f"Group {group_id} not found")


class UserNotFound(ValidationFailed):
    """Пользователь не найден в БД"""
    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")


class ObjectiveNotFound(ValidationFailed):
    def __init__(self, objective_id: int, scope: str):
        self.objective_id = objective_id
        self.scope = scope
        super().__init__(f"{scope.capitalize()} objective {objective_id} not found")


class InvalidStatusTransition(ValidationFailed):
    """Недопустимый переход статуса группы"""
    def __init__(self, current: str, target: str, group_id: Optional[int] = None):
        self.current = current
        self.target = target
        where = f" for group {group_id}" if group_id is not None else ""
        super().__init__(f"Cannot change status from '{current}' to '{target}'{where}")


class GroupFull(ValidationFailed):
    def __init__(self, group_id: Optional[int], max_members: int):
        self.group_id = group_id
        self.max_members = max_members
        super().__init__(f"Group {group_id} already has the maximum of {max_members} members")


class JoinRequirementNotMet(ValidationFailed):
    """Пользователь не проходит требования миссии"""


class AlreadyParticipating(ValidationFailed):
    def __init__(self, user_id: int, mission_id: int):
        self.user_id = user_id
        self.mission_id = mission_id
        super().__init__(f"User {user_id} already participates in mission {mission_id}")


class MissionNotJoinable(ValidationFailed):
    def __init__(self, mission_id: int, status: str):
        self.mission_id = mission_id
        self.status = status
        super().__init__(f"Mission {mission_id} is not open for joining (status: {status})")


class InvalidRating(ValidationFailed):
    """Некорректная оценка участника"""


class InvalidVote(ValidationFailed):
    """Некорректное голосование"""


class FeatureDisabled(ValidationFailed):
    def __init__(self, feature: str, mission_id: int):
        self.feature = feature
        super().__init__(f"{feature} is disabled for mission {mission_id}")


class GroupNotActive(ValidationFailed):
    """Действие требует другого статуса группы"""
    def __init__(self, group_id: int, status: str, action: str):
        self.group_id = group_id
        self.status = status
        super().__init__(f"Cannot {action}: group {group_id} is {status}")


class NotEnoughMembers(ValidationFailed):
    def __init__(self, group_id: int, active: int, min_members: int, max_members: int):
        self.group_id = group_id
        super().__init__(
            f"Group {group_id} has {active} active members, "
            f"needs between {min_members} and {max_members} to start"
        )


class StageNotFound(ValidationFailed):
    def __init__(self, group_id: int, stage_index: int):
        super().__init__(f"Stage {stage_index} not found in group {group_id}")


class StageOrderViolation(ValidationFailed):
    """Этап требует завершения предыдущего"""


class ProgressRegression(ValidationFailed):
    def __init__(self, objective_id: int, current: float, requested: float):
        super().__init__(
            f"Objective {objective_id} progress cannot go back from {current:g} to {requested:g} "
            f"without a correction"
        )


# ========== AUTHORIZATION ==========

class AuthorizationFailed(GroupMissionError):
    """Нет прав на действие"""


class UnauthorizedAccess(AuthorizationFailed):
    """Несанкционированный доступ (не лидер, не админ и т.д.)"""
    def __init__(self, user_id: int, action: str):
        self.user_id = user_id
        self.action = action
        super().__init__(f"User {user_id} not authorized for action: {action}")


class NotGroupMember(AuthorizationFailed):
    def __init__(self, user_id: int, group_id: int):
        self.user_id = user_id
        self.group_id = group_id
        super().__init__(f"User {user_id} is not an active member of group {group_id}")


# ========== STATE CONFLICT ==========

class StateConflict(GroupMissionError):
    """Конфликт состояния"""


class ConcurrentModification(StateConflict):
    def __init__(self, description: str):
        super().__init__(f"Concurrent modification detected while trying to {description}; please retry")


class AlreadySettled(StateConflict):
    def __init__(self, group_id: int):
        self.group_id = group_id
        super().__init__(f"Rewards for group {group_id} were already settled")


# ========== EXTERNAL DEPENDENCIES ==========

class ExternalDependencyError(GroupMissionError):
    """Ошибка внешнего сервиса"""


class RequirementCheckTimeout(ExternalDependencyError):
    def __init__(self, user_id: int, timeout: float):
        super().__init__(
            f"Requirement check for user {user_id} timed out after {timeout:g}s; please try again"
        )


class RequirementServiceUnavailable(ExternalDependencyError):
    """Сервис проверки требований недоступен"""


class RewardDispatchError(ExternalDependencyError):
    """Не удалось передать награду во внешний сервис"""
