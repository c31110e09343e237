"""Проверки при создании задачи: идентичность пользователя и часовой лимит."""
from datetime import datetime, timedelta
from typing import Protocol

from loguru import logger

from src.config import Settings
from src.exceptions import AuthorizationError, BudgetExceededError
from src.store import JobStore

BUDGET_WINDOW = timedelta(hours=1)


class FeatureFlags(Protocol):
    """Фичефлаги пользователя, которые учитываются при создании задач."""

    def max_jobs_per_hour(self, user_id: str) -> int | None:
        """Часовой лимит на создание задач; None означает без ограничений."""
        ...


class SettingsFeatureFlags:
    """Флаги из Settings: общий лимит по умолчанию плюс список исключений."""

    def __init__(self, settings: Settings) -> None:
        self._default_cap = settings.max_jobs_per_hour
        self._unlimited = set(settings.unlimited_users_list)

    def max_jobs_per_hour(self, user_id: str) -> int | None:
        if user_id in self._unlimited:
            return None
        return self._default_cap


def require_user(user_id: str | None) -> str:
    """Отказать, если у вызывающего нет идентификатора пользователя."""
    if not user_id or not user_id.strip():
        raise AuthorizationError("Missing user identity")
    return user_id.strip()


async def check_budget(store: JobStore, flags: FeatureFlags, user_id: str, now: datetime) -> None:
    """BudgetExceededError, если пользователь создал слишком много задач за последний час."""
    cap = flags.max_jobs_per_hour(user_id)
    if cap is None:
        return
    created = await store.count_created_since(user_id, now - BUDGET_WINDOW)
    if created >= cap:
        logger.warning(f"User {user_id} hit the job creation budget ({created}/{cap} per hour)")
        raise BudgetExceededError(user_id, cap)
