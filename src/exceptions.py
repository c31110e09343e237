"""Классификация ошибок планировщика мониторинга."""


class MonitorError(Exception):
    """Базовая ошибка ядра мониторинга."""

    retryable: bool = False
    kind: str = "error"


class JobValidationError(MonitorError):
    """Спецификация задачи отклонена при создании."""

    kind = "validation"


class InvalidTransitionError(JobValidationError):
    """Смена статуса запрещена машиной состояний задачи."""

    kind = "invalid_transition"

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Cannot move job from '{current}' to '{target}'")


class AuthorizationError(MonitorError):
    """У вызывающего нет валидного пользователя, или задача ему не принадлежит."""

    kind = "authorization"


class BudgetExceededError(MonitorError):
    """Пользователь превысил часовой лимит на создание задач."""

    kind = "budget"

    def __init__(self, user_id: str, cap: int) -> None:
        self.user_id = user_id
        self.cap = cap
        super().__init__(f"User {user_id} exceeded {cap} jobs per hour")


class JobNotFoundError(MonitorError):
    """Задачи с таким id нет в хранилище."""

    kind = "not_found"

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class FetchError(MonitorError):
    """Сетевая ошибка или плохой HTTP-статус при загрузке страницы."""

    kind = "network"

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True) -> None:
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class FetchTimeoutError(FetchError):
    """Загрузка превысила дедлайн задачи; обрабатывается как сетевая ошибка."""

    kind = "timeout"

    def __init__(self, url: str, timeout_ms: int) -> None:
        super().__init__(f"Timed out after {timeout_ms}ms fetching {url}")


class ExtractionError(MonitorError):
    """Настроенные селекторы ничего не нашли на странице."""

    kind = "extraction"
    retryable = True


class RobotsDisallowedError(MonitorError):
    """robots.txt запрещает путь; ретрай бесполезен."""

    kind = "robots"

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Scraping not allowed by robots.txt: {url}")


class PersistenceError(MonitorError):
    """Ошибка записи или чтения хранилища; задача сохраняет последнее записанное состояние."""

    kind = "persistence"
