"""Конфигурация планировщика мониторинга из переменных окружения."""
from functools import cached_property

from pydantic import AliasChoices, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_comma(value: str) -> list[str]:
    """Разобрать 'a,b,c' в ['a', 'b', 'c']."""
    if not value or not value.strip():
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Настройки планировщика из env или файла .env."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Supabase
    supabase_url: str = ""
    supabase_service_key: SecretStr = SecretStr("")
    job_store_backend: str = "supabase"  # "supabase" | "memory"

    # Воркер
    worker_poll_interval: float = 5.0
    worker_max_concurrent: int = 5
    worker_max_per_user: int = 2
    stuck_job_minutes: int = 30
    log_level: str = "INFO"

    # Ретраи
    retry_base_delay_seconds: float = 60.0
    retry_max_delay_seconds: float = 3600.0
    retry_jitter_ratio: float = 0.1
    default_max_retries: int = 3

    # Планирование
    initial_jitter_seconds: float = 30.0

    # Загрузка страниц
    default_timeout_ms: int = 30_000
    user_agent: str = "CompetitorMonitor-Bot/1.0"
    request_delay_seconds: float = 1.0

    # Лимит на создание задач (дефолт фичефлага)
    max_jobs_per_hour: int = 20
    unlimited_users: str = ""

    # История выполнений
    history_limit: int = 50
    recent_history_size: int = 50

    # API
    scraper_api_key: SecretStr
    scraper_port: int = Field(
        default=8001,
        validation_alias=AliasChoices("SCRAPER_PORT", "PORT"),
    )

    @cached_property
    def unlimited_users_list(self) -> list[str]:
        """Разобрать UNLIMITED_USERS='u1,u2' в ['u1', 'u2']."""
        return _split_comma(self.unlimited_users)


def load_settings() -> Settings:
    """Собрать Settings из окружения (файл .env).

    Фабричная функция: pyright не знает, что pydantic-settings заполняет
    обязательные поля из окружения.
    """
    return Settings.model_validate({})
