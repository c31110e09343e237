"""Общие хелперы для тестов API."""
from unittest.mock import MagicMock

import pytest


def make_settings(max_jobs_per_hour: int = 20, unlimited_users: list[str] | None = None):
    """Мок Settings с API-ключом и флагами лимита."""
    settings = MagicMock()
    settings.scraper_api_key.get_secret_value.return_value = "sk-test-key"
    settings.max_jobs_per_hour = max_jobs_per_hour
    settings.unlimited_users_list = unlimited_users or []
    return settings


def make_app(store=None, processor=None, settings=None, flags=None):
    """FastAPI-приложение поверх in-memory хранилища и простаивающего процессора."""
    from src.api.app import create_app
    from src.store import InMemoryJobStore
    from src.worker.loop import QueueProcessor
    from tests.factories import FakeFetcher

    store = store or InMemoryJobStore()
    processor = processor or QueueProcessor(store, FakeFetcher())
    return create_app(processor, store, settings or make_settings(), flags=flags)


# Общие заголовки авторизации
AUTH_HEADERS = {"Authorization": "Bearer sk-test-key", "X-User-Id": "user-1"}

JOB_SPEC = {
    "competitorId": "comp-1",
    "jobType": "pricing",
    "url": "https://acme.example/pricing",
    "priority": "high",
    "frequencyType": "interval",
    "frequencyValue": "3h",
    "config": {"selectors": {"pricing": [".price"]}},
}


@pytest.fixture(autouse=True)
def _reset_rate_limit():
    """Лимитер по IP это состояние модуля; каждый тест начинает с чистого окна."""
    from src.api.app import _rate_limit_store

    _rate_limit_store.clear()
    yield
    _rate_limit_store.clear()
