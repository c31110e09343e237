"""Интерфейс загрузчика страниц для процессора очереди."""
from dataclasses import dataclass
from typing import Protocol


@dataclass
class FetchedPage:
    """Сырой ответ одной загрузки."""

    url: str
    status_code: int
    text: str
    elapsed_ms: int = 0


class BaseFetcher(Protocol):
    """Общий интерфейс загрузчика."""

    async def is_allowed(self, url: str) -> bool:
        """Проверка robots.txt для url."""
        ...

    async def fetch(
        self, url: str, *, headers: dict[str, str] | None = None, timeout_ms: int = 30_000
    ) -> FetchedPage:
        """GET url; бросает FetchError / FetchTimeoutError."""
        ...
