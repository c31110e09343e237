"""Загрузчик страниц на httpx с соблюдением robots.txt и задержкой по доменам."""
import asyncio
import time

import httpx
from loguru import logger

from src.exceptions import FetchError, FetchTimeoutError
from src.platforms.base import FetchedPage
from src.platforms.web.robots import RobotsCache, origin_of

_DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}


class WebFetcher:
    """Вежливо загружать страницы конкурентов."""

    def __init__(
        self,
        user_agent: str,
        request_delay_seconds: float = 1.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._user_agent = user_agent
        self._request_delay = request_delay_seconds
        self._client = client or httpx.AsyncClient(
            follow_redirects=True,
            headers={"User-Agent": user_agent, **_DEFAULT_HEADERS},
        )
        self._robots = RobotsCache(self._client, user_agent)
        self._last_request: dict[str, float] = {}
        self._domain_locks: dict[str, asyncio.Lock] = {}

    async def is_allowed(self, url: str) -> bool:
        return await self._robots.can_fetch(url)

    async def _respect_rate_limit(self, origin: str) -> None:
        """Разнести запросы к одному origin на request_delay."""
        lock = self._domain_locks.setdefault(origin, asyncio.Lock())
        async with lock:
            last = self._last_request.get(origin)
            if last is not None:
                wait = self._request_delay - (time.monotonic() - last)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request[origin] = time.monotonic()

    async def fetch(
        self, url: str, *, headers: dict[str, str] | None = None, timeout_ms: int = 30_000
    ) -> FetchedPage:
        await self._respect_rate_limit(origin_of(url))
        started = time.monotonic()
        try:
            response = await self._client.get(url, headers=headers or None, timeout=timeout_ms / 1000)
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(url, timeout_ms) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Request to {url} failed: {e}") from e

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if response.status_code >= 400:
            # 4xx не исправится ретраем; 5xx и 429 могут
            retryable = response.status_code >= 500 or response.status_code == 429
            raise FetchError(
                f"HTTP {response.status_code} from {url}",
                status_code=response.status_code,
                retryable=retryable,
            )

        logger.debug(f"[fetch] {url} -> {response.status_code} in {elapsed_ms}ms")
        return FetchedPage(
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            elapsed_ms=elapsed_ms,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
