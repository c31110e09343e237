"""Правила robots.txt с кешем по origin."""
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser

import httpx
from loguru import logger


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    scheme = parsed.scheme or "https"
    return f"{scheme}://{parsed.netloc}"


class RobotsCache:
    """
    Загружает и кеширует robots.txt по origin.
    Недоступный robots.txt разрешает скрапинг (с записью в лог), 4xx означает отсутствие правил.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agent: str,
        timeout_seconds: float = 10.0,
        allow_when_unreachable: bool = True,
    ) -> None:
        self._client = client
        self._user_agent = user_agent
        self._timeout = timeout_seconds
        self._allow_when_unreachable = allow_when_unreachable
        self._cache: dict[str, RobotFileParser] = {}

    async def can_fetch(self, url: str) -> bool:
        parser = await self._get_parser(url)
        return parser.can_fetch(self._user_agent, url)

    async def _get_parser(self, url: str) -> RobotFileParser:
        origin = origin_of(url)
        cached = self._cache.get(origin)
        if cached is not None:
            return cached

        parser = RobotFileParser()
        robots_url = urljoin(origin, "/robots.txt")
        parser.set_url(robots_url)
        try:
            response = await self._client.get(robots_url, timeout=self._timeout)
            if response.status_code < 400:
                parser.parse(response.text.splitlines())
            elif response.status_code < 500:
                # robots.txt не опубликован: разрешено всё
                parser.parse([])
            else:
                self._apply_fallback(parser)
                logger.warning(f"[robots] {robots_url} returned HTTP {response.status_code}")
        except httpx.HTTPError as e:
            self._apply_fallback(parser)
            logger.warning(f"[robots] Could not fetch {robots_url}: {e}")

        self._cache[origin] = parser
        return parser

    def _apply_fallback(self, parser: RobotFileParser) -> None:
        if self._allow_when_unreachable:
            parser.parse(["User-agent: *", "Allow: /"])
        else:
            parser.parse(["User-agent: *", "Disallow: /"])
