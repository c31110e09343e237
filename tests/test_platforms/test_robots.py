"""Тесты кеша robots.txt."""
import httpx

from src.platforms.web.robots import RobotsCache, origin_of

ROBOTS = "User-agent: *\nDisallow: /private\n"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestOrigin:
    def test_origin_of(self) -> None:
        assert origin_of("https://acme.example/a/b?c=1") == "https://acme.example"
        assert origin_of("http://acme.example:8080/x") == "http://acme.example:8080"


class TestRobotsCache:
    """RobotsCache.can_fetch."""

    async def test_rules_applied(self) -> None:
        async with _client(lambda request: httpx.Response(200, text=ROBOTS)) as client:
            robots = RobotsCache(client, "TestBot")

            assert await robots.can_fetch("https://acme.example/pricing") is True
            assert await robots.can_fetch("https://acme.example/private/page") is False

    async def test_fetched_once_per_origin(self) -> None:
        requests: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(str(request.url))
            return httpx.Response(200, text=ROBOTS)

        async with _client(handler) as client:
            robots = RobotsCache(client, "TestBot")
            await robots.can_fetch("https://acme.example/a")
            await robots.can_fetch("https://acme.example/b")
            await robots.can_fetch("https://other.example/a")

        assert requests == ["https://acme.example/robots.txt", "https://other.example/robots.txt"]

    async def test_missing_robots_allows_everything(self) -> None:
        async with _client(lambda request: httpx.Response(404)) as client:
            robots = RobotsCache(client, "TestBot")
            assert await robots.can_fetch("https://acme.example/private") is True

    async def test_unreachable_robots_falls_back(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            assert await RobotsCache(client, "TestBot").can_fetch("https://acme.example/x") is True
            strict = RobotsCache(client, "TestBot", allow_when_unreachable=False)
            assert await strict.can_fetch("https://acme.example/x") is False

    async def test_server_error_falls_back(self) -> None:
        async with _client(lambda request: httpx.Response(503)) as client:
            strict = RobotsCache(client, "TestBot", allow_when_unreachable=False)
            assert await strict.can_fetch("https://acme.example/x") is False
