"""
Shared test fixtures for GameGate API tests.

Provides a controllable clock, in-process stores, a limiter wired to them,
an app with catch-all stub routes, and token helpers.
"""

from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient

from gamegate.auth.jwt import create_access_token
from gamegate.main import create_app
from gamegate.middleware.rate_limit import reset_limiter
from gamegate.ratelimit.decider import DeciderConfig
from gamegate.ratelimit.service import GamingRateLimiter
from gamegate.ratelimit.store import MemoryStore

START_TIME = 1_700_000_000.0


class ManualClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# --- Rate Limiter Reset Fixture ---


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Reset the global limiter before each test to ensure test isolation."""
    reset_limiter()
    yield
    reset_limiter()


# --- Store and Limiter Fixtures ---


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def memory_store(clock: ManualClock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def decider_config() -> DeciderConfig:
    """Slow-down disabled so sequential tests never sleep."""
    return DeciderConfig(slowdown_cap_ms=0)


@pytest.fixture
def limiter(memory_store: MemoryStore, clock: ManualClock, decider_config: DeciderConfig) -> GamingRateLimiter:
    return GamingRateLimiter(
        memory_store,
        config=decider_config,
        clock=clock,
        enabled=True,
        admission_budget_ms=1000,
    )


# --- App and Client Fixtures ---


async def echo(request: Request, path: str) -> JSONResponse:
    """Stub downstream handler; ``?status=`` picks the response status."""
    status_code = int(request.query_params.get("status", "200"))
    body = await request.body()
    return JSONResponse(
        status_code=status_code,
        content={"path": path, "body": body.decode("utf-8")},
    )


def build_app(limiter: GamingRateLimiter) -> FastAPI:
    app = create_app(limiter)
    app.add_api_route(
        "/api/v1/{path:path}",
        echo,
        methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    )
    return app


@pytest.fixture
def app(limiter: GamingRateLimiter) -> FastAPI:
    return build_app(limiter)


@pytest_asyncio.fixture(scope="function")
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        follow_redirects=True,
    ) as client:
        yield client


@pytest_asyncio.fixture
async def client_for() -> AsyncGenerator[Callable[[GamingRateLimiter], AsyncClient], None]:
    """Factory for clients bound to an app built around a specific limiter."""
    clients: list[AsyncClient] = []

    def _client_for(limiter: GamingRateLimiter) -> AsyncClient:
        client = AsyncClient(transport=ASGITransport(app=build_app(limiter)), base_url="http://test")
        clients.append(client)
        return client

    yield _client_for
    for client in clients:
        await client.aclose()


# --- Authentication Helper Fixtures ---


@pytest.fixture
def make_token() -> Callable[..., str]:
    """Factory fixture for access tokens."""

    def _make_token(user_id: str, roles: list[str] | None = None) -> str:
        return create_access_token(user_id, roles=roles or [])

    return _make_token


@pytest.fixture
def auth_headers(make_token) -> Callable[..., dict[str, str]]:
    """Factory fixture for Authorization headers."""

    def _auth_headers(user_id: str, roles: list[str] | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, roles)}"}

    return _auth_headers


@pytest.fixture
def admin_headers(auth_headers) -> dict[str, str]:
    return auth_headers("admin-1", ["admin"])
