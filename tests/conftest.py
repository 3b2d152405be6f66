"""
Shared test fixtures for pytest.

Provides common fakes and test data for all test modules:
- fake_settings: Test environment configuration (in-memory store, no judge)
- FakeAdapter / make_adapter: Scripted provider adapter, no network
- store, cache: In-memory ChatStore and cache backend
- make_router: ModelRouter over fake adapters using the real catalog
- make_user: Seed a user with per-model balances
- test_app, client: FastAPI app with collaborators overridden + httpx client
- make_token, auth_headers: HS256 bearer tokens for a user
- parse_sse: Split an SSE body into (event, data) frames
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncGenerator, AsyncIterator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import jwt
import pytest
from fastapi import FastAPI

from chatbroker.agent.llm import ProviderAdapter, ProviderUnavailableError
from chatbroker.agent.model_router.catalog import build_catalog
from chatbroker.agent.model_router.router import ModelRouter
from chatbroker.cache.backend import InMemoryCacheBackend
from chatbroker.config import Environment, Settings, StoreBackend, get_settings
from chatbroker.models.user import User
from chatbroker.services.store import InMemoryChatStore
from chatbroker.telemetry import clear_context

TEST_JWT_SECRET = "unit-test-jwt-secret"
TEST_AUDIENCE = "chatbroker-api"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _clear_log_context():
    yield
    clear_context()


# ------------------------------------------------------------------ #
# Fake provider adapter
# ------------------------------------------------------------------ #

class FakeAdapter(ProviderAdapter):
    """Scripted provider adapter.

    Args:
        adapter_id: Route key ("together", "openai", "nebius")
        deltas: Deltas yielded by stream()
        reply: Text returned by complete()
        error: Raised by both calls before producing anything
        fail_after: Raise ProviderUnavailableError after this many deltas
        delay: Seconds to sleep before each delta
    """

    def __init__(
        self,
        adapter_id: str,
        *,
        deltas: list[str] | None = None,
        reply: str = "",
        error: Exception | None = None,
        fail_after: int | None = None,
        delay: float = 0.0,
        supports_streaming: bool = True,
    ) -> None:
        self.adapter_id = adapter_id
        self.supports_streaming = supports_streaming
        self.deltas = deltas or []
        self.reply = reply
        self.error = error
        self.fail_after = fail_after
        self.delay = delay
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def complete(
        self,
        messages: list[dict[str, str]],
        *,
        model: str,
        max_tokens: int | None = None,
    ) -> str:
        self.calls.append(
            {"method": "complete", "model": model, "messages": messages, "max_tokens": max_tokens}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply

    async def stream(self, messages: list[dict[str, str]], *, model: str) -> AsyncIterator[str]:
        self.calls.append({"method": "stream", "model": model, "messages": messages})
        if self.error is not None:
            raise self.error
        try:
            for index, delta in enumerate(self.deltas):
                if self.fail_after is not None and index == self.fail_after:
                    raise ProviderUnavailableError("connection reset", adapter_id=self.adapter_id)
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield delta
        finally:
            self.closed = True


@pytest.fixture
def make_adapter() -> type[FakeAdapter]:
    return FakeAdapter


# ------------------------------------------------------------------ #
# Settings & collaborators
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        environment=Environment.TEST,
        jwt_secret=TEST_JWT_SECRET,
        jwt_audience=TEST_AUDIENCE,
        store_backend=StoreBackend.MEMORY,
        redis_url="",
        memory_judge_model=None,
        token_encoding="",
        heartbeat_interval_seconds=15.0,
        debug=True,
    )


@pytest.fixture
def store() -> InMemoryChatStore:
    return InMemoryChatStore()


@pytest.fixture
def cache() -> InMemoryCacheBackend:
    return InMemoryCacheBackend()


@pytest.fixture
def make_router(fake_settings: Settings) -> Callable[..., ModelRouter]:
    """Build a ModelRouter whose catalog routes only to the given adapters."""

    def _make(*adapters: ProviderAdapter) -> ModelRouter:
        by_id = {adapter.adapter_id: adapter for adapter in adapters}
        catalog = build_catalog(fake_settings, frozenset(by_id))
        return ModelRouter(catalog, by_id)

    return _make


@pytest.fixture
def make_user(store: InMemoryChatStore) -> Callable[..., User]:
    """Seed a user. Balances are set through the store's atomic increment."""

    def _make(
        balances: dict[str, int] | None = None,
        *,
        paid_days: int | None = None,
        email: str | None = None,
    ) -> User:
        user = User(
            id=uuid.uuid4(),
            email=email or f"user-{uuid.uuid4().hex[:8]}@example.com",
            is_paid_user=paid_days is not None,
            paid_until=datetime.now(UTC) + timedelta(days=paid_days) if paid_days is not None else None,
            created_at=datetime.now(UTC),
        )
        store.add_user(user)
        for model_id, amount in (balances or {}).items():
            store.balances[(user.id, model_id)] = amount
        return user

    return _make


# ------------------------------------------------------------------ #
# Auth helpers
# ------------------------------------------------------------------ #

def make_token(sub: str, *, secret: str = TEST_JWT_SECRET, expires_in: int = 3600) -> str:
    """Create a test JWT token using HS256.

    Args:
        sub: Subject claim (user id)
        secret: Signing secret
        expires_in: Seconds until exp (negative for an expired token)

    Returns:
        Encoded JWT token string
    """
    now = int(datetime.now(UTC).timestamp())
    payload = {
        "sub": sub,
        "aud": TEST_AUDIENCE,
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture
def auth_headers() -> Callable[[User], dict[str, str]]:
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(str(user.id))}"}

    return _headers


# ------------------------------------------------------------------ #
# App & HTTP client
# ------------------------------------------------------------------ #

@pytest.fixture
def model_router(make_router: Callable[..., ModelRouter]) -> ModelRouter:
    """Default router: nano streams "Hello world" from the together route."""
    return make_router(FakeAdapter("together", deltas=["Hello", " world"]))


@pytest.fixture
def test_app(
    fake_settings: Settings,
    store: InMemoryChatStore,
    cache: InMemoryCacheBackend,
    model_router: ModelRouter,
) -> FastAPI:
    """Create FastAPI test app instance with test collaborators.

    The lifespan does not run under ASGITransport, so every app.state
    collaborator is provided through dependency overrides instead.
    """
    from chatbroker.api.deps import get_cache, get_model_router, get_store
    from chatbroker.main import create_app

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: fake_settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_cache] = lambda: cache
    app.dependency_overrides[get_model_router] = lambda: model_router
    return app


@pytest.fixture
async def client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client for testing the FastAPI application."""
    transport = httpx.ASGITransport(app=test_app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac


def _parse_sse(body: str) -> list[tuple[str, str]]:
    frames: list[tuple[str, str]] = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event = "message"
        data_lines: list[str] = []
        for line in block.split("\n"):
            if line.startswith("event: "):
                event = line.removeprefix("event: ")
            elif line.startswith("data: "):
                data_lines.append(line.removeprefix("data: "))
        frames.append((event, "\n".join(data_lines)))
    return frames


@pytest.fixture
def parse_sse() -> Callable[[str], list[tuple[str, str]]]:
    return _parse_sse
