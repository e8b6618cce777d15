"""
Shared test fixtures for pytest.

Provides common fakes and test data for all test modules:
- fake_settings: Test environment configuration (all provider keys set)
- clock / utc_clock: Simulated clocks for circuit and budget windows
- store: Fresh in-memory state store
- fake_clients: Scriptable provider clients that count their calls
- routing_context: Fully wired RoutingContext around the fakes
- test_app / client: FastAPI app and async HTTP client against it
- session_id: Fixed session UUID
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi import FastAPI

from src.config import Environment, Settings, get_settings
from src.infra.state_store import InMemoryStateStore
from src.routing.clients import CompletionRequest, CompletionResponse
from src.routing.context import RoutingContext, build_routing_context
from src.routing.providers import ProviderId

TEST_ADMIN_KEY = "test-admin-key"


# ------------------------------------------------------------------ #
# Session-scoped: clear settings cache between test sessions
# ------------------------------------------------------------------ #

@pytest.fixture(autouse=True, scope="session")
def _clear_settings_cache():
    """Clear the lru_cache on get_settings so test overrides take effect."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# ------------------------------------------------------------------ #
# Simulated clocks
# ------------------------------------------------------------------ #

class FakeClock:
    """Wall clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUtcClock:
    """UTC datetime clock for budget rollover tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ------------------------------------------------------------------ #
# Fake provider clients
# ------------------------------------------------------------------ #

class FakeProviderClient:
    """Stand-in for a ProviderClient.

    Raises fail_with (if set) on every call, otherwise returns a fixed
    completion. delay simulates a slow provider.
    """

    def __init__(
        self,
        provider_id: ProviderId,
        *,
        fail_with: Exception | None = None,
        delay: float = 0.0,
        prompt_tokens: int = 10,
        completion_tokens: int = 20,
    ) -> None:
        self.provider_id = provider_id
        self.fail_with = fail_with
        self.delay = delay
        self.prompt_tokens = prompt_tokens
        self.completion_tokens = completion_tokens
        self.calls = 0
        self.requests: list[CompletionRequest] = []

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.calls += 1
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        return CompletionResponse(
            provider_id=self.provider_id,
            model=f"{self.provider_id}-test-model",
            content=f"answer from {self.provider_id}",
            prompt_tokens=self.prompt_tokens,
            completion_tokens=self.completion_tokens,
        )


# ------------------------------------------------------------------ #
# Settings & routing fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def fake_settings() -> Settings:
    """Test environment settings with safe defaults."""
    return Settings(
        _env_file=None,
        environment=Environment.TEST,
        groq_api_key="gsk-test",
        gemini_api_key="gemini-test",
        cerebras_api_key="csk-test",
        admin_api_key=TEST_ADMIN_KEY,
        enable_telemetry=False,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcClock:
    return FakeUtcClock(datetime(2024, 3, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def fake_clients() -> dict[ProviderId, FakeProviderClient]:
    return {pid: FakeProviderClient(pid) for pid in ProviderId}


@pytest.fixture
def routing_context(
    fake_settings: Settings,
    store: InMemoryStateStore,
    fake_clients: dict[ProviderId, FakeProviderClient],
    clock: FakeClock,
    utc_clock: FakeUtcClock,
) -> RoutingContext:
    """RoutingContext wired around fakes, fresh per test."""
    return build_routing_context(
        fake_settings,
        store,
        clients=fake_clients,
        clock=clock,
        budget_clock=utc_clock,
    )


@pytest.fixture
def session_id() -> str:
    return str(uuid.UUID("11111111-2222-3333-4444-555555555555"))


# ------------------------------------------------------------------ #
# App & HTTP client fixtures
# ------------------------------------------------------------------ #

@pytest.fixture
def test_app(
    fake_settings: Settings,
    routing_context: RoutingContext,
    monkeypatch: pytest.MonkeyPatch,
) -> FastAPI:
    """Create FastAPI test app with the fake routing context attached.

    ASGITransport does not run the lifespan, so the context is attached
    to app.state directly.
    """
    from src.main import create_app

    get_settings.cache_clear()
    monkeypatch.setattr("src.main.get_settings", lambda: fake_settings)

    app = create_app()
    app.dependency_overrides[get_settings] = lambda: fake_settings
    app.state.routing = routing_context
    return app


@pytest.fixture
async def client(test_app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, None]:
    """Async HTTP client for testing the FastAPI application."""
    transport = httpx.ASGITransport(app=test_app)  # type: ignore[arg-type]
    async with httpx.AsyncClient(
        transport=transport,
        base_url="http://testserver",
    ) as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": TEST_ADMIN_KEY}
