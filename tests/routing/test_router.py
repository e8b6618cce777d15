"""Tests for Router.

Tests cover:
- Band thresholds and preferred primary per band
- Open circuits excluded from primary and fallbacks
- Half-open circuits stay eligible
- No provider available when every circuit is open
- Determinism for identical inputs
- Routing against live breaker state (failures and forced opens)
"""

from __future__ import annotations

import pytest

from src.infra.state_store import InMemoryStateStore
from src.routing.budget import BudgetState
from src.routing.circuit_breaker import CircuitBreakerRegistry, CircuitState
from src.routing.complexity import ComplexityFactors, ComplexityScore
from src.routing.providers import BAND_PREFERENCE, ComplexityBand, ProviderId
from src.routing.router import NO_PROVIDER_AVAILABLE, Router

ALL_CLOSED = {pid: CircuitState.CLOSED for pid in ProviderId}


def make_score(overall: float) -> ComplexityScore:
    band = Router().band_for(overall)
    return ComplexityScore(
        overall=overall,
        factors=ComplexityFactors(),
        level=band,
        recommended_provider=BAND_PREFERENCE[band][0],
        reasoning="test",
    )


@pytest.fixture
def router() -> Router:
    return Router()


# ------------------------------------------------------------------ #
# Pure routing
# ------------------------------------------------------------------ #


@pytest.mark.parametrize(
    ("overall", "band"),
    [
        (0.0, ComplexityBand.LOW),
        (0.2999, ComplexityBand.LOW),
        (0.3, ComplexityBand.MEDIUM),
        (0.7, ComplexityBand.MEDIUM),
        (0.7001, ComplexityBand.HIGH),
        (1.0, ComplexityBand.HIGH),
    ],
)
def test_band_thresholds(router: Router, overall: float, band: ComplexityBand) -> None:
    assert router.band_for(overall) is band


@pytest.mark.parametrize(
    ("overall", "primary", "fallbacks"),
    [
        (0.1, ProviderId.GROQ, (ProviderId.GEMINI, ProviderId.CEREBRAS)),
        (0.5, ProviderId.GEMINI, (ProviderId.GROQ, ProviderId.CEREBRAS)),
        (0.9, ProviderId.CEREBRAS, (ProviderId.GEMINI, ProviderId.GROQ)),
    ],
)
def test_primary_and_fallbacks_per_band(
    router: Router,
    overall: float,
    primary: ProviderId,
    fallbacks: tuple[ProviderId, ...],
) -> None:
    decision = router.route(make_score(overall), ALL_CLOSED)

    assert decision.primary is primary
    assert decision.fallbacks == fallbacks
    assert decision.excluded == ()
    assert decision.chain == (primary, *fallbacks)


def test_missing_circuit_state_counts_as_closed(router: Router) -> None:
    decision = router.route(make_score(0.1), {})
    assert decision.chain == (ProviderId.GROQ, ProviderId.GEMINI, ProviderId.CEREBRAS)


def test_open_circuit_excluded_everywhere(router: Router) -> None:
    states = {**ALL_CLOSED, ProviderId.GROQ: CircuitState.OPEN}

    decision = router.route(make_score(0.1), states)

    assert decision.primary is ProviderId.GEMINI
    assert ProviderId.GROQ not in decision.chain
    assert decision.excluded == (ProviderId.GROQ,)
    assert "circuit open" in decision.reasoning


def test_open_fallback_excluded(router: Router) -> None:
    states = {**ALL_CLOSED, ProviderId.GEMINI: CircuitState.OPEN}

    decision = router.route(make_score(0.9), states)

    assert decision.chain == (ProviderId.CEREBRAS, ProviderId.GROQ)


def test_half_open_provider_stays_eligible(router: Router) -> None:
    states = {**ALL_CLOSED, ProviderId.CEREBRAS: CircuitState.HALF_OPEN}

    decision = router.route(make_score(0.9), states)

    assert decision.primary is ProviderId.CEREBRAS


def test_all_open_yields_no_provider(router: Router) -> None:
    states = {pid: CircuitState.OPEN for pid in ProviderId}

    decision = router.route(make_score(0.5), states)

    assert decision.primary is None
    assert decision.has_provider is False
    assert decision.fallbacks == ()
    assert decision.chain == ()
    assert decision.reasoning == NO_PROVIDER_AVAILABLE
    assert set(decision.excluded) == set(ProviderId)


@pytest.mark.parametrize("overall", [0.0, 0.25, 0.3, 0.55, 0.7, 0.71, 1.0])
def test_route_is_deterministic(router: Router, overall: float) -> None:
    states = {**ALL_CLOSED, ProviderId.GEMINI: CircuitState.OPEN}
    budget = BudgetState(session_id="s", daily_limit=10.0, monthly_limit=100.0, daily_usage=2.5)

    first = router.route(make_score(overall), states, budget)
    second = router.route(make_score(overall), dict(states), budget)

    assert first == second


def test_budget_only_affects_reasoning(router: Router) -> None:
    budget = BudgetState(session_id="s", daily_limit=10.0, monthly_limit=100.0, daily_usage=9.0)

    with_budget = router.route(make_score(0.1), ALL_CLOSED, budget)
    without_budget = router.route(make_score(0.1), ALL_CLOSED)

    assert with_budget.chain == without_budget.chain
    assert "budget remaining today $1.0000" in with_budget.reasoning


# ------------------------------------------------------------------ #
# Routing against live breakers
# ------------------------------------------------------------------ #


class TestLiveBreakers:
    @pytest.mark.asyncio
    async def test_five_failures_exclude_provider_on_next_route(
        self, router: Router, store: InMemoryStateStore, clock
    ) -> None:
        breakers = CircuitBreakerRegistry(store, clock=clock)
        for _ in range(5):
            await breakers.get(ProviderId.GEMINI).record_failure()

        for overall in (0.1, 0.5, 0.9):
            decision = await router.snapshot_and_route(make_score(overall), breakers)
            assert ProviderId.GEMINI not in decision.chain
            assert ProviderId.GEMINI in decision.excluded

    @pytest.mark.asyncio
    async def test_forced_open_provider_returns_after_open_duration(
        self, router: Router, store: InMemoryStateStore, clock
    ) -> None:
        breakers = CircuitBreakerRegistry(store, clock=clock)
        await breakers.force_open(ProviderId.GROQ)

        for _ in range(30):
            decision = await router.snapshot_and_route(make_score(0.1), breakers)
            assert ProviderId.GROQ not in decision.chain
            clock.advance(1)

        decision = await router.snapshot_and_route(make_score(0.1), breakers)

        assert decision.primary is ProviderId.GROQ
        assert await breakers.get(ProviderId.GROQ).allow_request() is True
        assert await breakers.get(ProviderId.GROQ).allow_request() is False
