"""Tests for FallbackExecutor and the RoutingContext request flow.

Tests cover:
- Primary failure (HTTP 500) falls back to the next provider
- All providers failing yields AllProvidersExhaustedError with every attempt
- Never more than three provider calls per request
- Budget pre-check stops the request before any provider call
- Circuit-open skips are not network attempts and do not touch health
- Provider timeouts enforced by the executor
- Breakers opening after repeated failures change later routing
"""

from __future__ import annotations

import pytest

from src.routing.clients import CompletionRequest
from src.routing.context import build_routing_context
from src.routing.errors import (
    AllProvidersExhaustedError,
    BudgetExceededError,
    ErrorCategory,
    ErrorKind,
    ProviderError,
    ProviderTimeoutError,
)
from src.routing.providers import ProviderId
from src.routing.router import NO_PROVIDER_AVAILABLE, RoutingDecision

SHORT_PROMPT = "Hello there, what time is it in Paris right now?"


def _server_error(provider_id: ProviderId) -> ProviderError:
    return ProviderError(provider_id, f"{provider_id} returned HTTP 500", status_code=500)


def _total_calls(fake_clients) -> int:
    return sum(c.calls for c in fake_clients.values())


async def _process(routing_context, session_id: str, prompt: str = SHORT_PROMPT):
    return await routing_context.process(
        CompletionRequest(prompt=prompt),
        session_id=session_id,
        request_id="req-1",
    )


# ------------------------------------------------------------------ #
# Fallback walk
# ------------------------------------------------------------------ #


class TestFallbackWalk:
    @pytest.mark.asyncio
    async def test_primary_succeeds(self, routing_context, fake_clients, session_id) -> None:
        outcome = await _process(routing_context, session_id)

        assert outcome.decision.primary is ProviderId.GROQ
        assert outcome.result.provider_id is ProviderId.GROQ
        assert outcome.result.fallback_occurred is False
        assert len(outcome.result.attempts) == 1
        assert fake_clients[ProviderId.GROQ].calls == 1
        assert outcome.result.response.content == "answer from groq"

    @pytest.mark.asyncio
    async def test_primary_500_falls_back(self, routing_context, fake_clients, session_id) -> None:
        fake_clients[ProviderId.GROQ].fail_with = _server_error(ProviderId.GROQ)

        outcome = await _process(routing_context, session_id)

        assert outcome.result.provider_id is ProviderId.GEMINI
        assert outcome.result.fallback_occurred is True
        first, second = outcome.result.attempts
        assert first.provider_id is ProviderId.GROQ
        assert first.error_kind is ErrorKind.PROVIDER_ERROR
        assert first.error_category is ErrorCategory.AVAILABILITY
        assert second.success is True

        groq_circuit = await routing_context.breakers.get(ProviderId.GROQ).snapshot()
        assert groq_circuit["failure_count"] == 1
        groq_health = await routing_context.health.get(ProviderId.GROQ)
        assert groq_health.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, routing_context, fake_clients, session_id) -> None:
        for pid, client in fake_clients.items():
            client.fail_with = _server_error(pid)

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await _process(routing_context, session_id)

        error = exc_info.value
        assert len(error.attempts) == 3
        assert error.all_timed_out is False
        body = error.to_dict()
        assert body["error"] == "all_providers_failed"
        assert [a["providerId"] for a in body["attempts"]] == ["groq", "gemini", "cerebras"]
        assert {a["errorKind"] for a in body["attempts"]} == {"provider_error"}
        assert _total_calls(fake_clients) == 3

    @pytest.mark.asyncio
    async def test_all_timeouts_are_flagged(self, routing_context, fake_clients, session_id) -> None:
        for pid, client in fake_clients.items():
            client.fail_with = ProviderTimeoutError(pid, 1000)

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await _process(routing_context, session_id)

        assert exc_info.value.all_timed_out is True

    @pytest.mark.asyncio
    async def test_never_more_than_three_calls(
        self, routing_context, fake_clients, session_id
    ) -> None:
        for pid, client in fake_clients.items():
            client.fail_with = _server_error(pid)
        decision = RoutingDecision(
            primary=ProviderId.GROQ,
            fallbacks=(ProviderId.GEMINI, ProviderId.CEREBRAS, ProviderId.GROQ),
        )

        with pytest.raises(AllProvidersExhaustedError):
            await routing_context.executor.execute(
                decision,
                CompletionRequest(prompt=SHORT_PROMPT),
                session_id=session_id,
                request_id="req-1",
            )

        assert _total_calls(fake_clients) == 3

    @pytest.mark.asyncio
    async def test_failed_attempts_release_reservations(
        self, routing_context, fake_clients, session_id
    ) -> None:
        fake_clients[ProviderId.GROQ].fail_with = _server_error(ProviderId.GROQ)

        outcome = await _process(routing_context, session_id)

        budget = await routing_context.budget.get_state(session_id)
        assert budget.pending_usd == 0.0
        assert budget.daily_usage == pytest.approx(outcome.result.cost_usd)
        assert budget.operations_count == 1

    @pytest.mark.asyncio
    async def test_charges_actual_cost(self, routing_context, session_id) -> None:
        outcome = await _process(routing_context, session_id)

        # 10 prompt tokens at $0.30/1M + 20 completion tokens at $0.60/1M
        assert outcome.result.cost_usd == pytest.approx(0.000015)
        budget = await routing_context.budget.get_state(session_id)
        assert budget.total_cost_usd == pytest.approx(0.000015)

    @pytest.mark.asyncio
    async def test_every_attempt_is_recorded(self, routing_context, fake_clients, session_id) -> None:
        fake_clients[ProviderId.GROQ].fail_with = _server_error(ProviderId.GROQ)

        await _process(routing_context, session_id)

        records = routing_context.recorder.recent()
        assert [r.provider_id for r in records] == ["groq", "gemini"]
        assert [r.success for r in records] == [False, True]
        assert all(r.request_id == "req-1" for r in records)


# ------------------------------------------------------------------ #
# Budget
# ------------------------------------------------------------------ #


class TestBudget:
    @pytest.mark.asyncio
    async def test_budget_exhausted_makes_no_calls(
        self, routing_context, fake_clients, session_id
    ) -> None:
        await routing_context.budget.charge(session_id, 10.0 - 0.001)

        with pytest.raises(BudgetExceededError) as exc_info:
            await _process(routing_context, session_id)

        assert _total_calls(fake_clients) == 0
        assert exc_info.value.window == "daily"
        assert exc_info.value.limit == 10.0
        assert exc_info.value.current_usage == pytest.approx(9.999)

    def test_estimate_is_prompt_plus_max_tokens(self, routing_context) -> None:
        request = CompletionRequest(prompt="a" * 400, max_tokens=1000)

        estimate = routing_context.executor.estimate_cost(ProviderId.GROQ, request)

        # 100 prompt tokens at $0.30/1M + 1000 output tokens at $0.60/1M
        assert estimate == pytest.approx(0.00063)

    def test_estimate_caps_output_at_provider_limit(self, routing_context) -> None:
        request = CompletionRequest(prompt="", max_tokens=100_000)

        estimate = routing_context.executor.estimate_cost(ProviderId.GROQ, request)

        assert estimate == pytest.approx(8000 * 0.60 / 1_000_000)


# ------------------------------------------------------------------ #
# Circuit interaction
# ------------------------------------------------------------------ #


class TestCircuitInteraction:
    @pytest.mark.asyncio
    async def test_circuit_opened_mid_walk_is_skipped(
        self, routing_context, fake_clients, session_id
    ) -> None:
        fake_clients[ProviderId.GROQ].fail_with = _server_error(ProviderId.GROQ)
        decision = RoutingDecision(
            primary=ProviderId.GROQ,
            fallbacks=(ProviderId.GEMINI, ProviderId.CEREBRAS),
        )
        await routing_context.breakers.force_open(ProviderId.GEMINI)

        result = await routing_context.executor.execute(
            decision,
            CompletionRequest(prompt=SHORT_PROMPT),
            session_id=session_id,
            request_id="req-1",
        )

        assert result.provider_id is ProviderId.CEREBRAS
        skipped = result.attempts[1]
        assert skipped.error_kind is ErrorKind.CIRCUIT_OPEN
        assert skipped.was_attempted is False
        assert fake_clients[ProviderId.GEMINI].calls == 0
        gemini_health = await routing_context.health.get(ProviderId.GEMINI)
        assert gemini_health.total_requests == 0
        assert gemini_health.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_held_trial_skipped_before_budget_check(
        self, routing_context, fake_clients, session_id, clock
    ) -> None:
        """Test a provider whose trial is taken cannot exhaust the budget for cheaper fallbacks."""
        request = CompletionRequest(prompt=SHORT_PROMPT)
        executor = routing_context.executor
        cerebras = routing_context.breakers.get(ProviderId.CEREBRAS)
        await cerebras.force_open()
        clock.advance(31)
        assert await cerebras.allow_request() is True

        gemini_estimate = executor.estimate_cost(ProviderId.GEMINI, request)
        cerebras_estimate = executor.estimate_cost(ProviderId.CEREBRAS, request)
        assert gemini_estimate < cerebras_estimate
        await routing_context.budget.set_limits(
            session_id, daily_limit=(gemini_estimate + cerebras_estimate) / 2
        )

        result = await executor.execute(
            RoutingDecision(
                primary=ProviderId.CEREBRAS,
                fallbacks=(ProviderId.GEMINI, ProviderId.GROQ),
            ),
            request,
            session_id=session_id,
            request_id="req-1",
        )

        assert result.provider_id is ProviderId.GEMINI
        assert result.attempts[0].error_kind is ErrorKind.CIRCUIT_OPEN
        assert fake_clients[ProviderId.CEREBRAS].calls == 0
        assert fake_clients[ProviderId.GEMINI].calls == 1

    @pytest.mark.asyncio
    async def test_lost_trial_claim_releases_reservation(
        self, routing_context, fake_clients, session_id, monkeypatch
    ) -> None:
        groq = routing_context.breakers.get(ProviderId.GROQ)

        async def _claimed_elsewhere() -> bool:
            return False

        monkeypatch.setattr(groq, "allow_request", _claimed_elsewhere)

        outcome = await _process(routing_context, session_id)

        assert outcome.result.provider_id is ProviderId.GEMINI
        assert outcome.result.attempts[0].error_kind is ErrorKind.CIRCUIT_OPEN
        assert fake_clients[ProviderId.GROQ].calls == 0
        budget = await routing_context.budget.get_state(session_id)
        assert budget.pending_usd == 0.0

    @pytest.mark.asyncio
    async def test_all_circuits_open(self, routing_context, fake_clients, session_id) -> None:
        for pid in ProviderId:
            await routing_context.breakers.force_open(pid)

        with pytest.raises(AllProvidersExhaustedError) as exc_info:
            await _process(routing_context, session_id)

        error = exc_info.value
        assert error.reasoning == NO_PROVIDER_AVAILABLE
        assert {a.error_kind for a in error.attempts} == {ErrorKind.CIRCUIT_OPEN}
        assert error.all_timed_out is False
        assert _total_calls(fake_clients) == 0

    @pytest.mark.asyncio
    async def test_repeated_failures_open_circuit(
        self, routing_context, fake_clients, session_id
    ) -> None:
        fake_clients[ProviderId.GROQ].fail_with = _server_error(ProviderId.GROQ)

        for _ in range(5):
            await _process(routing_context, session_id)

        outcome = await _process(routing_context, session_id)

        assert fake_clients[ProviderId.GROQ].calls == 5
        assert ProviderId.GROQ in outcome.decision.excluded
        assert outcome.decision.primary is ProviderId.GEMINI
        groq_health = await routing_context.health.get(ProviderId.GROQ)
        assert groq_health.circuit_breaker_open is True

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes_circuit(
        self, routing_context, fake_clients, session_id, clock
    ) -> None:
        await routing_context.breakers.force_open(ProviderId.GROQ)
        clock.advance(30)

        outcome = await _process(routing_context, session_id)

        assert outcome.result.provider_id is ProviderId.GROQ
        state = await routing_context.breakers.get(ProviderId.GROQ).get_state()
        assert state == "closed"


# ------------------------------------------------------------------ #
# Timeouts
# ------------------------------------------------------------------ #


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_slow_provider_times_out_and_falls_back(
        self, fake_settings, store, fake_clients, clock, utc_clock, session_id
    ) -> None:
        settings = fake_settings.model_copy(update={"groq_timeout_ms": 100})
        context = build_routing_context(
            settings, store, clients=fake_clients, clock=clock, budget_clock=utc_clock
        )
        fake_clients[ProviderId.GROQ].delay = 1.0

        outcome = await _process(context, session_id)

        first = outcome.result.attempts[0]
        assert first.error_kind is ErrorKind.PROVIDER_TIMEOUT
        assert first.error_category is ErrorCategory.TIMEOUT
        assert outcome.result.provider_id is ProviderId.GEMINI

    @pytest.mark.asyncio
    async def test_unexpected_client_error_is_a_provider_error(
        self, routing_context, fake_clients, session_id
    ) -> None:
        fake_clients[ProviderId.GROQ].fail_with = RuntimeError("boom")

        outcome = await _process(routing_context, session_id)

        assert outcome.result.attempts[0].error_kind is ErrorKind.PROVIDER_ERROR
        assert outcome.result.provider_id is ProviderId.GEMINI
