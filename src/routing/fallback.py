"""Sequential fallback execution across providers.

The FallbackExecutor walks a RoutingDecision's chain (primary first, then
fallbacks, at most MAX_ATTEMPTS providers) until one provider succeeds.

Before every attempt, including the first:
1. The provider's circuit breaker is consulted; an open circuit (or a
   half-open one whose trial is already taken) skips the provider without
   a network call, a budget check or a health failure.
2. The BudgetGuard reserves a conservative cost estimate; if the session
   cannot afford it the request fails with BudgetExceededError and no
   provider is contacted.
3. The half-open trial, if any, is claimed; losing it to a concurrent
   request releases the reservation and skips the provider.

Each attempt runs under the provider's own timeout. A timeout, non-2xx
status or malformed response is recorded against the provider's breaker
and health record, traced, and the walk moves on. Only two errors leave
the executor: BudgetExceededError and AllProvidersExhaustedError (which
carries every per-provider failure).
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from src.routing.budget import BudgetGuard
from src.routing.circuit_breaker import CircuitBreakerRegistry
from src.routing.clients import CompletionRequest, CompletionResponse, ProviderClient
from src.routing.errors import (
    AllProvidersExhaustedError,
    BudgetExceededError,
    ErrorCategory,
    ErrorKind,
    ProviderError,
    ProviderTimeoutError,
    categorize_error,
)
from src.routing.health import ProviderHealth
from src.routing.observability import ObservabilityRecorder
from src.routing.providers import ProviderId, ProviderRegistry
from src.routing.router import NO_PROVIDER_AVAILABLE, RoutingDecision

log = structlog.get_logger(__name__)

MAX_ATTEMPTS = 3


@dataclass
class AttemptResult:
    """Outcome of one provider step in a request's fallback walk.

    Circuit-open skips are recorded with error_kind=CIRCUIT_OPEN and zero
    latency; they are not network attempts.
    """

    provider_id: ProviderId
    attempt_number: int
    success: bool
    latency_ms: float = 0.0
    tokens_used: int = 0
    cost_usd: float = 0.0
    error_kind: ErrorKind | None = None
    error_category: ErrorCategory | None = None
    error_message: str | None = None
    started_at: float = 0.0
    ended_at: float = 0.0

    @property
    def was_attempted(self) -> bool:
        return self.error_kind is not ErrorKind.CIRCUIT_OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "providerId": str(self.provider_id),
            "attemptNumber": self.attempt_number,
            "success": self.success,
            "latencyMs": self.latency_ms,
            "tokensUsed": self.tokens_used,
            "costUsd": self.cost_usd,
            "errorKind": str(self.error_kind) if self.error_kind else None,
            "errorCategory": str(self.error_category) if self.error_category else None,
        }


@dataclass
class ExecutionResult:
    response: CompletionResponse
    provider_id: ProviderId
    cost_usd: float
    latency_ms: float
    attempts: list[AttemptResult] = field(default_factory=list)

    @property
    def fallback_occurred(self) -> bool:
        return len(self.attempts) > 1


class FallbackExecutor:
    """Executes a request against the routed providers in order."""

    def __init__(
        self,
        *,
        registry: ProviderRegistry,
        clients: dict[ProviderId, ProviderClient],
        breakers: CircuitBreakerRegistry,
        health: ProviderHealth,
        budget: BudgetGuard,
        recorder: ObservabilityRecorder,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._clients = clients
        self._breakers = breakers
        self._health = health
        self._budget = budget
        self._recorder = recorder
        self._clock = clock

    def estimate_cost(self, provider_id: ProviderId, request: CompletionRequest) -> float:
        """Upper-bound cost of an attempt: full prompt plus max_tokens of output."""
        config = self._registry.get(provider_id)
        prompt_tokens = math.ceil(len(request.prompt) / 4)
        completion_tokens = min(request.max_tokens, config.limits.max_tokens)
        return config.pricing.cost(prompt_tokens, completion_tokens)

    async def execute(
        self,
        decision: RoutingDecision,
        request: CompletionRequest,
        *,
        session_id: str,
        request_id: str,
    ) -> ExecutionResult:
        """Run the fallback walk for one request.

        Args:
            decision: Routing decision (primary + ordered fallbacks)
            request: Completion request payload
            session_id: Budget session
            request_id: Correlation ID for traces

        Returns:
            ExecutionResult from the first provider that succeeded

        Raises:
            BudgetExceededError: the session cannot afford the next attempt
            AllProvidersExhaustedError: every provider failed or was skipped
        """
        attempts: list[AttemptResult] = []

        if not decision.has_provider:
            attempts = [
                AttemptResult(
                    provider_id=pid,
                    attempt_number=0,
                    success=False,
                    error_kind=ErrorKind.CIRCUIT_OPEN,
                )
                for pid in decision.excluded
            ]
            log.error(
                "fallback_executor.no_provider_available",
                request_id=request_id,
                excluded=[str(p) for p in decision.excluded],
            )
            raise AllProvidersExhaustedError(attempts, reasoning=NO_PROVIDER_AVAILABLE)

        chain = decision.chain[:MAX_ATTEMPTS]
        for attempt_number, provider_id in enumerate(chain, start=1):
            breaker = self._breakers.get(provider_id)
            if not await breaker.is_available():
                attempts.append(self._skip(provider_id, attempt_number, request_id))
                continue

            estimated = self.estimate_cost(provider_id, request)
            await self._reserve_or_raise(session_id, estimated)

            if not await breaker.allow_request():
                # Lost the half-open trial to a concurrent request
                await self._budget.release(session_id, estimated)
                attempts.append(self._skip(provider_id, attempt_number, request_id))
                continue

            attempt, response = await self._attempt(provider_id, attempt_number, request)
            attempts.append(attempt)

            if response is None:
                await self._budget.release(session_id, estimated)
                state = await breaker.record_failure()
                await self._health.record_attempt(
                    provider_id, success=False, latency_ms=attempt.latency_ms, circuit_state=state
                )
                self._recorder.record_attempt(attempt, request_id=request_id, session_id=session_id)
                log.warning(
                    "fallback_executor.attempt_failed",
                    request_id=request_id,
                    provider_id=provider_id,
                    attempt_number=attempt_number,
                    error_kind=attempt.error_kind,
                    error_category=attempt.error_category,
                    error_message=attempt.error_message,
                    remaining=len(chain) - attempt_number,
                )
                continue

            state = await breaker.record_success()
            await self._health.record_attempt(
                provider_id, success=True, latency_ms=attempt.latency_ms, circuit_state=state
            )
            await self._budget.charge(session_id, attempt.cost_usd, reserved_usd=estimated)
            self._recorder.record_attempt(attempt, request_id=request_id, session_id=session_id)

            log.info(
                "fallback_executor.attempt_succeeded",
                request_id=request_id,
                provider_id=provider_id,
                attempt_number=attempt_number,
                fallback_occurred=provider_id != decision.primary,
                latency_ms=attempt.latency_ms,
                tokens=attempt.tokens_used,
                cost_usd=attempt.cost_usd,
            )
            return ExecutionResult(
                response=response,
                provider_id=provider_id,
                cost_usd=attempt.cost_usd,
                latency_ms=attempt.latency_ms,
                attempts=attempts,
            )

        log.error(
            "fallback_executor.all_providers_failed",
            request_id=request_id,
            attempts=[a.to_dict() for a in attempts],
        )
        raise AllProvidersExhaustedError(attempts, reasoning=decision.reasoning)

    @staticmethod
    def _skip(provider_id: ProviderId, attempt_number: int, request_id: str) -> AttemptResult:
        log.info(
            "fallback_executor.circuit_open_skipped",
            request_id=request_id,
            provider_id=provider_id,
        )
        return AttemptResult(
            provider_id=provider_id,
            attempt_number=attempt_number,
            success=False,
            error_kind=ErrorKind.CIRCUIT_OPEN,
            error_message=f"{provider_id} circuit open",
        )

    async def _reserve_or_raise(self, session_id: str, estimated: float) -> None:
        if await self._budget.reserve(session_id, estimated):
            return
        budget = await self._budget.get_state(session_id)
        held = budget.pending_usd + estimated
        if budget.daily_usage + held > budget.daily_limit:
            window, usage, limit = "daily", budget.daily_usage, budget.daily_limit
        else:
            window, usage, limit = "monthly", budget.monthly_usage, budget.monthly_limit
        raise BudgetExceededError(
            session_id=session_id, current_usage=usage, limit=limit, window=window
        )

    async def _attempt(
        self,
        provider_id: ProviderId,
        attempt_number: int,
        request: CompletionRequest,
    ) -> tuple[AttemptResult, CompletionResponse | None]:
        config = self._registry.get(provider_id)
        client = self._clients[provider_id]
        started_at = self._clock()
        started = time.perf_counter()
        error: ProviderError

        try:
            async with asyncio.timeout(config.limits.timeout_ms / 1000):
                response = await client.complete(request)
        except ProviderError as exc:
            error = exc
        except TimeoutError:
            error = ProviderTimeoutError(provider_id, config.limits.timeout_ms)
        except Exception as exc:
            log.exception("fallback_executor.unexpected_provider_error", provider_id=provider_id)
            error = ProviderError(provider_id, f"unexpected error: {exc}")
        else:
            latency_ms = round((time.perf_counter() - started) * 1000, 2)
            cost = config.pricing.cost(response.prompt_tokens, response.completion_tokens)
            attempt = AttemptResult(
                provider_id=provider_id,
                attempt_number=attempt_number,
                success=True,
                latency_ms=latency_ms,
                tokens_used=response.total_tokens,
                cost_usd=round(cost, 8),
                started_at=started_at,
                ended_at=self._clock(),
            )
            return attempt, response

        latency_ms = round((time.perf_counter() - started) * 1000, 2)
        attempt = AttemptResult(
            provider_id=provider_id,
            attempt_number=attempt_number,
            success=False,
            latency_ms=latency_ms,
            error_kind=error.kind,
            error_category=categorize_error(error),
            error_message=error.message,
            started_at=started_at,
            ended_at=self._clock(),
        )
        return attempt, None
