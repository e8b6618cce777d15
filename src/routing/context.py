"""Explicit wiring of the routing components.

A RoutingContext is built once per process (in the FastAPI lifespan) and
passed to whatever needs it; tests build a fresh one per test with an
in-memory store, fake clients and a simulated clock.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

import httpx
import structlog

from src.config import Settings, StateBackend
from src.infra.state_store import InMemoryStateStore, RedisStateStore, StateStore
from src.routing.budget import BudgetGuard
from src.routing.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from src.routing.clients import CompletionRequest, ProviderClient, build_clients
from src.routing.complexity import ComplexityScore, ComplexityScorer
from src.routing.fallback import ExecutionResult, FallbackExecutor
from src.routing.health import ProviderHealth
from src.routing.observability import ObservabilityRecorder
from src.routing.providers import ProviderId, ProviderRegistry
from src.routing.router import Router, RoutingDecision

log = structlog.get_logger(__name__)


@dataclass
class RoutingOutcome:
    score: ComplexityScore
    decision: RoutingDecision
    result: ExecutionResult


@dataclass
class RoutingContext:
    settings: Settings
    store: StateStore
    registry: ProviderRegistry
    breakers: CircuitBreakerRegistry
    health: ProviderHealth
    budget: BudgetGuard
    recorder: ObservabilityRecorder
    scorer: ComplexityScorer
    router: Router
    executor: FallbackExecutor
    http: httpx.AsyncClient | None = None

    async def process(
        self,
        request: CompletionRequest,
        *,
        session_id: str,
        request_id: str,
        context_length: int = 0,
        structured_output: bool = False,
    ) -> RoutingOutcome:
        """Score, route and execute a single completion request.

        Raises:
            BudgetExceededError: session budget exhausted
            AllProvidersExhaustedError: no provider succeeded
        """
        score = self.scorer.score(
            request.prompt,
            context_length=context_length,
            structured_output=structured_output,
            session_id=session_id,
            max_tokens=request.max_tokens,
            temperature=request.temperature,
        )
        budget = await self.budget.get_state(session_id)
        decision = await self.router.snapshot_and_route(score, self.breakers, budget)
        result = await self.executor.execute(
            decision, request, session_id=session_id, request_id=request_id
        )
        return RoutingOutcome(score=score, decision=decision, result=result)

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()
        await self.store.close()
        log.info("routing_context.closed")


async def create_state_store(settings: Settings) -> StateStore:
    """Build the configured state backend.

    Raises:
        redis.exceptions.RedisError: state_backend=redis and Redis is unreachable
    """
    if settings.state_backend is StateBackend.REDIS:
        store = RedisStateStore(settings.redis_url, key_prefix=settings.state_key_prefix)
        await store.connect()
        return store
    log.info("state_store.in_memory", reason="state_backend=memory")
    return InMemoryStateStore()


def build_routing_context(
    settings: Settings,
    store: StateStore,
    *,
    clients: dict[ProviderId, ProviderClient] | None = None,
    http: httpx.AsyncClient | None = None,
    recorder: ObservabilityRecorder | None = None,
    clock: Callable[[], float] = time.time,
    budget_clock: Callable[[], datetime] | None = None,
) -> RoutingContext:
    """Wire every routing component around one state store.

    Args:
        settings: Application settings
        store: Shared state backend
        clients: Provider clients; built on a new httpx client when omitted
        http: httpx client for the default provider clients
        recorder: Observability sink; a default recorder when omitted
        clock: Wall clock (seconds) for circuit breakers and traces
        budget_clock: UTC clock for budget rollover (real time when omitted)
    """
    registry = ProviderRegistry.from_settings(settings)
    if clients is None:
        http = http or httpx.AsyncClient()
        clients = build_clients(registry, http)

    breakers = CircuitBreakerRegistry(
        store, CircuitBreakerConfig.from_settings(settings), clock=clock
    )
    health = ProviderHealth(store, breakers, clock=clock)
    budget = (
        BudgetGuard.from_settings(store, settings, clock=budget_clock)
        if budget_clock is not None
        else BudgetGuard.from_settings(store, settings)
    )
    recorder = recorder or ObservabilityRecorder(buffer_size=settings.trace_buffer_size)
    executor = FallbackExecutor(
        registry=registry,
        clients=clients,
        breakers=breakers,
        health=health,
        budget=budget,
        recorder=recorder,
        clock=clock,
    )

    return RoutingContext(
        settings=settings,
        store=store,
        registry=registry,
        breakers=breakers,
        health=health,
        budget=budget,
        recorder=recorder,
        scorer=ComplexityScorer(),
        router=Router(),
        executor=executor,
        http=http,
    )
