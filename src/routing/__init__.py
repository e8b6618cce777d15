"""Provider routing, fallback and circuit breaking for LLM requests.

This package scores request complexity, picks one of three providers
(Groq, Gemini, Cerebras), walks a bounded fallback chain on failure,
protects each provider with a circuit breaker and guards per-session spend.
All shared state goes through src.infra.state_store.
"""

from __future__ import annotations

from src.routing.budget import BudgetGuard, BudgetState
from src.routing.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from src.routing.clients import CompletionRequest, CompletionResponse, ProviderClient
from src.routing.complexity import ComplexityFactors, ComplexityScore, ComplexityScorer
from src.routing.context import RoutingContext, build_routing_context, create_state_store
from src.routing.errors import (
    AllProvidersExhaustedError,
    BudgetExceededError,
    ErrorCategory,
    ErrorKind,
    ProviderError,
    ProviderTimeoutError,
    RoutingError,
)
from src.routing.fallback import MAX_ATTEMPTS, AttemptResult, ExecutionResult, FallbackExecutor
from src.routing.health import HealthStatus, ProviderHealth, ProviderHealthRecord
from src.routing.observability import ObservabilityRecorder, TraceRecord
from src.routing.providers import ComplexityBand, ProviderConfig, ProviderId, ProviderRegistry
from src.routing.router import NO_PROVIDER_AVAILABLE, Router, RoutingDecision

__all__ = [
    # Budget
    "BudgetGuard",
    "BudgetState",
    # Circuit breaking
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Providers
    "CompletionRequest",
    "CompletionResponse",
    "ComplexityBand",
    "ProviderClient",
    "ProviderConfig",
    "ProviderId",
    "ProviderRegistry",
    # Scoring and routing
    "ComplexityFactors",
    "ComplexityScore",
    "ComplexityScorer",
    "NO_PROVIDER_AVAILABLE",
    "Router",
    "RoutingDecision",
    # Execution
    "MAX_ATTEMPTS",
    "AttemptResult",
    "ExecutionResult",
    "FallbackExecutor",
    "RoutingContext",
    "build_routing_context",
    "create_state_store",
    # Health and observability
    "HealthStatus",
    "ObservabilityRecorder",
    "ProviderHealth",
    "ProviderHealthRecord",
    "TraceRecord",
    # Errors
    "AllProvidersExhaustedError",
    "BudgetExceededError",
    "ErrorCategory",
    "ErrorKind",
    "ProviderError",
    "ProviderTimeoutError",
    "RoutingError",
]
