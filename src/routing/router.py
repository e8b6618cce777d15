"""Provider selection from complexity and circuit state.

Selection policy:
1. Rank providers by band preference for the complexity score
   (< 0.3 fast, 0.3-0.7 balanced, > 0.7 reasoning)
2. Drop providers whose circuit is OPEN
3. First remaining provider is primary, the rest are fallbacks
4. If every provider is excluded the decision has no primary and the
   reasoning is NO_PROVIDER_AVAILABLE

route() is deterministic: it only reads its arguments.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

import structlog

from src.routing.budget import BudgetState
from src.routing.circuit_breaker import CircuitBreakerRegistry, CircuitState
from src.routing.complexity import ComplexityScore
from src.routing.providers import BAND_PREFERENCE, ComplexityBand, ProviderId

log = structlog.get_logger(__name__)

NO_PROVIDER_AVAILABLE = "no-provider-available"


@dataclass(frozen=True)
class RoutingDecision:
    """Provider order for a single request.

    Attributes:
        primary: First provider to try, None if every circuit is open
        fallbacks: Remaining providers in descending suitability
        excluded: Providers skipped because their circuit is open
        reasoning: Why this order was chosen
    """

    primary: ProviderId | None
    fallbacks: tuple[ProviderId, ...] = field(default_factory=tuple)
    excluded: tuple[ProviderId, ...] = field(default_factory=tuple)
    reasoning: str = ""

    @property
    def chain(self) -> tuple[ProviderId, ...]:
        """Primary followed by fallbacks."""
        if self.primary is None:
            return ()
        return (self.primary, *self.fallbacks)

    @property
    def has_provider(self) -> bool:
        return self.primary is not None


class Router:
    """Selects the primary provider and fallback chain for a request."""

    LOW_THRESHOLD = 0.3
    MEDIUM_THRESHOLD = 0.7

    def band_for(self, overall: float) -> ComplexityBand:
        if overall < self.LOW_THRESHOLD:
            return ComplexityBand.LOW
        if overall <= self.MEDIUM_THRESHOLD:
            return ComplexityBand.MEDIUM
        return ComplexityBand.HIGH

    def route(
        self,
        score: ComplexityScore,
        circuit_states: Mapping[ProviderId, CircuitState],
        budget: BudgetState | None = None,
    ) -> RoutingDecision:
        """Build the routing decision for one request.

        Args:
            score: Complexity score of the request
            circuit_states: Current circuit state per provider (missing = CLOSED)
            budget: Session budget, reflected in the reasoning only

        Returns:
            RoutingDecision with primary and ordered fallbacks
        """
        band = self.band_for(score.overall)
        ranked = BAND_PREFERENCE[band]
        excluded = tuple(
            pid for pid in ranked if circuit_states.get(pid, CircuitState.CLOSED) is CircuitState.OPEN
        )
        eligible = [pid for pid in ranked if pid not in excluded]

        if not eligible:
            log.warning(
                "router.no_provider_available",
                complexity=score.overall,
                band=band,
                excluded=[str(p) for p in excluded],
            )
            return RoutingDecision(primary=None, excluded=excluded, reasoning=NO_PROVIDER_AVAILABLE)

        primary, *fallbacks = eligible
        reasons = [f"{band} complexity ({score.overall:.2f}) prefers {ranked[0]}"]
        if primary != ranked[0]:
            reasons.append(f"{ranked[0]} circuit open, promoted {primary}")
        if excluded:
            reasons.append(f"excluded: {', '.join(excluded)}")
        if budget is not None:
            reasons.append(
                f"budget remaining today ${max(budget.daily_limit - budget.daily_usage, 0.0):.4f}"
            )

        decision = RoutingDecision(
            primary=primary,
            fallbacks=tuple(fallbacks),
            excluded=excluded,
            reasoning="; ".join(reasons),
        )
        log.info(
            "router.route_selected",
            complexity=score.overall,
            band=band,
            primary=primary,
            fallbacks=[str(p) for p in fallbacks],
            excluded=[str(p) for p in excluded],
        )
        return decision

    async def snapshot_and_route(
        self,
        score: ComplexityScore,
        breakers: CircuitBreakerRegistry,
        budget: BudgetState | None = None,
    ) -> RoutingDecision:
        """Read the current circuit states and route against that snapshot."""
        return self.route(score, await breakers.states(), budget)
