"""Rolling provider health records.

One ProviderHealthRecord per provider, updated after every real attempt
(successful or failed). Circuit-open routing exclusions are not attempts
and never touch these records.

Status rules:
- unavailable: circuit open, or 3+ consecutive failures
- degraded: error rate >= 25%, or at least one consecutive failure
- healthy: otherwise
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

import structlog

from src.infra.state_store import StateStore
from src.routing.circuit_breaker import CircuitBreakerRegistry, CircuitState
from src.routing.providers import ProviderId

log = structlog.get_logger(__name__)


class HealthStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


@dataclass
class ProviderHealthRecord:
    provider_id: str
    status: HealthStatus = HealthStatus.HEALTHY
    last_check: str | None = None
    response_time_ms: float = 0.0
    error_rate: float = 0.0
    consecutive_failures: int = 0
    circuit_breaker_open: bool = False
    total_requests: int = 0
    failed_requests: int = 0

    @classmethod
    def from_doc(cls, provider_id: ProviderId, doc: dict[str, Any] | None) -> ProviderHealthRecord:
        if not doc:
            return cls(provider_id=str(provider_id))
        return cls(
            provider_id=str(provider_id),
            status=HealthStatus(doc.get("status", HealthStatus.HEALTHY)),
            last_check=doc.get("last_check"),
            response_time_ms=float(doc.get("response_time_ms", 0.0)),
            error_rate=float(doc.get("error_rate", 0.0)),
            consecutive_failures=int(doc.get("consecutive_failures", 0)),
            circuit_breaker_open=bool(doc.get("circuit_breaker_open", False)),
            total_requests=int(doc.get("total_requests", 0)),
            failed_requests=int(doc.get("failed_requests", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class ProviderHealth:
    """Tracks provider health records in the shared state store."""

    UNAVAILABLE_AFTER_FAILURES = 3
    DEGRADED_ERROR_RATE = 0.25
    LATENCY_EMA_ALPHA = 0.3

    def __init__(
        self,
        store: StateStore,
        breakers: CircuitBreakerRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._breakers = breakers
        self._clock = clock

    def _key(self, provider_id: ProviderId) -> str:
        return f"health:{provider_id}"

    def classify(
        self,
        *,
        error_rate: float,
        consecutive_failures: int,
        circuit_open: bool,
    ) -> HealthStatus:
        if circuit_open or consecutive_failures >= self.UNAVAILABLE_AFTER_FAILURES:
            return HealthStatus.UNAVAILABLE
        if error_rate >= self.DEGRADED_ERROR_RATE or consecutive_failures >= 1:
            return HealthStatus.DEGRADED
        return HealthStatus.HEALTHY

    async def record_attempt(
        self,
        provider_id: ProviderId,
        *,
        success: bool,
        latency_ms: float,
        circuit_state: CircuitState | None = None,
    ) -> ProviderHealthRecord:
        """Fold one attempt outcome into the provider's health record."""
        checked_at = datetime.fromtimestamp(self._clock(), UTC).isoformat()
        circuit_open = circuit_state is CircuitState.OPEN

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            doc = doc or {}
            total = int(doc.get("total_requests", 0)) + 1
            failed = int(doc.get("failed_requests", 0)) + (0 if success else 1)
            consecutive = 0 if success else int(doc.get("consecutive_failures", 0)) + 1
            previous_latency = float(doc.get("response_time_ms", 0.0))
            latency = (
                latency_ms
                if total == 1
                else self.LATENCY_EMA_ALPHA * latency_ms
                + (1 - self.LATENCY_EMA_ALPHA) * previous_latency
            )
            error_rate = failed / total
            doc.update(
                total_requests=total,
                failed_requests=failed,
                consecutive_failures=consecutive,
                response_time_ms=round(latency, 2),
                error_rate=round(error_rate, 4),
                circuit_breaker_open=circuit_open,
                last_check=checked_at,
                status=self.classify(
                    error_rate=error_rate,
                    consecutive_failures=consecutive,
                    circuit_open=circuit_open,
                ).value,
            )
            return doc

        committed = await self._store.update(self._key(provider_id), _apply)
        record = ProviderHealthRecord.from_doc(provider_id, committed)
        if record.status is not HealthStatus.HEALTHY:
            log.info(
                "provider_health.not_healthy",
                provider_id=provider_id,
                status=record.status,
                consecutive_failures=record.consecutive_failures,
                error_rate=record.error_rate,
            )
        return record

    async def get(self, provider_id: ProviderId) -> ProviderHealthRecord:
        """Return the provider's record with the live circuit state folded in."""
        doc = await self._store.get(self._key(provider_id))
        record = ProviderHealthRecord.from_doc(provider_id, doc)
        state = await self._breakers.get(provider_id).get_state()
        record.circuit_breaker_open = state is CircuitState.OPEN
        record.status = self.classify(
            error_rate=record.error_rate,
            consecutive_failures=record.consecutive_failures,
            circuit_open=record.circuit_breaker_open,
        )
        return record

    async def snapshot(self) -> dict[ProviderId, ProviderHealthRecord]:
        return {pid: await self.get(pid) for pid in ProviderId}
