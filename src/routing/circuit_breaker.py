"""Per-provider circuit breakers backed by the shared state store.

States:
- CLOSED: traffic flows normally
- OPEN: provider is skipped without a network call
- HALF_OPEN: a single trial request is allowed through

Transitions:
- CLOSED -> OPEN: failure_threshold failures within failure_window_seconds
- OPEN -> HALF_OPEN: open_duration_seconds elapsed since opening (on next check)
- HALF_OPEN -> CLOSED: the trial request succeeds
- HALF_OPEN -> OPEN: the trial request fails

Breaker state is shared across requests and instances, so every change is
committed through StateStore CAS operations and the breaker holds no state
of its own beyond its configuration. Time comes from an injectable clock so
tests can simulate the open duration.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from src.config import Settings
from src.infra.state_store import StateStore
from src.routing.providers import ProviderId

log = structlog.get_logger(__name__)

Clock = Callable[[], float]


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    failure_window_seconds: float = 60.0
    open_duration_seconds: float = 30.0
    # A half-open trial that has not reported back after this long is
    # considered lost; must outlast the slowest provider timeout.
    trial_timeout_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if (
            self.failure_window_seconds <= 0
            or self.open_duration_seconds <= 0
            or self.trial_timeout_seconds <= 0
        ):
            raise ValueError("failure window, open duration and trial timeout must be positive")

    @classmethod
    def from_settings(cls, settings: Settings) -> CircuitBreakerConfig:
        slowest_provider_seconds = (
            max(
                settings.groq_timeout_ms,
                settings.gemini_timeout_ms,
                settings.cerebras_timeout_ms,
            )
            / 1000
        )
        return cls(
            failure_threshold=settings.circuit_failure_threshold,
            failure_window_seconds=settings.circuit_failure_window_seconds,
            open_duration_seconds=settings.circuit_open_duration_seconds,
            trial_timeout_seconds=2 * max(
                slowest_provider_seconds, settings.circuit_open_duration_seconds
            ),
        )


def _new_doc() -> dict[str, Any]:
    return {
        "state": CircuitState.CLOSED.value,
        "opened_at": None,
        "failures": [],
        "trial_in_flight": False,
        "trial_started_at": None,
        "state_changed_at": None,
        "last_failure_time": None,
        "last_success_time": None,
        "total_requests": 0,
    }


class CircuitBreaker:
    """Circuit breaker for a single provider."""

    def __init__(
        self,
        provider_id: ProviderId,
        store: StateStore,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.time,
    ) -> None:
        self.provider_id = provider_id
        self._store = store
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._key = f"circuit:{provider_id}"

    async def _load(self) -> dict[str, Any]:
        doc = await self._store.get(self._key)
        return doc if doc is not None else _new_doc()

    async def get_state(self) -> CircuitState:
        """Return the current state, applying the timed OPEN -> HALF_OPEN move.

        Does not claim the half-open trial slot.
        """
        doc = await self._load()
        state = CircuitState(doc["state"])
        if state is not CircuitState.OPEN:
            return state

        now = self._clock()
        if now - float(doc["opened_at"] or 0.0) < self._config.open_duration_seconds:
            return CircuitState.OPEN

        if await self._store.set_if_open_elapsed(
            self._key, now=now, open_duration=self._config.open_duration_seconds
        ):
            log.info(
                "circuit_breaker.half_opened",
                provider_id=self.provider_id,
                open_for_seconds=round(now - float(doc["opened_at"] or 0.0), 3),
            )
        return CircuitState((await self._load())["state"])

    def _trial_held(self, doc: dict[str, Any], now: float) -> bool:
        started = doc.get("trial_started_at")
        return bool(doc.get("trial_in_flight")) and started is not None and (
            now - float(started) < self._config.trial_timeout_seconds
        )

    async def is_available(self) -> bool:
        """Return True if allow_request() could currently succeed.

        Read-only: never claims the half-open trial slot, so a caller can
        decide to skip a provider before committing anything to it.
        """
        state = await self.get_state()
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.OPEN:
            return False
        return not self._trial_held(await self._load(), self._clock())

    async def allow_request(self) -> bool:
        """Return True if a request may be sent to this provider now.

        CLOSED always allows. OPEN never allows. HALF_OPEN allows exactly one
        caller (the trial); a trial that never reported back is released after
        trial_timeout_seconds.
        """
        state = await self.get_state()
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.OPEN:
            return False

        now = self._clock()
        claimed = False

        def _claim(doc: dict[str, Any] | None) -> dict[str, Any] | None:
            nonlocal claimed
            claimed = False
            doc = doc or _new_doc()
            if doc["state"] != CircuitState.HALF_OPEN.value:
                return None
            if self._trial_held(doc, now):
                return None
            doc["trial_in_flight"] = True
            doc["trial_started_at"] = now
            claimed = True
            return doc

        await self._store.update(self._key, _claim)
        if claimed:
            log.info("circuit_breaker.trial_claimed", provider_id=self.provider_id)
        return claimed

    async def record_success(self) -> CircuitState:
        now = self._clock()
        previous: str | None = None

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal previous
            doc = doc or _new_doc()
            previous = doc["state"]
            doc["last_success_time"] = now
            doc["total_requests"] = int(doc.get("total_requests", 0)) + 1
            if doc["state"] == CircuitState.HALF_OPEN.value:
                doc.update(
                    state=CircuitState.CLOSED.value,
                    opened_at=None,
                    failures=[],
                    trial_in_flight=False,
                    trial_started_at=None,
                    state_changed_at=now,
                )
            elif doc["state"] == CircuitState.CLOSED.value:
                doc["failures"] = []
            return doc

        committed = await self._store.update(self._key, _apply)
        state = CircuitState(committed["state"]) if committed else CircuitState.CLOSED
        if previous == CircuitState.HALF_OPEN.value and state is CircuitState.CLOSED:
            log.info("circuit_breaker.closed", provider_id=self.provider_id)
        return state

    async def record_failure(self) -> CircuitState:
        now = self._clock()
        window = self._config.failure_window_seconds
        threshold = self._config.failure_threshold
        previous: str | None = None

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            nonlocal previous
            doc = doc or _new_doc()
            previous = doc["state"]
            doc["last_failure_time"] = now
            doc["total_requests"] = int(doc.get("total_requests", 0)) + 1

            if doc["state"] == CircuitState.HALF_OPEN.value:
                doc.update(
                    state=CircuitState.OPEN.value,
                    opened_at=now,
                    trial_in_flight=False,
                    trial_started_at=None,
                    state_changed_at=now,
                )
            elif doc["state"] == CircuitState.CLOSED.value:
                failures = [t for t in doc.get("failures", []) if now - float(t) < window]
                failures.append(now)
                doc["failures"] = failures
                if len(failures) >= threshold:
                    doc.update(
                        state=CircuitState.OPEN.value,
                        opened_at=now,
                        state_changed_at=now,
                    )
            return doc

        committed = await self._store.update(self._key, _apply)
        state = CircuitState(committed["state"]) if committed else CircuitState.CLOSED
        if previous != CircuitState.OPEN.value and state is CircuitState.OPEN:
            log.warning(
                "circuit_breaker.opened",
                provider_id=self.provider_id,
                from_state=previous,
                failure_count=len(committed.get("failures", [])) if committed else 0,
            )
        return state

    async def force_open(self) -> None:
        """Open the circuit immediately (operator action or tests)."""
        now = self._clock()

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            doc = doc or _new_doc()
            doc.update(
                state=CircuitState.OPEN.value,
                opened_at=now,
                trial_in_flight=False,
                trial_started_at=None,
                state_changed_at=now,
            )
            return doc

        await self._store.update(self._key, _apply)
        log.warning("circuit_breaker.forced_open", provider_id=self.provider_id)

    async def reset(self) -> None:
        """Return the circuit to a fresh CLOSED state."""
        now = self._clock()

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            fresh = _new_doc()
            fresh["state_changed_at"] = now
            return fresh

        await self._store.update(self._key, _apply)
        log.info("circuit_breaker.reset", provider_id=self.provider_id)

    async def snapshot(self) -> dict[str, Any]:
        """Return breaker metrics for status endpoints."""
        state = await self.get_state()
        doc = await self._load()
        now = self._clock()
        window = self._config.failure_window_seconds
        return {
            "provider_id": str(self.provider_id),
            "state": state.value,
            "failure_count": sum(
                1 for t in doc.get("failures", []) if now - float(t) < window
            ),
            "opened_at": doc.get("opened_at"),
            "last_failure_time": doc.get("last_failure_time"),
            "last_success_time": doc.get("last_success_time"),
            "total_requests": doc.get("total_requests", 0),
            "trial_in_flight": bool(doc.get("trial_in_flight")),
        }


class CircuitBreakerRegistry:
    """Owns one CircuitBreaker per provider."""

    def __init__(
        self,
        store: StateStore,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.time,
    ) -> None:
        self._breakers = {
            provider_id: CircuitBreaker(provider_id, store, config, clock)
            for provider_id in ProviderId
        }

    def get(self, provider_id: ProviderId | str) -> CircuitBreaker:
        return self._breakers[ProviderId(provider_id)]

    async def states(self) -> dict[ProviderId, CircuitState]:
        """Snapshot of every breaker's state, in provider order."""
        return {pid: await breaker.get_state() for pid, breaker in self._breakers.items()}

    async def snapshot_all(self) -> dict[str, dict[str, Any]]:
        return {str(pid): await breaker.snapshot() for pid, breaker in self._breakers.items()}

    async def reset_all(self) -> None:
        for breaker in self._breakers.values():
            await breaker.reset()

    async def force_open(self, provider_id: ProviderId | str) -> None:
        await self.get(provider_id).force_open()

    async def health_summary(self) -> dict[str, Any]:
        """Count breakers by health: closed=healthy, half_open=degraded, open=unhealthy."""
        states = await self.states()
        healthy = sum(1 for s in states.values() if s is CircuitState.CLOSED)
        degraded = sum(1 for s in states.values() if s is CircuitState.HALF_OPEN)
        unhealthy = sum(1 for s in states.values() if s is CircuitState.OPEN)

        if unhealthy == len(states):
            overall = "unhealthy"
        elif healthy == len(states):
            overall = "healthy"
        else:
            overall = "degraded"

        return {
            "overall": overall,
            "healthy": healthy,
            "degraded": degraded,
            "unhealthy": unhealthy,
            "states": {str(pid): s.value for pid, s in states.items()},
        }
