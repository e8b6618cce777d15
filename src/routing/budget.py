"""Per-session spend guard.

The BudgetGuard tracks USD spend per session and enforces daily and
monthly ceilings. It provides:
- Pre-flight checks (can_spend) before every provider attempt
- Atomic reservations so concurrent requests cannot jointly overrun a limit
- Charging of actual cost after a successful attempt
- UTC day/month rollover of the usage windows
- Alerting at threshold levels (80%, 95%)

State lives in the shared StateStore, one document per session, and every
write is a CAS update. Rollover resets daily_usage / monthly_usage only;
total_cost_usd and operations_count are lifetime counters.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from src.config import Settings
from src.infra.state_store import StateStore

log = structlog.get_logger(__name__)

_PRECISION = 8


def _utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class BudgetState:
    """Budget and usage for a session.

    Attributes:
        session_id: Session the budget belongs to
        daily_limit: Maximum USD per UTC day
        monthly_limit: Maximum USD per UTC month
        total_cost_usd: Lifetime spend (never reset)
        operations_count: Lifetime successful charged operations (never reset)
        daily_usage: Spend in the current UTC day
        monthly_usage: Spend in the current UTC month
        pending_usd: Reserved but not yet charged spend
        last_reset_date: Day of the last daily reset (YYYY-MM-DD)
        last_reset_month: Month of the last monthly reset (YYYY-MM)
    """

    session_id: str
    daily_limit: float
    monthly_limit: float
    total_cost_usd: float = 0.0
    operations_count: int = 0
    daily_usage: float = 0.0
    monthly_usage: float = 0.0
    pending_usd: float = 0.0
    last_reset_date: str = ""
    last_reset_month: str = ""

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> BudgetState:
        fields = {k: v for k, v in doc.items() if k in cls.__dataclass_fields__}
        return cls(**fields)

    def to_doc(self) -> dict[str, Any]:
        return asdict(self)

    def remaining(self) -> tuple[float, float]:
        """Return (daily, monthly) headroom after usage and reservations."""
        return (
            self.daily_limit - self.daily_usage - self.pending_usd,
            self.monthly_limit - self.monthly_usage - self.pending_usd,
        )


class BudgetGuard:
    """Enforces per-session daily and monthly spend ceilings."""

    WARNING_THRESHOLD = 0.80
    CRITICAL_THRESHOLD = 0.95

    def __init__(
        self,
        store: StateStore,
        *,
        daily_limit: float = 10.0,
        monthly_limit: float = 100.0,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        if daily_limit < 0 or monthly_limit < 0:
            raise ValueError("Budget limits must be non-negative")
        self._store = store
        self._default_daily = daily_limit
        self._default_monthly = monthly_limit
        self._clock = clock

        log.info(
            "budget_guard.initialized",
            default_daily_limit=daily_limit,
            default_monthly_limit=monthly_limit,
        )

    @classmethod
    def from_settings(
        cls,
        store: StateStore,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> BudgetGuard:
        return cls(
            store,
            daily_limit=settings.budget_daily_limit_usd,
            monthly_limit=settings.budget_monthly_limit_usd,
            clock=clock,
        )

    def _key(self, session_id: str) -> str:
        return f"budget:{session_id}"

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    async def get_state(self, session_id: str) -> BudgetState:
        """Return the session's budget with any pending rollover applied."""
        doc = await self._store.get(self._key(session_id))
        budget = BudgetState.from_doc(doc) if doc else self._new_state(session_id)
        self._apply_resets(budget)
        return budget

    async def can_spend(self, session_id: str, estimated_cost_usd: float) -> bool:
        """Check if the session can afford estimated_cost_usd.

        Returns False if daily usage + estimate would exceed the daily limit,
        or monthly usage + estimate would exceed the monthly limit.
        Outstanding reservations count as usage.
        """
        self._validate_amount(estimated_cost_usd)
        budget = await self.get_state(session_id)
        allowed = self._fits(budget, estimated_cost_usd)
        if not allowed:
            daily_left, monthly_left = budget.remaining()
            log.warning(
                "budget_guard.budget_exceeded",
                session_id=session_id,
                estimated_cost_usd=estimated_cost_usd,
                daily_remaining=round(daily_left, _PRECISION),
                monthly_remaining=round(monthly_left, _PRECISION),
            )
        return allowed

    async def reserve(self, session_id: str, estimated_cost_usd: float) -> bool:
        """Atomically check can_spend and hold the estimate against the limits.

        Concurrent requests for the same session cannot both pass the check
        with the same headroom. The hold is released by charge() or release().
        """
        self._validate_amount(estimated_cost_usd)
        reserved = False

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any] | None:
            nonlocal reserved
            budget = BudgetState.from_doc(doc) if doc else self._new_state(session_id)
            self._apply_resets(budget)
            reserved = self._fits(budget, estimated_cost_usd)
            if not reserved:
                return None
            budget.pending_usd = round(budget.pending_usd + estimated_cost_usd, _PRECISION)
            return budget.to_doc()

        await self._store.update(self._key(session_id), _apply)
        if not reserved:
            log.warning(
                "budget_guard.reservation_rejected",
                session_id=session_id,
                estimated_cost_usd=estimated_cost_usd,
            )
        return reserved

    async def release(self, session_id: str, reserved_usd: float) -> None:
        """Drop a reservation without charging (the attempt failed)."""
        self._validate_amount(reserved_usd)

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any] | None:
            if doc is None:
                return None
            budget = BudgetState.from_doc(doc)
            budget.pending_usd = max(0.0, round(budget.pending_usd - reserved_usd, _PRECISION))
            return budget.to_doc()

        await self._store.update(self._key(session_id), _apply)

    async def charge(
        self,
        session_id: str,
        actual_cost_usd: float,
        *,
        reserved_usd: float = 0.0,
    ) -> BudgetState:
        """Record actual spend after a successful attempt.

        Atomically increments total_cost_usd, daily_usage, monthly_usage and
        operations_count, and releases reserved_usd from the pending hold.
        """
        self._validate_amount(actual_cost_usd)
        self._validate_amount(reserved_usd)

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            budget = BudgetState.from_doc(doc) if doc else self._new_state(session_id)
            self._apply_resets(budget)
            budget.total_cost_usd = round(budget.total_cost_usd + actual_cost_usd, _PRECISION)
            budget.daily_usage = round(budget.daily_usage + actual_cost_usd, _PRECISION)
            budget.monthly_usage = round(budget.monthly_usage + actual_cost_usd, _PRECISION)
            budget.operations_count += 1
            budget.pending_usd = max(0.0, round(budget.pending_usd - reserved_usd, _PRECISION))
            return budget.to_doc()

        committed = await self._store.update(self._key(session_id), _apply)
        budget = BudgetState.from_doc(committed or {})

        log.info(
            "budget_guard.usage_charged",
            session_id=session_id,
            cost_usd=actual_cost_usd,
            daily_used=budget.daily_usage,
            daily_limit=budget.daily_limit,
            monthly_used=budget.monthly_usage,
            monthly_limit=budget.monthly_limit,
            operations_count=budget.operations_count,
        )
        self._check_thresholds(budget)
        return budget

    async def set_limits(
        self,
        session_id: str,
        *,
        daily_limit: float | None = None,
        monthly_limit: float | None = None,
    ) -> BudgetState:
        """Override the limits of a single session."""
        for value in (daily_limit, monthly_limit):
            if value is not None:
                self._validate_amount(value)

        def _apply(doc: dict[str, Any] | None) -> dict[str, Any]:
            budget = BudgetState.from_doc(doc) if doc else self._new_state(session_id)
            if daily_limit is not None:
                budget.daily_limit = daily_limit
            if monthly_limit is not None:
                budget.monthly_limit = monthly_limit
            return budget.to_doc()

        committed = await self._store.update(self._key(session_id), _apply)
        return BudgetState.from_doc(committed or {})

    async def usage_report(self, session_id: str) -> dict[str, float | int | str]:
        """Summarize usage against limits for a session."""
        budget = await self.get_state(session_id)
        return {
            "session_id": session_id,
            "daily_usage": budget.daily_usage,
            "daily_limit": budget.daily_limit,
            "daily_usage_pct": self._pct(budget.daily_usage, budget.daily_limit),
            "daily_remaining": round(max(budget.daily_limit - budget.daily_usage, 0.0), _PRECISION),
            "monthly_usage": budget.monthly_usage,
            "monthly_limit": budget.monthly_limit,
            "monthly_usage_pct": self._pct(budget.monthly_usage, budget.monthly_limit),
            "monthly_remaining": round(
                max(budget.monthly_limit - budget.monthly_usage, 0.0), _PRECISION
            ),
            "total_cost_usd": budget.total_cost_usd,
            "operations_count": budget.operations_count,
        }

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _new_state(self, session_id: str) -> BudgetState:
        now = self._clock()
        return BudgetState(
            session_id=session_id,
            daily_limit=self._default_daily,
            monthly_limit=self._default_monthly,
            last_reset_date=now.strftime("%Y-%m-%d"),
            last_reset_month=now.strftime("%Y-%m"),
        )

    @staticmethod
    def _fits(budget: BudgetState, amount: float) -> bool:
        committed = budget.pending_usd + amount
        return (
            budget.daily_usage + committed <= budget.daily_limit
            and budget.monthly_usage + committed <= budget.monthly_limit
        )

    @staticmethod
    def _validate_amount(amount: float) -> None:
        if amount < 0:
            raise ValueError(f"Amount must be non-negative, got {amount}")

    @staticmethod
    def _pct(used: float, limit: float) -> float:
        return round(used / limit * 100, 1) if limit > 0 else 100.0

    def _apply_resets(self, budget: BudgetState) -> None:
        """Reset daily/monthly usage if a new UTC period has started."""
        now = self._clock()
        current_date = now.strftime("%Y-%m-%d")
        current_month = now.strftime("%Y-%m")

        if current_date != budget.last_reset_date:
            if budget.daily_usage:
                log.info(
                    "budget_guard.daily_reset",
                    session_id=budget.session_id,
                    previous_usage=budget.daily_usage,
                )
            budget.daily_usage = 0.0
            budget.last_reset_date = current_date

        if current_month != budget.last_reset_month:
            if budget.monthly_usage:
                log.info(
                    "budget_guard.monthly_reset",
                    session_id=budget.session_id,
                    previous_usage=budget.monthly_usage,
                )
            budget.monthly_usage = 0.0
            budget.last_reset_month = current_month

    def _check_thresholds(self, budget: BudgetState) -> None:
        """Check usage against alert thresholds and log warnings."""
        for window, used, limit in (
            ("daily", budget.daily_usage, budget.daily_limit),
            ("monthly", budget.monthly_usage, budget.monthly_limit),
        ):
            if limit <= 0:
                continue
            pct = used / limit
            if pct >= self.CRITICAL_THRESHOLD:
                log.critical(
                    f"budget_guard.{window}_critical",
                    session_id=budget.session_id,
                    usage_pct=round(pct * 100, 1),
                    used=used,
                    limit=limit,
                )
            elif pct >= self.WARNING_THRESHOLD:
                log.warning(
                    f"budget_guard.{window}_warning",
                    session_id=budget.session_id,
                    usage_pct=round(pct * 100, 1),
                    used=used,
                    limit=limit,
                )
