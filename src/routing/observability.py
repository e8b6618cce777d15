"""Trace recording for provider attempts.

Every AttemptResult, successful or not, becomes:
- an OpenTelemetry span ("llm.provider_attempt") exported through whatever
  TracerProvider setup_telemetry() installed (no-op when telemetry is off)
- a TraceRecord in a bounded in-memory ring used by the status endpoint

The recorder is a pure side-effecting sink. It never raises into the
request path: any recording failure is logged and dropped.
"""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

import structlog
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode, Tracer

if TYPE_CHECKING:
    from src.routing.fallback import AttemptResult

log = structlog.get_logger(__name__)

SPAN_NAME = "llm.provider_attempt"


@dataclass(frozen=True)
class TraceRecord:
    request_id: str
    session_id: str
    operation: str
    provider_id: str
    attempt_number: int
    started_at: float
    ended_at: float
    latency_ms: float
    tokens_used: int
    cost_usd: float
    success: bool
    error_kind: str | None = None
    error_category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _to_ns(seconds: float) -> int:
    return int(seconds * 1_000_000_000)


class ObservabilityRecorder:
    """Records provider attempts as spans and keeps recent traces in memory."""

    def __init__(self, tracer: Tracer | None = None, buffer_size: int = 1000) -> None:
        self._tracer = tracer or trace.get_tracer(__name__)
        self._records: deque[TraceRecord] = deque(maxlen=buffer_size)

    def record_attempt(
        self,
        attempt: AttemptResult,
        *,
        request_id: str,
        session_id: str,
        operation: str = "llm.completion",
    ) -> TraceRecord | None:
        """Record one attempt. Returns the TraceRecord, or None if recording failed."""
        try:
            record = TraceRecord(
                request_id=request_id,
                session_id=session_id,
                operation=operation,
                provider_id=str(attempt.provider_id),
                attempt_number=attempt.attempt_number,
                started_at=attempt.started_at,
                ended_at=attempt.ended_at,
                latency_ms=attempt.latency_ms,
                tokens_used=attempt.tokens_used,
                cost_usd=attempt.cost_usd,
                success=attempt.success,
                error_kind=str(attempt.error_kind) if attempt.error_kind else None,
                error_category=str(attempt.error_category) if attempt.error_category else None,
            )
            self._export_span(record, attempt.error_message)
            self._records.append(record)
        except Exception as exc:
            log.warning(
                "observability.record_failed",
                provider_id=str(getattr(attempt, "provider_id", "unknown")),
                error=str(exc),
            )
            return None

        log.debug(
            "observability.attempt_recorded",
            provider_id=record.provider_id,
            success=record.success,
            latency_ms=record.latency_ms,
            cost_usd=record.cost_usd,
        )
        return record

    def _export_span(self, record: TraceRecord, error_message: str | None) -> None:
        span = self._tracer.start_span(SPAN_NAME, start_time=_to_ns(record.started_at))
        span.set_attributes(
            {
                "llm.request_id": record.request_id,
                "llm.session_id": record.session_id,
                "llm.operation": record.operation,
                "llm.provider": record.provider_id,
                "llm.attempt_number": record.attempt_number,
                "llm.latency_ms": record.latency_ms,
                "llm.tokens.total": record.tokens_used,
                "llm.cost_usd": record.cost_usd,
                "llm.success": record.success,
            }
        )
        if record.success:
            span.set_status(Status(StatusCode.OK))
        else:
            span.set_attribute("llm.error_kind", record.error_kind or "unknown")
            if record.error_category:
                span.set_attribute("llm.error_category", record.error_category)
            span.set_status(Status(StatusCode.ERROR, error_message or record.error_kind))
        span.end(end_time=_to_ns(record.ended_at))

    def recent(self, limit: int = 50) -> list[TraceRecord]:
        """Most recent records, newest last."""
        if limit <= 0:
            return []
        return list(self._records)[-limit:]

    def summary(self) -> dict[str, dict[str, float | int]]:
        """Per-provider aggregates over the buffered records."""
        totals: dict[str, dict[str, float | int]] = {}
        for record in self._records:
            stats = totals.setdefault(
                record.provider_id,
                {
                    "attempts": 0,
                    "successes": 0,
                    "total_latency_ms": 0.0,
                    "total_cost_usd": 0.0,
                    "total_tokens": 0,
                },
            )
            stats["attempts"] += 1
            stats["successes"] += int(record.success)
            stats["total_latency_ms"] += record.latency_ms
            stats["total_cost_usd"] += record.cost_usd
            stats["total_tokens"] += record.tokens_used

        return {
            provider_id: {
                "attempts": stats["attempts"],
                "successes": stats["successes"],
                "success_rate": round(stats["successes"] / stats["attempts"], 4),
                "avg_latency_ms": round(stats["total_latency_ms"] / stats["attempts"], 2),
                "total_cost_usd": round(stats["total_cost_usd"], 8),
                "total_tokens": stats["total_tokens"],
            }
            for provider_id, stats in totals.items()
        }

    def clear(self) -> None:
        self._records.clear()
