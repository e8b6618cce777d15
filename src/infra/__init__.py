"""
Infrastructure components for shared state and telemetry.

This package contains:
- Versioned key/value state store (in-memory and Redis-backed)
- OpenTelemetry distributed tracing setup

Every routing instance sharing one Redis sees the same circuit, health and
budget state.
"""

from __future__ import annotations

from src.infra.state_store import (
    InMemoryStateStore,
    RedisStateStore,
    StateConflictError,
    StateStore,
)
from src.infra.telemetry import (
    instrument_fastapi,
    is_enabled,
    setup_telemetry,
    shutdown_telemetry,
)

__all__ = [
    # State
    "InMemoryStateStore",
    "RedisStateStore",
    "StateConflictError",
    "StateStore",
    # Telemetry
    "instrument_fastapi",
    "is_enabled",
    "setup_telemetry",
    "shutdown_telemetry",
]
