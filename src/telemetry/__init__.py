"""Telemetry package for observability.

This package contains:
- Structured logging with trace correlation
- OpenTelemetry integration (in src/infra/telemetry.py)
- Provider attempt traces (in src/routing/observability.py)
"""

from __future__ import annotations

from src.telemetry.logging import (
    RequestIdMiddleware,
    bind_session_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "RequestIdMiddleware",
    "bind_session_context",
    "clear_context",
    "configure_logging",
]
