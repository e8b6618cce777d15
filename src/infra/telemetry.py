"""
OpenTelemetry tracing setup.

Provider attempts are recorded as spans by
src.routing.observability.ObservabilityRecorder through the global OTel
tracer. This module decides where those spans go:

- telemetry disabled: the default no-op tracer provider stays in place
- telemetry enabled: an SDK TracerProvider with a batching OTLP gRPC exporter,
  plus automatic spans for inbound FastAPI requests and outbound httpx calls

Setup failures are logged and leave telemetry disabled; tracing must never
stop the service from starting.

Example:
    # At startup
    setup_telemetry(settings)
    instrument_fastapi(app)

    # At shutdown
    shutdown_telemetry()
"""

from __future__ import annotations

from typing import Any

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from src.config import Settings

log = structlog.get_logger(__name__)

SERVICE_NAME = "llm-provider-router"

_provider: TracerProvider | None = None
_enabled: bool = False


def setup_telemetry(settings: Settings) -> None:
    """
    Initialize OpenTelemetry tracing.

    Configures TracerProvider, OTLP exporter, and httpx instrumentation.
    If telemetry is disabled this is a no-op.

    Args:
        settings: Application settings with OTLP endpoint configuration
    """
    global _provider, _enabled

    if not settings.enable_telemetry:
        log.info("telemetry.disabled")
        return

    try:
        resource = Resource.create({
            "service.name": SERVICE_NAME,
            "service.version": "0.1.0",
            "deployment.environment": settings.environment.value,
        })
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(
            BatchSpanProcessor(
                OTLPSpanExporter(endpoint=settings.otlp_endpoint, insecure=settings.is_dev)
            )
        )
        trace.set_tracer_provider(provider)

        HTTPXClientInstrumentor().instrument()

        _provider = provider
        _enabled = True
        log.info(
            "telemetry.initialized",
            otlp_endpoint=settings.otlp_endpoint,
            environment=settings.environment,
        )
    except Exception as exc:
        log.error("telemetry.setup_failed", error=str(exc), fallback="disabled")
        _enabled = False


def is_enabled() -> bool:
    """Check if telemetry is active."""
    return _enabled


def instrument_fastapi(app: Any) -> None:
    """Instrument a FastAPI application with OpenTelemetry.

    Must be called after app creation but before first request.
    """
    if not _enabled:
        return

    try:
        FastAPIInstrumentor.instrument_app(app)
        log.info("telemetry.fastapi_instrumented")
    except Exception as exc:
        log.error("telemetry.fastapi_instrumentation_failed", error=str(exc))


def shutdown_telemetry() -> None:
    """Flush pending spans and stop the exporter."""
    global _provider, _enabled

    if _provider is None:
        return
    try:
        _provider.shutdown()
        log.info("telemetry.shutdown")
    except Exception as exc:
        log.error("telemetry.shutdown_failed", error=str(exc))
    finally:
        _provider = None
        _enabled = False
