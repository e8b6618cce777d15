"""Provider status and circuit administration endpoints.

GET  /api/providers/status                      - Health, circuit and trace summary per provider
POST /api/providers/{provider_id}/circuit/reset - Close a provider's circuit (admin)
POST /api/providers/{provider_id}/circuit/open  - Force a provider's circuit open (admin)

Admin endpoints require the X-Admin-Key header (see Settings.admin_api_key).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from src.api.dependencies import get_routing_context, require_admin
from src.routing.context import RoutingContext
from src.routing.providers import ProviderId

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/providers", tags=["providers"])


def _parse_provider(provider_id: str) -> ProviderId:
    try:
        return ProviderId(provider_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider: {provider_id}",
        ) from exc


@router.get("/status")
async def provider_status(
    context: RoutingContext = Depends(get_routing_context),
) -> dict[str, Any]:
    """Current status of every provider."""
    health = await context.health.snapshot()
    circuits = await context.breakers.snapshot_all()
    now = datetime.now(UTC).isoformat()

    providers = []
    for config in context.registry.all():
        record = health[config.id]
        circuit = circuits[str(config.id)]
        providers.append(
            {
                "name": str(config.id),
                "displayName": config.display_name,
                "status": record.status.value,
                "lastChecked": record.last_check or now,
                "circuitState": circuit["state"],
                "model": config.default_model,
                "details": {
                    "isConfigured": config.is_configured,
                    "totalRequests": record.total_requests,
                    "errorRate": record.error_rate,
                    "consecutiveFailures": record.consecutive_failures,
                    "responseTimeMs": record.response_time_ms,
                    "circuitFailureCount": circuit["failure_count"],
                    "timeoutMs": config.limits.timeout_ms,
                },
            }
        )

    return {
        "timestamp": now,
        "providers": providers,
        "traces": context.recorder.summary(),
    }


@router.post("/{provider_id}/circuit/reset", dependencies=[Depends(require_admin)])
async def reset_circuit(
    provider_id: str,
    context: RoutingContext = Depends(get_routing_context),
) -> dict[str, Any]:
    """Return a provider's circuit to CLOSED."""
    pid = _parse_provider(provider_id)
    await context.breakers.get(pid).reset()
    log.info("providers_api.circuit_reset", provider_id=pid)
    return await context.breakers.get(pid).snapshot()


@router.post("/{provider_id}/circuit/open", dependencies=[Depends(require_admin)])
async def open_circuit(
    provider_id: str,
    context: RoutingContext = Depends(get_routing_context),
) -> dict[str, Any]:
    """Force a provider's circuit OPEN."""
    pid = _parse_provider(provider_id)
    await context.breakers.force_open(pid)
    log.warning("providers_api.circuit_forced_open", provider_id=pid)
    return await context.breakers.get(pid).snapshot()
