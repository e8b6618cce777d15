"""Health check endpoints.

/health/live   - Liveness probe: is the process up?
/health/ready  - Readiness probe: can we serve traffic? (state store reachable,
                 at least one provider circuit not open)

These are public endpoints - no auth required.
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from src.api.dependencies import get_routing_context
from src.routing.context import RoutingContext

router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live")
async def liveness() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


@router.get("/ready")
async def readiness(context: RoutingContext = Depends(get_routing_context)) -> JSONResponse:
    """Readiness probe - checks the state store and provider circuits."""
    store_ok = await context.store.ping()
    circuits = await context.breakers.health_summary() if store_ok else None

    is_ready = store_ok and circuits is not None and circuits["overall"] != "unhealthy"
    body = {
        "status": "ready" if is_ready else "not_ready",
        "state_store": "ok" if store_ok else "unreachable",
        "providers": circuits,
        "timestamp": datetime.now(UTC).isoformat(),
    }
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=body,
    )
