"""FastAPI dependencies shared by the API routers."""

from __future__ import annotations

import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from src.config import Settings, get_settings
from src.routing.context import RoutingContext


def get_routing_context(request: Request) -> RoutingContext:
    """Return the RoutingContext created in the application lifespan."""
    context: RoutingContext | None = getattr(request.app.state, "routing", None)
    if context is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Routing context not initialized",
        )
    return context


def require_admin(
    x_admin_key: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Guard operator endpoints with the configured admin key.

    Admin endpoints are disabled entirely when no key is configured.
    """
    if settings.admin_api_key is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin endpoints are disabled",
        )
    expected = settings.admin_api_key.get_secret_value()
    if not x_admin_key or not secrets.compare_digest(
        x_admin_key.encode(), expected.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )
