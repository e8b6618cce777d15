"""Exception handlers mapping terminal routing errors to JSON responses.

Callers always get a structured body naming the terminal error kind, never
a stack trace or a provider's raw error payload.
"""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.routing.errors import AllProvidersExhaustedError, BudgetExceededError

log = structlog.get_logger(__name__)


async def budget_exceeded_handler(request: Request, exc: BudgetExceededError) -> JSONResponse:
    log.warning(
        "api.budget_exceeded",
        path=request.url.path,
        session_id=exc.session_id,
        window=exc.window,
        current_usage=exc.current_usage,
        limit=exc.limit,
    )
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={
            "error": "budget_exceeded",
            "currentUsage": exc.current_usage,
            "limit": exc.limit,
            "window": exc.window,
        },
    )


async def all_providers_exhausted_handler(
    request: Request, exc: AllProvidersExhaustedError
) -> JSONResponse:
    status_code = (
        status.HTTP_504_GATEWAY_TIMEOUT if exc.all_timed_out else status.HTTP_502_BAD_GATEWAY
    )
    log.error(
        "api.all_providers_failed",
        path=request.url.path,
        status_code=status_code,
        attempts=len(exc.attempts),
        reasoning=exc.reasoning,
    )
    return JSONResponse(status_code=status_code, content=exc.to_dict())


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log.error(
        "app.unhandled_exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BudgetExceededError, budget_exceeded_handler)
    app.add_exception_handler(AllProvidersExhaustedError, all_providers_exhausted_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
