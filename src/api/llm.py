"""LLM routing endpoint.

POST /api/llm/route - Score, route and execute a completion request

Terminal failures are returned as structured JSON by the handlers in
src.api.errors:
- 402 budget_exceeded
- 502 all_providers_failed (504 when every attempt timed out)
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.api.dependencies import get_routing_context
from src.routing.clients import CompletionRequest
from src.routing.context import RoutingContext
from src.telemetry.logging import bind_session_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/llm", tags=["llm"])

MAX_PROMPT_CHARS = 50_000
DEFAULT_MAX_TOKENS = 2000
MAX_TOKENS_CAP = 4000
DEFAULT_TEMPERATURE = 0.7


# ------------------------------------------------------------------ #
# Request/Response Models
# ------------------------------------------------------------------ #


class RequestMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_id: uuid.UUID = Field(default_factory=uuid.uuid4, alias="requestId")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class RouteRequestBody(BaseModel):
    """Completion request routed across providers."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: uuid.UUID = Field(..., alias="sessionId", description="Budget session")
    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_CHARS)
    max_tokens: int = Field(
        default=DEFAULT_MAX_TOKENS,
        ge=1,
        alias="maxTokens",
        description=f"Completion token ceiling, capped at {MAX_TOKENS_CAP}",
    )
    temperature: float = Field(
        default=DEFAULT_TEMPERATURE,
        description="Sampling temperature, clamped to [0, 2]",
    )
    structured_output: bool = Field(default=False, alias="structuredOutput")
    context_length: int = Field(default=0, ge=0, alias="contextLength")
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("prompt must not be blank")
        return value

    @field_validator("max_tokens")
    @classmethod
    def _cap_max_tokens(cls, value: int) -> int:
        return min(value, MAX_TOKENS_CAP)

    @field_validator("temperature")
    @classmethod
    def _clamp_temperature(cls, value: float) -> float:
        return max(0.0, min(value, 2.0))


class TokenUsage(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_tokens: int = Field(alias="promptTokens")
    completion_tokens: int = Field(alias="completionTokens")
    total_tokens: int = Field(alias="totalTokens")


class RouteResponseBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    request_id: str = Field(alias="requestId")
    provider_id: str = Field(alias="providerId")
    model_name: str = Field(alias="modelName")
    content: str
    token_usage: TokenUsage = Field(alias="tokenUsage")
    cost: float
    latency: float
    timestamp: str
    fallback_used: bool = Field(alias="fallbackUsed")
    complexity: dict[str, Any]
    attempts: list[dict[str, Any]]


# ------------------------------------------------------------------ #
# Endpoints
# ------------------------------------------------------------------ #


@router.post(
    "/route",
    response_model=RouteResponseBody,
    response_model_by_alias=True,
)
async def route_completion(
    body: RouteRequestBody,
    context: RoutingContext = Depends(get_routing_context),
) -> RouteResponseBody:
    """Route a completion request to the best available provider."""
    request_id = str(body.metadata.request_id)
    session_id = str(body.session_id)
    bind_session_context(session_id)

    log.info(
        "llm_route.request_received",
        llm_request_id=request_id,
        prompt_chars=len(body.prompt),
        max_tokens=body.max_tokens,
        temperature=body.temperature,
    )

    outcome = await context.process(
        CompletionRequest(
            prompt=body.prompt,
            max_tokens=body.max_tokens,
            temperature=body.temperature,
        ),
        session_id=session_id,
        request_id=request_id,
        context_length=body.context_length,
        structured_output=body.structured_output,
    )
    result = outcome.result
    response = result.response

    return RouteResponseBody(
        request_id=request_id,
        provider_id=str(result.provider_id),
        model_name=response.model,
        content=response.content,
        token_usage=TokenUsage(
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
            total_tokens=response.total_tokens,
        ),
        cost=result.cost_usd,
        latency=result.latency_ms,
        timestamp=datetime.now(UTC).isoformat(),
        fallback_used=result.provider_id != outcome.decision.primary,
        complexity={
            "overall": outcome.score.overall,
            "level": outcome.score.level.value,
            "reasoning": outcome.score.reasoning,
            "patterns": list(outcome.score.patterns),
        },
        attempts=[a.to_dict() for a in result.attempts],
    )
