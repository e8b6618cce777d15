"""HTTP clients for the three providers.

Groq and Cerebras expose OpenAI-compatible chat completion APIs; Gemini uses
its own generateContent API. Each client normalizes the provider's answer
into a CompletionResponse and every failure into a ProviderError:

- missing API key, non-2xx status, malformed body -> ProviderError
- httpx timeout -> ProviderTimeoutError

All clients share one httpx.AsyncClient owned by the RoutingContext.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from src.routing.errors import ProviderError, ProviderTimeoutError
from src.routing.providers import ProviderConfig, ProviderId, ProviderRegistry

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CompletionRequest:
    prompt: str
    max_tokens: int = 2000
    temperature: float = 0.7
    system_prompt: str | None = None


@dataclass(frozen=True)
class CompletionResponse:
    provider_id: ProviderId
    model: str
    content: str
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


def _estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


class ProviderClient(ABC):
    """Base class for provider HTTP clients."""

    def __init__(self, config: ProviderConfig, http: httpx.AsyncClient) -> None:
        self.config = config
        self._http = http

    @property
    def provider_id(self) -> ProviderId:
        return self.config.id

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        """Send a completion request to the provider.

        Raises:
            ProviderTimeoutError: the HTTP call timed out
            ProviderError: missing key, non-2xx status or malformed response
        """
        if not self.config.is_configured:
            raise ProviderError(
                self.provider_id, f"{self.provider_id} API key not configured", status_code=401
            )

        max_tokens = min(request.max_tokens, self.config.limits.max_tokens)
        url, headers, payload = self._build_request(request, max_tokens)

        try:
            response = await self._http.post(
                url,
                headers=headers,
                json=payload,
                timeout=self.config.limits.timeout_ms / 1000,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError(self.provider_id, self.config.limits.timeout_ms) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.provider_id, f"network error: {exc}") from exc

        if response.status_code >= 400:
            log.warning(
                "provider_client.http_error",
                provider_id=self.provider_id,
                status_code=response.status_code,
            )
            raise ProviderError(
                self.provider_id,
                f"{self.provider_id} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
            return self._parse_response(body, request)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ProviderError(
                self.provider_id,
                f"malformed response from {self.provider_id}: {exc}",
                status_code=response.status_code,
            ) from exc

    @abstractmethod
    def _build_request(
        self, request: CompletionRequest, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, json payload) for the provider call."""

    @abstractmethod
    def _parse_response(
        self, body: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        """Normalize the provider's JSON body."""


class OpenAICompatibleClient(ProviderClient):
    """Client for OpenAI-style /chat/completions APIs (Groq, Cerebras)."""

    def _build_request(
        self, request: CompletionRequest, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        api_key = self.config.api_key.get_secret_value() if self.config.api_key else ""
        headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.config.default_model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": request.temperature,
        }
        return self.config.endpoint, headers, payload

    def _parse_response(
        self, body: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        content = body["choices"][0]["message"]["content"]
        if not isinstance(content, str):
            raise TypeError("choices[0].message.content is not a string")
        usage = body.get("usage") or {}
        return CompletionResponse(
            provider_id=self.provider_id,
            model=body.get("model") or self.config.default_model,
            content=content,
            prompt_tokens=int(usage.get("prompt_tokens", _estimate_tokens(request.prompt))),
            completion_tokens=int(usage.get("completion_tokens", _estimate_tokens(content))),
        )


class GeminiClient(ProviderClient):
    """Client for the Gemini generateContent API."""

    def _build_request(
        self, request: CompletionRequest, max_tokens: int
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = f"{self.config.endpoint.rstrip('/')}/{self.config.default_model}:generateContent"
        api_key = self.config.api_key.get_secret_value() if self.config.api_key else ""
        headers = {
            "x-goog-api-key": api_key,
            "Content-Type": "application/json",
        }
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": {
                "maxOutputTokens": max_tokens,
                "temperature": request.temperature,
            },
        }
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        return url, headers, payload

    def _parse_response(
        self, body: dict[str, Any], request: CompletionRequest
    ) -> CompletionResponse:
        parts = body["candidates"][0]["content"]["parts"]
        content = "".join(part.get("text", "") for part in parts)
        usage = body.get("usageMetadata") or {}
        return CompletionResponse(
            provider_id=self.provider_id,
            model=body.get("modelVersion") or self.config.default_model,
            content=content,
            prompt_tokens=int(usage.get("promptTokenCount", _estimate_tokens(request.prompt))),
            completion_tokens=int(usage.get("candidatesTokenCount", _estimate_tokens(content))),
        )


def build_clients(
    registry: ProviderRegistry, http: httpx.AsyncClient
) -> dict[ProviderId, ProviderClient]:
    """Create one client per provider."""
    return {
        ProviderId.GROQ: OpenAICompatibleClient(registry.get(ProviderId.GROQ), http),
        ProviderId.GEMINI: GeminiClient(registry.get(ProviderId.GEMINI), http),
        ProviderId.CEREBRAS: OpenAICompatibleClient(registry.get(ProviderId.CEREBRAS), http),
    }
