"""Static provider catalog.

Exactly three providers are supported, each covering one complexity band:

- groq: fastest and cheapest, low complexity
- gemini: balanced, medium complexity
- cerebras: long-context reasoning, high complexity

ProviderConfig records are built once at startup from Settings (API keys and
timeout overrides) and never mutated afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

import structlog
from pydantic import SecretStr

from src.config import Settings

log = structlog.get_logger(__name__)


class ProviderId(StrEnum):
    GROQ = "groq"
    GEMINI = "gemini"
    CEREBRAS = "cerebras"


class ComplexityBand(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ProviderLimits:
    max_tokens: int
    timeout_ms: int
    rate_limit_per_minute: int

    def __post_init__(self) -> None:
        if self.max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {self.max_tokens}")
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")


@dataclass(frozen=True)
class ProviderPricing:
    """USD per one million tokens."""

    input_cost_per_1m: float
    output_cost_per_1m: float

    def cost(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens * self.input_cost_per_1m
            + completion_tokens * self.output_cost_per_1m
        ) / 1_000_000


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a single provider.

    Attributes:
        id: Provider identifier
        display_name: Human readable name
        endpoint: Base URL of the completion API
        default_model: Model used when the request doesn't name one
        models: All models the provider may serve
        limits: Token, timeout and rate limits
        pricing: Per-token pricing
        complexity_band: Band this provider is preferred for
        capabilities: Free-form capability tags
        api_key: Secret API key, None when not configured
    """

    id: ProviderId
    display_name: str
    endpoint: str
    default_model: str
    models: tuple[str, ...]
    limits: ProviderLimits
    pricing: ProviderPricing
    complexity_band: ComplexityBand
    capabilities: frozenset[str] = field(default_factory=frozenset)
    api_key: SecretStr | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        if self.default_model not in self.models:
            raise ValueError(
                f"default_model {self.default_model!r} not in models for {self.id}"
            )

    @property
    def is_configured(self) -> bool:
        return self.api_key is not None and bool(self.api_key.get_secret_value())


# Preference order within each band. Ties after the preferred provider go to
# the provider with the shorter timeout.
BAND_PREFERENCE: dict[ComplexityBand, tuple[ProviderId, ...]] = {
    ComplexityBand.LOW: (ProviderId.GROQ, ProviderId.GEMINI, ProviderId.CEREBRAS),
    ComplexityBand.MEDIUM: (ProviderId.GEMINI, ProviderId.GROQ, ProviderId.CEREBRAS),
    ComplexityBand.HIGH: (ProviderId.CEREBRAS, ProviderId.GEMINI, ProviderId.GROQ),
}


def default_provider_configs(settings: Settings) -> dict[ProviderId, ProviderConfig]:
    """Build the three provider configs from settings."""
    return {
        ProviderId.GROQ: ProviderConfig(
            id=ProviderId.GROQ,
            display_name="Groq",
            endpoint="https://api.groq.com/openai/v1/chat/completions",
            default_model="llama-3.1-70b-versatile",
            models=("llama-3.1-70b-versatile", "llama-3.1-8b-instant"),
            limits=ProviderLimits(
                max_tokens=8000,
                timeout_ms=settings.groq_timeout_ms,
                rate_limit_per_minute=30,
            ),
            pricing=ProviderPricing(input_cost_per_1m=0.30, output_cost_per_1m=0.60),
            complexity_band=ComplexityBand.LOW,
            capabilities=frozenset({"chat", "fast_inference"}),
            api_key=settings.groq_api_key,
        ),
        ProviderId.GEMINI: ProviderConfig(
            id=ProviderId.GEMINI,
            display_name="Google Gemini",
            endpoint="https://generativelanguage.googleapis.com/v1beta/models",
            default_model="gemini-1.5-flash",
            models=("gemini-1.5-flash", "gemini-1.5-pro"),
            limits=ProviderLimits(
                max_tokens=8192,
                timeout_ms=settings.gemini_timeout_ms,
                rate_limit_per_minute=60,
            ),
            pricing=ProviderPricing(input_cost_per_1m=0.50, output_cost_per_1m=1.50),
            complexity_band=ComplexityBand.MEDIUM,
            capabilities=frozenset({"chat", "multimodal", "structured_output"}),
            api_key=settings.gemini_api_key,
        ),
        ProviderId.CEREBRAS: ProviderConfig(
            id=ProviderId.CEREBRAS,
            display_name="Cerebras",
            endpoint=settings.cerebras_endpoint,
            default_model="llama3.1-70b",
            models=("llama3.1-70b", "llama3.1-8b"),
            limits=ProviderLimits(
                max_tokens=32768,
                timeout_ms=settings.cerebras_timeout_ms,
                rate_limit_per_minute=30,
            ),
            pricing=ProviderPricing(input_cost_per_1m=1.00, output_cost_per_1m=2.00),
            complexity_band=ComplexityBand.HIGH,
            capabilities=frozenset({"chat", "long_context", "reasoning"}),
            api_key=settings.cerebras_api_key,
        ),
    }


class ProviderRegistry:
    """Read-only catalog of the three provider configs."""

    def __init__(self, configs: dict[ProviderId, ProviderConfig]) -> None:
        missing = set(ProviderId) - set(configs)
        if missing:
            raise ValueError(f"Missing provider configs: {sorted(missing)}")
        self._configs = dict(configs)

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderRegistry:
        registry = cls(default_provider_configs(settings))
        log.info(
            "provider_registry.loaded",
            configured=[str(p.id) for p in registry.all() if p.is_configured],
            unconfigured=[str(p.id) for p in registry.all() if not p.is_configured],
        )
        return registry

    def get(self, provider_id: ProviderId | str) -> ProviderConfig:
        """Return the config for a provider.

        Raises:
            KeyError: if provider_id is not one of the known providers
        """
        try:
            return self._configs[ProviderId(provider_id)]
        except ValueError as exc:
            raise KeyError(provider_id) from exc

    def all(self) -> list[ProviderConfig]:
        """Return all configs in stable order (groq, gemini, cerebras)."""
        return [self._configs[p] for p in ProviderId]

    def for_band(self, band: ComplexityBand) -> ProviderConfig:
        return self._configs[BAND_PREFERENCE[band][0]]

    def is_configured(self, provider_id: ProviderId | str) -> bool:
        return self.get(provider_id).is_configured

    def estimate_cost(
        self,
        provider_id: ProviderId | str,
        prompt_tokens: int,
        completion_tokens: int,
    ) -> float:
        return self.get(provider_id).pricing.cost(prompt_tokens, completion_tokens)
