"""Request complexity scoring for provider routing.

The ComplexityScorer turns a prompt (plus a little request context) into a
complexity score (0.0-1.0) that biases provider selection:

Factors analyzed (weight):
- Query length (0.20)
- Domain/technical term density (0.25)
- Multi-step reasoning cues (0.25)
- Context depth: session, preferences, large context, custom options (0.15)
- Required output structure (0.15)

Score -> band mapping:
- < 0.3: low (fast provider)
- 0.3-0.7: medium (balanced provider)
- > 0.7: high (reasoning provider)

Scoring is a pure function of its inputs: the same request always yields
the same ComplexityScore.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field

import structlog

from src.routing.providers import BAND_PREFERENCE, ComplexityBand, ProviderId

log = structlog.get_logger(__name__)

DEFAULT_TEMPERATURE = 0.7


@dataclass(frozen=True)
class ComplexityFactors:
    query_length: float = 0.0
    technical_terms: float = 0.0
    multi_step_reasoning: float = 0.0
    context_depth: float = 0.0
    output_format: float = 0.0

    def as_dict(self) -> dict[str, float]:
        return {
            "queryLength": self.query_length,
            "technicalTerms": self.technical_terms,
            "multiStepReasoning": self.multi_step_reasoning,
            "contextDepth": self.context_depth,
            "outputFormat": self.output_format,
        }


@dataclass(frozen=True)
class ComplexityScore:
    """Result of complexity scoring.

    Attributes:
        overall: Weighted complexity score (0.0-1.0)
        factors: Individual factor scores for observability
        level: Complexity band derived from overall
        recommended_provider: Provider preferred for this band
        reasoning: Human readable explanation of the score
        patterns: Detected request patterns
        estimated_tokens: Rough prompt token estimate (4 chars per token)
    """

    overall: float
    factors: ComplexityFactors
    level: ComplexityBand
    recommended_provider: ProviderId
    reasoning: str
    patterns: tuple[str, ...] = field(default_factory=tuple)
    estimated_tokens: int = 0

    def __post_init__(self) -> None:
        if not 0.0 <= self.overall <= 1.0:
            raise ValueError(f"Complexity score must be 0.0-1.0, got {self.overall}")


class ComplexityScorer:
    """Scores request complexity using weighted heuristic factors."""

    LOW_THRESHOLD = 0.3
    MEDIUM_THRESHOLD = 0.7

    WEIGHTS = {
        "query_length": 0.20,
        "technical_terms": 0.25,
        "multi_step_reasoning": 0.25,
        "context_depth": 0.15,
        "output_format": 0.15,
    }

    TECHNICAL_PATTERNS = (
        # Travel industry
        re.compile(
            r"\b(itinerary|accommodation|transportation|logistics|booking|reservation)\b",
            re.IGNORECASE,
        ),
        # Planning and analysis
        re.compile(
            r"\b(optimization|algorithm|analysis|evaluation|comparison|recommendation)\b",
            re.IGNORECASE,
        ),
        # Geographic and cultural
        re.compile(r"\b(geographical|cultural|historical|architectural|culinary)\b", re.IGNORECASE),
        # Scheduling
        re.compile(
            r"\b(schedule|timeline|duration|availability|constraint|requirement)\b",
            re.IGNORECASE,
        ),
        # Budget
        re.compile(r"\b(budget|cost|pricing|expense|financial|economic)\b", re.IGNORECASE),
    )

    MULTI_STEP_PATTERNS = (
        re.compile(r"\b(first|second|third|then|next|after|before|finally|lastly)\b", re.IGNORECASE),
        re.compile(r"\b(plan|organize|arrange|coordinate|consider|evaluate|compare)\b", re.IGNORECASE),
        re.compile(r"\b(if|unless|provided|depending|based on|according to)\b", re.IGNORECASE),
        re.compile(r"\b(both|all|various|multiple|several|different|alternative)\b", re.IGNORECASE),
    )
    ENUMERATION_PATTERN = re.compile(r"\b\d+\.")
    BULLET_PATTERN = re.compile(r"^\s*[-*•]\s", re.MULTILINE)
    PREFERENCE_PATTERN = re.compile(r"\b(prefer|preference|preferences|preferred)\b", re.IGNORECASE)

    # (keywords, increment) pairs for the output format factor
    OUTPUT_FORMAT_CUES = (
        (("json", "format", "structure"), 0.3),
        (("table", "list", "bullet"), 0.2),
        (("detailed", "comprehensive", "complete"), 0.3),
        (("section", "part", "chapter"), 0.2),
    )

    def score(
        self,
        prompt: str,
        *,
        context_length: int = 0,
        structured_output: bool = False,
        session_id: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> ComplexityScore:
        """Score the complexity of a request.

        Args:
            prompt: Raw prompt text
            context_length: Characters of session context sent with the prompt
            structured_output: Caller requires structured (e.g. JSON) output
            session_id: Session the request belongs to, if any
            max_tokens: Requested completion token ceiling
            temperature: Requested sampling temperature

        Returns:
            ComplexityScore; empty input yields the minimum score
        """
        text = prompt.strip()
        words = len(text.split())

        factors = ComplexityFactors(
            query_length=self._analyze_query_length(text),
            technical_terms=self._analyze_technical_terms(text, words),
            multi_step_reasoning=self._analyze_multi_step(text),
            context_depth=self._analyze_context_depth(
                text,
                session_id=session_id,
                context_length=context_length,
                max_tokens=max_tokens,
                temperature=temperature,
            ),
            output_format=self._analyze_output_format(text, structured_output),
        )

        weighted = {
            name: getattr(factors, name) * weight for name, weight in self.WEIGHTS.items()
        }
        overall = round(max(0.0, min(1.0, sum(weighted.values()) / sum(self.WEIGHTS.values()))), 4)
        level = self._level_for(overall)
        patterns = self.detect_patterns(text, factors, structured_output=structured_output)

        result = ComplexityScore(
            overall=overall,
            factors=factors,
            level=level,
            recommended_provider=BAND_PREFERENCE[level][0],
            reasoning=self._build_reasoning(level, overall, weighted, patterns),
            patterns=patterns,
            estimated_tokens=math.ceil(len(text) / 4),
        )

        log.debug(
            "complexity_scorer.scored",
            overall=overall,
            level=level,
            recommended_provider=result.recommended_provider,
            patterns=list(patterns),
        )
        return result

    def detect_patterns(
        self,
        text: str,
        factors: ComplexityFactors,
        *,
        structured_output: bool = False,
    ) -> tuple[str, ...]:
        """Tag the request with coarse patterns used in logs and reasoning."""
        lowered = text.lower()
        patterns: list[str] = []

        if "travel" in lowered or "trip" in lowered:
            patterns.append("travel_planning")
        if "itinerary" in lowered:
            patterns.append("itinerary_generation")

        values = factors.as_dict().values()
        if sum(1 for v in values if v > 0.7) > 2:
            patterns.append("high_complexity_multi_factor")
        if factors.multi_step_reasoning > 0.5:
            patterns.append("multi_step_reasoning")
        if factors.technical_terms > 0.6:
            patterns.append("technical_content")
        if structured_output or factors.output_format >= 0.3:
            patterns.append("structured_output")

        return tuple(patterns)

    # ------------------------------------------------------------------ #
    # Factors
    # ------------------------------------------------------------------ #

    def _analyze_query_length(self, text: str) -> float:
        length = len(text)
        if length < 100:
            return 0.1
        if length < 300:
            return 0.3
        if length < 800:
            return 0.6
        if length <= 1000:
            return 0.9
        return 1.0

    def _analyze_technical_terms(self, text: str, words: int) -> float:
        if words == 0:
            return 0.0
        count = sum(len(p.findall(text)) for p in self.TECHNICAL_PATTERNS)
        return min(count / words * 3, 1.0)

    def _analyze_multi_step(self, text: str) -> float:
        indicators = sum(len(p.findall(text)) for p in self.MULTI_STEP_PATTERNS)
        indicators += len(self.ENUMERATION_PATTERN.findall(text))
        indicators += len(self.BULLET_PATTERN.findall(text))
        return min(indicators * 0.15, 1.0)

    def _analyze_context_depth(
        self,
        text: str,
        *,
        session_id: str | None,
        context_length: int,
        max_tokens: int | None,
        temperature: float | None,
    ) -> float:
        signals = 0.0
        if session_id:
            signals += 1
        if self.PREFERENCE_PATTERN.search(text):
            signals += 1
        if context_length > 2000:
            signals += 1
        if max_tokens is not None and max_tokens > 2000:
            signals += 0.5
        if temperature is not None and temperature != DEFAULT_TEMPERATURE:
            signals += 0.5
        return min(signals * 0.2, 1.0)

    def _analyze_output_format(self, text: str, structured_output: bool) -> float:
        lowered = text.lower()
        value = 0.3 if structured_output else 0.0
        for keywords, increment in self.OUTPUT_FORMAT_CUES:
            if any(k in lowered for k in keywords):
                value += increment
        return min(value, 1.0)

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #

    def _level_for(self, overall: float) -> ComplexityBand:
        if overall < self.LOW_THRESHOLD:
            return ComplexityBand.LOW
        if overall <= self.MEDIUM_THRESHOLD:
            return ComplexityBand.MEDIUM
        return ComplexityBand.HIGH

    def _build_reasoning(
        self,
        level: ComplexityBand,
        overall: float,
        weighted: dict[str, float],
        patterns: tuple[str, ...],
    ) -> str:
        top = sorted(weighted.items(), key=lambda item: (-item[1], item[0]))[:3]
        top_desc = ", ".join(f"{name}={value:.3f}" for name, value in top)
        reasoning = f"Complexity level: {level} (score: {overall:.2f}); top factors: {top_desc}"
        if patterns:
            reasoning += f"; patterns: {', '.join(patterns)}"
        return reasoning
