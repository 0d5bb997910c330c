from __future__ import annotations

from dataclasses import dataclass
from math import ceil
from typing import Any

from payroute.config import ScoringConfig, Tier
from payroute.scoring import (
    DimensionScore,
    KeywordBands,
    agentic_keyword_score,
    calibrate_confidence,
    clamp_unit,
    score_keyword_dimension,
    score_multi_step,
    score_question_complexity,
    score_token_count,
)

DEFAULT_MAX_OUTPUT_TOKENS = 4096
REASONING_OVERRIDE_MIN_MATCHES = 2
REASONING_OVERRIDE_MIN_CONFIDENCE = 0.85
MULTI_TURN_MESSAGE_COUNT = 4

# (dimension, config attribute, signal label, bands)
_KEYWORD_DIMENSIONS: tuple[tuple[str, str, str, KeywordBands], ...] = (
    ("code_presence", "code_keywords", "code", KeywordBands(1, 2, 0.0, 0.5, 1.0)),
    (
        "technical_terms",
        "technical_keywords",
        "technical",
        KeywordBands(2, 4, 0.0, 0.5, 1.0),
    ),
    (
        "creative_markers",
        "creative_keywords",
        "creative",
        KeywordBands(1, 2, 0.0, 0.5, 0.7),
    ),
    (
        "simple_indicators",
        "simple_keywords",
        "simple",
        KeywordBands(1, 2, 0.0, -1.0, -1.0),
    ),
    (
        "imperative_verbs",
        "imperative_verbs",
        "imperative",
        KeywordBands(1, 2, 0.0, 0.3, 0.5),
    ),
    (
        "constraint_count",
        "constraint_indicators",
        "constraints",
        KeywordBands(1, 3, 0.0, 0.3, 0.7),
    ),
    (
        "output_format",
        "output_format_keywords",
        "format",
        KeywordBands(1, 2, 0.0, 0.4, 0.7),
    ),
    (
        "reference_complexity",
        "reference_keywords",
        "references",
        KeywordBands(1, 2, 0.0, 0.3, 0.5),
    ),
    (
        "negation_complexity",
        "negation_keywords",
        "negation",
        KeywordBands(2, 3, 0.0, 0.3, 0.5),
    ),
    (
        "domain_specificity",
        "domain_specific_keywords",
        "domain-specific",
        KeywordBands(1, 2, 0.0, 0.5, 0.8),
    ),
)
_REASONING_BANDS = KeywordBands(1, 2, 0.0, 0.7, 1.0)


@dataclass(frozen=True, slots=True)
class RequestMetadata:
    has_tools: bool = False
    has_tool_results: bool = False
    message_count: int = 0


@dataclass(frozen=True, slots=True)
class ScoringResult:
    score: float
    tier: Tier | None
    confidence: float
    signals: tuple[str, ...]
    agentic_score: float

    @property
    def is_ambiguous(self) -> bool:
        return self.tier is None


@dataclass(frozen=True, slots=True)
class PromptParts:
    prompt: str
    system_prompt: str | None
    max_output_tokens: int
    metadata: RequestMetadata


def classify(
    prompt: str,
    system_prompt: str | None,
    estimated_tokens: int,
    config: ScoringConfig,
    *,
    metadata: RequestMetadata | None = None,
) -> ScoringResult:
    user_text = prompt.lower()
    full_text = f"{system_prompt or ''} {prompt}".lower()

    dimensions: list[DimensionScore] = [
        score_token_count(
            estimated_tokens,
            simple_threshold=config.token_count_thresholds.simple,
            complex_threshold=config.token_count_thresholds.complex,
        )
    ]
    for name, attribute, label, bands in _KEYWORD_DIMENSIONS:
        dimension, _ = score_keyword_dimension(
            full_text,
            getattr(config, attribute),
            name=name,
            label=label,
            bands=bands,
        )
        dimensions.append(dimension)

    # Reasoning markers only count from the user's own text: a shared system
    # prompt asking to "think step by step" must not lift every request.
    reasoning, reasoning_matches = score_keyword_dimension(
        user_text,
        config.reasoning_keywords,
        name="reasoning_markers",
        label="reasoning",
        bands=_REASONING_BANDS,
    )
    dimensions.append(reasoning)
    dimensions.append(score_multi_step(full_text))
    dimensions.append(score_question_complexity(prompt))

    agentic_matches = [kw for kw in config.agentic_task_keywords if kw in full_text]
    keyword_agentic = agentic_keyword_score(len(agentic_matches))
    dimensions.append(
        DimensionScore(
            name="agentic_task",
            score=keyword_agentic,
            signal=(
                f"agentic ({', '.join(agentic_matches[:3])})"
                if agentic_matches
                else None
            ),
        )
    )

    score = sum(config.weight(item.name) * item.score for item in dimensions)
    signals = tuple(item.signal for item in dimensions if item.signal)
    agentic_score = _agentic_score(keyword_agentic, metadata, config)

    boundaries = config.tier_boundaries
    if len(reasoning_matches) >= REASONING_OVERRIDE_MIN_MATCHES:
        confidence = calibrate_confidence(
            max(score, boundaries.complex_reasoning) - boundaries.complex_reasoning,
            config.confidence_steepness,
        )
        return ScoringResult(
            score=score,
            tier=Tier.REASONING,
            confidence=max(confidence, REASONING_OVERRIDE_MIN_CONFIDENCE),
            signals=signals,
            agentic_score=agentic_score,
        )

    tier, distance = _band_for_score(
        score,
        boundaries.simple_medium,
        boundaries.medium_complex,
        boundaries.complex_reasoning,
    )
    confidence = calibrate_confidence(distance, config.confidence_steepness)
    if confidence < config.confidence_threshold:
        return ScoringResult(
            score=score,
            tier=None,
            confidence=confidence,
            signals=signals,
            agentic_score=agentic_score,
        )
    return ScoringResult(
        score=score,
        tier=tier,
        confidence=confidence,
        signals=signals,
        agentic_score=agentic_score,
    )


def _band_for_score(
    score: float,
    simple_medium: float,
    medium_complex: float,
    complex_reasoning: float,
) -> tuple[Tier, float]:
    if score < simple_medium:
        return Tier.SIMPLE, simple_medium - score
    if score < medium_complex:
        return Tier.MEDIUM, min(score - simple_medium, medium_complex - score)
    if score < complex_reasoning:
        return Tier.COMPLEX, min(score - medium_complex, complex_reasoning - score)
    return Tier.REASONING, score - complex_reasoning


def _agentic_score(
    keyword_score: float,
    metadata: RequestMetadata | None,
    config: ScoringConfig,
) -> float:
    weights = config.agentic_weights
    combined = weights.get("keywords", 1.0) * keyword_score
    if metadata is not None:
        if metadata.has_tools:
            combined += weights.get("tools", 0.0)
        if metadata.has_tool_results:
            combined += weights.get("tool_results", 0.0)
        if metadata.message_count > MULTI_TURN_MESSAGE_COUNT:
            combined += weights.get("multi_turn", 0.0)
    return clamp_unit(combined)


def estimate_tokens(prompt: str, system_prompt: str | None) -> int:
    text = f"{system_prompt or ''} {prompt}"
    return ceil(len(text) / 4)


def extract_prompt(payload: dict[str, Any]) -> PromptParts:
    """Pull the routed prompt, system prompt and output budget out of a chat payload.

    The last user message is the prompt; every system (or developer) message
    is joined into the system prompt. Legacy completion payloads carrying a
    top-level ``prompt`` are also understood.
    """
    messages = payload.get("messages")
    prompt = ""
    system_parts: list[str] = []
    has_tool_results = False
    message_count = 0
    if isinstance(messages, list):
        for message in messages:
            if not isinstance(message, dict):
                continue
            message_count += 1
            role = str(message.get("role") or "").strip().lower()
            text = message_text(message.get("content"))
            if role in {"system", "developer"}:
                if text:
                    system_parts.append(text)
            elif role == "user":
                prompt = text
            elif role == "tool":
                has_tool_results = True
    elif isinstance(payload.get("prompt"), str):
        prompt = payload["prompt"]

    tools = payload.get("tools")
    return PromptParts(
        prompt=prompt,
        system_prompt="\n".join(system_parts) if system_parts else None,
        max_output_tokens=_max_output_tokens(payload),
        metadata=RequestMetadata(
            has_tools=isinstance(tools, list) and len(tools) > 0,
            has_tool_results=has_tool_results,
            message_count=message_count,
        ),
    )


def message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return " ".join(parts)
    return ""


def _max_output_tokens(payload: dict[str, Any]) -> int:
    for key in ("max_tokens", "max_completion_tokens", "max_output_tokens"):
        value = payload.get(key)
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
    return DEFAULT_MAX_OUTPUT_TOKENS
