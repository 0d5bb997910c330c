from __future__ import annotations

from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)

from payroute.routing_defaults import (
    AGENTIC_TASK_KEYWORDS,
    AUTO_MODEL_IDS,
    CODE_KEYWORDS,
    CONSTRAINT_INDICATORS,
    CREATIVE_KEYWORDS,
    DEFAULT_AGENTIC_WEIGHTS,
    DEFAULT_DIMENSION_WEIGHTS,
    DEFAULT_ROUTING_CONFIG,
    DOMAIN_SPECIFIC_KEYWORDS,
    IMPERATIVE_VERBS,
    NEGATION_KEYWORDS,
    OUTPUT_FORMAT_KEYWORDS,
    REASONING_KEYWORDS,
    REFERENCE_KEYWORDS,
    SIMPLE_KEYWORDS,
    TECHNICAL_KEYWORDS,
)
from payroute.utils.yaml_utils import load_yaml_mapping


class Tier(StrEnum):
    SIMPLE = "SIMPLE"
    MEDIUM = "MEDIUM"
    COMPLEX = "COMPLEX"
    REASONING = "REASONING"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def at_least(self, other: Tier) -> Tier:
        return self if self.rank >= other.rank else other


_TIER_ORDER = (Tier.SIMPLE, Tier.MEDIUM, Tier.COMPLEX, Tier.REASONING)


class TierConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    primary: str
    fallback: tuple[str, ...] = ()

    @field_validator("primary")
    @classmethod
    def _primary_not_blank(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Tier primary model must be a non-empty model id.")
        return normalized

    @field_validator("fallback", mode="before")
    @classmethod
    def _coerce_fallback(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        cleaned = [str(item).strip() for item in value if str(item).strip()]
        return tuple(cleaned)


class TokenCountThresholds(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    simple: int = 50
    complex: int = 500


class TierBoundaries(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    simple_medium: float = 0.0
    medium_complex: float = 0.3
    complex_reasoning: float = 0.5

    @model_validator(mode="after")
    def _check_ordering(self) -> TierBoundaries:
        if not self.simple_medium < self.medium_complex < self.complex_reasoning:
            raise ValueError(
                "Tier boundaries must be strictly ascending: "
                "simple_medium < medium_complex < complex_reasoning."
            )
        return self


_KEYWORD_FIELDS = (
    "code_keywords",
    "reasoning_keywords",
    "simple_keywords",
    "technical_keywords",
    "creative_keywords",
    "imperative_verbs",
    "constraint_indicators",
    "output_format_keywords",
    "reference_keywords",
    "negation_keywords",
    "domain_specific_keywords",
    "agentic_task_keywords",
)


class ScoringConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    token_count_thresholds: TokenCountThresholds = Field(
        default_factory=TokenCountThresholds
    )
    code_keywords: tuple[str, ...] = CODE_KEYWORDS
    reasoning_keywords: tuple[str, ...] = REASONING_KEYWORDS
    simple_keywords: tuple[str, ...] = SIMPLE_KEYWORDS
    technical_keywords: tuple[str, ...] = TECHNICAL_KEYWORDS
    creative_keywords: tuple[str, ...] = CREATIVE_KEYWORDS
    imperative_verbs: tuple[str, ...] = IMPERATIVE_VERBS
    constraint_indicators: tuple[str, ...] = CONSTRAINT_INDICATORS
    output_format_keywords: tuple[str, ...] = OUTPUT_FORMAT_KEYWORDS
    reference_keywords: tuple[str, ...] = REFERENCE_KEYWORDS
    negation_keywords: tuple[str, ...] = NEGATION_KEYWORDS
    domain_specific_keywords: tuple[str, ...] = DOMAIN_SPECIFIC_KEYWORDS
    agentic_task_keywords: tuple[str, ...] = AGENTIC_TASK_KEYWORDS
    dimension_weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_DIMENSION_WEIGHTS)
    )
    agentic_weights: dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_AGENTIC_WEIGHTS)
    )
    tier_boundaries: TierBoundaries = Field(default_factory=TierBoundaries)
    confidence_steepness: float = 12.0
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)

    @field_validator(*_KEYWORD_FIELDS, mode="before")
    @classmethod
    def _normalize_keywords(cls, value: Any) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            value = [value]
        normalized = [str(item).lower() for item in value if str(item).strip()]
        return tuple(dict.fromkeys(normalized))

    @field_validator("dimension_weights", "agentic_weights", mode="before")
    @classmethod
    def _merge_weights(cls, value: Any, info: ValidationInfo) -> dict[str, float]:
        defaults = (
            DEFAULT_DIMENSION_WEIGHTS
            if info.field_name == "dimension_weights"
            else DEFAULT_AGENTIC_WEIGHTS
        )
        merged = dict(defaults)
        if isinstance(value, dict):
            for key, raw in value.items():
                merged[str(key)] = float(raw)
        return merged

    def weight(self, dimension: str) -> float:
        return float(self.dimension_weights.get(dimension, 0.0))


class OverridesConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    max_tokens_force_complex: int = 100_000
    structured_output_min_tier: Tier = Tier.MEDIUM
    ambiguous_default_tier: Tier = Tier.MEDIUM
    agentic_mode: bool = False
    auto_agentic_detection: bool = True
    agentic_threshold: float = Field(default=0.6, ge=0.0, le=1.0)


TierTable = dict[Tier, TierConfig]


class RoutingConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    version: str = "2.0"
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    tiers: TierTable
    agentic_tiers: TierTable | None = None
    overrides: OverridesConfig = Field(default_factory=OverridesConfig)

    @model_validator(mode="after")
    def _validate_tier_tables(self) -> RoutingConfig:
        _check_tier_table("tiers", self.tiers)
        if self.agentic_tiers is not None:
            _check_tier_table("agentic_tiers", self.agentic_tiers)
        return self

    def tier_table(self, agentic: bool) -> TierTable:
        if agentic and self.agentic_tiers is not None:
            return self.agentic_tiers
        return self.tiers

    def available_models(self) -> list[str]:
        models: list[str] = []
        tables = [self.tiers]
        if self.agentic_tiers is not None:
            tables.append(self.agentic_tiers)
        for table in tables:
            for tier in Tier:
                tier_config = table[tier]
                models.extend([tier_config.primary, *tier_config.fallback])
        return list(dict.fromkeys(models))

    @staticmethod
    def should_auto_route(requested_model: str | None) -> bool:
        if not requested_model or not requested_model.strip():
            return True
        return requested_model.strip().lower() in AUTO_MODEL_IDS


def _check_tier_table(name: str, table: TierTable) -> None:
    missing = [tier.value for tier in Tier if tier not in table]
    if missing:
        raise ValueError(f"{name} is missing tier(s): {', '.join(missing)}")
    # Reasoning-specialised and general complex models must stay separate.
    if table[Tier.REASONING].primary == table[Tier.COMPLEX].primary:
        raise ValueError(
            f"{name}: REASONING and COMPLEX must use different primary models "
            f"(both are '{table[Tier.COMPLEX].primary}')."
        )


def default_routing_config() -> RoutingConfig:
    return RoutingConfig.model_validate(DEFAULT_ROUTING_CONFIG)


def load_routing_config(config_path: str | Path | None) -> RoutingConfig:
    if config_path is None or not str(config_path).strip():
        return default_routing_config()

    raw = load_yaml_mapping(
        config_path,
        label="Routing config",
        missing_hint=(
            "Create it or unset ROUTING_CONFIG_PATH to use the built-in defaults."
        ),
    )
    merged: dict[str, Any] = {
        "version": raw.get("version", DEFAULT_ROUTING_CONFIG["version"]),
        "scoring": raw.get("scoring") or {},
        "tiers": raw.get("tiers") or DEFAULT_ROUTING_CONFIG["tiers"],
        "agentic_tiers": raw.get(
            "agentic_tiers", DEFAULT_ROUTING_CONFIG["agentic_tiers"]
        ),
        "overrides": {
            **DEFAULT_ROUTING_CONFIG["overrides"],
            **(raw.get("overrides") or {}),
        },
    }
    return RoutingConfig.model_validate(merged)
