from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Literal

from payroute.catalogs.core import ModelPricing
from payroute.config import Tier, TierConfig
from payroute.routing_defaults import BASELINE_MODEL_ID

CONTEXT_HEADROOM = 1.1

RoutingMethod = Literal["rules", "session", "explicit"]


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    model: str
    tier: Tier
    confidence: float
    method: RoutingMethod
    reasoning: str
    cost_estimate: float
    baseline_cost: float
    savings: float
    agentic: bool = False

    def to_log_dict(self) -> dict[str, object]:
        return {
            "model": self.model,
            "tier": self.tier.value,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "reasoning": self.reasoning,
            "cost_estimate": self.cost_estimate,
            "baseline_cost": self.baseline_cost,
            "savings": self.savings,
            "agentic": self.agentic,
        }


def estimate_cost(
    model: str,
    pricing: Mapping[str, ModelPricing],
    input_tokens: int,
    output_tokens: int,
) -> float:
    row = pricing.get(model)
    if row is None:
        return 0.0
    return row.cost(input_tokens, output_tokens)


def compute_savings(cost: float, baseline: float) -> float:
    if baseline <= 0:
        return 0.0
    return max(0.0, min(1.0, (baseline - cost) / baseline))


def select_model(
    tier: Tier,
    confidence: float,
    method: RoutingMethod,
    reasoning: str,
    tier_configs: Mapping[Tier, TierConfig],
    pricing: Mapping[str, ModelPricing],
    estimated_input_tokens: int,
    max_output_tokens: int,
    *,
    agentic: bool = False,
) -> RoutingDecision:
    model = tier_configs[tier].primary
    return decision_for_model(
        model,
        tier,
        confidence,
        method,
        reasoning,
        pricing,
        estimated_input_tokens,
        max_output_tokens,
        agentic=agentic,
    )


def decision_for_model(
    model: str,
    tier: Tier,
    confidence: float,
    method: RoutingMethod,
    reasoning: str,
    pricing: Mapping[str, ModelPricing],
    estimated_input_tokens: int,
    max_output_tokens: int,
    *,
    agentic: bool = False,
) -> RoutingDecision:
    cost = estimate_cost(model, pricing, estimated_input_tokens, max_output_tokens)
    baseline = estimate_cost(
        BASELINE_MODEL_ID, pricing, estimated_input_tokens, max_output_tokens
    )
    return RoutingDecision(
        model=model,
        tier=tier,
        confidence=confidence,
        method=method,
        reasoning=reasoning,
        cost_estimate=cost,
        baseline_cost=baseline,
        savings=compute_savings(cost, baseline),
        agentic=agentic,
    )


def get_fallback_chain(tier: Tier, tier_configs: Mapping[Tier, TierConfig]) -> list[str]:
    tier_config = tier_configs[tier]
    return list(dict.fromkeys([tier_config.primary, *tier_config.fallback]))


def get_fallback_chain_filtered(
    tier: Tier,
    tier_configs: Mapping[Tier, TierConfig],
    estimated_total_tokens: int,
    context_window_for: Callable[[str], int | None],
) -> list[str]:
    chain = get_fallback_chain(tier, tier_configs)
    required = estimated_total_tokens * CONTEXT_HEADROOM
    filtered = []
    for model in chain:
        window = context_window_for(model)
        if window is None or window >= required:
            filtered.append(model)
    # An empty filter result falls back to the full chain.
    return filtered or chain
