from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from payroute.catalogs.core import ModelCatalog, ModelPricing
from payroute.classifier import (
    RequestMetadata,
    classify,
    estimate_tokens,
    extract_prompt,
)
from payroute.config import RoutingConfig, Tier
from payroute.selector import (
    RoutingDecision,
    decision_for_model,
    get_fallback_chain_filtered,
    select_model,
)

if TYPE_CHECKING:
    from payroute.session import SessionEntry

STRUCTURED_OUTPUT_PATTERN = re.compile(r"json|structured|schema", re.IGNORECASE)
FORCED_COMPLEX_CONFIDENCE = 0.95
AMBIGUOUS_CONFIDENCE = 0.5


class InvalidRequestPayloadError(ValueError):
    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class RoutePlan:
    decision: RoutingDecision
    models: list[str]
    requested_model: str
    auto: bool
    estimated_input_tokens: int
    max_output_tokens: int

    @property
    def allows_fallback(self) -> bool:
        return self.auto and len(self.models) > 1


def route(
    prompt: str,
    system_prompt: str | None,
    max_output_tokens: int,
    *,
    config: RoutingConfig,
    pricing: Mapping[str, ModelPricing],
    metadata: RequestMetadata | None = None,
) -> RoutingDecision:
    estimated_tokens = estimate_tokens(prompt, system_prompt)
    result = classify(
        prompt, system_prompt, estimated_tokens, config.scoring, metadata=metadata
    )

    overrides = config.overrides
    # Detection and the explicit flag are independent inputs to one switch.
    auto_agentic = (
        overrides.auto_agentic_detection
        and result.agentic_score >= overrides.agentic_threshold
    )
    explicit_agentic = overrides.agentic_mode
    use_agentic = (auto_agentic or explicit_agentic) and config.agentic_tiers is not None
    tier_configs = config.tier_table(use_agentic)

    if estimated_tokens > overrides.max_tokens_force_complex:
        reasoning = f"Input exceeds {overrides.max_tokens_force_complex} tokens"
        if use_agentic:
            reasoning += " | agentic"
        return select_model(
            Tier.COMPLEX,
            FORCED_COMPLEX_CONFIDENCE,
            "rules",
            reasoning,
            tier_configs,
            pricing,
            estimated_tokens,
            max_output_tokens,
            agentic=use_agentic,
        )

    reasoning = f"score={result.score:.2f} | {', '.join(result.signals)}"
    if result.tier is not None:
        tier = result.tier
        confidence = result.confidence
    else:
        tier = overrides.ambiguous_default_tier
        confidence = AMBIGUOUS_CONFIDENCE
        reasoning += f" | ambiguous -> default: {tier}"

    if system_prompt and STRUCTURED_OUTPUT_PATTERN.search(system_prompt):
        min_tier = overrides.structured_output_min_tier
        if tier.rank < min_tier.rank:
            reasoning += f" | upgraded to {min_tier} (structured output)"
            tier = min_tier

    if use_agentic:
        reasoning += " | auto-agentic" if auto_agentic else " | agentic"

    return select_model(
        tier,
        confidence,
        "rules",
        reasoning,
        tier_configs,
        pricing,
        estimated_tokens,
        max_output_tokens,
        agentic=use_agentic,
    )


class SmartRouter:
    def __init__(self, config: RoutingConfig, catalog: ModelCatalog) -> None:
        self.config = config
        self.catalog = catalog

    @property
    def pricing(self) -> Mapping[str, ModelPricing]:
        return self.catalog.models

    def decide(self, payload: dict[str, Any]) -> RoutingDecision:
        parts = extract_prompt(payload)
        return route(
            parts.prompt,
            parts.system_prompt,
            parts.max_output_tokens,
            config=self.config,
            pricing=self.pricing,
            metadata=parts.metadata,
        )

    def plan(
        self,
        payload: dict[str, Any],
        *,
        pinned: SessionEntry | None = None,
    ) -> RoutePlan:
        requested = payload.get("model")
        if requested is not None and not isinstance(requested, str):
            raise InvalidRequestPayloadError("model", "'model' must be a string.")
        requested_model = (requested or "").strip()
        auto = self.config.should_auto_route(requested_model)

        parts = extract_prompt(payload)
        estimated = estimate_tokens(parts.prompt, parts.system_prompt)
        total_tokens = estimated + parts.max_output_tokens

        if not auto:
            classified = self.decide(payload)
            decision = decision_for_model(
                requested_model,
                classified.tier,
                classified.confidence,
                "explicit",
                f"explicit model {requested_model}",
                self.pricing,
                estimated,
                parts.max_output_tokens,
            )
            models = [requested_model]
        elif pinned is not None:
            decision = decision_for_model(
                pinned.model,
                pinned.tier,
                1.0,
                "session",
                f"session pin -> {pinned.model} ({pinned.tier})",
                self.pricing,
                estimated,
                parts.max_output_tokens,
            )
            chain = get_fallback_chain_filtered(
                pinned.tier,
                self.config.tiers,
                total_tokens,
                self.catalog.context_window_for,
            )
            models = [pinned.model, *(m for m in chain if m != pinned.model)]
        else:
            decision = self.decide(payload)
            models = get_fallback_chain_filtered(
                decision.tier,
                self.config.tier_table(decision.agentic),
                total_tokens,
                self.catalog.context_window_for,
            )
            if models[0] != decision.model:
                # The tier primary cannot hold the request; the first model that can leads.
                decision = decision_for_model(
                    models[0],
                    decision.tier,
                    decision.confidence,
                    decision.method,
                    f"{decision.reasoning} | context window -> {models[0]}",
                    self.pricing,
                    estimated,
                    parts.max_output_tokens,
                    agentic=decision.agentic,
                )

        return RoutePlan(
            decision=decision,
            models=models,
            requested_model=requested_model or "auto",
            auto=auto,
            estimated_input_tokens=estimated,
            max_output_tokens=parts.max_output_tokens,
        )
