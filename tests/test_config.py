from __future__ import annotations

from pathlib import Path

import pytest

from payroute.config import Tier, load_routing_config
from payroute.routing_defaults import DEFAULT_TIERS


def test_missing_path_uses_built_in_defaults() -> None:
    config = load_routing_config(None)

    assert config.tiers[Tier.SIMPLE].primary == DEFAULT_TIERS["SIMPLE"]["primary"]
    assert config.agentic_tiers is not None
    assert config.overrides.max_tokens_force_complex == 100_000


def test_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError) as exc:
        load_routing_config(tmp_path / "absent.yaml")
    assert "absent.yaml" in str(exc.value)


def test_yaml_overrides_merge_with_defaults(tmp_path: Path) -> None:
    path = tmp_path / "routing.yaml"
    path.write_text(
        """
overrides:
  max_tokens_force_complex: 128000
  agentic_mode: true
scoring:
  reasoning_keywords: ["Derive", "derive", "Q.E.D."]
  dimension_weights:
    code_presence: 0.3
tiers:
  SIMPLE: {primary: a/simple, fallback: [a/simple-2]}
  MEDIUM: {primary: a/medium}
  COMPLEX: {primary: a/complex}
  REASONING: {primary: a/reasoning}
""",
        encoding="utf-8",
    )

    config = load_routing_config(path)

    assert config.overrides.max_tokens_force_complex == 128_000
    assert config.overrides.agentic_mode is True
    assert config.overrides.ambiguous_default_tier == Tier.MEDIUM
    assert config.tiers[Tier.SIMPLE].fallback == ("a/simple-2",)
    assert config.scoring.reasoning_keywords == ("derive", "q.e.d.")
    assert config.scoring.weight("code_presence") == pytest.approx(0.3)
    assert config.scoring.weight("reasoning_markers") == pytest.approx(0.18)
    assert config.agentic_tiers is not None


def test_yaml_may_disable_agentic_tiers(tmp_path: Path) -> None:
    path = tmp_path / "routing.yaml"
    path.write_text("agentic_tiers: null\n", encoding="utf-8")

    config = load_routing_config(path)

    assert config.agentic_tiers is None
    assert config.tier_table(True) is config.tiers


def test_non_mapping_yaml_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "routing.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError, match="must be a YAML mapping"):
        load_routing_config(path)


def test_available_models_lists_each_model_once() -> None:
    models = load_routing_config(None).available_models()

    assert len(models) == len(set(models))
    assert DEFAULT_TIERS["REASONING"]["primary"] in models


def test_tier_rank_orders_tiers() -> None:
    assert Tier.SIMPLE.rank < Tier.MEDIUM.rank < Tier.COMPLEX.rank < Tier.REASONING.rank
    assert Tier.SIMPLE.at_least(Tier.MEDIUM) == Tier.MEDIUM
    assert Tier.REASONING.at_least(Tier.MEDIUM) == Tier.REASONING
