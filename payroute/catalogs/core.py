from __future__ import annotations

from dataclasses import dataclass
from difflib import get_close_matches
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from payroute.utils.yaml_utils import load_yaml_mapping

BUNDLED_CATALOG_PATH = Path(__file__).resolve().parent / "data" / "models.yaml"


class CatalogValidationError(ValueError):
    def __init__(self, errors: list[str]):
        self.errors = errors
        message = "Catalog validation failed:\n" + "\n".join(
            f"- {item}" for item in errors
        )
        super().__init__(message)


class ModelPricing(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str | None = None
    input_price: float = Field(default=0.0, ge=0.0)
    output_price: float = Field(default=0.0, ge=0.0)
    context_window: int | None = None
    max_output: int | None = None
    reasoning: bool = False

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        return (input_tokens / 1_000_000) * self.input_price + (
            output_tokens / 1_000_000
        ) * self.output_price


@dataclass(frozen=True)
class ModelCatalog:
    version: int
    models: dict[str, ModelPricing]

    @property
    def model_ids(self) -> list[str]:
        return sorted(self.models)

    def get(self, model_id: str) -> ModelPricing | None:
        return self.models.get(model_id.strip())

    def context_window_for(self, model_id: str) -> int | None:
        pricing = self.get(model_id)
        if pricing is None:
            return None
        return pricing.context_window

    def suggest(self, model_id: str, *, limit: int = 3) -> list[str]:
        return get_close_matches(model_id, self.model_ids, n=limit, cutoff=0.45)


def build_model_catalog(raw: dict[str, object]) -> ModelCatalog:
    raw_models = raw.get("models")
    if not isinstance(raw_models, dict):
        raise CatalogValidationError(["'models' must be a mapping of model id -> pricing"])

    errors: list[str] = []
    models: dict[str, ModelPricing] = {}
    for model_id, payload in raw_models.items():
        key = str(model_id).strip()
        if not key:
            errors.append("model ids must be non-empty")
            continue
        try:
            models[key] = ModelPricing.model_validate(payload or {})
        except ValidationError as exc:
            errors.append(f"models.{key}: {exc.errors()[0]['msg']}")
    if errors:
        raise CatalogValidationError(errors)

    version = raw.get("version", 1)
    return ModelCatalog(version=int(version) if isinstance(version, int) else 1, models=models)


def load_model_catalog(path: str | Path | None = None) -> ModelCatalog:
    if path is None:
        return _load_bundled_catalog()
    return build_model_catalog(load_yaml_mapping(path, label="Model catalog"))


@lru_cache
def _load_bundled_catalog() -> ModelCatalog:
    return build_model_catalog(
        load_yaml_mapping(BUNDLED_CATALOG_PATH, label="Bundled model catalog")
    )
