"""Model catalog: limits, pricing and capability flags per model.

Loaded from models.yaml at startup, validated by Pydantic, never
mutated afterwards. Adapters, the token budget and the chunk
coordinator read limits from here.
"""

from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, model_validator

DEFAULT_CATALOG_PATH = Path(__file__).with_name("models.yaml")


class ModelType(StrEnum):
    CHAT = "chat"
    EMBEDDING = "embedding"


class BudgetTier(StrEnum):
    """Upper bound on output price used by suggest_model()."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# Max USD per 1M output tokens for each tier; None -> unbounded.
BUDGET_TIER_LIMITS: dict[BudgetTier, float | None] = {
    BudgetTier.LOW: 5.0,
    BudgetTier.MEDIUM: 20.0,
    BudgetTier.HIGH: None,
}


class CostPerMillion(BaseModel):
    """Cost per 1,000,000 tokens in USD."""

    model_config = ConfigDict(frozen=True)

    input: float
    output: float


class ModelDescriptor(BaseModel):
    """Single model entry.

    ``model_id`` is populated from the YAML key during catalog validation.
    """

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model_id: str
    provider: str
    display_name: str = ""
    model_type: ModelType = ModelType.CHAT
    context_window: int
    max_output_tokens: int
    multimodal: bool = False
    high_throughput: bool = False
    cost_per_million: CostPerMillion
    description: str = ""

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        """Calculate cost in USD for given token counts."""
        return (
            tokens_in * self.cost_per_million.input / 1_000_000
            + tokens_out * self.cost_per_million.output / 1_000_000
        )


class ModelCatalog(BaseModel):
    """Registry of every model the generation layer knows about."""

    model_config = ConfigDict(frozen=True)

    models: dict[str, ModelDescriptor]

    @model_validator(mode="before")
    @classmethod
    def populate_model_ids(cls, data: Any) -> Any:
        """Copy each YAML key into its entry's ``model_id``."""
        if not isinstance(data, dict) or not isinstance(data.get("models"), dict):
            return data
        models: dict[str, Any] = {}
        for model_id, entry in data["models"].items():
            if isinstance(entry, dict):
                entry = {**entry, "model_id": model_id}
            models[model_id] = entry
        return {**data, "models": models}

    def get(self, model_id: str) -> ModelDescriptor | None:
        return self.models.get(model_id)

    def all(
        self,
        provider: str | None = None,
        *,
        model_type: ModelType | None = None,
    ) -> list[ModelDescriptor]:
        """List models in catalog order, optionally filtered."""
        return [
            m
            for m in self.models.values()
            if (provider is None or m.provider == provider)
            and (model_type is None or m.model_type == model_type)
        ]

    def is_known(self, model_id: str, provider: str | None = None) -> bool:
        model = self.models.get(model_id)
        if model is None:
            return False
        return provider is None or model.provider == provider

    def suggest_model(
        self,
        required_output_tokens: int,
        provider: str | None = None,
        budget: BudgetTier | str | None = None,
    ) -> ModelDescriptor:
        """Pick the cheapest chat model able to emit ``required_output_tokens``.

        Candidates are narrowed by provider and budget tier first. If no
        candidate has enough output capacity, the one with the largest
        ``max_output_tokens`` wins instead. Ties go to catalog order.

        Raises:
            LookupError: if provider/budget filtering leaves no candidates.
        """
        candidates = self.all(provider, model_type=ModelType.CHAT)

        if budget is not None:
            limit = BUDGET_TIER_LIMITS[BudgetTier(budget)]
            if limit is not None:
                candidates = [
                    m for m in candidates if m.cost_per_million.output <= limit
                ]

        if not candidates:
            raise LookupError(
                f"No models match provider={provider!r} budget={budget!r}"
            )

        sufficient = [
            m for m in candidates if m.max_output_tokens >= required_output_tokens
        ]
        if not sufficient:
            return max(candidates, key=lambda m: m.max_output_tokens)
        return min(sufficient, key=lambda m: m.cost_per_million.output)

    def config_for_model(self, model_id: str) -> dict[str, Any] | None:
        """Build a feature-config mapping (provider, model, temperature)."""
        model = self.models.get(model_id)
        if model is None:
            return None
        return {"provider": model.provider, "model": model.model_id, "temperature": 0.7}


def load_catalog(config_path: Path | None = None) -> ModelCatalog:
    """Load and validate the model catalog from YAML.

    Args:
        config_path: Path to a models.yaml. ``None`` loads the catalog
            shipped with the package.

    Raises:
        FileNotFoundError: if YAML file doesn't exist.
        ValueError: if YAML parsing or validation fails.
    """
    path = config_path or DEFAULT_CATALOG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Model catalog not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValueError(f"Failed to parse model catalog '{path}': {e}") from e
    return ModelCatalog.model_validate(raw)
