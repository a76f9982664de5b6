"""Feature -> provider/model configuration.

Each application feature (quiz generation, subject extraction, ...)
resolves to a FeatureConfig. Lookups for a feature without an entry
fall back to ``Feature.DEFAULT``, which always exists.
"""

from __future__ import annotations

import threading
from enum import StrEnum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from quizforge.llm.catalog import ModelCatalog

logger = structlog.get_logger()


class Feature(StrEnum):
    QUIZ_GENERATION = "quiz_generation"
    SUBJECT_EXTRACTION = "subject_extraction"
    CONTENT_SUMMARIZATION = "content_summarization"
    QUIZ_EXPLANATION = "quiz_explanation"
    CODE_ANALYSIS = "code_analysis"
    GENERAL_CHAT = "general_chat"
    PATTERN_ANALYSIS = "pattern_analysis"
    DEFAULT = "default"


class FeatureConfig(BaseModel):
    """Provider and sampling parameters for one feature."""

    model_config = ConfigDict(frozen=True)

    provider: str
    model: str | None = None  # None -> adapter's default model
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)


DEFAULT_FEATURE_CONFIGS: dict[Feature, FeatureConfig] = {
    Feature.QUIZ_GENERATION: FeatureConfig(
        provider="anthropic",
        model="claude-3-5-sonnet-20240620",
        temperature=0.7,
    ),
    # Cheaper model, low temperature for consistent naming
    Feature.SUBJECT_EXTRACTION: FeatureConfig(
        provider="anthropic",
        model="claude-3-haiku-20240307",
        temperature=0.3,
    ),
    Feature.CONTENT_SUMMARIZATION: FeatureConfig(
        provider="anthropic",
        model="claude-3-5-sonnet-20240620",
        temperature=0.4,
    ),
    Feature.QUIZ_EXPLANATION: FeatureConfig(
        provider="openai",
        model="gpt-4o-mini",
        temperature=0.7,
    ),
    Feature.CODE_ANALYSIS: FeatureConfig(
        provider="openai",
        model="gpt-4o",
        temperature=0.2,
    ),
    Feature.GENERAL_CHAT: FeatureConfig(
        provider="openai",
        model="gpt-3.5-turbo",
        temperature=0.9,
    ),
    Feature.PATTERN_ANALYSIS: FeatureConfig(
        provider="anthropic",
        model="claude-3-5-sonnet-20240620",
        temperature=0.3,
    ),
    Feature.DEFAULT: FeatureConfig(
        provider="openai",
        model="gpt-4o-mini",
        temperature=0.7,
    ),
}


class FeatureConfigMap:
    """Mutable, lock-guarded mapping of Feature -> FeatureConfig.

    Starts from DEFAULT_FEATURE_CONFIGS (or the ``defaults`` passed in).
    Administrative code may update or reset entries at runtime; nothing
    is persisted.
    """

    def __init__(
        self,
        defaults: dict[Feature, FeatureConfig] | None = None,
    ) -> None:
        self._defaults = dict(defaults or DEFAULT_FEATURE_CONFIGS)
        if Feature.DEFAULT not in self._defaults:
            raise ValueError("Feature defaults must include 'default'")
        self._lock = threading.Lock()
        self._configs: dict[Feature, FeatureConfig] = {}
        self.initialize()

    def initialize(self) -> None:
        """Restore every feature to its built-in default."""
        with self._lock:
            self._configs = dict(self._defaults)

    def get(self, feature: Feature | str) -> FeatureConfig:
        """Config for ``feature``, or the ``default`` entry if it has none."""
        key = _coerce(feature)
        with self._lock:
            if key is not None and key in self._configs:
                return self._configs[key]
            return self._configs[Feature.DEFAULT]

    def find(self, feature: Feature | str) -> FeatureConfig | None:
        """Config explicitly set for ``feature``; no fallback."""
        key = _coerce(feature)
        if key is None:
            return None
        with self._lock:
            return self._configs.get(key)

    def update(self, feature: Feature | str, config: FeatureConfig) -> None:
        key = Feature(feature)
        with self._lock:
            self._configs[key] = config
        logger.info(
            "feature_config_updated",
            feature=key.value,
            provider=config.provider,
            model=config.model,
            temperature=config.temperature,
        )

    def reset(self, feature: Feature | str) -> None:
        """Restore one feature to its built-in default (or drop the override)."""
        key = Feature(feature)
        with self._lock:
            if key in self._defaults:
                self._configs[key] = self._defaults[key]
            else:
                self._configs.pop(key, None)
        logger.info("feature_config_reset", feature=key.value)

    def reset_all(self) -> None:
        self.initialize()
        logger.info("feature_configs_reset_all")

    def snapshot(self) -> dict[Feature, FeatureConfig]:
        with self._lock:
            return dict(self._configs)

    def validate_against(self, catalog: ModelCatalog) -> list[Feature]:
        """Warn about features whose model is not in ``catalog``.

        Such features still work: the adapter substitutes its default
        model at call time.

        Returns:
            Features that reference unknown models.
        """
        unknown: list[Feature] = []
        for feature, config in self.snapshot().items():
            if config.model and not catalog.is_known(config.model, config.provider):
                unknown.append(feature)
                logger.warning(
                    "feature_config_unknown_model",
                    feature=feature.value,
                    provider=config.provider,
                    model=config.model,
                )
        return unknown


def _coerce(feature: Feature | str) -> Feature | None:
    try:
        return Feature(feature)
    except ValueError:
        return None
