"""One-stop factory for assembling the full generation stack.

Usage::

    from quizforge.config import get_settings
    from quizforge.llm import Feature, create_generation_context

    context = create_generation_context(get_settings())
    adapter = context.get_service_for_feature(Feature.QUIZ_GENERATION)
    response = await adapter.generate_quiz(prompt, question_count=10)

There is no module-level state: every piece of shared configuration
lives on the GenerationContext a caller builds and passes around.
"""

from __future__ import annotations

from typing import Any

import structlog

from quizforge.config import Settings
from quizforge.llm.backoff import pause
from quizforge.llm.cache import ResponseCache
from quizforge.llm.catalog import ModelCatalog, load_catalog
from quizforge.llm.chunking import ChunkedGenerationCoordinator, ChunkingProfile
from quizforge.llm.factory import ProviderRegistry
from quizforge.llm.features import Feature, FeatureConfig, FeatureConfigMap
from quizforge.llm.providers.base import ProviderAdapter, Sleeper
from quizforge.llm.tokens import TokenEstimator

logger = structlog.get_logger()


class GenerationContext:
    """Settings, catalog, feature map, cache and registry for one process.

    ``initialize()`` and ``reset()`` restore built-in feature defaults and
    drop every cached response.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: ModelCatalog,
        features: FeatureConfigMap,
        cache: ResponseCache,
        registry: ProviderRegistry,
        *,
        sleep: Sleeper = pause,
    ) -> None:
        self.settings = settings
        self.catalog = catalog
        self.features = features
        self.cache = cache
        self.registry = registry
        self._sleep = sleep

    # -- lifecycle -----------------------------------------------------

    def initialize(self) -> None:
        self.features.initialize()
        self.cache.clear()
        unknown = self.features.validate_against(self.catalog)
        logger.info(
            "generation_context_initialized",
            providers=self.registry.available_providers(),
            models=len(self.catalog.models),
            unknown_feature_models=[f.value for f in unknown],
        )

    def reset(self) -> None:
        self.features.reset_all()
        self.cache.clear()
        logger.info("generation_context_reset")

    # -- feature configuration -----------------------------------------

    def get_feature_config(self, feature: Feature | str) -> FeatureConfig:
        return self.features.get(feature)

    def update_feature_config(
        self,
        feature: Feature | str,
        config: FeatureConfig | dict[str, Any],
    ) -> FeatureConfig:
        """Replace the config for ``feature``; dicts are validated first."""
        if not isinstance(config, FeatureConfig):
            config = FeatureConfig.model_validate(config)
        self.features.update(feature, config)
        return config

    def reset_feature_config(self, feature: Feature | str) -> None:
        self.features.reset(feature)

    def get_service_for_feature(
        self,
        feature: Feature | str,
        *,
        credential: str | None = None,
    ) -> ProviderAdapter:
        """Adapter configured for ``feature``'s provider, model and temperature.

        Falls back to ``settings.llm_fallback_provider`` when the
        configured provider is unavailable.

        Raises:
            ProviderUnavailableError: neither provider can be built.
        """
        config = self.features.get(feature)
        return self.registry.create_with_fallback(
            config.provider,
            credential=credential,
            default_model=config.model,
            default_temperature=config.temperature,
            default_max_tokens=config.max_tokens,
            feature=str(feature),
        )

    # -- chunking ------------------------------------------------------

    def chunking_profile(self, model_id: str) -> ChunkingProfile:
        return self.registry.chunking.for_model(self.catalog.get(model_id))

    def coordinator_for(
        self,
        adapter: ProviderAdapter,
        model_id: str | None = None,
    ) -> ChunkedGenerationCoordinator:
        profile = self.chunking_profile(model_id or adapter.default_model)
        return ChunkedGenerationCoordinator(adapter, profile, sleep=self._sleep)


def create_generation_context(
    settings: Settings,
    *,
    catalog: ModelCatalog | None = None,
    estimator: TokenEstimator | None = None,
    sleep: Sleeper = pause,
) -> GenerationContext:
    """Assemble a GenerationContext from settings.

    Args:
        settings: Application settings with API keys and catalog path.
        catalog: Pre-loaded catalog; loaded from
            ``settings.model_catalog_path`` when omitted.
        estimator: Token estimator shared by every adapter.
        sleep: Delay function for backoff and inter-chunk pauses.

    Returns:
        Initialized GenerationContext ready for use.
    """
    catalog = catalog or load_catalog(settings.model_catalog_path)
    cache = ResponseCache(ttl_seconds=settings.llm_cache_ttl_seconds)
    registry = ProviderRegistry(
        settings,
        catalog,
        cache,
        estimator=estimator,
        sleep=sleep,
    )
    context = GenerationContext(
        settings,
        catalog,
        FeatureConfigMap(),
        cache,
        registry,
        sleep=sleep,
    )
    context.initialize()
    return context
