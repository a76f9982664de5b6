"""Generation layer: catalog, feature configs, adapters, cache, chunking.

Quick start::

    from quizforge.config import get_settings
    from quizforge.llm import Feature, create_generation_context

    context = create_generation_context(get_settings())
    adapter = context.get_service_for_feature(Feature.SUBJECT_EXTRACTION)
    response = await adapter.generate_subjects(text, SubjectPromptBuilder())
"""

from quizforge.llm.cache import ResponseCache
from quizforge.llm.catalog import BudgetTier, ModelCatalog, ModelDescriptor, load_catalog
from quizforge.llm.chunking import (
    ChunkedGenerationCoordinator,
    ChunkingProfile,
    ChunkingProfiles,
    PromptBuilder,
)
from quizforge.llm.factory import ProviderRegistry
from quizforge.llm.features import Feature, FeatureConfig, FeatureConfigMap
from quizforge.llm.providers import ProviderAdapter
from quizforge.llm.schemas import DiscoveredItem, GenerationOptions, GenerationResponse
from quizforge.llm.setup import GenerationContext, create_generation_context

__all__ = [
    "BudgetTier",
    "ChunkedGenerationCoordinator",
    "ChunkingProfile",
    "ChunkingProfiles",
    "DiscoveredItem",
    "Feature",
    "FeatureConfig",
    "FeatureConfigMap",
    "GenerationContext",
    "GenerationOptions",
    "GenerationResponse",
    "ModelCatalog",
    "ModelDescriptor",
    "PromptBuilder",
    "ProviderAdapter",
    "ProviderRegistry",
    "ResponseCache",
    "create_generation_context",
    "load_catalog",
]
