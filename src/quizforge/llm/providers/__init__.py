"""Provider adapter implementations.

PROVIDER_REGISTRY maps provider names (used in models.yaml and feature
configs) to their adapter classes. To add a new provider:

1. Create a new module in this package (e.g., mistral.py)
2. Implement a ProviderAdapter subclass (_create_client + _send)
3. Add entry to PROVIDER_REGISTRY below and PROVIDER_CONFIGS in factory.py
"""

from quizforge.llm.providers.anthropic import AnthropicAdapter
from quizforge.llm.providers.base import ProviderAdapter
from quizforge.llm.providers.gemini import GeminiAdapter
from quizforge.llm.providers.openai_compat import OpenAICompatAdapter

PROVIDER_REGISTRY: dict[str, type[ProviderAdapter]] = {
    "anthropic": AnthropicAdapter,
    "openai": OpenAICompatAdapter,
    "deepseek": OpenAICompatAdapter,
    "gemini": GeminiAdapter,
}

__all__ = [
    "PROVIDER_REGISTRY",
    "AnthropicAdapter",
    "GeminiAdapter",
    "OpenAICompatAdapter",
    "ProviderAdapter",
]
