"""Provider registry -- builds adapters from settings and credentials.

Uses PROVIDER_REGISTRY for extensibility. Adding a new provider
requires only a new entry in PROVIDER_CONFIGS.

Every create() call returns a fresh adapter; adapters never construct
other adapters. A caller-supplied credential is passed straight to the
new adapter's constructor.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog
from pydantic import SecretStr

from quizforge.config import Settings
from quizforge.errors import ProviderUnavailableError
from quizforge.llm.backoff import BackoffPolicy, pause
from quizforge.llm.cache import ResponseCache
from quizforge.llm.catalog import ModelCatalog
from quizforge.llm.chunking import ChunkingProfiles
from quizforge.llm.providers import PROVIDER_REGISTRY, ProviderAdapter
from quizforge.llm.providers.base import Sleeper
from quizforge.llm.tokens import TokenEstimator

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProviderFactoryConfig:
    """Typed configuration for creating a provider adapter."""

    get_api_key: Callable[[Settings], SecretStr | None]
    get_default_model: Callable[[Settings], str]
    get_base_url: Callable[[Settings], str] | None = None
    extra_kwargs: dict[str, Any] = field(default_factory=dict)


PROVIDER_CONFIGS: dict[str, ProviderFactoryConfig] = {
    "anthropic": ProviderFactoryConfig(
        get_api_key=lambda s: s.anthropic_api_key,
        get_default_model=lambda s: s.anthropic_default_model,
    ),
    "openai": ProviderFactoryConfig(
        get_api_key=lambda s: s.openai_api_key,
        get_default_model=lambda s: s.openai_default_model,
    ),
    "deepseek": ProviderFactoryConfig(
        get_api_key=lambda s: s.deepseek_api_key,
        get_default_model=lambda s: s.deepseek_default_model,
        get_base_url=lambda s: s.deepseek_base_url,
        extra_kwargs={"provider_name": "deepseek"},
    ),
    "gemini": ProviderFactoryConfig(
        get_api_key=lambda s: s.gemini_api_key,
        get_default_model=lambda s: s.gemini_default_model,
    ),
}


class ProviderRegistry:
    """Creates provider adapters that share one catalog and one cache.

    A provider is available when it has a registered adapter class, a
    factory config, an API key in settings and has not been disabled
    at runtime.
    """

    def __init__(
        self,
        settings: Settings,
        catalog: ModelCatalog,
        cache: ResponseCache,
        *,
        estimator: TokenEstimator | None = None,
        backoff: BackoffPolicy | None = None,
        sleep: Sleeper = pause,
    ) -> None:
        self._settings = settings
        self._catalog = catalog
        self._cache = cache
        self._estimator = estimator
        self._backoff = backoff or BackoffPolicy(
            base_delay=settings.llm_backoff_base_seconds
        )
        self._sleep = sleep
        self._chunking = ChunkingProfiles.from_settings(settings)
        self._disabled: dict[str, str] = {}

    @property
    def chunking(self) -> ChunkingProfiles:
        return self._chunking

    def available_providers(self) -> list[str]:
        """Providers that create() can build without an explicit credential."""
        return [
            name
            for name in PROVIDER_REGISTRY
            if name in PROVIDER_CONFIGS
            and name not in self._disabled
            and PROVIDER_CONFIGS[name].get_api_key(self._settings) is not None
        ]

    def disable(self, provider: str, reason: str = "") -> None:
        """Stop handing out adapters for ``provider`` (quota exhausted, outage)."""
        self._disabled[provider] = reason
        logger.warning("llm_provider_disabled", provider=provider, reason=reason)

    def enable(self, provider: str) -> None:
        if self._disabled.pop(provider, None) is not None:
            logger.info("llm_provider_enabled", provider=provider)

    def create(
        self,
        provider: str,
        *,
        credential: str | None = None,
        default_model: str | None = None,
        default_temperature: float | None = None,
        default_max_tokens: int | None = None,
        feature: str | None = None,
    ) -> ProviderAdapter:
        """Build an adapter for ``provider``.

        Args:
            provider: Name from PROVIDER_REGISTRY.
            credential: API key to bind instead of the one in settings.
            default_model: Overrides the provider's default model. A model
                that is not a chat model of ``provider`` is replaced by the
                provider default and logged as ``invalid_model_fallback``.
            default_temperature: Adapter-level temperature default.
            default_max_tokens: Adapter-level max_tokens default.
            feature: Feature name recorded in response metadata.

        Raises:
            ProviderUnavailableError: unknown or disabled provider, or no
                API key in either settings or ``credential``.
        """
        adapter_cls = PROVIDER_REGISTRY.get(provider)
        config = PROVIDER_CONFIGS.get(provider)
        if adapter_cls is None or config is None:
            raise ProviderUnavailableError(
                f"Unknown provider '{provider}'. "
                f"Available: {sorted(PROVIDER_REGISTRY)}",
                provider=provider,
            )
        if provider in self._disabled:
            reason = self._disabled[provider] or "no reason given"
            raise ProviderUnavailableError(
                f"Provider '{provider}' is disabled: {reason}",
                provider=provider,
            )

        api_key = credential
        if api_key is None:
            secret = config.get_api_key(self._settings)
            if secret is None:
                raise ProviderUnavailableError(
                    f"No API key configured for provider '{provider}'",
                    provider=provider,
                )
            api_key = secret.get_secret_value()

        kwargs: dict[str, Any] = {
            "api_key": api_key,
            "default_model": default_model or config.get_default_model(self._settings),
            "fallback_model": config.get_default_model(self._settings),
            "catalog": self._catalog,
            "cache": self._cache,
            "max_retries": self._settings.llm_max_retries,
            "backoff": self._backoff,
            "estimator": self._estimator,
            "default_temperature": default_temperature,
            "default_max_tokens": default_max_tokens,
            "chunking": self._chunking,
            "feature": feature,
            "sleep": self._sleep,
        }
        if config.get_base_url is not None:
            kwargs["base_url"] = config.get_base_url(self._settings)
        kwargs.update(config.extra_kwargs)

        adapter = adapter_cls(**kwargs)
        logger.debug(
            "llm_adapter_created",
            provider=provider,
            default_model=adapter.default_model,
            feature=feature,
            custom_credential=credential is not None,
        )
        return adapter

    def create_with_fallback(
        self,
        provider: str,
        **kwargs: Any,
    ) -> ProviderAdapter:
        """Like create(), falling back to ``settings.llm_fallback_provider``.

        The fallback adapter keeps its own default model: a model id that
        belongs to ``provider`` would be meaningless to it.

        Raises:
            ProviderUnavailableError: neither provider can be built.
        """
        try:
            return self.create(provider, **kwargs)
        except ProviderUnavailableError as exc:
            fallback = self._settings.llm_fallback_provider
            if not fallback or fallback == provider:
                raise
            logger.warning(
                "llm_provider_fallback",
                provider=provider,
                fallback_provider=fallback,
                reason=exc.message,
            )
            kwargs.pop("default_model", None)
            kwargs.pop("credential", None)
            return self.create(fallback, **kwargs)
