"""Shared pytest fixtures."""

from collections.abc import Callable
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from quizforge.config import Settings
from quizforge.llm.backoff import BackoffPolicy
from quizforge.llm.cache import ResponseCache
from quizforge.llm.catalog import ModelCatalog, load_catalog
from quizforge.llm.providers.base import ProviderAdapter
from quizforge.llm.schemas import TransportResult


class ScriptedAdapter(ProviderAdapter):
    """Adapter whose network call is an AsyncMock (``self.transport``).

    ``transport`` receives (client, prompt, model, temperature, max_tokens);
    clients are SimpleNamespace objects carrying the bound api_key.
    """

    provider_name = "anthropic"
    model_prefixes = ("claude-",)
    overloaded_status_codes = frozenset({529})

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self.transport = AsyncMock()
        super().__init__(*args, **kwargs)

    def _create_client(self, api_key: str) -> Any:
        return SimpleNamespace(api_key=api_key)

    async def _send(
        self,
        client: Any,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> TransportResult:
        return await self.transport(client, prompt, model, temperature, max_tokens)


class FakeAPIError(Exception):
    """Mimics anthropic/openai APIStatusError (status_code, response.headers)."""

    def __init__(
        self,
        status_code: int,
        message: str = "error",
        *,
        headers: dict[str, str] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.response = SimpleNamespace(headers=headers or {})


@pytest.fixture
def catalog() -> ModelCatalog:
    return load_catalog()


@pytest.fixture
def tiny_catalog() -> ModelCatalog:
    """One small anthropic model: 1000-token context, 500-token output."""
    return ModelCatalog.model_validate(
        {
            "models": {
                "claude-tiny": {
                    "provider": "anthropic",
                    "context_window": 1000,
                    "max_output_tokens": 500,
                    "cost_per_million": {"input": 1.0, "output": 2.0},
                },
            }
        }
    )


@pytest.fixture
def cache() -> ResponseCache:
    return ResponseCache(ttl_seconds=60)


@pytest.fixture
def sleep() -> AsyncMock:
    """Replacement for backoff.pause that returns immediately."""
    return AsyncMock()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def make_adapter(
    catalog: ModelCatalog,
    cache: ResponseCache,
    sleep: AsyncMock,
) -> Callable[..., ScriptedAdapter]:
    """Build a ScriptedAdapter with deterministic backoff (no jitter)."""

    def _make(**overrides: Any) -> ScriptedAdapter:
        kwargs: dict[str, Any] = {
            "api_key": "test-key",
            "default_model": "claude-3-haiku-20240307",
            "catalog": catalog,
            "cache": cache,
            "backoff": BackoffPolicy(jitter=0.0),
            "sleep": sleep,
        }
        kwargs.update(overrides)
        return ScriptedAdapter(**kwargs)

    return _make


@pytest.fixture
def api_error() -> type[FakeAPIError]:
    return FakeAPIError


def transport_result(
    content: str = "ok",
    model_id: str = "claude-3-haiku-20240307",
    tokens_in: int | None = 10,
    tokens_out: int | None = 5,
) -> TransportResult:
    return TransportResult(
        content=content,
        model_id=model_id,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
    )


@pytest.fixture
def result() -> Callable[..., TransportResult]:
    """Factory for TransportResult objects."""
    return transport_result
