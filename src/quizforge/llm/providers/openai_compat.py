"""OpenAI-compatible adapter (OpenAI + DeepSeek)."""

from typing import Any

import openai

from quizforge.llm.providers.base import ProviderAdapter
from quizforge.llm.schemas import TransportResult

_MODEL_PREFIXES: dict[str, tuple[str, ...]] = {
    "openai": ("gpt-", "chatgpt-", "o1", "o3", "o4"),
    "deepseek": ("deepseek-",),
}


class OpenAICompatAdapter(ProviderAdapter):
    """Adapter for the OpenAI API and compatible services (DeepSeek).

    DeepSeek uses the same API format with a different base_url.
    """

    overloaded_status_codes = frozenset({503})

    def __init__(
        self,
        api_key: str,
        default_model: str,
        *,
        provider_name: str = "openai",
        base_url: str | None = None,
        **kwargs: Any,
    ) -> None:
        self.provider_name = provider_name
        self.model_prefixes = _MODEL_PREFIXES.get(provider_name, ())
        self._base_url = base_url
        super().__init__(api_key, default_model, **kwargs)

    def _create_client(self, api_key: str) -> Any:
        return openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self._base_url,
            max_retries=0,
        )

    async def _send(
        self,
        client: Any,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> TransportResult:
        response = await client.chat.completions.create(
            model=model,
            messages=[{"role": "user", "content": prompt}],
            temperature=temperature,
            max_tokens=max_tokens,
        )

        choice = response.choices[0]
        usage = response.usage
        return TransportResult(
            content=choice.message.content or "",
            model_id=response.model or model,
            tokens_in=usage.prompt_tokens if usage else None,
            tokens_out=usage.completion_tokens if usage else None,
        )
