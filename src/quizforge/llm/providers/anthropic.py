"""Anthropic Claude adapter."""

from typing import Any

import anthropic

from quizforge.llm.providers.base import ProviderAdapter
from quizforge.llm.schemas import TransportResult


class AnthropicAdapter(ProviderAdapter):
    """Anthropic adapter using the official async SDK.

    SDK-level retries are turned off; the shared retry loop in
    ProviderAdapter owns backoff. Anthropic signals overload with 529.
    """

    provider_name = "anthropic"
    model_prefixes = ("claude-",)
    overloaded_status_codes = frozenset({529})

    def _create_client(self, api_key: str) -> Any:
        return anthropic.AsyncAnthropic(api_key=api_key, max_retries=0)

    async def _send(
        self,
        client: Any,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> TransportResult:
        response = await client.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )

        content = ""
        if response.content:
            content = getattr(response.content[0], "text", "") or ""

        usage = response.usage
        return TransportResult(
            content=content,
            model_id=response.model or model,
            tokens_in=usage.input_tokens if usage else None,
            tokens_out=usage.output_tokens if usage else None,
        )
