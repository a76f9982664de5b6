"""Google Gemini adapter via google-genai SDK."""

from typing import Any

from google import genai
from google.genai import types

from quizforge.llm.providers.base import ProviderAdapter
from quizforge.llm.schemas import TransportResult


class GeminiAdapter(ProviderAdapter):
    """Gemini adapter using the google-genai async client (``client.aio``)."""

    provider_name = "gemini"
    model_prefixes = ("gemini-",)
    overloaded_status_codes = frozenset({503})

    def _create_client(self, api_key: str) -> Any:
        return genai.Client(api_key=api_key)

    async def _send(
        self,
        client: Any,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> TransportResult:
        config = types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        response = await client.aio.models.generate_content(
            model=model,
            contents=prompt,
            config=config,
        )

        usage = response.usage_metadata
        return TransportResult(
            content=response.text or "",
            model_id=model,
            tokens_in=usage.prompt_token_count if usage else None,
            tokens_out=usage.candidates_token_count if usage else None,
        )
