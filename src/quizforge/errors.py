"""Domain-specific exceptions for quizforge.

Every failure a caller can see from the generation layer derives from
GenerationError. ``retryable`` tells the adapter retry loop and the
chunk coordinator whether waiting and trying again can help.
"""

from __future__ import annotations

from pydantic import ValidationError


class GenerationError(Exception):
    """Base class for all generation-layer failures."""

    retryable: bool = False

    def __init__(self, message: str, *, provider: str = "") -> None:
        self.provider = provider
        self.message = message
        super().__init__(message)


class RateLimitedError(GenerationError):
    """Provider rejected the call because of a rate limit (HTTP 429)."""

    retryable = True

    def __init__(
        self,
        message: str = "Rate limited by provider",
        *,
        provider: str = "",
        retry_after: float | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, provider=provider)


class RateLimitExceededError(RateLimitedError):
    """Rate limit persisted through every retry attempt."""

    retryable = False

    def __init__(self, *, provider: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            f"{provider} API rate limit exceeded after {attempts} attempts. "
            "Your usage likely exceeds your current tier's rate limits, or "
            "there is a billing issue with the account. Check the provider "
            "dashboard and billing details.",
            provider=provider,
        )


class OverloadedError(GenerationError):
    """Provider is temporarily overloaded (Anthropic 529, others 503)."""

    retryable = True

    def __init__(
        self,
        message: str = "Provider is overloaded",
        *,
        provider: str = "",
    ) -> None:
        super().__init__(message, provider=provider)


class OverloadPersistedError(OverloadedError):
    """Provider stayed overloaded through every retry attempt."""

    retryable = False

    def __init__(self, *, provider: str, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(
            f"{provider} API is currently overloaded ({attempts} attempts). "
            "This is a temporary issue on the provider's side; "
            "please try again in a few minutes.",
            provider=provider,
        )


class ContextTooLargeError(GenerationError):
    """Prompt does not fit the model's context window. Never retried."""

    def __init__(
        self,
        *,
        model: str,
        prompt_tokens: int | None = None,
        context_limit: int | None = None,
        provider: str = "",
    ) -> None:
        self.model = model
        self.prompt_tokens = prompt_tokens
        self.context_limit = context_limit
        detail = ""
        if prompt_tokens is not None and context_limit is not None:
            detail = f" (~{prompt_tokens} prompt tokens, limit {context_limit})"
        super().__init__(
            f"Content too large for {model}{detail}. Reduce the content "
            "length or use a model with a larger context window.",
            provider=provider,
        )


class ProviderError(GenerationError):
    """Generic, non-retryable provider failure."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        code: int | str | None = None,
    ) -> None:
        self.code = code
        prefix = f"{provider} API error" if provider else "Provider error"
        if code is not None:
            prefix = f"{prefix} ({code})"
        super().__init__(f"{prefix}: {message or 'Unknown error'}", provider=provider)


class ProviderUnavailableError(GenerationError):
    """No adapter can be built for the requested provider."""


class GenerationCancelledError(GenerationError):
    """A cancellation token fired while a call or batch was in progress."""

    def __init__(self, message: str = "Generation cancelled") -> None:
        super().__init__(message)


class StructuredOutputError(GenerationError):
    """Raised when LLM response cannot be parsed into expected schema.

    Attributes:
        provider: Name of the provider that returned invalid output.
        raw_content: The raw LLM response text that failed validation.
        schema_name: Name of the expected structure.
    """

    def __init__(
        self,
        provider: str,
        raw_content: str,
        schema_name: str,
        cause: ValidationError | ValueError | None = None,
    ) -> None:
        self.raw_content = raw_content
        self.schema_name = schema_name
        super().__init__(
            f"{provider or 'llm'}: failed to parse response as {schema_name}",
            provider=provider,
        )
        self.__cause__ = cause
