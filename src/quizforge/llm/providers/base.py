"""Abstract provider adapter and the shared generation algorithm.

Concrete adapters only know how to build an SDK client and make one
network call. Everything else lives here and is identical across
providers:

1. credential override -> transient client for this call only
2. model validation with fallback to the adapter's default model
3. output cap (model max output minus a safety reserve)
4. context budget: fail fast above 90% of the window, else shrink
   max_tokens to fit
5. cache lookup / write
6. bounded retry with exponential backoff for rate limit and overload
"""

from __future__ import annotations

import abc
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import structlog

from quizforge.errors import (
    ContextTooLargeError,
    GenerationCancelledError,
    GenerationError,
    OverloadedError,
    OverloadPersistedError,
    ProviderError,
    ProviderUnavailableError,
    RateLimitedError,
    RateLimitExceededError,
)
from quizforge.llm.backoff import BackoffPolicy, CancellationToken, pause
from quizforge.llm.cache import ResponseCache, make_cache_key
from quizforge.llm.catalog import ModelCatalog, ModelType
from quizforge.llm.chunking import (
    ChunkedGenerationCoordinator,
    ChunkingProfile,
    ChunkingProfiles,
    PromptBuilder,
)
from quizforge.llm.schemas import GenerationOptions, GenerationResponse, TransportResult
from quizforge.llm.tokens import (
    CharRatioEstimator,
    TokenEstimator,
    max_context_tokens,
    max_output_tokens,
)


logger = structlog.get_logger()

Sleeper = Callable[[float, CancellationToken | None], Awaitable[None]]

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
OUTPUT_SAFETY_RESERVE = 100
CONTEXT_SAFETY_MARGIN = 100
MIN_MAX_TOKENS = 100
CONTEXT_FAIL_RATIO = 0.9
MIN_RETRY_ATTEMPTS = 3

QUIZ_BASE_TOKENS = 1000
QUIZ_TOKENS_PER_QUESTION = 500
SUBJECT_MIN_TOKENS = 2000

_CONTEXT_OVERFLOW_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "prompt is too long",
    "exceeds the maximum number of tokens",
)


@dataclass(frozen=True)
class CallPlan:
    """Resolved parameters for one generate_text() call."""

    model: str
    temperature: float
    max_tokens: int
    prompt_tokens: int
    context_limit: int
    model_fallback: bool = False
    max_tokens_adjusted: bool = False


class ProviderAdapter(abc.ABC):
    """Base class for all provider adapters.

    Subclasses implement two methods:
    - _create_client(): build an SDK client bound to a credential
    - _send(): one network call, returning a TransportResult

    Adapters support runtime enable/disable for handling quota
    exhaustion or API outages; a disabled adapter refuses every call
    with ProviderUnavailableError.
    """

    provider_name: str = ""
    # Prefixes accepted for models missing from the catalog.
    model_prefixes: tuple[str, ...] = ()
    overloaded_status_codes: frozenset[int] = frozenset({503})

    def __init__(
        self,
        api_key: str,
        default_model: str,
        *,
        catalog: ModelCatalog,
        cache: ResponseCache,
        max_retries: int = 3,
        backoff: BackoffPolicy | None = None,
        estimator: TokenEstimator | None = None,
        default_temperature: float | None = None,
        default_max_tokens: int | None = None,
        chunking: ChunkingProfiles | None = None,
        fallback_model: str | None = None,
        feature: str | None = None,
        sleep: Sleeper = pause,
    ) -> None:
        self._enabled: bool = True
        self._credential = api_key
        self._feature = feature
        self._catalog = catalog
        self._default_model = self._checked_default_model(default_model, fallback_model)
        self._cache = cache
        self._max_retries = max_retries
        self._backoff = backoff or BackoffPolicy()
        self._estimator = estimator or CharRatioEstimator()
        self._default_temperature = (
            DEFAULT_TEMPERATURE if default_temperature is None else default_temperature
        )
        self._default_max_tokens = default_max_tokens or DEFAULT_MAX_TOKENS
        self._chunking = chunking
        self._sleep = sleep
        self._client = self._create_client(api_key)

    def _checked_default_model(self, model: str, fallback: str | None) -> str:
        """Swap a configured default that is not a chat model of this provider.

        Feature configs name their model independently of the provider, so
        a mismatched pair falls back to the provider's own default model.
        """
        if fallback is None or model == fallback or self.is_valid_model(model):
            return model
        logger.warning(
            "invalid_model_fallback",
            provider=self.provider_name,
            requested_model=model,
            fallback_model=fallback,
            feature=self._feature,
        )
        return fallback

    # -- runtime switches ----------------------------------------------

    @property
    def enabled(self) -> bool:
        """Whether this adapter is currently available."""
        return self._enabled

    def disable(self, reason: str = "") -> None:
        """Disable adapter at runtime (quota exhausted, API down, etc.)."""
        self._enabled = False
        logger.warning("llm_provider_disabled", provider=self.provider_name, reason=reason)

    def enable(self) -> None:
        self._enabled = True

    @property
    def default_model(self) -> str:
        return self._default_model

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def estimator(self) -> TokenEstimator:
        return self._estimator

    # -- provider-specific hooks ---------------------------------------

    @abc.abstractmethod
    def _create_client(self, api_key: str) -> Any:
        """Build an SDK client bound to ``api_key``."""
        ...

    @abc.abstractmethod
    async def _send(
        self,
        client: Any,
        prompt: str,
        model: str,
        temperature: float,
        max_tokens: int,
    ) -> TransportResult:
        """Make exactly one network call. Raise the SDK's own exceptions."""
        ...

    # -- public contract -----------------------------------------------

    def is_valid_model(self, model: str) -> bool:
        """A chat model of this provider, by catalog entry or id prefix."""
        descriptor = self._catalog.get(model)
        if descriptor is not None:
            return (
                descriptor.provider == self.provider_name
                and descriptor.model_type == ModelType.CHAT
            )
        return model.startswith(self.model_prefixes) if self.model_prefixes else False

    def resolve_model(self, requested: str | None) -> tuple[str, bool]:
        """Return (model to use, whether a fallback happened)."""
        model = requested or self._default_model
        if model == self._default_model or self.is_valid_model(model):
            return model, False
        logger.warning(
            "invalid_model_fallback",
            provider=self.provider_name,
            requested_model=model,
            fallback_model=self._default_model,
        )
        return self._default_model, True

    def plan_call(self, prompt: str, options: GenerationOptions) -> CallPlan:
        """Resolve model and sampling parameters, enforcing token limits.

        Raises:
            ContextTooLargeError: estimated prompt tokens exceed 90% of
                the model's context window. No network call is made.
        """
        model, fallback = self.resolve_model(options.model)
        temperature = (
            self._default_temperature
            if options.temperature is None
            else options.temperature
        )
        max_tokens = options.max_tokens or self._default_max_tokens

        output_limit = max_output_tokens(self._catalog, model)
        if max_tokens > output_limit:
            capped = output_limit - OUTPUT_SAFETY_RESERVE
            logger.info(
                "max_tokens_capped_to_model",
                model=model,
                requested=max_tokens,
                capped=capped,
            )
            max_tokens = capped

        prompt_tokens = self._estimator.estimate(prompt)
        context_limit = max_context_tokens(self._catalog, model)

        if prompt_tokens > CONTEXT_FAIL_RATIO * context_limit:
            logger.warning(
                "prompt_exceeds_context",
                model=model,
                prompt_tokens=prompt_tokens,
                context_limit=context_limit,
            )
            raise ContextTooLargeError(
                model=model,
                prompt_tokens=prompt_tokens,
                context_limit=context_limit,
                provider=self.provider_name,
            )

        adjusted = False
        if prompt_tokens + max_tokens > context_limit:
            new_max = max(
                MIN_MAX_TOKENS, context_limit - prompt_tokens - CONTEXT_SAFETY_MARGIN
            )
            logger.info(
                "max_tokens_adjusted_to_context",
                model=model,
                prompt_tokens=prompt_tokens,
                requested=max_tokens,
                adjusted=new_max,
                context_limit=context_limit,
            )
            max_tokens = new_max
            adjusted = True

        return CallPlan(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            prompt_tokens=prompt_tokens,
            context_limit=context_limit,
            model_fallback=fallback,
            max_tokens_adjusted=adjusted,
        )

    async def generate_text(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        *,
        cancel: CancellationToken | None = None,
        retry: bool = True,
    ) -> GenerationResponse:
        """Generate a completion for ``prompt``.

        ``retry=False`` makes exactly one attempt and raises the classified
        error as-is; callers that run their own retry policy use it.

        Raises:
            ContextTooLargeError: prompt does not fit (checked before any call).
            RateLimitedError: rate limited (RateLimitExceededError once
                retries are exhausted).
            OverloadedError: provider overloaded (OverloadPersistedError
                once retries are exhausted).
            ProviderError: any other provider failure.
            ProviderUnavailableError: the adapter is disabled.
            GenerationCancelledError: ``cancel`` fired.
        """
        if not self._enabled:
            raise ProviderUnavailableError(
                f"Provider '{self.provider_name}' is disabled",
                provider=self.provider_name,
            )
        options = options or GenerationOptions()

        client = self._client
        if options.credential and options.credential != self._credential:
            logger.debug("llm_transient_client", provider=self.provider_name)
            client = self._create_client(options.credential)

        plan = self.plan_call(prompt, options)

        cache_key = make_cache_key(prompt, plan.model, plan.temperature, plan.max_tokens)
        cached = self._cache.get(cache_key)
        if cached is not None:
            logger.info("llm_cache_hit", provider=self.provider_name, model=plan.model)
            return cached

        response = await self._call_with_retry(client, prompt, plan, cancel, retry=retry)
        self._cache.set(cache_key, response)
        return response

    async def generate_quiz(
        self,
        prompt: str,
        question_count: int,
        options: GenerationOptions | None = None,
        *,
        cancel: CancellationToken | None = None,
    ) -> GenerationResponse:
        """Generate a quiz, sizing max_tokens to the number of questions.

        Each question costs roughly 250-500 tokens as JSON with an
        explanation, so the budget is a base allowance plus a
        per-question allowance, capped to the model's output limit.
        """
        options = options or GenerationOptions()
        model, _ = self.resolve_model(options.model)
        required = QUIZ_BASE_TOKENS + question_count * QUIZ_TOKENS_PER_QUESTION
        required = min(required, max_output_tokens(self._catalog, model))
        quiz_options = options.model_copy(
            update={"max_tokens": max(options.max_tokens or 0, required)}
        )
        logger.info(
            "quiz_generation_requested",
            provider=self.provider_name,
            model=model,
            question_count=question_count,
            max_tokens=quiz_options.max_tokens,
            prompt_chars=len(prompt),
        )
        return await self.generate_text(prompt, quiz_options, cancel=cancel)

    async def generate_subjects(
        self,
        content: str,
        prompt_builder: PromptBuilder,
        options: GenerationOptions | None = None,
        *,
        profile: ChunkingProfile | None = None,
        cancel: CancellationToken | None = None,
    ) -> GenerationResponse:
        """Extract subjects from ``content``, chunking it when it is large.

        The response content is a JSON array of ``{"name": ...}`` objects,
        deduplicated across chunks and against ``options.known_items``.
        """
        options = options or GenerationOptions()
        subject_options = options.model_copy(
            update={"max_tokens": max(options.max_tokens or 0, SUBJECT_MIN_TOKENS)}
        )
        if profile is None:
            model, _ = self.resolve_model(options.model)
            profiles = self._chunking or ChunkingProfiles()
            profile = profiles.for_model(self._catalog.get(model))

        coordinator = ChunkedGenerationCoordinator(self, profile, sleep=self._sleep)
        return await coordinator.generate(
            content,
            prompt_builder,
            options=subject_options,
            cancel=cancel,
        )

    # -- internal: retry loop ------------------------------------------

    async def _call_with_retry(
        self,
        client: Any,
        prompt: str,
        plan: CallPlan,
        cancel: CancellationToken | None,
        *,
        retry: bool = True,
    ) -> GenerationResponse:
        """Call _send(), retrying rate limit / overload with backoff.

        With retries disabled (max_retries <= 0 or ``retry=False``) exactly
        one attempt is made and the classified error is raised as-is.
        """
        attempts = (
            max(MIN_RETRY_ATTEMPTS, self._max_retries)
            if retry and self._max_retries > 0
            else 1
        )
        delay = self._backoff.base_delay

        for attempt in range(1, attempts + 1):
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                with self._measure_latency() as timer:
                    result = await self._send(
                        client, prompt, plan.model, plan.temperature, plan.max_tokens
                    )
            except GenerationCancelledError:
                raise
            except Exception as exc:
                error = self.classify_error(exc, plan.model)
                logger.warning(
                    "llm_call_failed",
                    provider=self.provider_name,
                    model=plan.model,
                    attempt=attempt,
                    max_attempts=attempts,
                    error_type=type(error).__name__,
                    error=str(exc),
                )
                if not error.retryable or attempt == attempts:
                    exhausted = self._exhausted(error, attempts)
                    if exhausted is exc:
                        raise
                    raise exhausted from exc

                wait = delay
                if isinstance(error, RateLimitedError) and error.retry_after:
                    wait = error.retry_after
                logger.info(
                    "llm_retry_scheduled",
                    provider=self.provider_name,
                    model=plan.model,
                    wait_seconds=round(wait, 2),
                    overloaded=isinstance(error, OverloadedError),
                )
                await self._sleep(wait, cancel)
                delay = self._backoff.next_delay(
                    delay, overloaded=isinstance(error, OverloadedError)
                )
                continue

            return self._build_response(result, plan, timer.elapsed_ms)

        # every path through the last attempt returns or raises
        raise ProviderError(
            "retry loop ended without a result", provider=self.provider_name
        )

    def _exhausted(self, error: GenerationError, attempts: int) -> GenerationError:
        if attempts > 1 and isinstance(error, RateLimitedError):
            return RateLimitExceededError(provider=self.provider_name, attempts=attempts)
        if attempts > 1 and isinstance(error, OverloadedError):
            return OverloadPersistedError(provider=self.provider_name, attempts=attempts)
        return error

    def classify_error(self, exc: Exception, model: str) -> GenerationError:
        """Map an SDK exception onto the GenerationError taxonomy.

        Uses duck typing (getattr) to avoid importing SDK-specific
        exception classes; works with anthropic, openai, google-genai.
        """
        if isinstance(exc, GenerationError):
            return exc

        status = _status_code(exc)
        message = str(getattr(exc, "message", None) or exc)

        if status == 429:
            # OpenAI also returns 429 for an exhausted balance
            if getattr(exc, "code", None) == "insufficient_quota":
                return ProviderError(
                    message, provider=self.provider_name, code="insufficient_quota"
                )
            return RateLimitedError(
                message, provider=self.provider_name, retry_after=_retry_after(exc)
            )
        if status in self.overloaded_status_codes:
            return OverloadedError(message, provider=self.provider_name)
        if status in (400, 413) and any(
            marker in message.lower() for marker in _CONTEXT_OVERFLOW_MARKERS
        ):
            return ContextTooLargeError(model=model, provider=self.provider_name)
        return ProviderError(message, provider=self.provider_name, code=status)

    # -- helpers -------------------------------------------------------

    def _build_response(
        self,
        result: TransportResult,
        plan: CallPlan,
        latency_ms: int,
    ) -> GenerationResponse:
        descriptor = self._catalog.get(result.model_id) or self._catalog.get(plan.model)

        token_count: int | None = None
        cost: float | None = None
        if result.tokens_in is not None and result.tokens_out is not None:
            token_count = result.tokens_in + result.tokens_out
            if descriptor is not None:
                cost = descriptor.estimate_cost(result.tokens_in, result.tokens_out)

        metadata: dict[str, Any] = {
            "requested_model": plan.model,
            "estimated_prompt_tokens": plan.prompt_tokens,
            "max_tokens": plan.max_tokens,
        }
        if plan.model_fallback:
            metadata["model_fallback"] = True
        if plan.max_tokens_adjusted:
            metadata["max_tokens_adjusted"] = True
        if self._feature:
            metadata["feature"] = self._feature

        if result.tokens_in is not None:
            logger.debug(
                "token_estimate_drift",
                provider=self.provider_name,
                model=plan.model,
                estimated=plan.prompt_tokens,
                reported=result.tokens_in,
                drift=result.tokens_in - plan.prompt_tokens,
            )

        response = GenerationResponse(
            content=result.content,
            model_used=result.model_id or plan.model,
            provider=self.provider_name,
            token_count=token_count,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            latency_ms=latency_ms,
            cost_usd=cost,
            metadata=metadata,
        )
        logger.info(
            "llm_call_completed",
            provider=self.provider_name,
            model=response.model_used,
            feature=self._feature,
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
            latency_ms=latency_ms,
            cost_usd=cost,
        )
        return response

    def _measure_latency(self) -> _LatencyTimer:
        """Context manager for measuring call latency."""
        return _LatencyTimer()


class _LatencyTimer:
    """Simple latency measurement helper."""

    def __init__(self) -> None:
        self.start: float = 0
        self.elapsed_ms: int = 0

    def __enter__(self) -> _LatencyTimer:
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args: object) -> None:
        self.elapsed_ms = int((time.perf_counter() - self.start) * 1000)


def _status_code(exc: Exception) -> int | None:
    # anthropic.APIStatusError, openai.APIStatusError
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    # google-genai errors (.code attribute)
    code = getattr(exc, "code", None)
    if isinstance(code, int):
        return code
    return None


def _retry_after(exc: Exception) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if headers is None or not hasattr(headers, "get"):
        return None
    value = headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None
