"""Chunked generation for documents too large for one provider call.

Content under the profile's single-call threshold goes out as one
generate_text() call. Larger content is split into paragraph-aligned
chunks that are dispatched strictly one after another, with a pause
between chunks. Every chunk prompt carries the items found so far so the
model avoids repeating them.

Chunk failures stay local: a chunk whose response cannot be parsed, or
that keeps hitting rate limits, is skipped and the batch continues. The
caller always gets the merged, deduplicated items of every chunk that
succeeded.

Chunk calls bypass the adapter retry loop; the per-chunk retry counter
is the only bound on provider calls for a chunk.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import TypeAdapter, ValidationError

from quizforge.errors import (
    GenerationCancelledError,
    GenerationError,
    OverloadedError,
    RateLimitedError,
    StructuredOutputError,
)
from quizforge.llm.backoff import CancellationToken, pause
from quizforge.llm.catalog import ModelDescriptor
from quizforge.llm.schemas import DiscoveredItem, GenerationOptions, GenerationResponse
from quizforge.llm.tokens import split_into_chunks

if TYPE_CHECKING:
    from quizforge.config import Settings
    from quizforge.llm.providers.base import ProviderAdapter, Sleeper

logger = structlog.get_logger()

# (content, known item names, language) -> finished prompt
PromptBuilder = Callable[[str, Sequence[str], str], str]

UNRELATED_CONTENT_STATUS = "unrelated_content"


@dataclass(frozen=True)
class ChunkingProfile:
    """Size and pacing limits for one throughput class of models."""

    chunk_size_chars: int
    inter_chunk_delay: float
    retry_cooldown: float
    single_call_token_limit: int
    max_chunk_retries: int = 3


FAST_PROFILE = ChunkingProfile(
    chunk_size_chars=40_000,
    inter_chunk_delay=1.0,
    retry_cooldown=10.0,
    single_call_token_limit=20_000,
)
STANDARD_PROFILE = ChunkingProfile(
    chunk_size_chars=20_000,
    inter_chunk_delay=5.0,
    retry_cooldown=30.0,
    single_call_token_limit=8_000,
)


@dataclass(frozen=True)
class ChunkingProfiles:
    """Fast profile for high-throughput models, standard for the rest."""

    fast: ChunkingProfile = FAST_PROFILE
    standard: ChunkingProfile = STANDARD_PROFILE

    @classmethod
    def from_settings(cls, settings: Settings) -> ChunkingProfiles:
        return cls(
            fast=ChunkingProfile(
                chunk_size_chars=settings.chunk_size_chars_fast,
                inter_chunk_delay=settings.inter_chunk_delay_fast,
                retry_cooldown=settings.chunk_retry_cooldown_fast,
                single_call_token_limit=settings.single_call_token_limit_fast,
                max_chunk_retries=settings.chunk_max_retries,
            ),
            standard=ChunkingProfile(
                chunk_size_chars=settings.chunk_size_chars_standard,
                inter_chunk_delay=settings.inter_chunk_delay_standard,
                retry_cooldown=settings.chunk_retry_cooldown_standard,
                single_call_token_limit=settings.single_call_token_limit_standard,
                max_chunk_retries=settings.chunk_max_retries,
            ),
        )

    def for_model(self, descriptor: ModelDescriptor | None) -> ChunkingProfile:
        if descriptor is not None and descriptor.high_throughput:
            return self.fast
        return self.standard


class ChunkState(StrEnum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    RETRYING = "retrying"
    DONE = "done"
    ABANDONED = "abandoned"  # gave up after provider errors
    FAILED = "failed"  # response could not be parsed


@dataclass
class ChunkJob:
    index: int
    content: str
    known_items: list[str] = field(default_factory=list)
    retries: int = 0
    state: ChunkState = ChunkState.NOT_STARTED
    items: list[DiscoveredItem] = field(default_factory=list)
    unrelated: bool = False


@dataclass
class ParsedItems:
    items: list[DiscoveredItem]
    unrelated: bool = False
    message: str | None = None


# -- parsing / merging --------------------------------------------------

_MD_JSON_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)
_ITEM_LIST = TypeAdapter(list[DiscoveredItem])
_ITEM_LIST_NAME = "list[DiscoveredItem]"


def strip_markdown_json(text: str) -> str:
    """Strip markdown code fences from JSON response if present."""
    match = _MD_JSON_RE.search(text)
    return match.group(1).strip() if match else text.strip()


def _unrelated_marker(data: Any) -> dict[str, Any] | None:
    if isinstance(data, dict) and data.get("status") == UNRELATED_CONTENT_STATUS:
        return data
    if (
        isinstance(data, list)
        and len(data) == 1
        and isinstance(data[0], dict)
        and data[0].get("status") == UNRELATED_CONTENT_STATUS
    ):
        return data[0]
    return None


def parse_items(raw: str, *, provider: str = "") -> ParsedItems:
    """Parse a model response into named items.

    Accepts a JSON array of objects with a ``name`` key, optionally
    wrapped in markdown fences or in an ``{"items": [...]}`` /
    ``{"subjects": [...]}`` object. A lone ``{"status":
    "unrelated_content"}`` entry yields no items and ``unrelated=True``.

    Raises:
        StructuredOutputError: the response is not valid JSON or not a
            list of named items.
    """
    text = strip_markdown_json(raw)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error(
            "structured_output_parse_failed",
            provider=provider,
            schema=_ITEM_LIST_NAME,
            raw_content=raw[:500],
        )
        raise StructuredOutputError(provider, raw, _ITEM_LIST_NAME, exc) from exc

    marker = _unrelated_marker(data)
    if marker is not None:
        return ParsedItems(items=[], unrelated=True, message=marker.get("message"))

    if isinstance(data, dict):
        for key in ("items", "subjects"):
            if isinstance(data.get(key), list):
                data = data[key]
                break

    try:
        items = _ITEM_LIST.validate_python(data)
    except ValidationError as exc:
        logger.error(
            "structured_output_parse_failed",
            provider=provider,
            schema=_ITEM_LIST_NAME,
            raw_content=raw[:500],
        )
        raise StructuredOutputError(provider, raw, _ITEM_LIST_NAME, exc) from exc

    for item in items:
        item.name = item.name.strip()
    return ParsedItems(items=[item for item in items if item.name])


def normalize_name(name: str) -> str:
    return name.strip().lower()


def deduplicate_items(
    items: Iterable[DiscoveredItem],
    exclude: Iterable[str] = (),
) -> list[DiscoveredItem]:
    """Keep the first item per case-insensitive, trimmed name.

    Names in ``exclude`` (already-known items) are dropped entirely.
    """
    seen = {normalize_name(name) for name in exclude}
    unique: list[DiscoveredItem] = []
    for item in items:
        key = item.dedup_key
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(item)
    return unique


def _dump_items(items: Sequence[DiscoveredItem]) -> str:
    return json.dumps([item.model_dump() for item in items], ensure_ascii=False)


# -- coordinator --------------------------------------------------------


class ChunkedGenerationCoordinator:
    """Runs one whole-document extraction through a single adapter.

    Chunks are processed sequentially, never concurrently. The result
    resolves once, after every chunk is done or abandoned.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        profile: ChunkingProfile,
        *,
        sleep: Sleeper = pause,
    ) -> None:
        self._adapter = adapter
        self._profile = profile
        self._sleep = sleep

    @property
    def profile(self) -> ChunkingProfile:
        return self._profile

    async def generate(
        self,
        content: str,
        prompt_builder: PromptBuilder,
        *,
        options: GenerationOptions | None = None,
        cancel: CancellationToken | None = None,
    ) -> GenerationResponse:
        """Extract items from ``content``; response content is a JSON array."""
        options = options or GenerationOptions()
        estimated = self._adapter.estimator.estimate(content)

        if estimated < self._profile.single_call_token_limit:
            return await self._generate_single(content, prompt_builder, options, cancel)
        return await self._generate_batch(
            content, prompt_builder, options, cancel, estimated
        )

    async def _generate_single(
        self,
        content: str,
        prompt_builder: PromptBuilder,
        options: GenerationOptions,
        cancel: CancellationToken | None,
    ) -> GenerationResponse:
        prompt = prompt_builder(content, options.known_items, options.language)
        response = await self._adapter.generate_text(prompt, options, cancel=cancel)
        parsed = parse_items(response.content, provider=response.provider)
        items = deduplicate_items(parsed.items, exclude=options.known_items)

        return response.model_copy(
            update={
                "content": _dump_items(items),
                "metadata": {
                    **response.metadata,
                    "chunked": False,
                    "chunk_count": 1,
                    "item_count": len(items),
                    "unrelated_content": parsed.unrelated,
                    "unrelated_message": parsed.message,
                },
            }
        )

    async def _generate_batch(
        self,
        content: str,
        prompt_builder: PromptBuilder,
        options: GenerationOptions,
        cancel: CancellationToken | None,
        estimated_tokens: int,
    ) -> GenerationResponse:
        chunks = [
            chunk
            for chunk in split_into_chunks(content, self._profile.chunk_size_chars)
            if chunk.strip()
        ]
        jobs = [ChunkJob(index=i, content=chunk) for i, chunk in enumerate(chunks)]
        logger.info(
            "chunked_generation_started",
            provider=self._adapter.provider_name,
            estimated_tokens=estimated_tokens,
            chunk_count=len(jobs),
            chunk_size_chars=self._profile.chunk_size_chars,
        )

        discovered: list[DiscoveredItem] = []
        model_used = self._adapter.default_model
        for job in jobs:
            if cancel is not None:
                cancel.raise_if_cancelled()
            if job.index > 0:
                await self._sleep(self._profile.inter_chunk_delay, cancel)

            job.known_items = [
                *options.known_items,
                *(item.name for item in deduplicate_items(discovered)),
            ]
            response = await self._process_chunk(job, prompt_builder, options, cancel)
            if response is not None:
                model_used = response.model_used
                discovered.extend(job.items)

        merged = deduplicate_items(discovered, exclude=options.known_items)
        done = [job.index for job in jobs if job.state == ChunkState.DONE]
        abandoned = [job.index for job in jobs if job.state == ChunkState.ABANDONED]
        failed = [job.index for job in jobs if job.state == ChunkState.FAILED]
        unrelated = bool(done) and not merged and all(jobs[i].unrelated for i in done)

        logger.info(
            "chunked_generation_merged",
            provider=self._adapter.provider_name,
            chunk_count=len(jobs),
            completed_chunks=len(done),
            abandoned_chunks=abandoned,
            failed_chunks=failed,
            raw_items=len(discovered),
            unique_items=len(merged),
        )

        return GenerationResponse(
            content=_dump_items(merged),
            model_used=model_used,
            provider=self._adapter.provider_name,
            token_count=None,
            metadata={
                "chunked": True,
                "chunk_count": len(jobs),
                "completed_chunks": len(done),
                "abandoned_chunks": abandoned,
                "failed_chunks": failed,
                "item_count": len(merged),
                "unrelated_content": unrelated,
            },
        )

    async def _process_chunk(
        self,
        job: ChunkJob,
        prompt_builder: PromptBuilder,
        options: GenerationOptions,
        cancel: CancellationToken | None,
    ) -> GenerationResponse | None:
        """Run one chunk to DONE, ABANDONED or FAILED.

        Returns the provider response when the chunk produced items (or
        an explicit "unrelated" marker), else None.
        """
        prompt = prompt_builder(job.content, job.known_items, options.language)
        log = logger.bind(
            provider=self._adapter.provider_name,
            chunk_index=job.index,
            chunk_chars=len(job.content),
        )

        while True:
            job.state = ChunkState.PROCESSING if job.retries == 0 else ChunkState.RETRYING
            log.info("chunk_processing", state=job.state.value, retries=job.retries)
            try:
                response = await self._adapter.generate_text(
                    prompt, options, cancel=cancel, retry=False
                )
            except GenerationCancelledError:
                raise
            except (RateLimitedError, OverloadedError) as exc:
                job.retries += 1
                if job.retries >= self._profile.max_chunk_retries:
                    job.state = ChunkState.ABANDONED
                    log.warning(
                        "chunk_abandoned",
                        retries=job.retries,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    return None
                job.state = ChunkState.RETRYING
                log.warning(
                    "chunk_rate_limited",
                    retries=job.retries,
                    max_retries=self._profile.max_chunk_retries,
                    cooldown_seconds=self._profile.retry_cooldown,
                    error_type=type(exc).__name__,
                )
                await self._sleep(self._profile.retry_cooldown, cancel)
                continue
            except GenerationError as exc:
                job.state = ChunkState.ABANDONED
                log.warning(
                    "chunk_abandoned",
                    retries=job.retries,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return None

            try:
                parsed = parse_items(response.content, provider=response.provider)
            except StructuredOutputError:
                job.state = ChunkState.FAILED
                log.warning("chunk_parse_failed", content_chars=len(response.content))
                return None

            job.items = parsed.items
            job.unrelated = parsed.unrelated
            job.state = ChunkState.DONE
            log.info(
                "chunk_done",
                item_count=len(parsed.items),
                unrelated=parsed.unrelated,
                tokens_in=response.tokens_in,
                tokens_out=response.tokens_out,
            )
            return response
