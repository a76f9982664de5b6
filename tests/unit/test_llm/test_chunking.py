"""Tests for chunked generation: parsing, dedup, profiles, coordinator."""

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from quizforge.config import Settings
from quizforge.errors import (
    GenerationCancelledError,
    OverloadedError,
    ProviderError,
    RateLimitedError,
    StructuredOutputError,
)
from quizforge.llm.backoff import CancellationToken
from quizforge.llm.catalog import ModelCatalog
from quizforge.llm.chunking import (
    FAST_PROFILE,
    STANDARD_PROFILE,
    ChunkedGenerationCoordinator,
    ChunkingProfile,
    ChunkingProfiles,
    deduplicate_items,
    parse_items,
    strip_markdown_json,
)
from quizforge.llm.schemas import DiscoveredItem, GenerationOptions, GenerationResponse
from quizforge.llm.tokens import CharRatioEstimator

PROFILE = ChunkingProfile(
    chunk_size_chars=40_000,
    inter_chunk_delay=1.0,
    retry_cooldown=10.0,
    single_call_token_limit=20_000,
)


def _document() -> str:
    """120,000 chars that split into three 40,000-char chunks."""
    return "\n\n".join(["p" * 19_998] * 5 + ["q" * 20_000])


def _resp(names: list[str], *, fenced: bool = False) -> GenerationResponse:
    body = json.dumps([{"name": n} for n in names])
    if fenced:
        body = f"```json\n{body}\n```"
    return GenerationResponse(content=body, model_used="gpt-4o-mini", provider="openai")


def _names(response: GenerationResponse) -> list[str]:
    return [item["name"] for item in json.loads(response.content)]


def _builder(content: str, known: Any, language: str) -> str:
    return f"{language}|{','.join(known)}|{len(content)}"


@pytest.fixture
def adapter() -> MagicMock:
    mock = MagicMock()
    mock.provider_name = "openai"
    mock.default_model = "gpt-4o-mini"
    mock.estimator = CharRatioEstimator()
    mock.generate_text = AsyncMock()
    return mock


@pytest.fixture
def coordinator(adapter: MagicMock, sleep: AsyncMock) -> ChunkedGenerationCoordinator:
    return ChunkedGenerationCoordinator(adapter, PROFILE, sleep=sleep)


class TestParseItems:
    def test_plain_array(self) -> None:
        parsed = parse_items('[{"name": "Algebra"}, {"name": "Geometry"}]')
        assert [i.name for i in parsed.items] == ["Algebra", "Geometry"]
        assert parsed.unrelated is False

    def test_markdown_fences_stripped(self) -> None:
        parsed = parse_items('```json\n[{"name": "Algebra"}]\n```')
        assert [i.name for i in parsed.items] == ["Algebra"]

    def test_wrapped_in_object(self) -> None:
        assert parse_items('{"subjects": [{"name": "A"}]}').items[0].name == "A"
        assert parse_items('{"items": [{"name": "B"}]}').items[0].name == "B"

    def test_extra_fields_kept(self) -> None:
        item = parse_items('[{"name": "A", "weight": 3}]').items[0]
        assert item.model_dump() == {"name": "A", "weight": 3}

    def test_names_trimmed_and_blank_dropped(self) -> None:
        parsed = parse_items('[{"name": "  A  "}, {"name": "   "}]')
        assert [i.name for i in parsed.items] == ["A"]

    def test_unrelated_content_marker(self) -> None:
        parsed = parse_items(
            '[{"status": "unrelated_content", "message": "Not course material"}]'
        )
        assert parsed.items == []
        assert parsed.unrelated is True
        assert parsed.message == "Not course material"

    def test_invalid_json(self) -> None:
        with pytest.raises(StructuredOutputError) as exc_info:
            parse_items("Here are your subjects: Algebra", provider="openai")
        assert exc_info.value.provider == "openai"
        assert exc_info.value.__cause__ is not None

    def test_wrong_shape(self) -> None:
        with pytest.raises(StructuredOutputError):
            parse_items('{"name": "not a list"}')

    def test_strip_markdown_json_passthrough(self) -> None:
        assert strip_markdown_json('  [1, 2]  ') == "[1, 2]"


class TestDeduplicateItems:
    def test_case_and_whitespace_insensitive(self) -> None:
        items = [DiscoveredItem(name="Algebra"), DiscoveredItem(name="  algebra")]
        assert [i.name for i in deduplicate_items(items)] == ["Algebra"]

    def test_first_occurrence_wins(self) -> None:
        items = [
            DiscoveredItem(name="Geometry"),
            DiscoveredItem(name="Algebra"),
            DiscoveredItem(name="GEOMETRY"),
        ]
        assert [i.name for i in deduplicate_items(items)] == ["Geometry", "Algebra"]

    def test_exclude_known_names(self) -> None:
        items = [DiscoveredItem(name="Algebra"), DiscoveredItem(name="Calculus")]
        result = deduplicate_items(items, exclude=[" ALGEBRA "])
        assert [i.name for i in result] == ["Calculus"]


class TestChunkingProfiles:
    def test_high_throughput_model_gets_fast_profile(
        self, catalog: ModelCatalog
    ) -> None:
        profiles = ChunkingProfiles()
        assert profiles.for_model(catalog.get("gpt-4o-mini")) == FAST_PROFILE
        assert profiles.for_model(catalog.get("claude-3-haiku-20240307")) == (
            STANDARD_PROFILE
        )
        assert profiles.for_model(None) == STANDARD_PROFILE

    def test_fast_profile_is_larger_and_quicker(self) -> None:
        assert FAST_PROFILE.chunk_size_chars > STANDARD_PROFILE.chunk_size_chars
        assert FAST_PROFILE.inter_chunk_delay < STANDARD_PROFILE.inter_chunk_delay
        for profile in (FAST_PROFILE, STANDARD_PROFILE):
            assert profile.retry_cooldown > profile.inter_chunk_delay

    def test_from_settings(self) -> None:
        settings = Settings(
            chunk_size_chars_fast=1234,
            inter_chunk_delay_standard=9.0,
            chunk_max_retries=5,
            _env_file=None,  # type: ignore[call-arg]
        )
        profiles = ChunkingProfiles.from_settings(settings)
        assert profiles.fast.chunk_size_chars == 1234
        assert profiles.standard.inter_chunk_delay == 9.0
        assert profiles.fast.max_chunk_retries == 5
        assert profiles.standard.max_chunk_retries == 5


class TestSingleCall:
    async def test_small_content_is_one_call(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
        sleep: AsyncMock,
    ) -> None:
        adapter.generate_text.return_value = _resp(["Algebra", "Known"])

        response = await coordinator.generate(
            "short text",
            _builder,
            options=GenerationOptions(known_items=["known"]),
        )

        assert _names(response) == ["Algebra"]
        adapter.generate_text.assert_awaited_once()
        assert adapter.generate_text.await_args.args[0] == "en|known|10"
        sleep.assert_not_awaited()

    async def test_parse_failure_propagates(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.return_value = GenerationResponse(
            content="not json", model_used="gpt-4o-mini"
        )
        with pytest.raises(StructuredOutputError):
            await coordinator.generate("short text", _builder)

    async def test_provider_error_propagates(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.side_effect = ProviderError("bad", provider="openai")
        with pytest.raises(ProviderError):
            await coordinator.generate("short text", _builder)

    async def test_unrelated_content(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.return_value = GenerationResponse(
            content='{"status": "unrelated_content", "message": "recipe"}',
            model_used="gpt-4o-mini",
        )

        response = await coordinator.generate("short text", _builder)

        assert json.loads(response.content) == []
        assert response.metadata["unrelated_content"] is True
        assert response.metadata["unrelated_message"] == "recipe"


class TestBatch:
    async def test_three_chunks_with_rate_limited_middle_chunk(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
        sleep: AsyncMock,
    ) -> None:
        builder = MagicMock(side_effect=_builder)
        adapter.generate_text.side_effect = [
            _resp(["Algebra", "Geometry"]),
            RateLimitedError(provider="openai"),
            RateLimitedError(provider="openai"),
            _resp(["  algebra", "Calculus"]),
            _resp(["Statistics", "geometry"], fenced=True),
        ]

        response = await coordinator.generate(_document(), builder)

        assert _names(response) == ["Algebra", "Geometry", "Calculus", "Statistics"]
        assert response.token_count is None
        assert adapter.generate_text.await_count == 5
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 10.0, 10.0, 1.0]
        assert response.metadata["chunked"] is True
        assert response.metadata["chunk_count"] == 3
        assert response.metadata["completed_chunks"] == 3
        assert response.metadata["abandoned_chunks"] == []

        # each chunk sees what earlier chunks found
        known_per_chunk = [c.args[1] for c in builder.call_args_list]
        assert known_per_chunk == [
            [],
            ["Algebra", "Geometry"],
            ["Algebra", "Geometry", "Calculus"],
        ]

    async def test_always_rate_limited_chunk_is_abandoned(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
        sleep: AsyncMock,
    ) -> None:
        adapter.generate_text.side_effect = [
            _resp(["Algebra"]),
            RateLimitedError(provider="openai"),
            RateLimitedError(provider="openai"),
            RateLimitedError(provider="openai"),
            _resp(["Statistics"]),
        ]

        response = await coordinator.generate(_document(), _builder)

        assert _names(response) == ["Algebra", "Statistics"]
        assert adapter.generate_text.await_count == 5
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 10.0, 10.0, 1.0]
        assert response.metadata["abandoned_chunks"] == [1]
        assert response.metadata["completed_chunks"] == 2

    async def test_overload_shares_retry_counter(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.side_effect = [
            OverloadedError(provider="openai"),
            RateLimitedError(provider="openai"),
            OverloadedError(provider="openai"),
            _resp(["B"]),
            _resp(["C"]),
        ]

        response = await coordinator.generate(_document(), _builder)

        assert _names(response) == ["B", "C"]
        assert response.metadata["abandoned_chunks"] == [0]

    async def test_other_errors_abandon_without_retry(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.side_effect = [
            _resp(["A"]),
            ProviderError("server error", provider="openai", code=500),
            _resp(["C"]),
        ]

        response = await coordinator.generate(_document(), _builder)

        assert _names(response) == ["A", "C"]
        assert adapter.generate_text.await_count == 3
        assert response.metadata["abandoned_chunks"] == [1]

    async def test_parse_failure_skips_chunk(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.side_effect = [
            _resp(["A"]),
            GenerationResponse(content="Sorry, I can't.", model_used="gpt-4o-mini"),
            _resp(["C"]),
        ]

        response = await coordinator.generate(_document(), _builder)

        assert _names(response) == ["A", "C"]
        assert response.metadata["failed_chunks"] == [1]
        assert response.metadata["completed_chunks"] == 2

    async def test_known_items_dropped_from_merge(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.side_effect = [
            _resp(["Algebra", "Logic"]),
            _resp(["logic"]),
            _resp(["Sets"]),
        ]

        response = await coordinator.generate(
            _document(),
            _builder,
            options=GenerationOptions(known_items=["LOGIC"], language="he"),
        )

        assert _names(response) == ["Algebra", "Sets"]
        prompts = [c.args[0] for c in adapter.generate_text.await_args_list]
        assert prompts[1].startswith("he|LOGIC,Algebra,Logic|")

    async def test_all_chunks_unrelated(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.return_value = GenerationResponse(
            content='[{"status": "unrelated_content"}]', model_used="gpt-4o-mini"
        )

        response = await coordinator.generate(_document(), _builder)

        assert json.loads(response.content) == []
        assert response.metadata["unrelated_content"] is True

    async def test_cancelled_batch(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        token = CancellationToken()
        token.cancel()

        with pytest.raises(GenerationCancelledError):
            await coordinator.generate(_document(), _builder, cancel=token)

        adapter.generate_text.assert_not_awaited()

    async def test_cancellation_during_chunk_propagates(
        self,
        coordinator: ChunkedGenerationCoordinator,
        adapter: MagicMock,
    ) -> None:
        adapter.generate_text.side_effect = [
            _resp(["A"]),
            GenerationCancelledError(),
        ]

        with pytest.raises(GenerationCancelledError):
            await coordinator.generate(_document(), _builder)

    async def test_chunks_dispatched_sequentially(
        self,
        adapter: MagicMock,
        sleep: AsyncMock,
    ) -> None:
        in_flight = 0
        peak = 0

        async def generate_text(prompt: str, options: Any, **kwargs: Any) -> Any:
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            in_flight -= 1
            return _resp([prompt[-5:]])

        adapter.generate_text.side_effect = generate_text
        coordinator = ChunkedGenerationCoordinator(adapter, PROFILE, sleep=sleep)

        await coordinator.generate(_document(), _builder)

        assert peak == 1
        assert adapter.generate_text.await_count == 3


class TestBatchThroughAdapter:
    """Coordinator driven by a real adapter; only the transport is mocked."""

    async def test_chunk_attempts_bounded_by_chunk_counter(
        self,
        make_adapter: Callable[..., Any],
        api_error: Any,
        result: Callable[..., Any],
        sleep: AsyncMock,
    ) -> None:
        adapter = make_adapter(max_retries=3)
        adapter.transport.side_effect = [
            result('[{"name": "Algebra"}]'),
            api_error(429),
            api_error(429),
            api_error(429),
            result('[{"name": "Statistics"}]'),
        ]
        coordinator = ChunkedGenerationCoordinator(adapter, PROFILE, sleep=sleep)

        response = await coordinator.generate(_document(), _builder)

        # 1 call for chunk 0, 3 for the rate-limited chunk 1, 1 for chunk 2
        assert adapter.transport.await_count == 5
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 10.0, 10.0, 1.0]
        assert _names(response) == ["Algebra", "Statistics"]
        assert response.metadata["abandoned_chunks"] == [1]

    async def test_middle_chunk_recovers_on_third_attempt(
        self,
        make_adapter: Callable[..., Any],
        api_error: Any,
        result: Callable[..., Any],
        sleep: AsyncMock,
    ) -> None:
        adapter = make_adapter()
        adapter.transport.side_effect = [
            result('[{"name": "Algebra"}, {"name": "Geometry"}]'),
            api_error(429),
            api_error(529),
            result('[{"name": " algebra"}, {"name": "Calculus"}]'),
            result('[{"name": "Statistics"}]'),
        ]
        coordinator = ChunkedGenerationCoordinator(adapter, PROFILE, sleep=sleep)

        response = await coordinator.generate(_document(), _builder)

        assert adapter.transport.await_count == 5
        assert _names(response) == ["Algebra", "Geometry", "Calculus", "Statistics"]
        assert response.metadata["completed_chunks"] == 3

    async def test_blank_chunks_are_not_sent(
        self,
        make_adapter: Callable[..., Any],
        result: Callable[..., Any],
        sleep: AsyncMock,
    ) -> None:
        adapter = make_adapter()
        adapter.transport.side_effect = [
            result('[{"name": "A"}]'),
            result('[{"name": "B"}]'),
        ]
        profile = ChunkingProfile(
            chunk_size_chars=8,
            inter_chunk_delay=1.0,
            retry_cooldown=10.0,
            single_call_token_limit=1,
        )
        coordinator = ChunkedGenerationCoordinator(adapter, profile, sleep=sleep)

        # splits into "aaaa", "\n   \n", "bbbb"
        response = await coordinator.generate("aaaa\n   \nbbbb", _builder)

        assert adapter.transport.await_count == 2
        assert response.metadata["chunk_count"] == 2
        assert _names(response) == ["A", "B"]
