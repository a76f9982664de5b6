"""Shared schemas for the generation layer."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class GenerationOptions(BaseModel):
    """Per-call options for ProviderAdapter.generate_text().

    ``None`` means "not set": the adapter substitutes its own defaults.
    """

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    credential: str | None = Field(default=None, repr=False)
    language: str = "en"  # en, he, ...
    known_items: list[str] = Field(default_factory=list)


class TransportResult(BaseModel):
    """What a single provider network call returns."""

    content: str
    model_id: str
    tokens_in: int | None = None
    tokens_out: int | None = None


class GenerationResponse(BaseModel):
    """Unified response from any provider, or a synthetic batch aggregate."""

    content: str
    model_used: str
    provider: str = ""
    token_count: int | None = None  # None for aggregated chunk batches
    tokens_in: int | None = None
    tokens_out: int | None = None
    latency_ms: int = 0
    cost_usd: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    finished_at: datetime = Field(default_factory=datetime.now)


class DiscoveredItem(BaseModel):
    """One named item (subject, topic, pattern) extracted by the model.

    Extra keys emitted by the model are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    name: str

    @property
    def dedup_key(self) -> str:
        return self.name.strip().lower()
