"""In-process response cache with lazy TTL expiry.

Keys are derived from everything that changes the provider's answer:
prompt, model, temperature and max_tokens. Nothing is persisted; a
restart starts cold.
"""

import hashlib
import json
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from quizforge.llm.schemas import GenerationResponse

logger = structlog.get_logger()

DEFAULT_TTL_SECONDS = 60 * 60


def make_cache_key(
    prompt: str,
    model: str,
    temperature: float,
    max_tokens: int,
) -> str:
    """Stable key for a (prompt, model, temperature, max_tokens) tuple."""
    raw = json.dumps(
        [prompt, model, float(temperature), int(max_tokens)],
        ensure_ascii=False,
    )
    return f"llm:{hashlib.sha256(raw.encode()).hexdigest()}"


@dataclass
class CacheEntry:
    key: str
    response: GenerationResponse
    timestamp: float


class ResponseCache:
    """Key -> GenerationResponse store with a time-to-live.

    Expired entries are treated as absent and evicted on read; there is
    no background sweep. All operations take an internal lock so one
    instance can be shared across threads.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def set_ttl(self, ttl_seconds: float) -> None:
        with self._lock:
            self._ttl = ttl_seconds

    def get(self, key: str) -> GenerationResponse | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.timestamp < self._ttl:
                return entry.response
            del self._entries[key]
        logger.debug("llm_cache_entry_expired", key=key[:20])
        return None

    def set(self, key: str, response: GenerationResponse) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(key, response, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def size(self) -> int:
        with self._lock:
            return len(self._entries)
