"""Retry delays and cooperative cancellation.

Every sleep in the generation layer (retry backoff, inter-chunk pause,
rate-limit cooldown) goes through pause(), so a CancellationToken can
cut a long batch short between network calls.
"""

import asyncio
import random
from dataclasses import dataclass, field

from quizforge.errors import GenerationCancelledError


class CancellationToken:
    """Flag a caller flips to abort an in-flight call or batch.

    Must be cancelled from the event loop thread that awaits it.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelledError()

    async def wait(self) -> None:
        await self._event.wait()


async def pause(delay: float, cancel: CancellationToken | None = None) -> None:
    """Sleep ``delay`` seconds, ending early if ``cancel`` fires.

    Raises:
        GenerationCancelledError: the token was (or became) cancelled.
    """
    if cancel is None:
        await asyncio.sleep(delay)
        return

    cancel.raise_if_cancelled()
    try:
        await asyncio.wait_for(cancel.wait(), timeout=max(delay, 0))
    except asyncio.TimeoutError:
        return
    raise GenerationCancelledError()


@dataclass
class BackoffPolicy:
    """Exponential backoff with multiplicative jitter.

    Overload uses a steeper multiplier (x3) than rate limiting (x2).
    """

    base_delay: float = 1.0
    rate_limit_factor: float = 2.0
    overload_factor: float = 3.0
    jitter: float = 0.2
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def next_delay(self, current: float, *, overloaded: bool = False) -> float:
        factor = self.overload_factor if overloaded else self.rate_limit_factor
        spread = self.rng.uniform(1 - self.jitter, 1 + self.jitter)
        return current * factor * spread
