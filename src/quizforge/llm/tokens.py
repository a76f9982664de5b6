"""Token budget helpers: estimation, model limits, paragraph chunking.

Token counts here are estimates, not tokenizer output. The default
CharRatioEstimator assumes ~4 characters per token, which is close for
English prose on GPT/Claude tokenizers and pessimistic for code. Swap in
a real tokenizer by passing any TokenEstimator to the adapter.
"""

import math
import re
from typing import Protocol

from quizforge.llm.catalog import ModelCatalog

DEFAULT_CONTEXT_TOKENS = 8000
DEFAULT_OUTPUT_TOKENS = 4096

# A blank line, possibly containing whitespace, separates paragraphs.
_PARAGRAPH_BREAK_RE = re.compile(r"(\n\s*\n)")


class TokenEstimator(Protocol):
    def estimate(self, text: str) -> int: ...


class CharRatioEstimator:
    """Estimate tokens as ``ceil(len(text) / chars_per_token)``."""

    def __init__(self, chars_per_token: float = 4.0) -> None:
        if chars_per_token <= 0:
            raise ValueError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def estimate(self, text: str) -> int:
        return math.ceil(len(text) / self.chars_per_token)


_default_estimator = CharRatioEstimator()


def estimate_tokens(text: str) -> int:
    """Approximate token count using the default chars/4 heuristic."""
    return _default_estimator.estimate(text)


def max_context_tokens(catalog: ModelCatalog, model_id: str) -> int:
    model = catalog.get(model_id)
    return model.context_window if model else DEFAULT_CONTEXT_TOKENS


def max_output_tokens(catalog: ModelCatalog, model_id: str) -> int:
    model = catalog.get(model_id)
    return model.max_output_tokens if model else DEFAULT_OUTPUT_TOKENS


def split_into_chunks(text: str, chunk_size: int) -> list[str]:
    """Split ``text`` into paragraph-aligned chunks of at most ``chunk_size`` chars.

    Paragraphs and the blank-line runs between them are accumulated
    greedily; a chunk is closed when the next piece would push it past
    the limit. A paragraph longer than the limit on its own becomes a
    single oversized chunk and is never cut. Nothing is dropped, so
    ``"".join(split_into_chunks(text, n)) == text``. When a separator
    fits on neither side it forms a whitespace-only chunk.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if len(text) <= chunk_size:
        return [text]

    # paragraph, separator, paragraph, ...
    pieces = [piece for piece in _PARAGRAPH_BREAK_RE.split(text) if piece]

    chunks: list[str] = []
    current = ""
    for piece in pieces:
        if current and len(current) + len(piece) > chunk_size:
            chunks.append(current)
            current = piece
        else:
            current += piece
    if current:
        chunks.append(current)
    return chunks
