"""Embedding generation (OpenAI) with input normalization and request batching."""

from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from openai import AsyncOpenAI

from app.config.logger import app_logger, log_performance
from app.config.settings import settings

_openai_client: AsyncOpenAI | None = None

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


def get_openai_client() -> AsyncOpenAI:
    """Return a singleton async OpenAI client."""
    global _openai_client
    if _openai_client is None:
        if not settings.OPENAI_API_KEY:
            raise ValueError("OPENAI_API_KEY must be configured")
        _openai_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        app_logger.info("OpenAI client initialized")
    return _openai_client


def normalize_input(text: str) -> str:
    """Replace null bytes and control characters, collapse whitespace, trim."""
    return _WHITESPACE.sub(" ", _CONTROL_CHARS.sub(" ", text or "")).strip()


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return max(1, math.ceil(len(text) / 4))


@dataclass(frozen=True)
class EmbeddingResult:
    text: str
    embedding: List[float]
    token_count: int


class EmbeddingService:
    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        batch_size: Optional[int] = None,
        dimensions: Optional[int] = None,
    ):
        self._client = client
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.batch_size = max(1, batch_size or settings.EMBEDDING_BATCH_SIZE)
        self.dimensions = dimensions or settings.EMBEDDING_DIMENSIONS
        self.tokens_used = 0

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    async def _create(self, inputs: List[str]) -> Tuple[List[List[float]], Optional[int]]:
        """Vectors in input order plus the provider's reported token usage, if any."""
        kwargs = {"model": self.model, "input": inputs}
        # Only the text-embedding-3 family accepts a dimensions override
        if self.model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.dimensions
        response = await self.client.embeddings.create(**kwargs)
        ordered = sorted(response.data, key=lambda item: item.index)
        total_tokens = getattr(getattr(response, "usage", None), "total_tokens", None)
        return [item.embedding for item in ordered], total_tokens

    async def embed_text(self, text: str) -> EmbeddingResult:
        """Embed a single text; ``token_count`` is the billed usage when the provider reports it."""
        clean = normalize_input(text)
        if not clean:
            raise ValueError("Cannot embed empty text")
        vectors, total_tokens = await self._create([clean])
        token_count = total_tokens or estimate_tokens(clean)
        self.tokens_used += token_count
        return EmbeddingResult(text=clean, embedding=vectors[0], token_count=token_count)

    async def embed_query(self, text: str) -> List[float]:
        return (await self.embed_text(text)).embedding

    async def embed_batch(self, texts: Sequence[str], batch_size: Optional[int] = None) -> List[EmbeddingResult]:
        """Embed ``texts`` in request batches, preserving input order."""
        if not texts:
            return []
        clean_texts = [normalize_input(t) for t in texts]
        if any(not t for t in clean_texts):
            raise ValueError("Cannot embed empty text")

        size = max(1, batch_size or self.batch_size)
        started = time.time()
        results: List[EmbeddingResult] = []
        for start in range(0, len(clean_texts), size):
            batch = clean_texts[start : start + size]
            vectors, total_tokens = await self._create(batch)
            if len(vectors) != len(batch):
                raise RuntimeError(
                    f"Embedding provider returned {len(vectors)} vectors for {len(batch)} inputs"
                )
            results.extend(
                EmbeddingResult(text=t, embedding=v, token_count=estimate_tokens(t))
                for t, v in zip(batch, vectors)
            )
            self.tokens_used += total_tokens or sum(estimate_tokens(t) for t in batch)

        log_performance("embed_batch", time.time() - started, count=len(clean_texts), batch_size=size)
        return results
