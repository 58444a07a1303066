"""Hybrid search: vector similarity plus full-text, fused with Reciprocal Rank Fusion.

Each list contributes ``weight / (rrf_k + rank + 1)`` for a chunk at 0-based
``rank``; a chunk missing from a list gets nothing from it. Larger ``rrf_k``
flattens the difference between high and low ranks.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from app.api.rda.schemas import SearchResult
from app.config.logger import app_logger, log_performance
from app.config.settings import settings
from app.services.embedding import normalize_input

DEFAULT_RRF_K = 60


@dataclass(frozen=True)
class HybridSearchWeights:
    vector_weight: float = 0.7
    fulltext_weight: float = 0.3
    rrf_k: int = DEFAULT_RRF_K

    @classmethod
    def from_settings(cls) -> "HybridSearchWeights":
        return cls(
            vector_weight=settings.SEARCH_VECTOR_WEIGHT,
            fulltext_weight=settings.SEARCH_FULLTEXT_WEIGHT,
            rrf_k=settings.SEARCH_RRF_K,
        )


def rrf_term(rank: Optional[int], rrf_k: int) -> float:
    """Unweighted RRF contribution of a 0-based rank, 0 when the item is absent."""
    if rank is None:
        return 0.0
    return 1.0 / (rrf_k + rank + 1)


@dataclass
class FusedCandidate:
    result: SearchResult
    vector_rank: Optional[int] = None
    fulltext_rank: Optional[int] = None

    @property
    def match_type(self) -> str:
        if self.vector_rank is not None and self.fulltext_rank is not None:
            return "hybrid"
        return "vector" if self.vector_rank is not None else "fulltext"

    def score(self, weights: HybridSearchWeights) -> float:
        return weights.vector_weight * rrf_term(self.vector_rank, weights.rrf_k) + (
            weights.fulltext_weight * rrf_term(self.fulltext_rank, weights.rrf_k)
        )


def reciprocal_rank_fusion(
    vector_results: Sequence[SearchResult],
    fulltext_results: Sequence[SearchResult],
    weights: HybridSearchWeights = HybridSearchWeights(),
) -> List[SearchResult]:
    """Fuse two ranked lists into one, highest score first.

    Every id from either list appears exactly once. Candidates are keyed in
    first-seen order (vector list, then full-text-only ids) and the sort is
    stable, so equal scores keep that order.
    """
    candidates: Dict[str, FusedCandidate] = {}
    for rank, result in enumerate(vector_results):
        if result.id not in candidates:
            candidates[result.id] = FusedCandidate(result=result, vector_rank=rank)

    for rank, result in enumerate(fulltext_results):
        existing = candidates.get(result.id)
        if existing is None:
            candidates[result.id] = FusedCandidate(result=result, fulltext_rank=rank)
        elif existing.fulltext_rank is None:
            existing.fulltext_rank = rank

    fused = [
        candidate.result.model_copy(
            update={"score": candidate.score(weights), "match_type": candidate.match_type}
        )
        for candidate in candidates.values()
    ]
    fused.sort(key=lambda r: r.score, reverse=True)
    return fused


class QueryEmbedder(Protocol):
    async def embed_query(self, text: str) -> List[float]: ...


class ChunkSearchBackend(Protocol):
    async def vector_search(
        self, project_id: str, embedding: Sequence[float], top_k: int, source_types: Optional[Sequence[str]] = None
    ) -> List[SearchResult]: ...

    async def full_text_search(
        self, project_id: str, query: str, top_k: int, source_types: Optional[Sequence[str]] = None
    ) -> List[SearchResult]: ...


class HybridSearchEngine:
    def __init__(
        self,
        embedder: QueryEmbedder,
        store: ChunkSearchBackend,
        weights: Optional[HybridSearchWeights] = None,
    ):
        self.embedder = embedder
        self.store = store
        self.weights = weights or HybridSearchWeights.from_settings()

    async def search(
        self,
        project_id: str,
        query: str,
        top_k: int = 10,
        source_types: Optional[Sequence[str]] = None,
        min_score: float = 0.0,
        weights: Optional[HybridSearchWeights] = None,
    ) -> List[SearchResult]:
        clean_query = normalize_input(query)
        if not clean_query or top_k <= 0:
            return []

        weights = weights or self.weights
        started = time.time()

        embedding = await self.embedder.embed_query(clean_query)
        vector_results = await self.store.vector_search(project_id, embedding, top_k, source_types)
        fulltext_results = await self.store.full_text_search(project_id, clean_query, top_k, source_types)

        fused = reciprocal_rank_fusion(vector_results, fulltext_results, weights)
        results = [r for r in fused if r.score >= min_score][:top_k]

        app_logger.info(
            f"Hybrid search project={project_id} vector={len(vector_results)} "
            f"fulltext={len(fulltext_results)} returned={len(results)}"
        )
        log_performance("hybrid_search", time.time() - started, project_id=project_id)
        return results
