"""Raw-SQL access to the ``document_chunks`` table (pgvector + Postgres full-text)."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.rda.schemas import ChunkStats, SearchResult
from app.config.logger import app_logger
from app.config.settings import settings

DEFAULT_DOCUMENT_NAME = "Fonte sem identificacao"


@dataclass
class ChunkInsert:
    project_id: str
    source_type: str
    content: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)
    chunk_index: int = 0
    token_count: int = 0
    document_id: Optional[str] = None
    wiki_page_id: Optional[str] = None


def to_vector_literal(vector: Sequence[float]) -> str:
    return "[" + ",".join(str(float(v)) for v in vector) + "]"


def strip_nul(value: Any) -> Any:
    """Drop NUL characters, which Postgres text and jsonb reject, from strings nested in ``value``."""
    if isinstance(value, str):
        return value.replace("\x00", "")
    if isinstance(value, dict):
        return {strip_nul(k): strip_nul(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [strip_nul(v) for v in value]
    return value



def safe_metadata(value: Any) -> Dict[str, Any]:
    """Decode stored chunk metadata and fill the display defaults."""
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except ValueError:
            value = None
    raw = dict(value) if isinstance(value, dict) else {}
    raw["documentName"] = raw.get("documentName") or DEFAULT_DOCUMENT_NAME
    raw["contentType"] = raw.get("contentType") or "text"
    raw["position"] = raw.get("position") or 0
    return raw


def _source_filter(source_types: Optional[Sequence[str]], params: Dict[str, Any]) -> str:
    if not source_types:
        return ""
    params["source_types"] = list(source_types)
    return "AND source_type = ANY(:source_types)"


class ChunkStore:
    def __init__(self, session: AsyncSession, text_language: Optional[str] = None):
        self.session = session
        self.text_language = text_language or settings.SEARCH_TEXT_LANGUAGE

    async def insert_chunks(self, chunks: Sequence[ChunkInsert]) -> int:
        if not chunks:
            return 0
        now = datetime.now(timezone.utc)
        rows = [
            {
                "id": str(uuid4()),
                "document_id": c.document_id,
                "wiki_page_id": c.wiki_page_id,
                "project_id": c.project_id,
                "source_type": c.source_type,
                "content": strip_nul(c.content),
                "metadata": json.dumps(strip_nul(c.metadata), default=str),
                "embedding": to_vector_literal(c.embedding),
                "chunk_index": c.chunk_index,
                "token_count": c.token_count,
                "now": now,
            }
            for c in chunks
        ]
        await self.session.execute(
            text(
                """
                INSERT INTO document_chunks
                    (id, document_id, wiki_page_id, project_id, source_type, content,
                     metadata, embedding, chunk_index, token_count, created_at, updated_at)
                VALUES
                    (:id, :document_id, :wiki_page_id, :project_id, :source_type, :content,
                     CAST(:metadata AS jsonb), CAST(:embedding AS vector), :chunk_index, :token_count, :now, :now)
                """
            ),
            rows,
        )
        app_logger.debug(f"Inserted {len(rows)} chunks for project {chunks[0].project_id}")
        return len(rows)

    async def delete_by_document(self, document_id: str) -> int:
        result = await self.session.execute(
            text("DELETE FROM document_chunks WHERE document_id = :document_id"),
            {"document_id": document_id},
        )
        return result.rowcount or 0

    async def delete_by_wiki_page(self, wiki_page_id: str) -> int:
        result = await self.session.execute(
            text("DELETE FROM document_chunks WHERE wiki_page_id = :wiki_page_id"),
            {"wiki_page_id": wiki_page_id},
        )
        return result.rowcount or 0

    async def delete_period_chunks(self, project_id: str, source_type: str, period_key: str) -> int:
        result = await self.session.execute(
            text(
                """
                DELETE FROM document_chunks
                WHERE project_id = :project_id
                  AND source_type = :source_type
                  AND metadata->>'periodKey' = :period_key
                """
            ),
            {"project_id": project_id, "source_type": source_type, "period_key": period_key},
        )
        return result.rowcount or 0

    async def stats(self, project_id: str) -> ChunkStats:
        params = {"project_id": project_id}
        total = (
            await self.session.execute(
                text("SELECT COUNT(*) FROM document_chunks WHERE project_id = :project_id"), params
            )
        ).scalar() or 0

        by_type_rows = (
            await self.session.execute(
                text(
                    """
                    SELECT source_type, COUNT(*) AS total
                    FROM document_chunks
                    WHERE project_id = :project_id
                    GROUP BY source_type
                    """
                ),
                params,
            )
        ).fetchall()

        token_row = (
            await self.session.execute(
                text(
                    """
                    SELECT AVG(token_count) AS avg_tokens, SUM(token_count) AS total_tokens
                    FROM document_chunks
                    WHERE project_id = :project_id
                    """
                ),
                params,
            )
        ).one()

        return ChunkStats(
            total_chunks=int(total),
            chunks_by_source_type={row.source_type: int(row.total) for row in by_type_rows},
            avg_tokens_per_chunk=round(float(token_row.avg_tokens or 0), 2),
            total_tokens=int(token_row.total_tokens or 0),
        )

    async def vector_search(
        self,
        project_id: str,
        embedding: Sequence[float],
        top_k: int,
        source_types: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        """Nearest chunks by cosine distance; score is ``1 - distance``."""
        params: Dict[str, Any] = {
            "project_id": project_id,
            "embedding": to_vector_literal(embedding),
            "top_k": top_k,
        }
        source_filter = _source_filter(source_types, params)
        rows = (
            await self.session.execute(
                text(
                    f"""
                    SELECT id, content, metadata, source_type,
                           1 - (embedding <=> CAST(:embedding AS vector)) AS similarity
                    FROM document_chunks
                    WHERE project_id = :project_id
                      AND embedding IS NOT NULL
                      {source_filter}
                    ORDER BY embedding <=> CAST(:embedding AS vector)
                    LIMIT :top_k
                    """
                ),
                params,
            )
        ).fetchall()

        return [
            SearchResult(
                id=str(row.id),
                content=row.content,
                metadata=safe_metadata(row.metadata),
                source_type=row.source_type,
                score=float(row.similarity or 0),
                match_type="vector",
            )
            for row in rows
        ]

    async def full_text_search(
        self,
        project_id: str,
        query: str,
        top_k: int,
        source_types: Optional[Sequence[str]] = None,
    ) -> List[SearchResult]:
        """Chunks matching ``plainto_tsquery`` ordered by ``ts_rank``."""
        params: Dict[str, Any] = {
            "project_id": project_id,
            "query": query,
            "language": self.text_language,
            "top_k": top_k,
        }
        source_filter = _source_filter(source_types, params)
        rows = (
            await self.session.execute(
                text(
                    f"""
                    SELECT id, content, metadata, source_type,
                           ts_rank(tsv, plainto_tsquery(CAST(:language AS regconfig), :query)) AS rank
                    FROM document_chunks
                    WHERE project_id = :project_id
                      {source_filter}
                      AND tsv @@ plainto_tsquery(CAST(:language AS regconfig), :query)
                    ORDER BY rank DESC
                    LIMIT :top_k
                    """
                ),
                params,
            )
        ).fetchall()

        return [
            SearchResult(
                id=str(row.id),
                content=row.content,
                metadata=safe_metadata(row.metadata),
                source_type=row.source_type,
                score=float(row.rank or 0),
                match_type="fulltext",
            )
            for row in rows
        ]
