"""Azure DevOps wiki mirroring and indexing.

``sync_wiki_pages`` copies page bodies from Azure into ``wiki_pages``;
``ingest_wiki_pages`` chunks and embeds the pages whose content changed since
they were last indexed. Wiki chunks are keyed by ``wiki_page_id`` and are
replaced as a whole whenever a page is re-indexed.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.config.logger import app_logger, log_performance
from app.models.wiki import WikiPage
from app.services.azure_devops import AzureDevOpsClient, AzureDevOpsError
from app.services.chunk_store import ChunkInsert, ChunkStore
from app.services.chunking import chunk_text
from app.services.embedding import EmbeddingService

# Shorter bodies are container pages or stubs
MIN_PAGE_LENGTH = 20

IngestAction = Literal["new", "updated", "unchanged", "skipped"]


def extract_title(path: str) -> str:
    """``/Projeto/Visao-Geral`` -> ``Visao Geral``; the root page is ``Home``."""
    segment = (path or "").rstrip("/").rsplit("/", 1)[-1]
    return segment.replace("-", " ").strip() or "Home"


def extract_parent_path(path: str) -> Optional[str]:
    parent = (path or "").rstrip("/").rsplit("/", 1)[0]
    return parent or None


@dataclass
class WikiSyncSummary:
    wikis: int = 0
    pages_synced: int = 0
    pages_changed: int = 0
    errors: int = 0
    error_details: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WikiIngestSummary:
    pages_new: int = 0
    pages_updated: int = 0
    pages_unchanged: int = 0
    pages_skipped: int = 0
    chunks_created: int = 0

    def count(self, action: IngestAction, chunks: int) -> None:
        setattr(self, f"pages_{action}", getattr(self, f"pages_{action}") + 1)
        self.chunks_created += chunks


async def _page_by_path(session: AsyncSession, project_id: str, path: str) -> Optional[WikiPage]:
    result = await session.execute(
        select(WikiPage).where(WikiPage.project_id == project_id).where(WikiPage.path == path)
    )
    return result.scalars().first()


async def sync_wiki_pages(
    session: AsyncSession,
    client: AzureDevOpsClient,
    project_id: str,
    project_name: str,
) -> WikiSyncSummary:
    """Mirror every wiki page of ``project_name`` into ``wiki_pages``.

    A page that cannot be fetched is logged and skipped; the rest of the wiki
    still syncs.
    """
    start_time = time.time()
    summary = WikiSyncSummary()

    wikis = await client.list_wikis(project_name)
    summary.wikis = len(wikis)
    for wiki in wikis:
        refs = await client.list_wiki_pages(wiki.id, project_name)
        app_logger.info(f"Wiki {wiki.name}: {len(refs)} pages for project {project_name}")

        for ref in refs:
            try:
                content = await client.get_wiki_page_content(wiki.id, ref.path, project_name)
            except AzureDevOpsError as e:
                app_logger.warning(f"Could not fetch wiki page {ref.path}: {e}")
                summary.errors += 1
                summary.error_details.append({"source": f"wiki:{ref.path}", "message": str(e)})
                continue

            now = datetime.now(timezone.utc)
            page = await _page_by_path(session, project_id, ref.path)
            if page is None:
                page = WikiPage(project_id=project_id, wiki_id=wiki.id, path=ref.path, title=extract_title(ref.path))
            if page.content != content:
                page.content = content
                page.chunked = False
                page.updated_at = now
                summary.pages_changed += 1
            page.wiki_id = wiki.id
            page.azure_id = ref.id
            page.title = extract_title(ref.path)
            page.parent_path = extract_parent_path(ref.path)
            page.last_sync_at = now
            session.add(page)
            summary.pages_synced += 1

        await session.commit()

    log_performance("sync_wiki_pages", time.time() - start_time, pages=summary.pages_synced)
    return summary


async def ingest_wiki_page(
    session: AsyncSession,
    page: WikiPage,
    embedder: EmbeddingService,
    store: ChunkStore,
    force: bool = False,
) -> Tuple[IngestAction, int]:
    """Index one page and return what happened plus the number of chunks written."""
    content = (page.content or "").strip()
    if len(content) < MIN_PAGE_LENGTH:
        return "skipped", 0
    if page.chunked and not force:
        return "unchanged", 0

    action: IngestAction = "updated" if page.chunk_count else "new"
    await store.delete_by_wiki_page(page.id)

    chunks = chunk_text(
        content,
        source_type="wiki",
        document_name=page.title,
        wiki_page_id=page.id,
        extra_metadata={"wikiPath": page.path, "wikiTitle": page.title},
    )
    embeddings = await embedder.embed_batch([c.content for c in chunks])
    inserted = await store.insert_chunks(
        [
            ChunkInsert(
                project_id=page.project_id,
                source_type="wiki",
                content=chunk.content,
                embedding=embedding.embedding,
                metadata=chunk.metadata,
                chunk_index=chunk.chunk_index,
                token_count=chunk.token_count,
                wiki_page_id=page.id,
            )
            for chunk, embedding in zip(chunks, embeddings)
        ]
    )

    page.chunked = True
    page.chunk_count = inserted
    page.updated_at = datetime.now(timezone.utc)
    session.add(page)
    await session.commit()
    return action, inserted


async def ingest_wiki_pages(
    session: AsyncSession,
    project_id: str,
    embedder: Optional[EmbeddingService] = None,
    store: Optional[ChunkStore] = None,
    force_reprocess: bool = False,
) -> WikiIngestSummary:
    start_time = time.time()
    embedder = embedder or EmbeddingService()
    store = store or ChunkStore(session)
    summary = WikiIngestSummary()

    result = await session.execute(
        select(WikiPage).where(WikiPage.project_id == project_id).order_by(WikiPage.path)
    )
    for page in result.scalars().all():
        action, chunks = await ingest_wiki_page(session, page, embedder, store, force=force_reprocess)
        summary.count(action, chunks)

    app_logger.info(
        f"Wiki ingestion for project {project_id}: {summary.pages_new} new, "
        f"{summary.pages_updated} updated, {summary.pages_unchanged} unchanged"
    )
    log_performance("ingest_wiki_pages", time.time() - start_time, chunks=summary.chunks_created)
    return summary


async def sync_project_wiki(session: AsyncSession, project_id: str, project_name: str) -> WikiSyncSummary:
    """Sync with a client built from settings."""
    async with AzureDevOpsClient.from_settings() as client:
        return await sync_wiki_pages(session, client, project_id, project_name)
