"""RDA endpoints: hybrid search, chunk maintenance, documents and monthly preparation."""

from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.rda.schemas import (
    ChunkStats,
    DeleteChunksResponse,
    DocumentUploadResponse,
    MonthlyPrepareRequest,
    MonthlyPrepareResponse,
    MonthlyStatus,
    SearchRequest,
    SearchResponse,
    SprintSnapshotResponse,
)
from app.config.logger import app_logger
from app.config.settings import settings
from app.db.db import db_session, get_optional_session, get_session
from app.services.chunk_store import ChunkStore
from app.services.document_ingestion import extract_text, ingest_document
from app.services.embedding import EmbeddingService
from app.services.hybrid_search import HybridSearchEngine, HybridSearchWeights
from app.services.monthly_preparation import (
    MonthlyPreparationService,
    error_item,
    parse_period_key,
    period_key,
    preparation_action,
)
from app.services.status_store import StatusStore, get_status_store
from app.utils.responses import SuccessResponse, success_response

router = APIRouter(prefix="/v1/rda", tags=["rda"])


def _validated_period(key: str) -> str:
    try:
        parse_period_key(key)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return key


@router.post("/search", response_model=SuccessResponse[SearchResponse])
async def search(
    request: SearchRequest,
    session: AsyncSession = Depends(get_session),
):
    """Hybrid (vector + full-text) search over a project's chunks."""
    try:
        defaults = HybridSearchWeights.from_settings()
        weights = HybridSearchWeights(
            vector_weight=request.vector_weight if request.vector_weight is not None else defaults.vector_weight,
            fulltext_weight=(
                request.fulltext_weight if request.fulltext_weight is not None else defaults.fulltext_weight
            ),
            rrf_k=request.rrf_k or defaults.rrf_k,
        )
        engine = HybridSearchEngine(EmbeddingService(), ChunkStore(session), weights)
        results = await engine.search(
            request.project_id,
            request.query,
            top_k=request.top_k,
            source_types=request.source_types,
            min_score=request.min_score,
        )
        return success_response(
            data=SearchResponse(query=request.query, total=len(results), results=results),
            message="Search completed successfully",
        )
    except HTTPException:
        raise
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        app_logger.error(f"Search failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Search failed: {str(e)}",
        )


@router.get("/chunks/stats/{project_id}", response_model=SuccessResponse[ChunkStats])
async def chunk_stats(project_id: str, session: AsyncSession = Depends(get_session)):
    try:
        stats = await ChunkStore(session).stats(project_id)
        return success_response(data=stats, message="Chunk statistics retrieved")
    except Exception as e:
        app_logger.error(f"Chunk stats failed for {project_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Chunk stats failed: {str(e)}",
        )


@router.delete("/chunks/document/{document_id}", response_model=SuccessResponse[DeleteChunksResponse])
async def delete_document_chunks(document_id: str, session: AsyncSession = Depends(get_session)):
    try:
        deleted = await ChunkStore(session).delete_by_document(document_id)
        await session.commit()
        app_logger.info(f"Deleted {deleted} chunks for document {document_id}")
        return success_response(data=DeleteChunksResponse(deleted=deleted), message="Chunks deleted")
    except Exception as e:
        app_logger.error(f"Chunk deletion failed for document {document_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Chunk deletion failed: {str(e)}",
        )


@router.delete("/chunks/wiki/{wiki_page_id}", response_model=SuccessResponse[DeleteChunksResponse])
async def delete_wiki_chunks(wiki_page_id: str, session: AsyncSession = Depends(get_session)):
    try:
        deleted = await ChunkStore(session).delete_by_wiki_page(wiki_page_id)
        await session.commit()
        app_logger.info(f"Deleted {deleted} chunks for wiki page {wiki_page_id}")
        return success_response(data=DeleteChunksResponse(deleted=deleted), message="Chunks deleted")
    except Exception as e:
        app_logger.error(f"Chunk deletion failed for wiki page {wiki_page_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Chunk deletion failed: {str(e)}",
        )


@router.post("/documents", response_model=SuccessResponse[DocumentUploadResponse])
async def upload_document(
    project_id: str = Form(...),
    file: UploadFile = File(...),
    session: AsyncSession = Depends(get_session),
):
    """Upload a PDF, DOCX, text or markdown document and index it for search.

    Re-uploading the same file name replaces its chunks; identical content is
    left untouched. Unsupported or unreadable files are rejected with 400.
    """
    try:
        text = extract_text(await file.read(), file.filename or "", file.content_type)
        result = await ingest_document(session, project_id, file.filename or "document.txt", text)
        return success_response(
            data=DocumentUploadResponse(**result),
            message=f"Document {result['action']}",
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except Exception as e:
        app_logger.error(f"Document upload failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Document upload failed: {str(e)}",
        )


async def run_monthly_preparation(request: MonthlyPrepareRequest, store: StatusStore) -> None:
    """Background entrypoint; owns its own session since the request one is gone."""
    key = period_key(request.period.month, request.period.year)
    try:
        async with db_session() as session:
            await MonthlyPreparationService(session).prepare(request, on_progress=store.set)
    except Exception as e:
        app_logger.error(f"Monthly preparation {request.project_id}/{key} crashed: {e}")
        now = datetime.now(timezone.utc)
        previous = store.get(request.project_id, key)
        store.set(
            MonthlyStatus(
                project_id=request.project_id,
                period_key=key,
                status="failed",
                steps=previous.steps if previous else {},
                counters=previous.counters if previous else {},
                errors=(previous.errors if previous else []) + [error_item("prepare_monthly", e)],
                started_at=previous.started_at if previous else now,
                completed_at=now,
                updated_at=now,
            )
        )


@router.post(
    "/monthly/prepare",
    response_model=SuccessResponse[MonthlyPrepareResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def prepare_monthly(
    request: MonthlyPrepareRequest,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    store: StatusStore = Depends(get_status_store),
):
    """Start collecting a period's report material in the background.

    Poll ``/monthly/status/{project_id}/{period}`` for progress. A ready
    period is returned as is and a run that is still collecting is not started
    twice, unless ``force_reprocess`` is set. A run that stopped updating for
    ``MONTHLY_STALE_MINUTES`` is considered dead and restarted.
    """
    if not settings.azure_configured:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Azure DevOps is not configured (AZURE_DEVOPS_ORG_URL / AZURE_DEVOPS_PAT)",
        )

    key = period_key(request.period.month, request.period.year)
    try:
        service = MonthlyPreparationService(session)
        if not await service.project_exists(request.project_id):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Project not found: {request.project_id}",
            )

        existing = await service.get_preparation(request.project_id, key)
        action = preparation_action(existing, request.force_reprocess)

        if action == "ready":
            return success_response(
                data=MonthlyPrepareResponse(
                    project_id=request.project_id,
                    period_key=key,
                    status="ready",
                    accepted=False,
                    message="Preparation already available",
                ),
                message="Preparation already available",
            )

        if action == "running":
            return success_response(
                data=MonthlyPrepareResponse(
                    project_id=request.project_id,
                    period_key=key,
                    status="collecting",
                    accepted=False,
                    message="Preparation already running",
                ),
                message="Preparation already running",
            )

        if action == "restart":
            app_logger.info(f"Restarting monthly preparation {request.project_id}/{key}")
            await service.delete_preparation(request.project_id, key)
            store.delete(request.project_id, key)

        store.set(MonthlyStatus(project_id=request.project_id, period_key=key, status="collecting"))
        background_tasks.add_task(run_monthly_preparation, request, store)

        return success_response(
            data=MonthlyPrepareResponse(
                project_id=request.project_id,
                period_key=key,
                status="collecting",
                accepted=True,
                message="Preparation started",
            ),
            message="Preparation started",
        )
    except HTTPException:
        raise
    except Exception as e:
        app_logger.error(f"Failed to start monthly preparation {request.project_id}/{key}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to start preparation: {str(e)}",
        )


@router.get("/monthly/status/{project_id}/{period}", response_model=SuccessResponse[MonthlyStatus])
async def monthly_status(
    project_id: str,
    period: str,
    session: Optional[AsyncSession] = Depends(get_optional_session),
    store: StatusStore = Depends(get_status_store),
):
    """Preparation status: persisted row first, then the progress cache.

    Always answers with a status object; when the database cannot be read the
    cached progress (or a pending ``collecting`` placeholder) is returned.
    """
    key = _validated_period(period)
    persisted = None
    if session is None:
        app_logger.warning(f"Database unavailable; serving cached status for {project_id}/{key}")
    else:
        try:
            persisted = await MonthlyPreparationService(session).get_status(project_id, key)
        except (SQLAlchemyError, OSError) as e:
            app_logger.warning(f"Status lookup failed for {project_id}/{key}, using cache: {e}")

    current = persisted or store.get(project_id, key) or MonthlyStatus(project_id=project_id, period_key=key)
    return success_response(data=current, message="Preparation status retrieved")


@router.get(
    "/monthly/snapshots/{project_id}/{period}",
    response_model=SuccessResponse[List[SprintSnapshotResponse]],
)
async def monthly_snapshots(project_id: str, period: str, session: AsyncSession = Depends(get_session)):
    key = _validated_period(period)
    try:
        snapshots = await MonthlyPreparationService(session).list_snapshots(project_id, key)
        data = [SprintSnapshotResponse.model_validate(s, from_attributes=True) for s in snapshots]
        return success_response(data=data, message=f"{len(data)} sprint snapshots")
    except Exception as e:
        app_logger.error(f"Snapshot lookup failed for {project_id}/{key}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Snapshot lookup failed: {str(e)}",
        )


@router.delete("/monthly/{project_id}/{period}")
async def delete_monthly(
    project_id: str,
    period: str,
    session: AsyncSession = Depends(get_session),
    store: StatusStore = Depends(get_status_store),
):
    """Drop a period's chunks, snapshots and preparation state."""
    key = _validated_period(period)
    try:
        deleted = await MonthlyPreparationService(session).delete_preparation(project_id, key)
        store.delete(project_id, key)
        return success_response(data=deleted, message="Preparation deleted")
    except Exception as e:
        app_logger.error(f"Failed to delete preparation {project_id}/{key}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to delete preparation: {str(e)}",
        )
