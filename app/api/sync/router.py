"""Azure DevOps sync endpoints.

Runs are started as background tasks and return immediately; progress and
results are recorded in ``sync_logs`` (see ``GET /v1/sync/logs``).
"""

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.api.sync.schemas import BackfillRequest, SyncLogEntry, SyncRequest, SyncTriggerResponse
from app.config.logger import app_logger
from app.config.settings import settings
from app.db.db import get_session
from app.models.sync_log import SyncLog
from app.services.work_item_sync import run_sync
from app.utils.responses import PaginatedResponse, SuccessResponse, paginated_response, success_response

router = APIRouter(prefix="/v1/sync", tags=["sync"])


def _require_azure() -> None:
    if not settings.azure_configured:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Azure DevOps is not configured (AZURE_DEVOPS_ORG_URL / AZURE_DEVOPS_PAT)",
        )


async def _run_in_background(kind: str, **kwargs) -> None:
    try:
        await run_sync(kind, **kwargs)
    except Exception as e:
        # Already recorded on the sync log; nothing is waiting on this task
        app_logger.error(f"Background {kind} sync failed: {e}")


@router.post(
    "/full",
    response_model=SuccessResponse[SyncTriggerResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_full_sync(background_tasks: BackgroundTasks, request: Optional[SyncRequest] = None):
    """Sync projects, sprints and every sprint's work items."""
    _require_azure()
    projects = request.projects if request else None
    background_tasks.add_task(_run_in_background, "full", project_names=projects)
    app_logger.info(f"Full sync scheduled (projects={projects or 'configured'})")
    return success_response(
        data=SyncTriggerResponse(sync_type="full_sync", accepted=True, message="Full sync started"),
        message="Full sync started",
    )


@router.post(
    "/incremental",
    response_model=SuccessResponse[SyncTriggerResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_incremental_sync(background_tasks: BackgroundTasks, request: Optional[SyncRequest] = None):
    """Sync work items changed since the last completed incremental run."""
    _require_azure()
    projects = request.projects if request else None
    background_tasks.add_task(_run_in_background, "incremental", project_names=projects)
    app_logger.info(f"Incremental sync scheduled (projects={projects or 'configured'})")
    return success_response(
        data=SyncTriggerResponse(sync_type="smart_sync", accepted=True, message="Incremental sync started"),
        message="Incremental sync started",
    )


@router.post(
    "/backfill-effort",
    response_model=SuccessResponse[SyncTriggerResponse],
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_effort_backfill(request: BackfillRequest, background_tasks: BackgroundTasks):
    """Re-derive effort history for local items changed in the last ``days_back`` days."""
    _require_azure()
    background_tasks.add_task(
        _run_in_background,
        "backfill",
        days_back=request.days_back,
        project_names=request.projects,
        only_missing=request.only_missing,
    )
    app_logger.info(f"Effort backfill scheduled (days_back={request.days_back})")
    return success_response(
        data=SyncTriggerResponse(sync_type="effort_backfill", accepted=True, message="Effort backfill started"),
        message="Effort backfill started",
    )


@router.get("/logs", response_model=PaginatedResponse[SyncLogEntry])
async def list_sync_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sync_type: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
):
    """Most recent sync runs first."""
    try:
        query = select(SyncLog)
        count_query = select(func.count()).select_from(SyncLog)
        if sync_type:
            query = query.where(SyncLog.sync_type == sync_type)
            count_query = count_query.where(SyncLog.sync_type == sync_type)

        total = (await session.execute(count_query)).scalar() or 0
        rows = (
            await session.execute(
                query.order_by(SyncLog.started_at.desc()).offset((page - 1) * limit).limit(limit)
            )
        ).scalars().all()

        entries: List[SyncLogEntry] = [
            SyncLogEntry(
                id=row.id,
                sync_type=row.sync_type,
                status=row.status,
                started_at=row.started_at,
                completed_at=row.completed_at,
                duration=row.duration,
                items_processed=row.items_processed,
                items_updated=row.items_updated,
                metadata=row.meta or {},
                error=row.error,
            )
            for row in rows
        ]
        return paginated_response(data=entries, page=page, limit=limit, total=total, message="Sync logs retrieved")
    except Exception as e:
        app_logger.error(f"Failed to list sync logs: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to list sync logs: {str(e)}",
        )
