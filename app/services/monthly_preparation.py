"""Monthly (RDA) report preparation.

Collects the material a monthly report draws on for one project and period:
work items touched in the period, sprint snapshots, the project wiki and
uploaded documents.
Work item and sprint chunks are scoped by ``periodKey`` metadata and are
always deleted and regenerated together, never patched.

The run is meant to be started in the background; progress is reported via
``on_progress`` (fed into the status store) and persisted on the
``monthly_preparations`` row.
"""

from __future__ import annotations

import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple
from urllib.parse import quote

from sqlalchemy import and_, delete, func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import flag_modified
from sqlmodel import select

from app.api.rda.schemas import MonthlyPrepareRequest, MonthlyStatus, PreparationError
from app.config.logger import app_logger, log_performance
from app.config.settings import settings
from app.models.document import Document
from app.models.monthly import MonthlyPreparation, MonthlySnapshot
from app.models.project import Project, Sprint
from app.models.work_item import WorkItem
from app.services.chunk_store import ChunkInsert, ChunkStore
from app.services.chunking import chunk_text
from app.services.embedding import EmbeddingService
from app.services.wiki_ingestion import ingest_wiki_pages, sync_project_wiki
from app.utils.retry import BackoffPolicy, retry_async

PERIOD_KEY_PATTERN = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
STEPS = ("operational_sync", "workitems", "sprints", "wiki", "documents")
CRITICAL_SOURCES = frozenset({"workitems", "sprints", "wiki", "documents", "prepare_monthly"})

_COMPLETED_STATE = re.compile(r"done|closed|resolved", re.I)
_ACTIVE_STATE = re.compile(r"active|in progress|committed", re.I)
_INACTIVE_STATE = re.compile(r"closed|done|removed|resolved", re.I)
_HTML_TAG = re.compile(r"<[^>]+>")

ProgressCallback = Callable[[MonthlyStatus], None]
SyncRunner = Callable[[str], Awaitable[Any]]
WikiSyncer = Callable[[AsyncSession, str, str], Awaitable[Any]]
PreparationAction = Literal["start", "running", "restart", "ready"]


def period_key(month: int, year: int) -> str:
    if not 1 <= month <= 12:
        raise ValueError(f"Invalid month: {month}")
    return f"{year:04d}-{month:02d}"


def parse_period_key(key: str) -> Tuple[int, int]:
    """Return (year, month) for a ``YYYY-MM`` key."""
    if not PERIOD_KEY_PATTERN.match(key or ""):
        raise ValueError(f"Invalid period key: {key!r} (expected YYYY-MM)")
    year, month = key.split("-")
    return int(year), int(month)


def period_range(key: str) -> Tuple[datetime, datetime]:
    """UTC start of the month (inclusive) and start of the next month (exclusive)."""
    year, month = parse_period_key(key)
    start = datetime(year, month, 1, tzinfo=timezone.utc)
    if month == 12:
        return start, datetime(year + 1, 1, 1, tzinfo=timezone.utc)
    return start, datetime(year, month + 1, 1, tzinfo=timezone.utc)


def strip_html(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", _HTML_TAG.sub(" ", value)).strip()


def build_taskboard_url(org_url: str, project_name: str, sprint_name: str) -> str:
    if not org_url:
        return ""
    project = quote(project_name, safe="")
    return f"{org_url.rstrip('/')}/{project}/{project}/_sprints/taskboard/{quote(sprint_name, safe='')}"


def work_item_text(item: WorkItem) -> str:
    story_points = item.story_points if item.story_points is not None else 0
    return "\n".join(
        [
            f"Work Item {item.id}",
            f"Tipo: {item.type}",
            f"Estado: {item.state}",
            f"Titulo: {item.title}",
            f"Responsavel: {item.assigned_to or 'Nao informado'}",
            f"Sprint: {item.iteration_path or 'Nao informado'}",
            f"Story Points: {story_points:g}",
            f"URL: {item.url or ''}",
            f"Descricao: {strip_html(item.description)}",
            f"Criterios de aceite: {strip_html(item.acceptance_criteria)}",
        ]
    )


def error_item(source: str, exc: BaseException) -> PreparationError:
    return PreparationError(source=source, message=str(exc) or type(exc).__name__, timestamp=datetime.now(timezone.utc))


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _in_range(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    value = _aware(value)
    return value is not None and start <= value < end


def preparation_action(
    row: Optional[MonthlyPreparation],
    force: bool,
    now: Optional[datetime] = None,
    stale_minutes: int = settings.MONTHLY_STALE_MINUTES,
) -> PreparationAction:
    """Decide how to handle a prepare request given the existing row.

    * no row: ``start``
    * ``ready`` row: kept as is (``ready``) unless ``force`` asks for ``restart``
    * ``collecting`` row updated within ``stale_minutes``: ``running``, unless
      forced; a stale one is assumed dead and restarted
    * ``failed`` row: ``restart`` when forced, otherwise ``start`` over it
    """
    if row is None:
        return "start"
    if force:
        return "restart"
    if row.status == "ready":
        return "ready"
    if row.status == "collecting":
        now = now or datetime.now(timezone.utc)
        last_update = _aware(row.updated_at) or _aware(row.started_at)
        if last_update is not None and now - last_update < timedelta(minutes=stale_minutes):
            return "running"
        return "restart"
    return "start"


def to_status(row: MonthlyPreparation) -> MonthlyStatus:
    return MonthlyStatus(
        project_id=row.project_id,
        period_key=row.period_key,
        status=row.status,
        steps=dict(row.steps or {}),
        counters=dict(row.counters or {}),
        errors=[PreparationError.model_validate(e) for e in row.errors or []],
        started_at=row.started_at,
        completed_at=row.completed_at,
        updated_at=row.updated_at,
    )


async def _default_sync_runner(mode: str) -> Any:
    from app.services.work_item_sync import run_sync

    return await run_sync("full" if mode == "full" else "incremental")


class MonthlyPreparationService:
    def __init__(
        self,
        session: AsyncSession,
        embedder: Optional[EmbeddingService] = None,
        store: Optional[ChunkStore] = None,
        sync_runner: Optional[SyncRunner] = None,
        wiki_syncer: Optional[WikiSyncer] = None,
        step_policy: Optional[BackoffPolicy] = None,
        org_url: Optional[str] = None,
    ):
        self.session = session
        self.embedder = embedder or EmbeddingService()
        self.store = store or ChunkStore(session)
        self.sync_runner = sync_runner or _default_sync_runner
        self.wiki_syncer = wiki_syncer or sync_project_wiki
        attempts = max(1, settings.MONTHLY_STEP_RETRY_ATTEMPTS)
        self.step_policy = step_policy or BackoffPolicy.fixed(
            [settings.MONTHLY_STEP_RETRY_DELAY_MS] * (attempts - 1)
        )
        self.org_url = org_url if org_url is not None else settings.AZURE_DEVOPS_ORG_URL

    async def get_preparation(self, project_id: str, key: str) -> Optional[MonthlyPreparation]:
        result = await self.session.execute(
            select(MonthlyPreparation)
            .where(MonthlyPreparation.project_id == project_id)
            .where(MonthlyPreparation.period_key == key)
        )
        return result.scalars().first()

    async def project_exists(self, project_id: str) -> bool:
        return await self.session.get(Project, project_id) is not None

    async def get_status(self, project_id: str, key: str) -> Optional[MonthlyStatus]:
        row = await self.get_preparation(project_id, key)
        return to_status(row) if row else None

    async def list_snapshots(self, project_id: str, key: str) -> List[MonthlySnapshot]:
        result = await self.session.execute(
            select(MonthlySnapshot)
            .where(MonthlySnapshot.project_id == project_id)
            .where(MonthlySnapshot.period_key == key)
            .order_by(MonthlySnapshot.start_date)
        )
        return list(result.scalars().all())

    async def delete_preparation(self, project_id: str, key: str) -> Dict[str, int]:
        """Remove period chunks, sprint snapshots and the preparation row."""
        workitem_chunks = await self.store.delete_period_chunks(project_id, "workitem", key)
        sprint_chunks = await self.store.delete_period_chunks(project_id, "sprint", key)
        snapshots = await self.session.execute(
            delete(MonthlySnapshot)
            .where(MonthlySnapshot.project_id == project_id)
            .where(MonthlySnapshot.period_key == key)
        )
        rows = await self.session.execute(
            delete(MonthlyPreparation)
            .where(MonthlyPreparation.project_id == project_id)
            .where(MonthlyPreparation.period_key == key)
        )
        await self.session.commit()
        app_logger.info(f"Deleted monthly preparation {project_id}/{key}")
        return {
            "chunks": workitem_chunks + sprint_chunks,
            "snapshots": snapshots.rowcount or 0,
            "preparations": rows.rowcount or 0,
        }

    async def _begin(self, project_id: str, key: str) -> MonthlyPreparation:
        row = await self.get_preparation(project_id, key)
        now = datetime.now(timezone.utc)
        if row is None:
            row = MonthlyPreparation(project_id=project_id, period_key=key)
        row.status = "collecting"
        row.steps = {step: "pending" for step in STEPS}
        row.counters = {}
        row.errors = []
        row.started_at = now
        row.completed_at = None
        row.updated_at = now
        self.session.add(row)
        await self.session.commit()
        return row

    async def _save(self, row: MonthlyPreparation, on_progress: Optional[ProgressCallback]) -> None:
        row.updated_at = datetime.now(timezone.utc)
        # JSON columns do not track in-place mutation
        for attr in ("steps", "counters", "errors"):
            flag_modified(row, attr)
        self.session.add(row)
        await self.session.commit()
        if on_progress is not None:
            on_progress(to_status(row))

    async def _run_step(
        self,
        row: MonthlyPreparation,
        step: str,
        fn: Callable[[], Awaitable[Dict[str, int]]],
        on_progress: Optional[ProgressCallback],
    ) -> None:
        row.steps[step] = "collecting"
        await self._save(row, on_progress)

        async def attempt() -> Dict[str, int]:
            try:
                return await fn()
            except Exception:
                await self.session.rollback()
                await self.session.refresh(row)
                raise

        try:
            counters = await retry_async(attempt, self.step_policy, label=f"monthly step {step}")
        except Exception as exc:
            app_logger.error(f"Monthly preparation step {step} failed for {row.project_id}/{row.period_key}: {exc}")
            row.steps[step] = "error"
            row.errors.append(error_item(step, exc).model_dump(mode="json"))
        else:
            row.steps[step] = "done"
            row.counters.update(counters)
        await self._save(row, on_progress)

    async def prepare(
        self,
        request: MonthlyPrepareRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> MonthlyStatus:
        """Run every preparation step and return the final status.

        Failures never escape as exceptions; they end up in ``errors`` with
        ``status="failed"`` when a critical step is affected.
        """
        started = time.time()
        key = period_key(request.period.month, request.period.year)
        project_id = request.project_id
        start, end = period_range(key)

        row = await self._begin(project_id, key)
        if on_progress is not None:
            on_progress(to_status(row))

        try:
            if request.include_operational_sync and request.sync_mode != "none":
                await self._run_step(
                    row, "operational_sync", lambda: self._operational_sync(request.sync_mode), on_progress
                )
            else:
                row.steps["operational_sync"] = "done"

            await self._run_step(
                row, "workitems", lambda: self.collect_work_items(project_id, key, start, end), on_progress
            )
            await self._run_step(
                row, "sprints", lambda: self.collect_sprints(project_id, key, start, end), on_progress
            )
            if request.include_wiki:
                await self._run_step(
                    row, "wiki", lambda: self.collect_wiki(project_id, request.force_reprocess_chunks), on_progress
                )
            else:
                row.steps["wiki"] = "done"

            await self._run_step(row, "documents", lambda: self.collect_documents(project_id), on_progress)

            stats = await self.store.stats(project_id)
            row.counters["chunks_created"] = sum(
                row.counters.get(name, 0) for name in ("workitem_chunks", "sprint_chunks", "wiki_chunks")
            )
            row.counters["total_project_chunks"] = stats.total_chunks
            row.counters["total_project_tokens"] = stats.total_tokens
        except Exception as exc:
            await self.session.rollback()
            app_logger.error(f"Monthly preparation {project_id}/{key} failed unexpectedly: {exc}")
            await self.session.refresh(row)
            row.errors = list(row.errors or []) + [error_item("prepare_monthly", exc).model_dump(mode="json")]

        has_critical = any(e.get("source") in CRITICAL_SOURCES for e in row.errors or [])
        row.status = "failed" if has_critical else "ready"
        row.completed_at = datetime.now(timezone.utc)
        await self._save(row, on_progress)

        log_performance("monthly_preparation", time.time() - started, project_id=project_id, period=key)
        app_logger.info(f"Monthly preparation {project_id}/{key} finished with status {row.status}")
        return to_status(row)

    async def _operational_sync(self, mode: str) -> Dict[str, int]:
        summary = await self.sync_runner(mode)
        evaluated = getattr(summary, "evaluated", 0)
        return {"synced_work_items": int(evaluated or 0)}

    async def _replace_chunks(
        self,
        project_id: str,
        source_type: str,
        key: str,
        documents: List[Tuple[str, str, Dict[str, Any]]],
    ) -> int:
        """Delete the period's chunks of ``source_type`` and index ``documents`` anew.

        ``documents`` holds (document_name, text, extra_metadata) tuples.
        """
        await self.store.delete_period_chunks(project_id, source_type, key)

        pending = []
        for name, text, extra in documents:
            for chunk in chunk_text(text, source_type=source_type, document_name=name, extra_metadata=extra):
                pending.append(chunk)
        if not pending:
            return 0

        embeddings = await self.embedder.embed_batch([c.content for c in pending])
        return await self.store.insert_chunks(
            [
                ChunkInsert(
                    project_id=project_id,
                    source_type=source_type,
                    content=chunk.content,
                    embedding=embedding.embedding,
                    metadata=chunk.metadata,
                    chunk_index=index,
                    token_count=chunk.token_count,
                )
                for index, (chunk, embedding) in enumerate(zip(pending, embeddings))
            ]
        )

    async def collect_work_items(self, project_id: str, key: str, start: datetime, end: datetime) -> Dict[str, int]:
        result = await self.session.execute(
            select(WorkItem)
            .where(WorkItem.project_id == project_id)
            .where(WorkItem.is_removed == False)  # noqa: E712
            .where(
                or_(
                    and_(WorkItem.created_date >= start, WorkItem.created_date < end),
                    and_(WorkItem.changed_date >= start, WorkItem.changed_date < end),
                    and_(WorkItem.closed_date >= start, WorkItem.closed_date < end),
                )
            )
            .order_by(WorkItem.changed_date.desc())
        )
        items = list(result.scalars().all())

        documents = [
            (
                f"WORKITEM-{item.id}",
                work_item_text(item),
                {"periodKey": key, "workItemId": item.id, "workItemType": item.type, "state": item.state},
            )
            for item in items
        ]
        chunks = await self._replace_chunks(project_id, "workitem", key, documents)
        await self.session.commit()

        return {
            "workitems_total": len(items),
            "workitems_new": sum(1 for i in items if _in_range(i.created_date, start, end)),
            "workitems_closed": sum(1 for i in items if _in_range(i.closed_date, start, end)),
            "workitems_active": sum(1 for i in items if not _INACTIVE_STATE.search(i.state or "")),
            "workitem_chunks": chunks,
        }

    async def collect_sprints(self, project_id: str, key: str, start: datetime, end: datetime) -> Dict[str, int]:
        project = await self.session.get(Project, project_id)
        project_name = project.name if project else project_id

        result = await self.session.execute(
            select(Sprint)
            .where(Sprint.project_id == project_id)
            .where(Sprint.start_date < end)
            .where(Sprint.finish_date >= start)
            .order_by(Sprint.start_date)
        )
        sprints = list(result.scalars().all())

        await self.session.execute(
            delete(MonthlySnapshot)
            .where(MonthlySnapshot.project_id == project_id)
            .where(MonthlySnapshot.period_key == key)
        )

        documents = []
        for sprint in sprints:
            scoped = (
                await self.session.execute(
                    select(WorkItem)
                    .where(WorkItem.project_id == project_id)
                    .where(WorkItem.iteration_path == sprint.path)
                    .where(WorkItem.is_removed == False)  # noqa: E712
                )
            ).scalars().all()

            completed = [wi for wi in scoped if _COMPLETED_STATE.search(wi.state or "")]
            active = [wi for wi in scoped if _ACTIVE_STATE.search(wi.state or "")]
            total_points = sum(wi.story_points or 0 for wi in scoped)
            completed_points = sum(wi.story_points or 0 for wi in completed)
            velocity = round(completed_points / total_points * 100, 2) if total_points > 0 else 0.0
            taskboard_url = build_taskboard_url(self.org_url, project_name, sprint.name)

            snapshot = MonthlySnapshot(
                project_id=project_id,
                period_key=key,
                sprint_id=sprint.id,
                sprint_name=sprint.name,
                start_date=sprint.start_date,
                finish_date=sprint.finish_date,
                total_items=len(scoped),
                completed_items=len(completed),
                active_items=len(active),
                planned_story_points=total_points,
                completed_story_points=completed_points,
                velocity=velocity,
                planned_hours=sum(wi.initial_remaining_work or 0 for wi in scoped),
                remaining_hours=sum(wi.remaining_work or 0 for wi in scoped),
                taskboard_url=taskboard_url or None,
            )
            self.session.add(snapshot)

            start_label = sprint.start_date.date().isoformat() if sprint.start_date else "?"
            finish_label = sprint.finish_date.date().isoformat() if sprint.finish_date else "?"
            text = "\n".join(
                [
                    f"Sprint: {sprint.name}",
                    f"Iteration Path: {sprint.path}",
                    f"Periodo: {start_label} a {finish_label}",
                    f"Total itens: {len(scoped)}",
                    f"Concluidos: {len(completed)}",
                    f"Ativos: {len(active)}",
                    f"Story Points: {completed_points:g}/{total_points:g}",
                    f"Velocity (%): {velocity:g}",
                    f"Horas planejadas: {snapshot.planned_hours:g}",
                    f"Horas restantes: {snapshot.remaining_hours:g}",
                    f"Taskboard URL: {taskboard_url}",
                ]
            )
            documents.append(
                (
                    f"SPRINT-{sprint.name}",
                    text,
                    {"periodKey": key, "sprintId": sprint.id, "sprintName": sprint.name, "iterationPath": sprint.path},
                )
            )

        chunks = await self._replace_chunks(project_id, "sprint", key, documents)
        await self.session.commit()
        return {"sprints": len(sprints), "sprint_chunks": chunks}

    async def collect_wiki(self, project_id: str, force_reprocess: bool = False) -> Dict[str, int]:
        """Mirror the project wiki, then index pages that changed."""
        project = await self.session.get(Project, project_id)
        project_name = project.name if project else project_id

        synced = await self.wiki_syncer(self.session, project_id, project_name)
        summary = await ingest_wiki_pages(
            self.session, project_id, self.embedder, self.store, force_reprocess=force_reprocess
        )
        return {
            "wiki_pages_synced": int(getattr(synced, "pages_synced", 0) or 0),
            "wiki_pages_new": summary.pages_new,
            "wiki_pages_updated": summary.pages_updated,
            "wiki_pages_unchanged": summary.pages_unchanged,
            "wiki_chunks": summary.chunks_created,
        }

    async def collect_documents(self, project_id: str) -> Dict[str, int]:
        count = (
            await self.session.execute(
                select(func.count()).select_from(Document)
                .where(Document.project_id == project_id)
                .where(Document.status == "indexed")
            )
        ).scalar() or 0
        return {"documents": int(count)}
