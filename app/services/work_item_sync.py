"""Azure DevOps work item sync.

Three entrypoints share one history-recovery path (``recover_history``):

* ``full_sync``: projects, sprints and every sprint's work items
* ``incremental_sync`` (smart sync): items changed since the last completed run
* ``backfill_effort``: local items changed in the last N days, history re-derived

Each item is committed on its own; a failing item is rolled back, logged and
counted without stopping its batch.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Literal, NamedTuple, Optional, Sequence, TypeVar
from uuid import UUID

import httpx
from pydantic import ValidationError
from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.config.logger import app_logger, log_performance
from app.config.settings import settings
from app.models.project import Project, Sprint
from app.models.sync_log import SyncLog
from app.models.work_item import WorkItem, WorkItemRevision
from app.services.azure_devops import (
    FIELD_ACCEPTANCE_CRITERIA,
    FIELD_AREA_PATH,
    FIELD_ASSIGNED_TO,
    FIELD_CREATED_BY,
    FIELD_CREATED_DATE,
    FIELD_DESCRIPTION,
    FIELD_ORIGINAL_ESTIMATE,
    FIELD_PRIORITY,
    FIELD_STORY_POINTS,
    AzureDevOpsClient,
    AzureDevOpsError,
    AzureRevision,
    AzureWorkItem,
)
from app.services.effort_history import (
    LiveEffort,
    apply_effort_history,
    apply_live_effort,
    needs_history,
    reconcile_effort,
)
from app.utils.retry import BackoffPolicy, is_transient_db_error, retry_async

T = TypeVar("T")

HistoryOutcome = Literal["updated", "unchanged", "skipped"]

# Failures that mean "Azure could not give us this item's revisions"
REVISION_FETCH_ERRORS = (AzureDevOpsError, httpx.HTTPError, ValidationError)
REMOVED_STATE = "removed"


class ProjectRef(NamedTuple):
    id: str
    name: str


@dataclass
class SyncSummary:
    sync_type: str
    projects: int = 0
    sprints: int = 0
    evaluated: int = 0
    updated_basic: int = 0
    updated_hierarchy: int = 0
    updated_history: int = 0
    history_skipped: int = 0
    revisions_stored: int = 0
    errors: int = 0
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    since: Optional[str] = None

    @property
    def items_updated(self) -> int:
        return self.updated_basic + self.updated_hierarchy + self.updated_history

    def record_error(self, source: str, exc: BaseException) -> None:
        self.errors += 1
        # Keep the log row bounded on runs with many failures
        if len(self.error_details) < 50:
            self.error_details.append({"source": source, "message": str(exc)})

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["items_updated"] = self.items_updated
        return data


def _diff_fields(previous: Optional[Dict[str, Any]], current: Dict[str, Any]) -> List[str]:
    if previous is None:
        return sorted(current.keys())
    keys = set(previous) | set(current)
    return sorted(k for k in keys if previous.get(k) != current.get(k))


class WorkItemSyncService:
    def __init__(
        self,
        client: AzureDevOpsClient,
        session: AsyncSession,
        item_batch_size: Optional[int] = None,
        project_names: Optional[Sequence[str]] = None,
    ):
        self.client = client
        self.session = session
        self.item_batch_size = max(1, item_batch_size or settings.SYNC_ITEM_BATCH_SIZE)
        names = project_names if project_names is not None else _configured_projects()
        self.project_names = {n.strip().lower() for n in names if n and n.strip()}
        self._project_ids: Dict[str, str] = {}
        self._sprint_ids: Dict[str, str] = {}

    # Reference data

    def _in_scope(self, project_name: str) -> bool:
        return not self.project_names or project_name.lower() in self.project_names

    async def _load_lookups(self) -> None:
        projects = (await self.session.execute(select(Project))).scalars().all()
        self._project_ids = {p.name.lower(): p.id for p in projects}
        sprints = (await self.session.execute(select(Sprint))).scalars().all()
        self._sprint_ids = {s.path: s.id for s in sprints}

    async def sync_projects(self) -> List[Project]:
        synced: List[Project] = []
        for azure_project in await self.client.list_projects():
            if not self._in_scope(azure_project.name):
                continue
            project = await self.session.get(Project, azure_project.id)
            if project is None:
                project = Project(id=azure_project.id, name=azure_project.name)
            project.name = azure_project.name
            project.description = azure_project.description
            project.url = azure_project.url
            project.state = azure_project.state
            project.last_update_time = azure_project.last_update_time
            project.synced_at = datetime.now(timezone.utc)
            self.session.add(project)
            synced.append(project)
        await self.session.commit()
        self._project_ids.update({p.name.lower(): p.id for p in synced})
        app_logger.info(f"Synced {len(synced)} projects")
        return synced

    async def sync_sprints(self, project: ProjectRef) -> List[str]:
        """Upsert the team iterations of ``project``. Returns their paths."""
        paths: List[str] = []
        for iteration in await self.client.list_iterations(project.name):
            sprint = await self.session.get(Sprint, iteration.id)
            if sprint is None:
                sprint = Sprint(id=iteration.id, project_id=project.id, name=iteration.name, path=iteration.path)
            sprint.project_id = project.id
            sprint.name = iteration.name
            sprint.path = iteration.path
            sprint.start_date = iteration.attributes.start_date
            sprint.finish_date = iteration.attributes.finish_date
            sprint.time_frame = iteration.attributes.time_frame
            self.session.add(sprint)
            self._sprint_ids[iteration.path] = iteration.id
            paths.append(iteration.path)
        await self.session.commit()
        app_logger.info(f"Synced {len(paths)} sprints for project {project.name}")
        return paths

    async def _refresh_reference_data(self, summary: SyncSummary) -> Dict[ProjectRef, List[str]]:
        """Sync projects and their sprints; returns sprint paths per project."""
        await self._load_lookups()
        projects = [ProjectRef(p.id, p.name) for p in await self.sync_projects()]
        summary.projects = len(projects)
        sprint_paths: Dict[ProjectRef, List[str]] = {}
        for project in projects:
            try:
                sprint_paths[project] = await self.sync_sprints(project)
                summary.sprints += len(sprint_paths[project])
            except AzureDevOpsError as exc:
                await self.session.rollback()
                sprint_paths[project] = []
                app_logger.warning(f"Could not sync sprints for {project.name}: {exc}")
                summary.record_error(f"sprints:{project.name}", exc)
        return sprint_paths

    # Work items

    async def upsert_work_item(self, azure_item: AzureWorkItem) -> WorkItem:
        item = await self.session.get(WorkItem, azure_item.id)
        if item is None:
            item = WorkItem(id=azure_item.id)

        project_name = azure_item.team_project
        if project_name:
            item.project_id = self._project_ids.get(project_name.lower(), item.project_id)
        if azure_item.iteration_path:
            item.sprint_id = self._sprint_ids.get(azure_item.iteration_path)

        assigned = azure_item.identity(FIELD_ASSIGNED_TO)
        created_by = azure_item.identity(FIELD_CREATED_BY)
        changed_by = azure_item.identity("System.ChangedBy")
        priority = azure_item.number(FIELD_PRIORITY)

        item.type = azure_item.work_item_type
        item.state = azure_item.state or ""
        item.is_removed = item.state.lower() == REMOVED_STATE
        item.title = azure_item.title
        item.description = azure_item.text(FIELD_DESCRIPTION)
        item.acceptance_criteria = azure_item.text(FIELD_ACCEPTANCE_CRITERIA)
        item.assigned_to = assigned.label if assigned else None
        item.area_path = azure_item.text(FIELD_AREA_PATH)
        item.iteration_path = azure_item.iteration_path
        item.tags = azure_item.tags
        item.story_points = azure_item.number(FIELD_STORY_POINTS)
        item.priority = int(priority) if priority is not None else None
        item.original_estimate = azure_item.number(FIELD_ORIGINAL_ESTIMATE)
        item.created_date = azure_item.date(FIELD_CREATED_DATE)
        item.changed_date = azure_item.changed_date
        # Scrum "Done" items carry no ClosedDate; keep a backfilled value
        if azure_item.closed_date is not None:
            item.closed_date = azure_item.closed_date
        item.created_by = created_by.label if created_by else None
        item.changed_by = changed_by.label if changed_by else None
        item.url = azure_item.url
        item.rev = azure_item.rev

        apply_live_effort(item, azure_item.remaining_work, azure_item.completed_work, azure_item.state)

        item.synced_at = datetime.now(timezone.utc)
        self.session.add(item)
        return item

    def link_parent(self, item: WorkItem, azure_item: AzureWorkItem) -> bool:
        parent_id = azure_item.parent_id
        if parent_id is None or parent_id == item.parent_id:
            return False
        item.parent_id = parent_id
        return True

    async def store_revisions(self, work_item_id: int, revisions: Iterable[AzureRevision]) -> int:
        """Upsert revisions keyed on (work_item_id, rev). Returns rows written."""
        result = await self.session.execute(
            select(WorkItemRevision).where(WorkItemRevision.work_item_id == work_item_id)
        )
        existing = {row.rev: row for row in result.scalars().all()}

        written = 0
        previous_fields: Optional[Dict[str, Any]] = None
        for revision in sorted(revisions, key=lambda r: r.rev):
            changed = _diff_fields(previous_fields, revision.fields)
            previous_fields = revision.fields
            row = existing.get(revision.rev)
            if row is None:
                row = WorkItemRevision(work_item_id=work_item_id, rev=revision.rev)
            row.changed_fields = changed
            row.changes = {k: revision.fields.get(k) for k in changed}
            row.revised_date = revision.revised_date
            row.revised_by = revision.revised_by
            self.session.add(row)
            written += 1
        return written

    async def recover_history(
        self,
        work_item_id: int,
        item: Optional[WorkItem] = None,
        current: Optional[AzureWorkItem] = None,
        summary: Optional[SyncSummary] = None,
    ) -> HistoryOutcome:
        """Re-derive effort fields for one item from its Azure revision history.

        A failed revision fetch skips the item without retrying. The caller
        commits.
        """
        try:
            revisions = await self.client.get_revisions(work_item_id)
        except REVISION_FETCH_ERRORS as exc:
            app_logger.warning(f"Skipping history for work item {work_item_id}: {exc}")
            if summary is not None:
                summary.history_skipped += 1
            return "skipped"

        stored = await self.store_revisions(work_item_id, revisions)
        if summary is not None:
            summary.revisions_stored += stored

        if current is None:
            current = await self.client.get_work_item(work_item_id)
        if item is None:
            item = await self.session.get(WorkItem, work_item_id)
        if item is None:
            item = await self.upsert_work_item(current)

        history = reconcile_effort(LiveEffort.from_work_item(current), revisions)
        changed = apply_effort_history(item, history)
        self.session.add(item)
        return "updated" if changed else "unchanged"

    async def _process_item(self, azure_item: AzureWorkItem, summary: SyncSummary) -> None:
        summary.evaluated += 1
        try:
            item = await self.upsert_work_item(azure_item)
            hierarchy_changed = self.link_parent(item, azure_item)
            outcome = None
            if needs_history(item):
                outcome = await self.recover_history(item.id, item=item, current=azure_item, summary=summary)
            await self.session.commit()
        except Exception as exc:
            await self.session.rollback()
            app_logger.error(f"Error processing work item {azure_item.id}: {exc}")
            summary.record_error(f"workitem:{azure_item.id}", exc)
            return

        summary.updated_basic += 1
        if hierarchy_changed:
            summary.updated_hierarchy += 1
        if outcome == "updated":
            summary.updated_history += 1

    async def process_ids(self, ids: Sequence[int], summary: SyncSummary) -> None:
        for start in range(0, len(ids), self.item_batch_size):
            batch = list(ids[start : start + self.item_batch_size])
            try:
                azure_items = await self.client.get_work_items(batch)
            except REVISION_FETCH_ERRORS as exc:
                app_logger.error(f"Failed to fetch work item batch starting at {batch[0]}: {exc}")
                summary.record_error(f"batch:{batch[0]}-{batch[-1]}", exc)
                continue
            for azure_item in azure_items:
                await self._process_item(azure_item, summary)
            app_logger.info(
                f"Processed batch {start // self.item_batch_size + 1} "
                f"({min(start + len(batch), len(ids))}/{len(ids)} items)"
            )

    # Entrypoints

    async def _start_log(self, sync_type: str) -> SyncLog:
        log = SyncLog(sync_type=sync_type, status="running")
        self.session.add(log)
        await self.session.commit()
        return log

    async def _finish_log(
        self,
        log_id: UUID,
        started_at: datetime,
        summary: SyncSummary,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        # Re-load: per-item rollbacks expire every instance in the session
        log = await self.session.get(SyncLog, log_id)
        if log is None:
            return
        now = datetime.now(timezone.utc)
        log.status = status
        log.completed_at = now
        log.duration = int((now - started_at).total_seconds())
        log.items_processed = summary.evaluated
        log.items_updated = summary.items_updated
        log.meta = summary.as_dict()
        log.error = error
        self.session.add(log)
        await self.session.commit()

    async def _run(self, sync_type: str, body: Callable[[SyncSummary], Awaitable[None]]) -> SyncSummary:
        started = time.time()
        started_at = datetime.now(timezone.utc)
        summary = SyncSummary(sync_type=sync_type)
        log = await self._start_log(sync_type)
        log_id = log.id
        try:
            await body(summary)
        except Exception as exc:
            await self.session.rollback()
            app_logger.error(f"{sync_type} failed: {exc}")
            try:
                await self._finish_log(log_id, started_at, summary, "failed", error=str(exc))
            except Exception as log_exc:
                app_logger.error(f"Could not record failed {sync_type} log: {log_exc}")
            raise
        await self._finish_log(log_id, started_at, summary, "completed")
        app_logger.info(
            f"{sync_type} completed - evaluated={summary.evaluated} basic={summary.updated_basic} "
            f"hierarchy={summary.updated_hierarchy} history={summary.updated_history} errors={summary.errors}"
        )
        log_performance(sync_type, time.time() - started, evaluated=summary.evaluated)
        return summary

    async def full_sync(self) -> SyncSummary:
        async def body(summary: SyncSummary) -> None:
            sprint_paths = await self._refresh_reference_data(summary)
            for project, paths in sprint_paths.items():
                for path in paths:
                    ids = await self.client.work_item_ids_for_iteration(path, project.name)
                    await self.process_ids(ids, summary)

        return await self._run("full_sync", body)

    async def last_completed_incremental(self) -> Optional[datetime]:
        result = await self.session.execute(
            select(SyncLog)
            .where(SyncLog.status == "completed")
            .where(or_(SyncLog.sync_type == "incremental_sync", SyncLog.sync_type == "smart_sync"))
            .order_by(SyncLog.completed_at.desc())
            .limit(1)
        )
        last = result.scalars().first()
        return last.completed_at if last else None

    async def incremental_sync(self, since: Optional[datetime] = None) -> SyncSummary:
        if since is None:
            since = await self.last_completed_incremental()
        if since is None:
            since = datetime.now(timezone.utc) - timedelta(hours=settings.SYNC_DEFAULT_LOOKBACK_HOURS)

        async def body(summary: SyncSummary) -> None:
            summary.since = since.isoformat()
            sprint_paths = await self._refresh_reference_data(summary)
            ids: List[int] = []
            if self.project_names:
                for project in sprint_paths:
                    ids.extend(await self.client.changed_work_item_ids(since, project.name))
            else:
                ids = await self.client.changed_work_item_ids(since)
            ids = list(dict.fromkeys(ids))
            app_logger.info(f"Found {len(ids)} work items changed since {since.date().isoformat()}")
            await self.process_ids(ids, summary)

        return await self._run("smart_sync", body)

    async def backfill_effort(self, days_back: Optional[int] = None, only_missing: bool = False) -> SyncSummary:
        days = days_back if days_back is not None else settings.BACKFILL_DAYS_BACK
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        async def body(summary: SyncSummary) -> None:
            await self._load_lookups()
            query = select(WorkItem).where(WorkItem.changed_date >= cutoff).order_by(WorkItem.id)
            if self.project_names:
                scoped = [pid for name, pid in self._project_ids.items() if name in self.project_names]
                query = query.where(WorkItem.project_id.in_(scoped))
            items = (await self.session.execute(query)).scalars().all()
            targets = [item.id for item in items if not only_missing or needs_history(item)]
            app_logger.info(f"Backfilling effort history for {len(targets)} work items (last {days} days)")

            for work_item_id in targets:
                summary.evaluated += 1
                try:
                    outcome = await self.recover_history(work_item_id, summary=summary)
                    if outcome == "updated":
                        summary.updated_history += 1
                    await self.session.commit()
                except Exception as exc:
                    await self.session.rollback()
                    app_logger.error(f"Error backfilling work item {work_item_id}: {exc}")
                    summary.record_error(f"workitem:{work_item_id}", exc)

        return await self._run("effort_backfill", body)


def _configured_projects() -> List[str]:
    names = [n.strip() for n in settings.TARGET_PROJECTS.split(",") if n.strip()]
    if not names and settings.AZURE_DEVOPS_PROJECT:
        names = [settings.AZURE_DEVOPS_PROJECT]
    return names


async def run_with_db_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    policy: Optional[BackoffPolicy] = None,
) -> T:
    """Retry a whole sync run on transient database errors (connection level only)."""
    policy = policy or BackoffPolicy.fixed(settings.DB_RETRY_DELAYS_MS)
    return await retry_async(operation, policy, retry_on=is_transient_db_error, label=label)


async def run_sync(
    kind: Literal["full", "incremental", "backfill"],
    days_back: Optional[int] = None,
    project_names: Optional[Sequence[str]] = None,
    only_missing: bool = False,
) -> SyncSummary:
    """Open a session and Azure client per attempt and run one sync entrypoint."""
    from app.db.db import db_session

    async def attempt() -> SyncSummary:
        async with db_session() as session:
            async with AzureDevOpsClient.from_settings() as client:
                service = WorkItemSyncService(client, session, project_names=project_names)
                if kind == "full":
                    return await service.full_sync()
                if kind == "incremental":
                    return await service.incremental_sync()
                return await service.backfill_effort(days_back, only_missing=only_missing)

    return await run_with_db_retry(attempt, label=f"{kind} sync")
