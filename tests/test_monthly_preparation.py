"""Tests for monthly preparation: period helpers, restart rules and the collection steps."""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import List

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, select

import app.models  # noqa: F401  registers tables
from app.api.rda.schemas import ChunkStats, MonthlyPrepareRequest, PeriodInput
from app.models.document import Document
from app.models.monthly import MonthlyPreparation, MonthlySnapshot
from app.models.project import Project, Sprint
from app.models.wiki import WikiPage
from app.models.work_item import WorkItem
from app.services.azure_devops import AzureDevOpsError
from app.services.embedding import EmbeddingResult
from app.services.monthly_preparation import (
    MonthlyPreparationService,
    build_taskboard_url,
    parse_period_key,
    period_key,
    period_range,
    preparation_action,
    strip_html,
    work_item_text,
)
from app.utils.retry import BackoffPolicy

ORG = "https://dev.azure.com/acme"
SPRINT_PATH = "Portal\\Sprint 1"


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestPeriodHelpers:
    def test_period_key(self):
        assert period_key(3, 2025) == "2025-03"
        with pytest.raises(ValueError):
            period_key(13, 2025)

    @pytest.mark.parametrize("key", ["2025-3", "2025-13", "2025-00", "25-03", "", "2025-03-01"])
    def test_invalid_period_keys(self, key):
        with pytest.raises(ValueError):
            parse_period_key(key)

    def test_period_range(self):
        assert period_range("2025-03") == (utc(2025, 3, 1), utc(2025, 4, 1))
        assert period_range("2024-12") == (utc(2024, 12, 1), utc(2025, 1, 1))

    def test_strip_html(self):
        assert strip_html("<div><p>Fazer <b>login</b></p>\n<br/>com SSO</div>") == "Fazer login com SSO"
        assert strip_html(None) == ""

    def test_taskboard_url(self):
        assert (
            build_taskboard_url(ORG + "/", "Portal Cliente", "Sprint 1")
            == "https://dev.azure.com/acme/Portal%20Cliente/Portal%20Cliente/_sprints/taskboard/Sprint%201"
        )
        assert build_taskboard_url("", "Portal", "Sprint 1") == ""

    def test_work_item_text(self):
        item = WorkItem(id=7, type="Bug", state="Active", title="Erro no login", description="<p>Falha</p>")

        text = work_item_text(item)

        assert text.splitlines()[0] == "Work Item 7"
        assert "Responsavel: Nao informado" in text
        assert "Descricao: Falha" in text


class TestPreparationAction:
    NOW = utc(2025, 4, 1, 12, 0)

    def test_no_row_starts(self):
        assert preparation_action(None, force=False, now=self.NOW) == "start"
        assert preparation_action(None, force=True, now=self.NOW) == "start"

    def test_fresh_collecting_row_is_running(self):
        row = MonthlyPreparation(project_id="p", period_key="2025-03", updated_at=self.NOW - timedelta(minutes=5))

        assert preparation_action(row, force=False, now=self.NOW, stale_minutes=15) == "running"

    def test_forced_collecting_row_restarts(self):
        fresh = MonthlyPreparation(project_id="p", period_key="2025-03", updated_at=self.NOW - timedelta(minutes=5))
        stale = MonthlyPreparation(project_id="p", period_key="2025-03", updated_at=self.NOW - timedelta(hours=2))

        assert preparation_action(fresh, force=True, now=self.NOW, stale_minutes=15) == "restart"
        assert preparation_action(stale, force=True, now=self.NOW, stale_minutes=15) == "restart"

    def test_stale_collecting_row_restarts(self):
        row = MonthlyPreparation(project_id="p", period_key="2025-03", updated_at=self.NOW - timedelta(minutes=16))

        assert preparation_action(row, force=False, now=self.NOW, stale_minutes=15) == "restart"

    def test_naive_timestamps_are_treated_as_utc(self):
        row = MonthlyPreparation(
            project_id="p", period_key="2025-03", updated_at=(self.NOW - timedelta(minutes=1)).replace(tzinfo=None)
        )

        assert preparation_action(row, force=False, now=self.NOW) == "running"

    def test_ready_row_is_kept_unless_forced(self):
        row = MonthlyPreparation(project_id="p", period_key="2025-03", status="ready", updated_at=self.NOW)

        assert preparation_action(row, force=False, now=self.NOW) == "ready"
        assert preparation_action(row, force=True, now=self.NOW) == "restart"

    def test_failed_row_starts_again(self):
        row = MonthlyPreparation(project_id="p", period_key="2025-03", status="failed", updated_at=self.NOW)

        assert preparation_action(row, force=False, now=self.NOW) == "start"
        assert preparation_action(row, force=True, now=self.NOW) == "restart"



class FakeChunkStore:
    def __init__(self):
        self.inserted = []
        self.deleted = []

    async def delete_period_chunks(self, project_id, source_type, key):
        self.deleted.append((project_id, source_type, key))
        return 0

    async def delete_by_wiki_page(self, wiki_page_id):
        self.deleted.append(("wiki", wiki_page_id))
        return 0

    async def insert_chunks(self, chunks):
        self.inserted.extend(chunks)
        return len(chunks)

    async def stats(self, project_id):
        return ChunkStats(total_chunks=len(self.inserted), total_tokens=sum(c.token_count for c in self.inserted))

    def by_source(self, source_type) -> List:
        return [c for c in self.inserted if c.source_type == source_type]


class FakeEmbedder:
    def __init__(self, fail: bool = False):
        self.fail = fail

    async def embed_batch(self, texts, batch_size=None):
        if self.fail:
            raise RuntimeError("embedding provider down")
        return [EmbeddingResult(text=t, embedding=[0.0, 1.0], token_count=1) for t in texts]


@pytest_asyncio.fixture
async def session(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'monthly.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        session.add(Project(id="p-1", name="Portal Cliente"))
        session.add(
            Sprint(
                id="it-1",
                project_id="p-1",
                name="Sprint 1",
                path=SPRINT_PATH,
                start_date=utc(2025, 3, 3),
                finish_date=utc(2025, 3, 14),
            )
        )
        session.add(
            Sprint(
                id="it-0",
                project_id="p-1",
                name="Sprint 0",
                path="Portal\\Sprint 0",
                start_date=utc(2025, 1, 6),
                finish_date=utc(2025, 1, 17),
            )
        )
        session.add(
            WorkItem(
                id=1,
                project_id="p-1",
                type="User Story",
                state="Done",
                title="Login com SSO",
                iteration_path=SPRINT_PATH,
                story_points=3,
                initial_remaining_work=8,
                remaining_work=0,
                created_date=utc(2025, 3, 3),
                changed_date=utc(2025, 3, 10),
                closed_date=utc(2025, 3, 10),
            )
        )
        session.add(
            WorkItem(
                id=2,
                project_id="p-1",
                type="Task",
                state="Active",
                title="Tela de pagamento",
                iteration_path=SPRINT_PATH,
                story_points=5,
                initial_remaining_work=6,
                remaining_work=4,
                created_date=utc(2025, 2, 20),
                changed_date=utc(2025, 3, 12),
            )
        )
        session.add(
            WorkItem(
                id=3,
                project_id="p-1",
                state="Closed",
                title="Item antigo",
                iteration_path="Portal\\Sprint 0",
                created_date=utc(2025, 1, 6),
                changed_date=utc(2025, 1, 15),
            )
        )
        session.add(Document(project_id="p-1", file_name="escopo.md", content_hash="abc", status="indexed"))
        await session.commit()
        yield session
    await engine.dispose()


def request(**overrides) -> MonthlyPrepareRequest:
    data = dict(
        project_id="p-1",
        period=PeriodInput(month=3, year=2025),
        include_operational_sync=False,
    )
    data.update(overrides)
    return MonthlyPrepareRequest(**data)


class FakeWikiSyncer:
    """Stands in for the Azure wiki mirror by upserting fixed pages."""

    def __init__(self, pages=None, fail: bool = False):
        self.pages = pages if pages is not None else {}
        self.fail = fail
        self.calls = []

    async def __call__(self, session, project_id, project_name):
        self.calls.append((project_id, project_name))
        if self.fail:
            raise AzureDevOpsError("Wiki not reachable", status_code=503)
        for path, content in self.pages.items():
            query = select(WikiPage).where(WikiPage.project_id == project_id).where(WikiPage.path == path)
            page = (await session.execute(query)).scalars().first()
            if page is None:
                page = WikiPage(project_id=project_id, wiki_id="w-1", path=path, title=path.rsplit("/", 1)[-1])
            if page.content != content:
                page.content = content
                page.chunked = False
            session.add(page)
        await session.commit()
        return SimpleNamespace(pages_synced=len(self.pages))


def make_service(session, store=None, embedder=None, sync_runner=None, wiki_syncer=None) -> MonthlyPreparationService:
    return MonthlyPreparationService(
        session,
        embedder=embedder or FakeEmbedder(),
        store=store or FakeChunkStore(),
        sync_runner=sync_runner,
        wiki_syncer=wiki_syncer or FakeWikiSyncer(),
        step_policy=BackoffPolicy.fixed([0]),
        org_url=ORG,
    )


class TestMonthlyPreparationService:
    @pytest.mark.asyncio
    async def test_prepare_collects_period_material(self, session):
        store = FakeChunkStore()
        progress = []
        service = make_service(session, store=store)

        status = await service.prepare(request(), on_progress=progress.append)

        assert status.status == "ready"
        assert status.errors == []
        assert set(status.steps.values()) == {"done"}
        assert status.counters["workitems_total"] == 2
        assert status.counters["workitems_new"] == 1
        assert status.counters["workitems_closed"] == 1
        assert status.counters["workitems_active"] == 1
        assert status.counters["sprints"] == 1
        assert status.counters["documents"] == 1
        assert status.counters["chunks_created"] == 3

        assert progress[0].status == "collecting"
        assert progress[-1].status == "ready"
        assert any(p.steps.get("workitems") == "collecting" for p in progress)

        workitem_chunks = store.by_source("workitem")
        assert sorted(c.metadata["workItemId"] for c in workitem_chunks) == [1, 2]
        assert all(c.metadata["periodKey"] == "2025-03" for c in store.inserted)
        assert ("p-1", "workitem", "2025-03") in store.deleted
        assert ("p-1", "sprint", "2025-03") in store.deleted

        sprint_text = store.by_source("sprint")[0].content
        assert "Velocity (%): 37.5" in sprint_text
        assert "Story Points: 3/8" in sprint_text

    @pytest.mark.asyncio
    async def test_sprint_snapshots(self, session):
        service = make_service(session)

        await service.prepare(request())
        snapshots = await service.list_snapshots("p-1", "2025-03")

        assert len(snapshots) == 1
        snapshot = snapshots[0]
        assert snapshot.sprint_name == "Sprint 1"
        assert (snapshot.total_items, snapshot.completed_items, snapshot.active_items) == (2, 1, 1)
        assert snapshot.velocity == 37.5
        assert snapshot.planned_hours == 14
        assert snapshot.remaining_hours == 4
        assert snapshot.taskboard_url == f"{ORG}/Portal%20Cliente/Portal%20Cliente/_sprints/taskboard/Sprint%201"

    @pytest.mark.asyncio
    async def test_rerun_replaces_snapshots(self, session):
        service = make_service(session)

        await service.prepare(request())
        await service.prepare(request())

        rows = (await session.execute(select(MonthlySnapshot))).scalars().all()
        preparations = (await session.execute(select(MonthlyPreparation))).scalars().all()
        assert len(rows) == 1
        assert len(preparations) == 1

    @pytest.mark.asyncio
    async def test_critical_step_failure_marks_run_failed(self, session):
        service = make_service(session, embedder=FakeEmbedder(fail=True))

        status = await service.prepare(request())

        assert status.status == "failed"
        assert status.steps["workitems"] == "error"
        assert status.steps["sprints"] == "error"
        assert status.steps["documents"] == "done"
        assert {e.source for e in status.errors} == {"workitems", "sprints"}
        assert await service.list_snapshots("p-1", "2025-03") == []

    @pytest.mark.asyncio
    async def test_operational_sync_failure_is_not_critical(self, session):
        async def failing_sync(mode):
            raise RuntimeError("Azure unreachable")

        service = make_service(session, sync_runner=failing_sync)

        status = await service.prepare(request(include_operational_sync=True, sync_mode="incremental"))

        assert status.status == "ready"
        assert status.steps["operational_sync"] == "error"
        assert [e.source for e in status.errors] == ["operational_sync"]

    @pytest.mark.asyncio
    async def test_operational_sync_runs_requested_mode(self, session):
        modes = []

        async def fake_sync(mode):
            modes.append(mode)

        service = make_service(session, sync_runner=fake_sync)

        await service.prepare(request(include_operational_sync=True, sync_mode="full"))

        assert modes == ["full"]

    @pytest.mark.asyncio
    async def test_delete_preparation(self, session):
        store = FakeChunkStore()
        service = make_service(session, store=store)
        await service.prepare(request())

        deleted = await service.delete_preparation("p-1", "2025-03")

        assert deleted["snapshots"] == 1
        assert deleted["preparations"] == 1
        assert await service.get_status("p-1", "2025-03") is None

    @pytest.mark.asyncio
    async def test_removed_items_are_left_out(self, session):
        session.add(
            WorkItem(
                id=4,
                project_id="p-1",
                type="Task",
                state="Removed",
                is_removed=True,
                title="Duplicado",
                iteration_path=SPRINT_PATH,
                story_points=8,
                created_date=utc(2025, 3, 5),
                changed_date=utc(2025, 3, 6),
            )
        )
        await session.commit()
        store = FakeChunkStore()
        service = make_service(session, store=store)

        status = await service.prepare(request())

        assert status.counters["workitems_total"] == 2
        assert sorted(c.metadata["workItemId"] for c in store.by_source("workitem")) == [1, 2]
        snapshot = (await service.list_snapshots("p-1", "2025-03"))[0]
        assert snapshot.total_items == 2
        assert snapshot.planned_story_points == 8


WIKI_PATH = "/Portal/Visao-Geral"
WIKI_BODY = "Visao geral do portal de clientes e dos seus modulos de pagamento."


class TestWikiStep:
    @pytest.mark.asyncio
    async def test_wiki_pages_are_indexed(self, session):
        store = FakeChunkStore()
        syncer = FakeWikiSyncer(pages={WIKI_PATH: WIKI_BODY})
        service = make_service(session, store=store, wiki_syncer=syncer)

        status = await service.prepare(request())

        assert status.status == "ready"
        assert status.steps["wiki"] == "done"
        assert syncer.calls == [("p-1", "Portal Cliente")]
        assert status.counters["wiki_pages_new"] == 1
        assert status.counters["wiki_chunks"] == 1
        assert status.counters["chunks_created"] == 4

        chunk = store.by_source("wiki")[0]
        page = (await session.execute(select(WikiPage))).scalars().one()
        assert chunk.wiki_page_id == page.id
        assert chunk.metadata["wikiPath"] == WIKI_PATH
        assert page.chunked is True
        assert page.chunk_count == 1

    @pytest.mark.asyncio
    async def test_unchanged_pages_are_not_reindexed_unless_forced(self, session):
        store = FakeChunkStore()
        service = make_service(session, store=store, wiki_syncer=FakeWikiSyncer(pages={WIKI_PATH: WIKI_BODY}))
        await service.prepare(request())

        second = await service.prepare(request())
        forced = await service.prepare(request(force_reprocess_chunks=True))

        assert second.counters["wiki_pages_unchanged"] == 1
        assert second.counters["wiki_chunks"] == 0
        assert forced.counters["wiki_pages_updated"] == 1
        assert len(store.by_source("wiki")) == 2
        assert [d for d in store.deleted if d[0] == "wiki"] == [("wiki", store.by_source("wiki")[0].wiki_page_id)] * 2

    @pytest.mark.asyncio
    async def test_wiki_failure_fails_the_run(self, session):
        service = make_service(session, wiki_syncer=FakeWikiSyncer(fail=True))

        status = await service.prepare(request())

        assert status.status == "failed"
        assert status.steps["wiki"] == "error"
        assert status.steps["documents"] == "done"
        assert [e.source for e in status.errors] == ["wiki"]

    @pytest.mark.asyncio
    async def test_wiki_can_be_skipped(self, session):
        syncer = FakeWikiSyncer(pages={WIKI_PATH: WIKI_BODY})
        service = make_service(session, wiki_syncer=syncer)

        status = await service.prepare(request(include_wiki=False))

        assert status.status == "ready"
        assert status.steps["wiki"] == "done"
        assert syncer.calls == []
        assert "wiki_chunks" not in status.counters
