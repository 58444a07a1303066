"""Tests for the monthly preparation progress cache."""

from datetime import datetime, timedelta, timezone

from app.api.rda.schemas import MonthlyStatus
from app.services.status_store import InMemoryStatusStore


class Clock:
    def __init__(self):
        self.now = datetime(2025, 4, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: int) -> None:
        self.now += timedelta(minutes=minutes)


def status(project_id: str = "proj-1", key: str = "2025-03", state: str = "collecting") -> MonthlyStatus:
    return MonthlyStatus(project_id=project_id, period_key=key, status=state, steps={"workitems": "pending"})


class TestInMemoryStatusStore:
    def test_set_and_get(self):
        store = InMemoryStatusStore(ttl_minutes=10)
        store.set(status())

        cached = store.get("proj-1", "2025-03")

        assert cached is not None
        assert cached.status == "collecting"
        assert store.get("proj-1", "2025-04") is None

    def test_entries_expire(self):
        clock = Clock()
        store = InMemoryStatusStore(ttl_minutes=10, clock=clock)
        store.set(status())

        clock.advance(11)

        assert store.get("proj-1", "2025-03") is None
        assert len(store) == 0

    def test_returned_status_is_a_copy(self):
        store = InMemoryStatusStore()
        store.set(status())

        store.get("proj-1", "2025-03").steps["workitems"] = "done"

        assert store.get("proj-1", "2025-03").steps["workitems"] == "pending"

    def test_overwrite_and_delete(self):
        store = InMemoryStatusStore()
        store.set(status())
        store.set(status(state="ready"))

        assert store.get("proj-1", "2025-03").status == "ready"

        store.delete("proj-1", "2025-03")
        store.delete("proj-1", "2025-03")
        assert store.get("proj-1", "2025-03") is None

    def test_bounded_size_evicts_oldest(self):
        clock = Clock()
        store = InMemoryStatusStore(ttl_minutes=60, max_entries=2, clock=clock)
        store.set(status(key="2025-01"))
        clock.advance(1)
        store.set(status(key="2025-02"))
        clock.advance(1)
        store.set(status(key="2025-03"))

        assert len(store) == 2
        assert store.get("proj-1", "2025-01") is None
        assert store.get("proj-1", "2025-03") is not None
