"""
Progress cache for monthly preparation runs.

Entries are keyed by (project_id, period_key) and only back the status
polling UX; the durable state lives in ``monthly_preparations``. The store is
injected (see ``get_status_store``) so tests can swap in their own instance.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol, Tuple

from app.api.rda.schemas import MonthlyStatus
from app.config.logger import app_logger
from app.config.settings import settings

StatusKey = Tuple[str, str]


class StatusStore(Protocol):
    def get(self, project_id: str, period_key: str) -> Optional[MonthlyStatus]: ...

    def set(self, status: MonthlyStatus) -> None: ...

    def delete(self, project_id: str, period_key: str) -> None: ...


@dataclass
class _Entry:
    status: MonthlyStatus
    expires_at: datetime


class InMemoryStatusStore:
    """Thread-safe TTL map of MonthlyStatus objects."""

    def __init__(
        self,
        ttl_minutes: int = settings.MONTHLY_STATUS_TTL_MINUTES,
        max_entries: int = 1000,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._entries: Dict[StatusKey, _Entry] = {}
        self._lock = threading.RLock()
        self._ttl = timedelta(minutes=ttl_minutes)
        self._max_entries = max_entries
        self._clock = clock

    def get(self, project_id: str, period_key: str) -> Optional[MonthlyStatus]:
        key = (project_id, period_key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.status.model_copy(deep=True)

    def set(self, status: MonthlyStatus) -> None:
        key = (status.project_id, status.period_key)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict()
            self._entries[key] = _Entry(status=status.model_copy(deep=True), expires_at=self._clock() + self._ttl)

    def delete(self, project_id: str, period_key: str) -> None:
        with self._lock:
            self._entries.pop((project_id, period_key), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if len(self._entries) >= self._max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k].expires_at)
            del self._entries[oldest]
        app_logger.debug(f"Status store evicted entries; {len(self._entries)} remain")


_store = InMemoryStatusStore()


def get_status_store() -> StatusStore:
    """FastAPI dependency returning the process-wide status store."""
    return _store
