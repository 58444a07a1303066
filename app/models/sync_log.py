"""Sync run audit trail."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, Text
from sqlmodel import Field, SQLModel


class SyncLog(SQLModel, table=True):
    """One row per sync run. Incremental runs start from the last completed one."""

    __tablename__ = "sync_logs"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    sync_type: str = Field(max_length=50, index=True)
    status: str = Field(default="running", max_length=20, index=True)
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), index=True))
    duration: Optional[int] = Field(default=None, description="Seconds")
    items_processed: int = Field(default=0)
    items_updated: int = Field(default=0)
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    error: Optional[str] = Field(default=None, sa_column=Column(Text))
