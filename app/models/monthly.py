"""Monthly report preparation state and sprint snapshots."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class MonthlyPreparation(SQLModel, table=True):
    """Durable status of a (project, period) preparation run."""

    __tablename__ = "monthly_preparations"
    __table_args__ = (UniqueConstraint("project_id", "period_key", name="uq_monthly_preparations_project_period"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    project_id: str = Field(index=True, max_length=64)
    period_key: str = Field(max_length=7, index=True)
    status: str = Field(default="collecting", max_length=20)
    steps: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    counters: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON))
    errors: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    completed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )


class MonthlySnapshot(SQLModel, table=True):
    """Sprint metrics frozen at preparation time."""

    __tablename__ = "monthly_snapshots"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    project_id: str = Field(index=True, max_length=64)
    period_key: str = Field(max_length=7, index=True)
    sprint_id: Optional[str] = Field(default=None, max_length=64)
    sprint_name: str = Field(max_length=255)
    start_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    finish_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    total_items: int = 0
    completed_items: int = 0
    active_items: int = 0
    planned_story_points: float = 0
    completed_story_points: float = 0
    velocity: float = 0
    planned_hours: float = 0
    remaining_hours: float = 0
    taskboard_url: Optional[str] = Field(default=None, max_length=1024)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
