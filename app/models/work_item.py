"""Work item and work item revision models."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, BigInteger, Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class WorkItem(SQLModel, table=True):
    """Local copy of an Azure DevOps work item plus derived effort history.

    ``initial_remaining_work``, ``last_remaining_work`` and
    ``done_remaining_work`` are ratchets: once positive, sync passes never
    reset them to null or zero.
    """

    __tablename__ = "work_items"

    id: int = Field(
        sa_column=Column(BigInteger, primary_key=True, autoincrement=False),
        description="Azure work item id",
    )
    project_id: Optional[str] = Field(default=None, foreign_key="projects.id", index=True, max_length=64)
    sprint_id: Optional[str] = Field(default=None, foreign_key="sprints.id", index=True, max_length=64)
    parent_id: Optional[int] = Field(default=None, sa_column=Column(BigInteger, index=True))

    type: str = Field(default="Task", max_length=100)
    state: str = Field(default="", max_length=100, index=True)
    title: str = Field(default="", max_length=512)
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    acceptance_criteria: Optional[str] = Field(default=None, sa_column=Column(Text))
    assigned_to: Optional[str] = Field(default=None, max_length=255)
    area_path: Optional[str] = Field(default=None, max_length=512)
    iteration_path: Optional[str] = Field(default=None, max_length=512, index=True)
    tags: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    story_points: Optional[float] = None
    priority: Optional[int] = None

    # Live effort values from Azure
    remaining_work: float = Field(default=0)
    completed_work: float = Field(default=0)
    original_estimate: Optional[float] = None

    # Derived effort history
    initial_remaining_work: Optional[float] = None
    last_remaining_work: Optional[float] = None
    done_remaining_work: Optional[float] = None

    created_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    changed_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), index=True))
    closed_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_by: Optional[str] = Field(default=None, max_length=255)
    changed_by: Optional[str] = Field(default=None, max_length=255)
    url: Optional[str] = Field(default=None, max_length=512)
    rev: int = Field(default=0)
    is_removed: bool = Field(default=False)

    synced_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )


class WorkItemRevision(SQLModel, table=True):
    """Point-in-time diff of a work item. Upserted on (work_item_id, rev)."""

    __tablename__ = "work_item_revisions"
    __table_args__ = (UniqueConstraint("work_item_id", "rev", name="uq_work_item_revisions_item_rev"),)

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    work_item_id: int = Field(sa_column=Column(BigInteger, nullable=False, index=True))
    rev: int
    changed_fields: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    changes: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    revised_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    revised_by: str = Field(default="Unknown", max_length=255)
