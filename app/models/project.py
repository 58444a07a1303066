"""Azure DevOps project and sprint (iteration) models."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, Text
from sqlmodel import Field, SQLModel


class Project(SQLModel, table=True):
    """Azure DevOps team project mirrored locally."""

    __tablename__ = "projects"

    id: str = Field(primary_key=True, max_length=64, description="Azure project GUID")
    name: str = Field(max_length=255, index=True, unique=True)
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    url: Optional[str] = Field(default=None, max_length=512)
    state: Optional[str] = Field(default=None, max_length=50)
    last_update_time: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    synced_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )


class Sprint(SQLModel, table=True):
    """Team iteration. ``path`` matches the work item ``System.IterationPath``."""

    __tablename__ = "sprints"

    id: str = Field(primary_key=True, max_length=64, description="Azure iteration GUID")
    project_id: str = Field(foreign_key="projects.id", index=True, max_length=64)
    name: str = Field(max_length=255)
    path: str = Field(max_length=512, index=True)
    start_date: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finish_date: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    time_frame: Optional[str] = Field(default=None, max_length=20, description="past, current or future")
