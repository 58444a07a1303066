"""Azure DevOps wiki pages mirrored for retrieval."""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return str(uuid4())


class WikiPage(SQLModel, table=True):
    """Latest known content of a wiki page; ``chunked`` is reset whenever the content changes."""

    __tablename__ = "wiki_pages"
    __table_args__ = (UniqueConstraint("project_id", "path", name="uq_wiki_pages_project_path"),)

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    project_id: str = Field(index=True, max_length=64)
    wiki_id: str = Field(max_length=64)
    azure_id: Optional[int] = Field(default=None)
    path: str = Field(max_length=1024)
    title: str = Field(max_length=512)
    parent_path: Optional[str] = Field(default=None, max_length=1024)
    content: str = Field(default="", sa_column=Column(Text, nullable=False))
    chunked: bool = Field(default=False)
    chunk_count: int = Field(default=0, ge=0)
    last_sync_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
