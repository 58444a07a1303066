"""Uploaded documents and retrievable document chunks."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import JSON, Column, DateTime, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel

from app.config.settings import settings

SOURCE_TYPES = ("document", "wiki", "workitem", "sprint")

# JSONB on Postgres so metadata can be filtered with ->>, plain JSON elsewhere.
JSON_VARIANT = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class Document(SQLModel, table=True):
    """Source document uploaded for a project."""

    __tablename__ = "documents"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    project_id: str = Field(index=True, max_length=64)
    file_name: str = Field(max_length=255)
    content_hash: str = Field(max_length=128, index=True)
    chunk_count: int = Field(default=0, ge=0)
    status: str = Field(default="pending", max_length=20)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )


class DocumentChunk(SQLModel, table=True):
    """A bounded span of text with its embedding.

    On Postgres the table also carries a generated ``tsv`` column (see
    ``app.db.db.ensure_search_schema``) used by full-text search.
    """

    __tablename__ = "document_chunks"

    id: str = Field(default_factory=_new_id, primary_key=True, max_length=36)
    project_id: str = Field(index=True, max_length=64)
    source_type: str = Field(max_length=20, index=True)
    document_id: Optional[str] = Field(default=None, index=True, max_length=36)
    wiki_page_id: Optional[str] = Field(default=None, index=True, max_length=255)
    content: str = Field(sa_column=Column(Text, nullable=False))
    embedding: Optional[List[float]] = Field(
        default=None,
        sa_column=Column(Vector(settings.EMBEDDING_DIMENSIONS), nullable=True),
    )
    meta: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON_VARIANT))
    token_count: int = Field(default=0, ge=0)
    chunk_index: int = Field(default=0, ge=0)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True)),
    )
