"""Models module - imports all models for SQLModel registration."""

# Import all models so SQLModel can register them
from app.models.project import Project, Sprint
from app.models.work_item import WorkItem, WorkItemRevision
from app.models.document import Document, DocumentChunk
from app.models.sync_log import SyncLog
from app.models.monthly import MonthlyPreparation, MonthlySnapshot
from app.models.wiki import WikiPage

__all__ = [
    "Project",
    "Sprint",
    "WorkItem",
    "WorkItemRevision",
    "Document",
    "DocumentChunk",
    "SyncLog",
    "MonthlyPreparation",
    "MonthlySnapshot",
    "WikiPage",
]
