"""Schemas for the Azure DevOps sync endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from app.config.settings import settings


class SyncRequest(BaseModel):
    """Optional scoping for a sync run; defaults come from TARGET_PROJECTS."""

    projects: Optional[List[str]] = None


class BackfillRequest(SyncRequest):
    days_back: int = Field(default=settings.BACKFILL_DAYS_BACK, ge=1, le=3650)
    only_missing: bool = Field(
        default=False,
        description="Only re-derive items with no initial or last remaining work recorded",
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "days_back": 30,
                "projects": ["Portal Cliente"],
                "only_missing": False,
            }
        }
    }


class SyncTriggerResponse(BaseModel):
    sync_type: str
    accepted: bool
    message: str


class SyncLogEntry(BaseModel):
    id: UUID
    sync_type: str
    status: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[int] = None
    items_processed: int = 0
    items_updated: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
