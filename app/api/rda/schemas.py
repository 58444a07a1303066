"""Request and response schemas for RDA search, chunk and monthly preparation endpoints."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from app.config.settings import settings

SourceType = Literal["document", "wiki", "workitem", "sprint"]
MatchType = Literal["vector", "fulltext", "hybrid"]
SyncMode = Literal["none", "incremental", "full"]
PreparationStatus = Literal["collecting", "ready", "failed"]
StepStatus = Literal["pending", "collecting", "done", "error"]


class SearchResult(BaseModel):
    """A ranked chunk returned by vector, full-text or hybrid search."""

    id: str
    content: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    source_type: str
    score: float
    match_type: MatchType


class SearchRequest(BaseModel):
    """Request schema for POST /v1/rda/search."""

    project_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1, max_length=2000)
    top_k: int = Field(default=settings.SEARCH_TOP_K, ge=1, le=100)
    source_types: Optional[List[SourceType]] = None
    min_score: float = Field(default=0.0, ge=0.0)
    vector_weight: Optional[float] = Field(default=None, ge=0.0)
    fulltext_weight: Optional[float] = Field(default=None, ge=0.0)
    rrf_k: Optional[int] = Field(default=None, ge=1)

    model_config = {
        "json_schema_extra": {
            "example": {
                "project_id": "6ce954b1-ce1f-45d1-b94d-e6bf2464ba2c",
                "query": "entregas do sprint de marco",
                "top_k": 10,
                "source_types": ["workitem", "sprint"],
            }
        }
    }


class SearchResponse(BaseModel):
    query: str
    total: int
    results: List[SearchResult]


class ChunkStats(BaseModel):
    total_chunks: int = 0
    chunks_by_source_type: Dict[str, int] = Field(default_factory=dict)
    avg_tokens_per_chunk: float = 0.0
    total_tokens: int = 0


class DeleteChunksResponse(BaseModel):
    deleted: int


class DocumentUploadResponse(BaseModel):
    document_id: str
    file_name: str
    action: Literal["created", "updated", "unchanged"]
    chunk_count: int


class PeriodInput(BaseModel):
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=2000, le=2100)


class MonthlyPrepareRequest(BaseModel):
    """Request schema for POST /v1/rda/monthly/prepare."""

    project_id: str = Field(..., min_length=1)
    period: PeriodInput
    include_operational_sync: bool = True
    sync_mode: SyncMode = "incremental"
    force_reprocess: bool = False
    force_reprocess_chunks: bool = False
    include_wiki: bool = True

    model_config = {
        "json_schema_extra": {
            "example": {
                "project_id": "6ce954b1-ce1f-45d1-b94d-e6bf2464ba2c",
                "period": {"month": 3, "year": 2025},
                "sync_mode": "incremental",
            }
        }
    }


class PreparationError(BaseModel):
    source: str
    message: str
    timestamp: datetime


class MonthlyStatus(BaseModel):
    project_id: str
    period_key: str
    status: PreparationStatus = "collecting"
    steps: Dict[str, StepStatus] = Field(default_factory=dict)
    counters: Dict[str, int] = Field(default_factory=dict)
    errors: List[PreparationError] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MonthlyPrepareResponse(BaseModel):
    project_id: str
    period_key: str
    status: PreparationStatus
    accepted: bool
    message: str


class SprintSnapshotResponse(BaseModel):
    sprint_id: Optional[str] = None
    sprint_name: str
    start_date: Optional[datetime] = None
    finish_date: Optional[datetime] = None
    total_items: int
    completed_items: int
    active_items: int
    planned_story_points: float
    completed_story_points: float
    velocity: float
    planned_hours: float
    remaining_hours: float
    taskboard_url: Optional[str] = None
