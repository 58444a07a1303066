"""Response envelopes shared by the sync and RDA routers."""

from datetime import datetime, timezone
from typing import Any, Generic, List, TypeVar

from pydantic import BaseModel, Field

from app.config.settings import settings

T = TypeVar("T")

_EXAMPLE_METADATA = {
    "app_name": "RDA Backend",
    "app_version": "1.0.0",
    "timestamp": "2025-04-01T09:30:00Z",
}


class ResponseMetadata(BaseModel):
    """Metadata attached to every envelope."""

    app_name: str = Field(default=settings.APP_NAME)
    app_version: str = Field(default=settings.APP_VERSION)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"json_schema_extra": {"example": _EXAMPLE_METADATA}}


class SuccessResponse(BaseModel, Generic[T]):
    success: bool = Field(default=True)
    message: str = Field(default="Operation completed successfully")
    data: T
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "message": "Preparation started",
                "data": {"accepted": True, "period_key": "2025-03"},
                "metadata": _EXAMPLE_METADATA,
            }
        }
    }


class PaginationMeta(BaseModel):
    page: int = Field(ge=1, description="Current page number")
    limit: int = Field(ge=1, le=1000, description="Items per page")
    total: int = Field(ge=0, description="Total number of items")
    pages: int = Field(ge=0, description="Total number of pages")
    has_next: bool
    has_prev: bool


class PaginatedResponse(BaseModel, Generic[T]):
    """List envelope used by the sync log listing."""

    success: bool = Field(default=True)
    message: str = Field(default="Items retrieved successfully")
    data: List[T]
    pagination: PaginationMeta
    metadata: ResponseMetadata = Field(default_factory=ResponseMetadata)

    model_config = {
        "json_schema_extra": {
            "example": {
                "success": True,
                "message": "Sync logs retrieved",
                "data": [],
                "pagination": {
                    "page": 1,
                    "limit": 20,
                    "total": 45,
                    "pages": 3,
                    "has_next": True,
                    "has_prev": False,
                },
                "metadata": _EXAMPLE_METADATA,
            }
        }
    }


def success_response(data: T, message: str = "Operation completed successfully", **kwargs: Any) -> SuccessResponse[T]:
    return SuccessResponse(
        success=True,
        message=message,
        data=data,
        metadata=ResponseMetadata(**kwargs) if kwargs else ResponseMetadata(),
    )


def paginated_response(
    data: List[T],
    page: int,
    limit: int,
    total: int,
    message: str = "Items retrieved successfully",
    **kwargs: Any,
) -> PaginatedResponse[T]:
    pages = (total + limit - 1) // limit if total > 0 else 0

    return PaginatedResponse(
        success=True,
        message=message,
        data=data,
        pagination=PaginationMeta(
            page=page,
            limit=limit,
            total=total,
            pages=pages,
            has_next=page < pages,
            has_prev=page > 1,
        ),
        metadata=ResponseMetadata(**kwargs) if kwargs else ResponseMetadata(),
    )
