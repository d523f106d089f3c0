"""
Pydantic models for API request/response validation.
"""

from typing import Any, Optional
from pydantic import BaseModel, Field

from bookmark_weaver.agents.models import (
    Cluster,
    ClusterAssignment,
    ClusteringRunState,
    FolderNode,
)


# ============================================================================
# Request Models
# ============================================================================


class BookmarkInput(BaseModel):
    """Input model for a browser bookmark from the extension."""

    external_id: str
    url: str
    title: str = ""


class IngestRequest(BaseModel):
    """Request model for /api/bookmarks/ingest endpoint.

    ``settings`` is passed through loosely and normalized server-side, so an
    unknown density or tone never rejects the request.
    """

    user_id: str
    bookmarks: list[BookmarkInput]
    settings: Optional[dict[str, Any]] = None


class CancelRequest(BaseModel):
    """Request model for /api/cancel endpoint."""

    user_id: str
    clear_all_queued_work: bool = True


class ClusteringTriggerRequest(BaseModel):
    """Request model for /api/clustering/trigger endpoint."""

    user_id: str
    settings: Optional[dict[str, Any]] = None


# ============================================================================
# Response Models
# ============================================================================


class IngestResponse(BaseModel):
    """Response model for /api/bookmarks/ingest endpoint."""

    accepted: int
    job_id: int


class StatusResponse(BaseModel):
    """Response model for /api/status endpoint."""

    user_id: str
    pending_count: int
    enriched_count: int
    embedded_count: int
    errored_count: int
    idle_count: int
    total_count: int
    cluster_count: int
    assigned_count: int
    is_ingesting: bool
    ingest_progress: Optional[dict[str, Any]] = None
    is_clustering_active: bool
    clustering_progress: Optional[dict[str, Any]] = None
    latest_run_state: Optional[ClusteringRunState] = None
    is_done: bool


class StructureResponse(BaseModel):
    """Response model for /api/structure endpoint."""

    user_id: str
    clusters: list[Cluster] = Field(default_factory=list)
    assignments: list[ClusterAssignment] = Field(default_factory=list)
    total_clusters: int
    page: int
    page_size: int
    folders: Optional[list[FolderNode]] = None


class CancelResponse(BaseModel):
    """Response model for /api/cancel endpoint."""

    status: str
    removed_jobs: int
    idle_bookmarks: int


class ClusteringTriggerResponse(BaseModel):
    """Response model for /api/clustering/trigger endpoint."""

    status: str
    job_id: int


class QuotaErrorResponse(BaseModel):
    """Body of a 403 response when an ingest exceeds the tier quota."""

    error: str = "quota_exceeded"
    tier: str
    limit: int
    requested: int


class HealthResponse(BaseModel):
    """Response model for /health endpoint."""

    status: str
    version: str = "0.1.0"
    timestamp: str
