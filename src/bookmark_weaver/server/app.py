"""
FastAPI application for the Bookmark Weaver backend.

This server provides endpoints for:
- Bookmark ingestion
- Pipeline status polling
- Folder structure retrieval
- Cancellation and manual clustering
"""

from contextlib import asynccontextmanager
from datetime import datetime, UTC

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from bookmark_weaver.config import get_logger, get_settings, setup_logging
from bookmark_weaver.pipeline.errors import QuotaExceededError
from bookmark_weaver.pipeline.service import PipelineService
from bookmark_weaver.server.models import (
    CancelRequest,
    CancelResponse,
    ClusteringTriggerRequest,
    ClusteringTriggerResponse,
    HealthResponse,
    IngestRequest,
    IngestResponse,
    QuotaErrorResponse,
    StatusResponse,
    StructureResponse,
)

logger = get_logger(__name__)

# ============================================================================
# Global State
# ============================================================================

_service: PipelineService | None = None


def get_service() -> PipelineService:
    """Get or create the global PipelineService instance."""
    global _service
    if _service is None:
        _service = PipelineService.from_settings(get_settings())
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the stage workers with the app and stop them on shutdown."""
    settings = get_settings()
    setup_logging(settings.log_level)
    service = get_service()
    service.start_workers()
    logger.info("Bookmark Weaver workers started")
    try:
        yield
    finally:
        service.stop_workers()
        logger.info("Bookmark Weaver workers stopped")


# ============================================================================
# FastAPI App Initialization
# ============================================================================

app = FastAPI(
    title="Bookmark Weaver API",
    description="Bookmark ingestion, enrichment and hierarchical clustering",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware for browser extension
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "chrome-extension://*",
        "http://localhost:*",
        "https://localhost:*",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# API Endpoints
# ============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC).isoformat(),
    )


@app.post("/api/bookmarks/ingest", response_model=IngestResponse)
def ingest_bookmarks(request: IngestRequest):
    """
    Queue a batch of bookmarks for enrichment, embedding and clustering.

    Returns immediately; progress is reported by the status endpoint.

    Raises:
        HTTPException: 403 if the batch exceeds the user's tier quota
    """
    service = get_service()
    try:
        job = service.submit_ingest(
            request.user_id,
            [bookmark.model_dump() for bookmark in request.bookmarks],
            settings=request.settings,
        )
    except QuotaExceededError as e:
        raise HTTPException(
            status_code=403,
            detail=QuotaErrorResponse(tier=e.tier, limit=e.limit, requested=e.requested).model_dump(),
        )

    return IngestResponse(accepted=len(request.bookmarks), job_id=job.id)


@app.get("/api/status/{user_id}", response_model=StatusResponse)
def get_status(user_id: str):
    """Get the pipeline status of a user."""
    status = get_service().get_status(user_id)
    return StatusResponse(**status.model_dump(exclude={"embedded_unassigned_count"}))


@app.get("/api/structure/{user_id}", response_model=StructureResponse)
def get_structure(
    user_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(200, ge=1, le=1000),
    nested: bool = False,
):
    """
    Get a user's folder forest.

    Args:
        user_id: Owner of the forest
        page: 1-based page of clusters
        page_size: Clusters per page
        nested: Include the full nested folder tree
    """
    view = get_service().get_structure(user_id, page=page, page_size=page_size, nested=nested)
    return StructureResponse(**view.model_dump())


@app.post("/api/cancel", response_model=CancelResponse)
def cancel(request: CancelRequest):
    """Cancel a user's in-flight work and park unfinished bookmarks as idle."""
    result = get_service().cancel(request.user_id, request.clear_all_queued_work)
    return CancelResponse(status="cancelled", **result)


@app.post("/api/clustering/trigger", response_model=ClusteringTriggerResponse)
def trigger_clustering(request: ClusteringTriggerRequest):
    """Queue a manual clustering run for a user."""
    job = get_service().trigger_clustering(request.user_id, request.settings)
    return ClusteringTriggerResponse(status="queued", job_id=job.id)
