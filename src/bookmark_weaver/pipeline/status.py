"""
Status aggregation across the job queue and the bookmark store.

Queue state and database state can disagree for a while (a clustering job
queued but not started, bookmarks embedded but not yet assigned), so
completion is derived from both rather than trusted from either.
"""

from typing import Any, Optional

from pydantic import BaseModel

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.models import BookmarkStatus, ClusteringRunState
from bookmark_weaver.pipeline.job_queue import PENDING_STATES, JobQueue, JobState, PipelineJob, Stage
from bookmark_weaver.storage.database import BookmarkDB

logger = get_logger(__name__)


class PipelineStatus(BaseModel):
    """Consistent progress view for one user."""

    user_id: str
    pending_count: int = 0
    enriched_count: int = 0
    embedded_count: int = 0
    errored_count: int = 0
    idle_count: int = 0
    total_count: int = 0
    cluster_count: int = 0
    assigned_count: int = 0
    embedded_unassigned_count: int = 0
    is_ingesting: bool = False
    ingest_progress: Optional[dict[str, Any]] = None
    is_clustering_active: bool = False
    clustering_progress: Optional[dict[str, Any]] = None
    latest_run_state: Optional[ClusteringRunState] = None
    is_done: bool = False


def _latest_progress(jobs: list[PipelineJob]) -> Optional[dict[str, Any]]:
    """Progress of the running job if any, else of the newest job that reported."""
    active = [job for job in jobs if job.state == JobState.ACTIVE and job.progress]
    if active:
        return active[-1].progress
    reported = [job for job in jobs if job.progress]
    return reported[-1].progress if reported else None


class StatusAggregator:
    """Derives a user's pipeline status from the queue and the store."""

    def __init__(self, store: BookmarkDB, queue: JobQueue):
        self.store = store
        self.queue = queue

    def get_status(self, user_id: str) -> PipelineStatus:
        """
        Build the status view for a user.

        ``is_done`` holds only when nothing is in flight, a completed run
        produced at least one cluster, and every embedded bookmark is assigned.

        Args:
            user_id: User to report on

        Returns:
            PipelineStatus
        """
        counts = self.store.count_bookmarks_by_status(user_id)
        ingest_jobs = self.queue.find_jobs(Stage.INGEST, user_id, PENDING_STATES)
        clustering_jobs = self.queue.find_jobs(Stage.CLUSTERING, user_id, PENDING_STATES)

        cluster_count = self.store.count_clusters(user_id)
        latest_run = self.store.get_latest_clustering_run(user_id)

        status = PipelineStatus(
            user_id=user_id,
            pending_count=counts[BookmarkStatus.PENDING],
            enriched_count=counts[BookmarkStatus.ENRICHED],
            embedded_count=counts[BookmarkStatus.EMBEDDED],
            errored_count=counts[BookmarkStatus.ERROR],
            idle_count=counts[BookmarkStatus.IDLE],
            total_count=sum(counts.values()),
            cluster_count=cluster_count,
            assigned_count=self.store.count_assignments(user_id),
            embedded_unassigned_count=self.store.count_embedded_unassigned(user_id),
            is_ingesting=bool(ingest_jobs),
            ingest_progress=_latest_progress(ingest_jobs),
            is_clustering_active=bool(clustering_jobs),
            clustering_progress=_latest_progress(clustering_jobs),
            latest_run_state=latest_run.state if latest_run else None,
        )

        status.is_done = (
            status.pending_count == 0
            and status.enriched_count == 0
            and status.cluster_count > 0
            and not status.is_clustering_active
            and not status.is_ingesting
            and status.embedded_unassigned_count == 0
            and status.latest_run_state == ClusteringRunState.COMPLETED
        )
        return status
