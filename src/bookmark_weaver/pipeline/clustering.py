"""
Clustering stage: runs the clustering engine once per triggering event.
"""

from typing import Optional

from bookmark_weaver.config import Settings, get_logger
from bookmark_weaver.agents.bookmark_clusterer import BookmarkClusterer
from bookmark_weaver.agents.cluster_namer import Namer
from bookmark_weaver.agents.models import BookmarkStatus, ClusteringRunState, ClusteringSettings
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.errors import ClusteringCancelled, TransientError
from bookmark_weaver.pipeline.job_queue import JobQueue, PipelineJob, Stage
from bookmark_weaver.pipeline.scheduler import StageProcessor
from bookmark_weaver.storage.database import BookmarkDB

logger = get_logger(__name__)


class ClusteringProcessor(StageProcessor):
    """
    Processes clustering jobs.

    Payload: ``{user_id, settings}``.

    Every run is recorded in the clustering runs table so the status view
    can tell a completed forest from a cancelled or failed partial one.
    """

    stage = Stage.CLUSTERING

    def __init__(
        self,
        store: BookmarkDB,
        queue: JobQueue,
        cancellation: CancellationRegistry,
        settings: Settings,
        namer: Optional[Namer] = None,
    ):
        self.store = store
        self.queue = queue
        self.cancellation = cancellation
        self.settings = settings
        self.namer = namer

    def _report(self, job: PipelineJob, phase: str, message: str, progress: float) -> None:
        self.queue.update_progress(
            job.id, {"phase": phase, "message": message, "progress": round(progress, 3)}
        )

    def check_embedding_coverage(self, job: PipelineJob, user_id: str) -> None:
        """
        Hold the run back while too few bookmarks are embedded.

        Raises:
            TransientError: If work is still outstanding and coverage is below
                the configured ratio (the queue retries with backoff)
        """
        counts = self.store.count_bookmarks_by_status(user_id)
        outstanding = counts[BookmarkStatus.PENDING] + counts[BookmarkStatus.ENRICHED]
        eligible = sum(counts.values()) - counts[BookmarkStatus.ERROR] - counts[BookmarkStatus.IDLE]
        embedded = counts[BookmarkStatus.EMBEDDED]

        if outstanding and eligible and embedded / eligible < self.settings.clustering_min_embedded_ratio:
            self._report(
                job,
                "waiting_for_embeddings",
                f"Waiting for embeddings ({embedded}/{eligible})",
                embedded / eligible,
            )
            raise TransientError(
                f"Only {embedded}/{eligible} bookmarks embedded for user {user_id}"
            )

    def process(self, job: PipelineJob) -> None:
        user_id = job.payload["user_id"]
        clustering_settings = ClusteringSettings.from_payload(job.payload.get("settings"))

        if self.cancellation.is_cancelled(user_id):
            logger.info(f"Skipping clustering for cancelled user {user_id}")
            return

        self.check_embedding_coverage(job, user_id)

        run = self.store.start_clustering_run(user_id)
        clusterer = BookmarkClusterer(
            store=self.store,
            namer=self.namer,
            cancellation=self.cancellation,
            sample_size=self.settings.naming_sample_size,
            min_items_for_llm=self.settings.naming_min_items_for_llm,
            naming_concurrency=self.settings.naming_concurrency,
            max_depth=self.settings.max_cluster_depth,
            progress_callback=lambda phase, message, progress: self._report(
                job, phase, message, progress
            ),
        )

        try:
            clusterer.cluster_user(user_id, clustering_settings, run_id=run.id)
        except ClusteringCancelled:
            self.store.finish_clustering_run(run.id, ClusteringRunState.CANCELLED)
            logger.info(f"Clustering run {run.id} cancelled for user {user_id}")
            return
        except Exception:
            self.store.finish_clustering_run(run.id, ClusteringRunState.FAILED)
            raise

        self.store.finish_clustering_run(run.id, ClusteringRunState.COMPLETED)
        logger.info(f"Clustering run {run.id} completed for user {user_id}")
