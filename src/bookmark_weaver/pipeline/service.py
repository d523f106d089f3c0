"""
Pipeline service: the operations exposed to the API layer.

Wires the store, vector cache, job queue, stage processors and scheduler
together and implements ingest submission, status, structure, cancellation
and manual clustering.
"""

from typing import Any, Optional

from bookmark_weaver.config import Settings, get_logger, get_settings
from bookmark_weaver.agents.cluster_namer import Namer, OpenAINamer
from bookmark_weaver.agents.embedder import Embedder, OpenAIEmbedder
from bookmark_weaver.agents.metadata_provider import HtmlMetadataProvider, MetadataProvider
from bookmark_weaver.agents.models import (
    BookmarkNode,
    ClusteringSettings,
    FolderNode,
    StructureView,
)
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.clustering import ClusteringProcessor
from bookmark_weaver.pipeline.embedding import EmbeddingProcessor
from bookmark_weaver.pipeline.enrichment import EnrichmentProcessor
from bookmark_weaver.pipeline.errors import QuotaExceededError
from bookmark_weaver.pipeline.ingest import IngestProcessor
from bookmark_weaver.pipeline.job_queue import PENDING_STATES, JobQueue, PipelineJob, Stage
from bookmark_weaver.pipeline.scheduler import Scheduler
from bookmark_weaver.pipeline.status import PipelineStatus, StatusAggregator
from bookmark_weaver.storage.database import BookmarkDB
from bookmark_weaver.storage.vector_cache import VectorCache

logger = get_logger(__name__)


class PipelineService:
    """
    Facade over the bookmark pipeline.

    Attributes:
        store: Bookmark database
        queue: Durable job queue
        cancellation: Registry shared by every stage processor
        scheduler: Worker pool running the stage processors
        status: Status aggregator
    """

    def __init__(
        self,
        store: BookmarkDB,
        queue: JobQueue,
        settings: Optional[Settings] = None,
        embedder: Optional[Embedder] = None,
        namer: Optional[Namer] = None,
        metadata_provider: Optional[MetadataProvider] = None,
        cancellation: Optional[CancellationRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.queue = queue
        self.cache = VectorCache(store)
        self.cancellation = cancellation or CancellationRegistry()
        self.metadata_provider = metadata_provider or HtmlMetadataProvider(
            timeout=self.settings.metadata_fetch_timeout_seconds
        )

        # Insertion order is also the drain order
        processors = {
            Stage.INGEST: IngestProcessor(
                store,
                self.cache,
                queue,
                self.cancellation,
                progress_every=self.settings.ingest_progress_every,
                clustering_delay=self.settings.clustering_delay_seconds,
            ),
            Stage.ENRICHMENT: EnrichmentProcessor(
                store, queue, self.cancellation, self.metadata_provider
            ),
            Stage.EMBEDDING: EmbeddingProcessor(store, self.cache, self.cancellation, embedder),
            Stage.CLUSTERING: ClusteringProcessor(
                store, queue, self.cancellation, self.settings, namer=namer
            ),
        }
        self.scheduler = Scheduler(
            queue,
            processors,
            concurrency={stage: self.settings.concurrency_for(stage.value) for stage in Stage},
            poll_interval=self.settings.queue_poll_interval_seconds,
            job_retention=self.settings.job_retention_seconds,
            prune_interval=self.settings.job_prune_interval_seconds,
        )
        self.status = StatusAggregator(store, queue)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PipelineService":
        """
        Build a service with the production collaborators.

        Without an OpenAI key, embedding jobs fail with a configuration error
        and folders are named heuristically.
        """
        settings = settings or get_settings()
        store = BookmarkDB(settings.db_path)
        queue = JobQueue(
            settings.db_path,
            default_max_attempts={stage: settings.max_attempts_for(stage.value) for stage in Stage},
            backoff_base=settings.retry_backoff_base_seconds,
            backoff_max=settings.retry_backoff_max_seconds,
            jitter_ratio=settings.retry_jitter_ratio,
        )

        embedder = None
        namer = None
        if settings.openai_api_key:
            embedder = OpenAIEmbedder(api_key=settings.openai_api_key)
            namer = OpenAINamer(api_key=settings.openai_api_key)
        else:
            logger.warning("OPENAI_API_KEY not set: embeddings disabled, heuristic folder names only")

        return cls(store, queue, settings=settings, embedder=embedder, namer=namer)

    # ========================================================================
    # Worker lifecycle
    # ========================================================================

    def start_workers(self) -> None:
        """Start the background stage workers."""
        self.scheduler.start()

    def stop_workers(self) -> None:
        """Stop the background stage workers."""
        self.scheduler.stop()

    def close(self) -> None:
        """Stop workers and release every resource."""
        if self.scheduler.is_running:
            self.stop_workers()
        self.metadata_provider.close()
        self.queue.close()
        self.store.close()

    # ========================================================================
    # Operations
    # ========================================================================

    def submit_ingest(
        self,
        user_id: str,
        bookmarks: list[dict[str, Any]],
        settings: Optional[dict[str, Any]] = None,
    ) -> PipelineJob:
        """
        Queue a batch of bookmarks for processing.

        Args:
            user_id: Owner of the bookmarks
            bookmarks: Raw bookmarks ``{external_id, url, title}``
            settings: Clustering settings payload (normalized, never rejected)

        Returns:
            The queued ingest job

        Raises:
            QuotaExceededError: If the batch would push the user past their tier quota
        """
        tier = self.store.get_user_tier(user_id)
        limit = self.settings.quota_for_tier(tier)

        # Batches still waiting in the queue count as if already ingested
        external_ids = list(
            {str(item["external_id"]) for item in bookmarks} | self._queued_external_ids(user_id)
        )
        new_count = len(external_ids) - self.store.count_existing_external_ids(user_id, external_ids)
        requested = self.store.count_bookmarks(user_id) + new_count
        if requested > limit:
            logger.info(f"Rejecting ingest for user {user_id}: {requested} > {limit} ({tier})")
            raise QuotaExceededError(tier=tier, limit=limit, requested=requested)

        self.cancellation.clear(user_id)
        clustering_settings = ClusteringSettings.from_payload(settings)
        job = self.queue.enqueue(
            Stage.INGEST,
            {
                "user_id": user_id,
                "bookmarks": [
                    {
                        "external_id": str(item["external_id"]),
                        "url": item["url"],
                        "title": item.get("title") or "",
                    }
                    for item in bookmarks
                ],
                "settings": clustering_settings.model_dump(mode="json"),
            },
        )
        logger.info(f"Queued ingest job #{job.id} with {len(bookmarks)} bookmarks for user {user_id}")
        return job

    def get_status(self, user_id: str) -> PipelineStatus:
        """
        Get a user's pipeline status.

        If every bookmark has settled, nothing is queued and some embedded
        bookmarks are still unassigned, a recovery clustering run is queued.
        For a cancelled user, bookmarks that re-entered flight after the
        cancel (an ingest item already past its checkpoint) are moved to idle.
        """
        if self.cancellation.is_cancelled(user_id):
            idled = self.store.reset_in_flight_to_idle(user_id)
            if idled:
                logger.info(f"Moved {idled} late bookmarks of cancelled user {user_id} to idle")

        status = self.status.get_status(user_id)

        needs_recovery = (
            not status.is_ingesting
            and not status.is_clustering_active
            and status.pending_count == 0
            and status.enriched_count == 0
            and status.embedded_unassigned_count > 0
            and not self.cancellation.is_cancelled(user_id)
        )
        if needs_recovery:
            logger.info(
                f"{status.embedded_unassigned_count} embedded bookmarks unassigned for user "
                f"{user_id}, queueing recovery clustering"
            )
            self._enqueue_clustering(user_id, self._last_clustering_settings(user_id))
            status.is_clustering_active = True
            status.is_done = False

        return status

    def get_structure(
        self,
        user_id: str,
        page: int = 1,
        page_size: int = 200,
        nested: bool = False,
    ) -> StructureView:
        """
        Get a page of a user's cluster forest.

        Args:
            user_id: Owner of the forest
            page: 1-based page number
            page_size: Clusters per page
            nested: Also return the full nested folder tree

        Returns:
            StructureView
        """
        page = max(1, page)
        page_size = max(1, page_size)

        clusters = self.store.get_clusters_for_user(
            user_id, limit=page_size, offset=(page - 1) * page_size
        )
        assignments = self.store.get_assignments_for_clusters([c.id for c in clusters])

        view = StructureView(
            user_id=user_id,
            clusters=clusters,
            assignments=assignments,
            total_clusters=self.store.count_clusters(user_id),
            page=page,
            page_size=page_size,
        )
        if nested:
            view.folders = self.build_folder_tree(user_id)
        return view

    def build_folder_tree(self, user_id: str) -> list[FolderNode]:
        """
        Build the nested folder tree of a user.

        A canonical URL appearing more than once in the tree is flagged as a
        duplicate on every occurrence after the first.
        """
        clusters = self.store.get_clusters_for_user(user_id)
        assignments = self.store.get_assignments_for_clusters([c.id for c in clusters])
        bookmarks = {b.id: b for b in self.store.get_bookmarks_for_user(user_id)}

        nodes = {c.id: FolderNode(id=c.id, name=c.name) for c in clusters}
        roots: list[FolderNode] = []
        for cluster in clusters:
            node = nodes[cluster.id]
            if cluster.parent_id and cluster.parent_id in nodes:
                nodes[cluster.parent_id].folders.append(node)
            else:
                roots.append(node)

        for assignment in assignments:
            bookmark = bookmarks.get(assignment.bookmark_id)
            if bookmark is None or assignment.cluster_id not in nodes:
                continue
            nodes[assignment.cluster_id].bookmarks.append(
                BookmarkNode(id=bookmark.id, title=bookmark.display_title, url=bookmark.url)
            )

        # Flag repeats in depth-first order so the first occurrence stays unflagged
        seen: set[str] = set()
        hashes = {b.id: b.content_hash for b in bookmarks.values()}
        stack = list(reversed(roots))
        while stack:
            folder = stack.pop()
            for bookmark_node in folder.bookmarks:
                key = hashes[bookmark_node.id]
                bookmark_node.duplicate = key in seen
                seen.add(key)
            stack.extend(reversed(folder.folders))

        return roots

    def cancel(self, user_id: str, clear_all_queued_work: bool = True) -> dict[str, int]:
        """
        Cancel a user's in-flight work.

        Args:
            user_id: User to cancel
            clear_all_queued_work: Also remove the user's queued and running jobs

        Returns:
            Counts of removed jobs and bookmarks reset to idle
        """
        self.cancellation.cancel(user_id)

        removed = 0
        if clear_all_queued_work:
            removed = self.queue.cancel_user_jobs(user_id)

        idled = self.store.reset_in_flight_to_idle(user_id)
        logger.info(f"Cancelled user {user_id}: removed {removed} jobs, {idled} bookmarks idle")
        return {"removed_jobs": removed, "idle_bookmarks": idled}

    def trigger_clustering(
        self, user_id: str, settings: Optional[dict[str, Any]] = None
    ) -> PipelineJob:
        """
        Queue a manual clustering run for a user.

        Clears a previous cancellation, since re-running is an explicit request.
        """
        self.cancellation.clear(user_id)
        clustering_settings = ClusteringSettings.from_payload(settings)
        job = self._enqueue_clustering(user_id, clustering_settings)
        logger.info(f"Queued manual clustering job #{job.id} for user {user_id}")
        return job

    # ========================================================================
    # Helpers
    # ========================================================================

    def _enqueue_clustering(self, user_id: str, settings: ClusteringSettings) -> PipelineJob:
        return self.queue.enqueue(
            Stage.CLUSTERING,
            {"user_id": user_id, "settings": settings.model_dump(mode="json")},
            idempotency_key=f"cluster:{user_id}",
        )

    def _last_clustering_settings(self, user_id: str) -> ClusteringSettings:
        """Settings of the user's most recent clustering or ingest job (defaults if none)."""
        for stage in (Stage.CLUSTERING, Stage.INGEST):
            job = self.queue.latest_job(stage, user_id)
            if job is not None:
                return ClusteringSettings.from_payload(job.payload.get("settings"))
        return ClusteringSettings()

    def _queued_external_ids(self, user_id: str) -> set[str]:
        """External IDs carried by the user's ingest jobs that have not finished yet."""
        queued: set[str] = set()
        for job in self.queue.find_jobs(Stage.INGEST, user_id, PENDING_STATES):
            queued.update(str(item["external_id"]) for item in job.payload.get("bookmarks", []))
        return queued

