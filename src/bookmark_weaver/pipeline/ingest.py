"""
Ingest stage: registers raw bookmarks and fans out enrichment work.
"""

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.models import BookmarkStatus
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.job_queue import JobQueue, PipelineJob, Stage
from bookmark_weaver.pipeline.scheduler import StageProcessor
from bookmark_weaver.storage.base import BookmarkStore
from bookmark_weaver.storage.vector_cache import VectorCache, content_hash

logger = get_logger(__name__)


class IngestProcessor(StageProcessor):
    """
    Processes ingest jobs.

    Payload: ``{user_id, bookmarks: [{external_id, url, title}], settings}``.

    Bookmarks whose canonical URL already has a cached vector are marked
    embedded immediately; the rest get one enrichment job each. Once the
    batch is registered, a delayed clustering run is scheduled for the user.
    """

    stage = Stage.INGEST

    def __init__(
        self,
        store: BookmarkStore,
        cache: VectorCache,
        queue: JobQueue,
        cancellation: CancellationRegistry,
        progress_every: int = 25,
        clustering_delay: float = 5.0,
    ):
        self.store = store
        self.cache = cache
        self.queue = queue
        self.cancellation = cancellation
        self.progress_every = max(1, progress_every)
        self.clustering_delay = clustering_delay

    def process(self, job: PipelineJob) -> None:
        user_id = job.payload["user_id"]
        items = job.payload.get("bookmarks", [])
        total = len(items)
        processed = 0
        cache_hits = 0

        logger.info(f"Ingesting {total} bookmarks for user {user_id}")

        for raw in items:
            if self.cancellation.is_cancelled(user_id):
                logger.info(f"Ingest cancelled for user {user_id} after {processed}/{total} items")
                return

            url = raw["url"]
            entry = self.cache.ensure_entry(url)
            bookmark = self.store.upsert_bookmark(
                user_id=user_id,
                external_id=str(raw["external_id"]),
                url=url,
                title=raw.get("title") or "",
                content_hash=content_hash(url),
            )

            if entry.has_vector:
                self.store.transition_bookmark(
                    bookmark.id, BookmarkStatus.EMBEDDED, allowed_from={BookmarkStatus.PENDING}
                )
                cache_hits += 1
                logger.debug(f"Cache hit for {url}, bookmark {bookmark.id} embedded")
            else:
                self.queue.enqueue(
                    Stage.ENRICHMENT,
                    {"user_id": user_id, "bookmark_id": bookmark.id, "url": url},
                    idempotency_key=f"enrich:{bookmark.id}",
                )

            processed += 1
            if processed % self.progress_every == 0:
                self.queue.update_progress(job.id, {"processed": processed, "total": total})

        self.queue.update_progress(job.id, {"processed": processed, "total": total})
        logger.info(
            f"Ingested {processed} bookmarks for user {user_id} "
            f"({cache_hits} cache hits, {processed - cache_hits} queued for enrichment)"
        )

        if self.cancellation.is_cancelled(user_id):
            logger.info(f"User {user_id} cancelled before clustering was scheduled")
            return

        self.queue.enqueue(
            Stage.CLUSTERING,
            {"user_id": user_id, "settings": job.payload.get("settings")},
            delay=self.clustering_delay,
            idempotency_key=f"cluster:{user_id}",
        )
        logger.info(f"Scheduled clustering for user {user_id} in {self.clustering_delay}s")
