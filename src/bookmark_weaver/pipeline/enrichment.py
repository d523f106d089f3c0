"""
Enrichment stage: best-effort page metadata, then hand-off to embedding.
"""

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.bookmark_titler import suggest_title
from bookmark_weaver.agents.metadata_provider import MetadataProvider, PageMetadata
from bookmark_weaver.agents.models import BookmarkStatus
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.job_queue import JobQueue, PipelineJob, Stage
from bookmark_weaver.pipeline.scheduler import StageProcessor
from bookmark_weaver.storage.base import BookmarkStore
from bookmark_weaver.storage.database import IN_FLIGHT_STATUSES

logger = get_logger(__name__)


class EnrichmentProcessor(StageProcessor):
    """
    Processes enrichment jobs.

    Payload: ``{user_id, bookmark_id, url}``.

    A failed or slow metadata fetch never fails the item; the bookmark
    moves on with empty metadata. Metadata is fetched for the bookmark's
    current URL, which wins over a stale payload.
    """

    stage = Stage.ENRICHMENT

    def __init__(
        self,
        store: BookmarkStore,
        queue: JobQueue,
        cancellation: CancellationRegistry,
        metadata_provider: MetadataProvider,
    ):
        self.store = store
        self.queue = queue
        self.cancellation = cancellation
        self.metadata_provider = metadata_provider

    def process(self, job: PipelineJob) -> None:
        user_id = job.payload["user_id"]
        bookmark_id = job.payload["bookmark_id"]

        if self._abandon_if_cancelled(user_id, bookmark_id):
            return

        bookmark = self.store.get_bookmark(bookmark_id)
        if bookmark is None or bookmark.status not in IN_FLIGHT_STATUSES:
            logger.debug(f"Skipping enrichment of {bookmark_id}: no longer in flight")
            return
        url = bookmark.url

        try:
            metadata = self.metadata_provider.fetch_metadata(url)
        except Exception as e:
            logger.warning(f"Metadata fetch failed for {url}, continuing without it: {e}")
            metadata = PageMetadata(title="", description="")

        if self._abandon_if_cancelled(user_id, bookmark_id):
            return

        description = metadata["description"]
        ai_title = suggest_title(bookmark.title, metadata["title"], description, url)
        if not self.store.update_bookmark_enrichment(bookmark_id, description, ai_title):
            logger.debug(f"Bookmark {bookmark_id} left flight during enrichment")
            return

        if self._abandon_if_cancelled(user_id, bookmark_id):
            return

        title = ai_title or bookmark.title
        text = " ".join(part for part in (title, description, url) if part)
        self.queue.enqueue(
            Stage.EMBEDDING,
            {"user_id": user_id, "bookmark_id": bookmark_id, "url": url, "text": text},
            idempotency_key=f"embed:{bookmark_id}",
        )
        logger.info(f"Enriched bookmark {bookmark_id} ({url})")

    def _abandon_if_cancelled(self, user_id: str, bookmark_id: str) -> bool:
        if not self.cancellation.is_cancelled(user_id):
            return False
        self.store.transition_bookmark(
            bookmark_id, BookmarkStatus.IDLE, allowed_from=IN_FLIGHT_STATUSES
        )
        logger.debug(f"Enrichment of {bookmark_id} abandoned: user {user_id} cancelled")
        return True

    def on_failure(self, job: PipelineJob, error: BaseException) -> None:
        bookmark_id = job.payload.get("bookmark_id")
        if bookmark_id and self.store.transition_bookmark(
            bookmark_id, BookmarkStatus.ERROR, allowed_from=IN_FLIGHT_STATUSES
        ):
            logger.info(f"Marked bookmark {bookmark_id} as error after failed enrichment")
