"""
Embedding stage: resolves a bookmark's vector through the shared cache.
"""

from typing import Optional

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.embedder import Embedder
from bookmark_weaver.agents.models import Bookmark, BookmarkStatus
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.errors import EmbeddingConfigurationError
from bookmark_weaver.pipeline.job_queue import PipelineJob, Stage
from bookmark_weaver.pipeline.scheduler import StageProcessor
from bookmark_weaver.storage.base import BookmarkStore
from bookmark_weaver.storage.database import IN_FLIGHT_STATUSES
from bookmark_weaver.storage.vector_cache import VectorCache

logger = get_logger(__name__)


def embedding_text(bookmark: Bookmark) -> str:
    """Text embedded for a bookmark: best title, description and URL."""
    title = bookmark.ai_title or bookmark.title
    return " ".join(part for part in (title, bookmark.description, bookmark.url) if part)


class EmbeddingProcessor(StageProcessor):
    """
    Processes embedding jobs.

    Payload: ``{user_id, bookmark_id, url, text}``.

    Cache hits skip the embedding call. On a miss the computed vector is
    written with first-writer-wins, so concurrent misses for one URL settle
    on a single stored vector. The bookmark row is authoritative: if it was
    re-ingested under a different URL after the job was queued, the current
    URL is embedded instead of the payload's.
    """

    stage = Stage.EMBEDDING

    def __init__(
        self,
        store: BookmarkStore,
        cache: VectorCache,
        cancellation: CancellationRegistry,
        embedder: Optional[Embedder],
    ):
        self.store = store
        self.cache = cache
        self.cancellation = cancellation
        self.embedder = embedder

    def process(self, job: PipelineJob) -> None:
        user_id = job.payload["user_id"]
        bookmark_id = job.payload["bookmark_id"]

        if self._abandon_if_cancelled(user_id, bookmark_id):
            return

        bookmark = self.store.get_bookmark(bookmark_id)
        if bookmark is None or bookmark.status not in IN_FLIGHT_STATUSES:
            logger.debug(f"Skipping embedding of {bookmark_id}: no longer in flight")
            return

        url = bookmark.url
        text = job.payload.get("text")
        if url != job.payload.get("url"):
            logger.info(f"Bookmark {bookmark_id} now points at {url}, embedding that instead")
            text = embedding_text(bookmark)

        vector = self.cache.lookup(url)
        if vector is not None:
            logger.info(f"Cache hit for {url}")
        else:
            if self.embedder is None:
                raise EmbeddingConfigurationError("No embedding backend configured")
            logger.info(f"Cache miss for {url}, computing embedding")
            vector = self.embedder.embed(text or url)
            self.cache.store(url, vector)

        if self._abandon_if_cancelled(user_id, bookmark_id):
            return

        if self.store.transition_bookmark(
            bookmark_id, BookmarkStatus.EMBEDDED, allowed_from=IN_FLIGHT_STATUSES
        ):
            logger.info(f"Bookmark {bookmark_id} embedded")

    def _abandon_if_cancelled(self, user_id: str, bookmark_id: str) -> bool:
        if not self.cancellation.is_cancelled(user_id):
            return False
        self.store.transition_bookmark(
            bookmark_id, BookmarkStatus.IDLE, allowed_from=IN_FLIGHT_STATUSES
        )
        logger.debug(f"Embedding of {bookmark_id} abandoned: user {user_id} cancelled")
        return True

    def on_failure(self, job: PipelineJob, error: BaseException) -> None:
        bookmark_id = job.payload.get("bookmark_id")
        if bookmark_id and self.store.transition_bookmark(
            bookmark_id, BookmarkStatus.ERROR, allowed_from=IN_FLIGHT_STATUSES
        ):
            logger.info(f"Marked bookmark {bookmark_id} as error after failed embedding")
