"""
Shared pytest fixtures: in-memory stores and fake collaborators.
"""

import hashlib
import threading
from typing import Optional, Sequence

import pytest

from bookmark_weaver.config import Settings
from bookmark_weaver.agents.cluster_namer import Namer
from bookmark_weaver.agents.embedder import Embedder
from bookmark_weaver.agents.metadata_provider import MetadataProvider, PageMetadata
from bookmark_weaver.agents.models import ClusteringSettings, EmbeddedBookmark
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.job_queue import JobQueue, Stage
from bookmark_weaver.pipeline.service import PipelineService
from bookmark_weaver.storage.database import BookmarkDB

TOPIC_KEYWORDS = ["python", "recipe", "travel", "finance"]
EMBEDDING_DIM = 8


class FakeEmbedder(Embedder):
    """Deterministic embedder: one axis per topic keyword plus a hash-based wobble."""

    def __init__(self, failures: Optional[list[BaseException]] = None):
        self.calls: list[str] = []
        self.failures = list(failures or [])
        self._lock = threading.Lock()

    def embed(self, text: str) -> list[float]:
        with self._lock:
            self.calls.append(text)
            if self.failures:
                raise self.failures.pop(0)

        digest = int(hashlib.sha256(text.encode("utf-8")).hexdigest(), 16)
        vector = [0.0] * EMBEDDING_DIM
        lowered = text.lower()
        matched = False
        for index, keyword in enumerate(TOPIC_KEYWORDS):
            if keyword in lowered:
                vector[index] = 1.0
                matched = True
        if not matched:
            vector[digest % EMBEDDING_DIM] = 1.0
        vector[4 + digest % 4] += 0.05
        return vector


class FakeNamer(Namer):
    """Returns a fixed name and records every call."""

    def __init__(self, name: str = "Test Folder"):
        self.name_value = name
        self.calls = 0

    def name(self, samples: Sequence[EmbeddedBookmark], settings: ClusteringSettings) -> str:
        self.calls += 1
        return self.name_value


class FakeMetadataProvider(MetadataProvider):
    """Serves canned metadata; URLs listed in ``failing`` raise."""

    def __init__(self, pages: Optional[dict[str, PageMetadata]] = None, failing: Sequence[str] = ()):
        self.pages = pages or {}
        self.failing = set(failing)
        self.calls: list[str] = []

    def fetch_metadata(self, url: str) -> PageMetadata:
        self.calls.append(url)
        if url in self.failing:
            raise TimeoutError(f"timed out fetching {url}")
        return self.pages.get(url, PageMetadata(title="", description=""))


@pytest.fixture
def test_settings():
    """Settings tuned for synchronous tests (no delays, no API key)."""
    return Settings(
        openai_api_key=None,
        db_path=":memory:",
        clustering_delay_seconds=0.0,
        retry_backoff_base_seconds=0.0,
        retry_backoff_max_seconds=0.0,
        retry_jitter_ratio=0.0,
        queue_poll_interval_seconds=0.01,
        naming_concurrency=2,
        free_tier_bookmark_limit=500,
        pro_tier_bookmark_limit=20000,
    )


@pytest.fixture
def store():
    """In-memory bookmark database."""
    db = BookmarkDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def queue(test_settings):
    """In-memory job queue with the test attempt budgets."""
    job_queue = JobQueue(
        ":memory:",
        default_max_attempts={stage: test_settings.max_attempts_for(stage.value) for stage in Stage},
        backoff_base=test_settings.retry_backoff_base_seconds,
        backoff_max=test_settings.retry_backoff_max_seconds,
        jitter_ratio=test_settings.retry_jitter_ratio,
    )
    yield job_queue
    job_queue.close()


@pytest.fixture
def cancellation():
    return CancellationRegistry()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def namer():
    return FakeNamer()


@pytest.fixture
def metadata_provider():
    return FakeMetadataProvider()


@pytest.fixture
def service(store, queue, test_settings, embedder, namer, metadata_provider, cancellation):
    """Pipeline service wired to in-memory stores and fake collaborators."""
    return PipelineService(
        store,
        queue,
        settings=test_settings,
        embedder=embedder,
        namer=namer,
        metadata_provider=metadata_provider,
        cancellation=cancellation,
    )


@pytest.fixture
def sample_bookmarks():
    """Three bookmarks with distinct URLs."""
    return [
        {"external_id": "1", "url": "https://docs.python.org/3/library/asyncio.html", "title": "asyncio - Python docs"},
        {"external_id": "2", "url": "https://www.bbcgoodfood.com/recipes/lasagne", "title": "Easy lasagne recipe"},
        {"external_id": "3", "url": "https://www.lonelyplanet.com/japan", "title": "Japan travel guide"},
    ]
