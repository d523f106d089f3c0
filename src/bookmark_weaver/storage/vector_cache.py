"""
Content-addressed vector cache shared by all users.

Bookmarks whose URLs canonicalize to the same string share one cache entry,
so a page is embedded at most once system-wide.
"""

import hashlib
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.models import SharedVectorEntry
from .base import BookmarkStore

logger = get_logger(__name__)


def canonicalize_url(url: str) -> str:
    """
    Normalize a URL for deduplication.

    Lowercases the scheme and host, drops the fragment and strips trailing
    slashes from the path. Query strings are kept since they often select
    different content.

    Examples:
        https://Example.com/docs/ → https://example.com/docs
        https://example.com/a#intro → https://example.com/a
    """
    url = url.strip()
    parts = urlsplit(url)
    if not parts.scheme and not parts.netloc:
        # Not an absolute URL, only strip fragment and trailing slash
        return url.split("#", 1)[0].rstrip("/")

    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def content_hash(url: str) -> str:
    """Deterministic SHA-256 hex digest of the canonical URL."""
    return hashlib.sha256(canonicalize_url(url).encode("utf-8")).hexdigest()


class VectorCache:
    """Read-through view of the shared vector table.

    The cache holds no in-memory state; every lookup goes to the durable
    store so concurrent workers always see each other's writes.
    """

    def __init__(self, store: BookmarkStore):
        self.db = store

    def ensure_entry(self, url: str) -> SharedVectorEntry:
        """Create the entry for a URL if absent (without a vector) and return it."""
        return self.db.ensure_shared_vector(content_hash(url), canonicalize_url(url))

    def lookup(self, url: str) -> Optional[list[float]]:
        """
        Look up the cached vector for a URL.

        Returns:
            The vector on a cache hit, None on a miss
        """
        entry = self.db.get_shared_vector(content_hash(url))
        if entry and entry.has_vector:
            return entry.vector
        return None

    def store(self, url: str, vector: list[float]) -> list[float]:
        """
        Store a computed vector (first writer wins).

        Returns:
            The vector held by the cache after the write
        """
        stored = self.db.store_shared_vector(
            content_hash(url), canonicalize_url(url), vector
        )
        logger.debug(f"Stored vector for {canonicalize_url(url)}")
        return stored
