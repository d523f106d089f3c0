"""
Abstract base class for bookmark storage backends.
"""

from abc import ABC, abstractmethod
from typing import Optional

from bookmark_weaver.agents.models import (
    Bookmark,
    BookmarkStatus,
    Cluster,
    EmbeddedBookmark,
    SharedVectorEntry,
)


class BookmarkStore(ABC):
    """Abstract interface for the durable store shared by all pipeline stages."""

    @abstractmethod
    def upsert_bookmark(
        self,
        user_id: str,
        external_id: str,
        url: str,
        title: str,
        content_hash: str,
    ) -> Bookmark:
        """
        Insert or update a bookmark keyed by (user_id, external_id).

        Returns:
            The stored bookmark, with status reset to pending
        """
        pass

    @abstractmethod
    def get_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        """Get a bookmark by ID."""
        pass

    @abstractmethod
    def transition_bookmark(
        self,
        bookmark_id: str,
        new_status: BookmarkStatus,
        allowed_from: Optional[set[BookmarkStatus]] = None,
    ) -> bool:
        """
        Move a bookmark to a new status if its current status allows it.

        Returns:
            True if the row was updated
        """
        pass

    @abstractmethod
    def ensure_shared_vector(self, content_hash: str, url: str) -> SharedVectorEntry:
        """Create the cache entry for a canonical URL if absent and return it."""
        pass

    @abstractmethod
    def get_shared_vector(self, content_hash: str) -> Optional[SharedVectorEntry]:
        """Get a cache entry by content hash."""
        pass

    @abstractmethod
    def store_shared_vector(
        self, content_hash: str, url: str, vector: list[float]
    ) -> list[float]:
        """
        Store a vector with first-writer-wins semantics.

        Returns:
            The vector that is stored after the write (possibly an earlier writer's)
        """
        pass

    @abstractmethod
    def get_embedded_bookmarks(self, user_id: str) -> list[EmbeddedBookmark]:
        """Get all embedded bookmarks of a user joined with their cached vectors."""
        pass

    @abstractmethod
    def delete_clusters_for_user(self, user_id: str) -> int:
        """Delete every cluster (and assignment) owned by a user."""
        pass

    @abstractmethod
    def add_cluster(self, cluster: Cluster) -> str:
        """Persist a cluster row and return its ID."""
        pass

    @abstractmethod
    def add_assignments(self, cluster_id: str, bookmark_ids: list[str]) -> int:
        """Assign bookmarks to a leaf cluster."""
        pass

    @abstractmethod
    def close(self):
        """Close the database connection."""
        pass

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
