"""
Agent implementations for bookmark organization.

This package provides:
- Hierarchical bookmark clustering (BookmarkClusterer)
- Folder naming with heuristic fallback (ClusterNamer)
- Embedding and page metadata collaborators
"""

from bookmark_weaver.agents.models import (
    Bookmark,
    BookmarkStatus,
    Cluster,
    ClusterAssignment,
    ClusteringResult,
    ClusteringSettings,
)
from bookmark_weaver.agents.bookmark_clusterer import BookmarkClusterer
from bookmark_weaver.agents.cluster_namer import ClusterNamer

__all__ = [
    "Bookmark",
    "BookmarkStatus",
    "Cluster",
    "ClusterAssignment",
    "ClusteringResult",
    "ClusteringSettings",
    "BookmarkClusterer",
    "ClusterNamer",
]
