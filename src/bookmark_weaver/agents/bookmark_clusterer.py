"""
Hierarchical bookmark clustering with recursive k-means.

This module turns a user's embedded bookmarks into a named folder forest.
Nodes are split with k-means until they fit the target leaf size; groups
that come out too small are merged back into their largest sibling. The
tree is built in an in-memory arena first and persisted top-down afterwards,
so the recursion never touches the database.
"""

import math
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, UTC
from typing import Callable, Optional

import numpy as np
from pydantic import BaseModel, Field
from sklearn.cluster import KMeans

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.cluster_namer import ClusterNamer, Namer
from bookmark_weaver.agents.models import (
    BookmarkStatus,
    Cluster,
    ClusterAssignment,
    ClusteringDensityProfile,
    ClusteringResult,
    ClusteringSettings,
    EmbeddedBookmark,
    get_density_profile,
)
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.errors import ClusteringCancelled
from bookmark_weaver.storage.base import BookmarkStore

logger = get_logger(__name__)

ProgressCallback = Callable[[str, str, float], None]


class ClusterNode(BaseModel):
    """A node of the clustering arena.

    Attributes:
        id: Index of the node in the arena
        parent: Arena index of the parent (None for the virtual root)
        items: Indices into the clustered bookmark list
        children: Arena indices of surviving children
        depth: Distance from the virtual root
        is_leaf: Whether the node holds bookmarks directly
        forced: Leaf created by the depth ceiling or a failed split
        deleted: Node was merged into a sibling during rebalancing
    """

    id: int
    parent: Optional[int] = None
    items: list[int] = Field(default_factory=list)
    children: list[int] = Field(default_factory=list)
    depth: int = 0
    is_leaf: bool = False
    forced: bool = False
    deleted: bool = False


class BookmarkClusterer:
    """
    Builds and persists a user's cluster forest.

    The virtual root node is never persisted when it splits: its children
    become the user's root folders. A root that stays a leaf is persisted as
    the single root folder.

    Attributes:
        store: Durable store for bookmarks and clusters
        namer: Optional naming collaborator
        cancellation: Registry checked at every recursive call
        naming_concurrency: Parallel naming calls across sibling clusters
        random_state: Seed for k-means, for reproducible trees
    """

    def __init__(
        self,
        store: BookmarkStore,
        namer: Optional[Namer] = None,
        cancellation: Optional[CancellationRegistry] = None,
        sample_size: int = 8,
        min_items_for_llm: int = 3,
        naming_concurrency: int = 3,
        max_depth: int = 6,
        random_state: int = 42,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.store = store
        self.namer = namer
        self.cancellation = cancellation or CancellationRegistry()
        self.sample_size = sample_size
        self.min_items_for_llm = min_items_for_llm
        self.naming_concurrency = max(1, naming_concurrency)
        self.max_depth = max_depth
        self.random_state = random_state
        self.progress_callback = progress_callback

    # ========================================================================
    # Entry points
    # ========================================================================

    def cluster_user(
        self, user_id: str, settings: ClusteringSettings, run_id: Optional[str] = None
    ) -> ClusteringResult:
        """
        Cluster every embedded bookmark of a user, replacing their previous forest.

        Args:
            user_id: Owner of the bookmarks
            settings: Clustering settings (density, tone, mode, emoji)
            run_id: Identifier of the clustering run

        Returns:
            ClusteringResult with the persisted clusters and assignments

        Raises:
            ClusteringCancelled: If the user is cancelled at a checkpoint
        """
        bookmarks = self.store.get_embedded_bookmarks(user_id)
        return self.cluster_bookmarks(user_id, bookmarks, settings, run_id)

    def cluster_bookmarks(
        self,
        user_id: str,
        bookmarks: list[EmbeddedBookmark],
        settings: ClusteringSettings,
        run_id: Optional[str] = None,
    ) -> ClusteringResult:
        """Cluster the given bookmarks and persist the resulting forest."""
        run_id = run_id or str(uuid.uuid4())
        profile = get_density_profile(settings, max_depth=self.max_depth)
        self._check_cancelled(user_id)

        bookmarks = self._drop_malformed(bookmarks)
        logger.info(
            f"Clustering {len(bookmarks)} bookmarks for user {user_id} "
            f"(target={profile.target_leaf_size}, max_children={profile.max_children}, "
            f"min_child={profile.min_child_size})"
        )
        self._report("clustering", f"Clustering {len(bookmarks)} bookmarks", 0.1)

        if not bookmarks:
            self.store.delete_clusters_for_user(user_id)
            logger.info(f"No embedded bookmarks for user {user_id}, nothing to cluster")
            return ClusteringResult(run_id=run_id)

        matrix = self.normalize(np.array([b.vector for b in bookmarks], dtype=np.float64))
        arena = self.build_tree(matrix, profile, user_id)

        self._report("naming", "Naming folders", 0.5)
        namer = ClusterNamer(
            self.namer,
            settings,
            sample_size=self.sample_size,
            min_items_for_llm=self.min_items_for_llm,
        )
        clusters, assignments = self._persist(user_id, arena, bookmarks, namer)

        forced = sum(1 for node in arena if node.forced and not node.deleted)
        logger.info(
            f"Created {len(clusters)} clusters "
            f"({sum(1 for n in arena if n.is_leaf and not n.deleted)} leaves, {forced} forced) "
            f"for user {user_id}"
        )
        self._report("complete", f"Created {len(clusters)} folders", 1.0)

        return ClusteringResult(
            run_id=run_id,
            clusters=clusters,
            assignments=assignments,
            forced_leaf_count=forced,
            total_bookmarks=len(bookmarks),
            timestamp=datetime.now(UTC),
        )

    # ========================================================================
    # Tree construction
    # ========================================================================

    @staticmethod
    def normalize(matrix: np.ndarray) -> np.ndarray:
        """Scale every row to unit length (zero rows stay zero)."""
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        norms[norms == 0] = 1.0
        return matrix / norms

    def build_tree(
        self,
        matrix: np.ndarray,
        profile: ClusteringDensityProfile,
        user_id: str = "",
    ) -> list[ClusterNode]:
        """
        Recursively split the rows of ``matrix`` into a tree.

        Args:
            matrix: Unit-length vectors, one row per bookmark
            profile: Size constraints of the split
            user_id: Owner, used for cancellation checks

        Returns:
            The node arena; index 0 is the virtual root
        """
        arena = [ClusterNode(id=0, items=list(range(matrix.shape[0])))]
        self._split(arena, 0, matrix, profile, user_id)
        return arena

    def _split(
        self,
        arena: list[ClusterNode],
        node_id: int,
        matrix: np.ndarray,
        profile: ClusteringDensityProfile,
        user_id: str,
    ) -> None:
        self._check_cancelled(user_id)

        node = arena[node_id]
        size = len(node.items)

        if size <= profile.target_leaf_size:
            node.is_leaf = True
            return

        if node.depth >= profile.max_depth:
            logger.warning(f"Forcing leaf of {size} items at depth ceiling {profile.max_depth}")
            node.is_leaf = True
            node.forced = True
            return

        vectors = matrix[node.items]
        distinct = np.unique(vectors, axis=0).shape[0]
        if distinct < 2:
            # All vectors identical, nothing to separate
            node.is_leaf = True
            return

        k = min(max(2, math.ceil(size / profile.target_leaf_size)), profile.max_children, distinct)
        try:
            labels = self._kmeans(vectors, k)
        except Exception as e:
            logger.warning(f"k-means failed on node of {size} items, forcing leaf: {e}")
            node.is_leaf = True
            node.forced = True
            return

        for label in range(k):
            members = [node.items[i] for i in np.flatnonzero(labels == label)]
            if not members:
                continue
            child = ClusterNode(
                id=len(arena),
                parent=node_id,
                items=members,
                depth=node.depth + 1,
            )
            arena.append(child)
            node.children.append(child.id)

        self._rebalance(arena, node, profile.min_child_size)

        if len(node.children) <= 1:
            for child_id in node.children:
                arena[child_id].deleted = True
            node.children = []
            node.is_leaf = True
            node.forced = True
            logger.debug(f"Split of {size} items collapsed to a single group, keeping as leaf")
            return

        for child_id in list(node.children):
            self._split(arena, child_id, matrix, profile, user_id)

    def _kmeans(self, vectors: np.ndarray, k: int) -> np.ndarray:
        model = KMeans(
            n_clusters=k,
            init="k-means++",
            n_init=10,
            random_state=self.random_state,
        )
        return model.fit_predict(vectors)

    @staticmethod
    def _rebalance(arena: list[ClusterNode], node: ClusterNode, min_child_size: int) -> None:
        """
        Merge undersized children into the largest sibling.

        Children are visited largest first; every child below
        ``min_child_size`` hands its items to the largest child and is
        marked deleted.
        """
        ordered = sorted(node.children, key=lambda cid: len(arena[cid].items), reverse=True)
        if not ordered:
            return

        largest = arena[ordered[0]]
        survivors = [largest.id]
        for child_id in ordered[1:]:
            child = arena[child_id]
            if len(child.items) < min_child_size:
                largest.items.extend(child.items)
                child.items = []
                child.deleted = True
            else:
                survivors.append(child_id)

        node.children = survivors

    # ========================================================================
    # Persistence
    # ========================================================================

    def _persist(
        self,
        user_id: str,
        arena: list[ClusterNode],
        bookmarks: list[EmbeddedBookmark],
        namer: ClusterNamer,
    ) -> tuple[list[Cluster], list[ClusterAssignment]]:
        root = arena[0]
        # Level-by-level so siblings can be named in parallel
        level = [root.id] if root.is_leaf else list(root.children)
        parent_clusters: dict[int, Optional[str]] = {node_id: None for node_id in level}

        clusters: list[Cluster] = []
        assignments: list[ClusterAssignment] = []
        first_write = True

        with ThreadPoolExecutor(max_workers=self.naming_concurrency) as executor:
            while level:
                self._check_cancelled(user_id)
                names = list(executor.map(
                    lambda node_id: namer.name_group(self._collect_items(arena, node_id, bookmarks)),
                    level,
                ))

                if first_write:
                    deleted = self.store.delete_clusters_for_user(user_id)
                    if deleted:
                        logger.info(f"Deleted {deleted} previous clusters for user {user_id}")
                    first_write = False

                next_level: list[int] = []
                for node_id, name in zip(level, names):
                    node = arena[node_id]
                    cluster = Cluster(
                        id=str(uuid.uuid4()),
                        user_id=user_id,
                        name=name,
                        parent_id=parent_clusters[node_id],
                    )
                    self.store.add_cluster(cluster)
                    clusters.append(cluster)

                    if node.is_leaf:
                        bookmark_ids = [bookmarks[i].bookmark_id for i in node.items]
                        self.store.add_assignments(cluster.id, bookmark_ids)
                        assignments.extend(
                            ClusterAssignment(cluster_id=cluster.id, bookmark_id=bid)
                            for bid in bookmark_ids
                        )
                    else:
                        for child_id in node.children:
                            parent_clusters[child_id] = cluster.id
                            next_level.append(child_id)

                level = next_level

        return clusters, assignments

    @staticmethod
    def _collect_items(
        arena: list[ClusterNode], node_id: int, bookmarks: list[EmbeddedBookmark]
    ) -> list[EmbeddedBookmark]:
        """Bookmarks under a node (internal nodes keep the union of their children), in input order."""
        return [bookmarks[i] for i in sorted(arena[node_id].items)]

    # ========================================================================
    # Helpers
    # ========================================================================

    def _drop_malformed(self, bookmarks: list[EmbeddedBookmark]) -> list[EmbeddedBookmark]:
        """Drop vectors whose dimension differs from the majority, marking them errored."""
        if not bookmarks:
            return bookmarks

        dims: dict[int, int] = {}
        for bookmark in bookmarks:
            dims[len(bookmark.vector)] = dims.get(len(bookmark.vector), 0) + 1
        expected = max(dims, key=lambda d: (dims[d], d))

        kept = []
        for bookmark in bookmarks:
            if len(bookmark.vector) == expected and expected > 0:
                kept.append(bookmark)
            else:
                logger.warning(
                    f"Bookmark {bookmark.bookmark_id} has a {len(bookmark.vector)}-d vector "
                    f"(expected {expected}), marking as error"
                )
                self.store.transition_bookmark(
                    bookmark.bookmark_id,
                    BookmarkStatus.ERROR,
                    allowed_from={BookmarkStatus.EMBEDDED},
                )
        return kept

    def _check_cancelled(self, user_id: str) -> None:
        if user_id and self.cancellation.is_cancelled(user_id):
            raise ClusteringCancelled(f"Clustering cancelled for user {user_id}")

    def _report(self, phase: str, message: str, progress: float) -> None:
        if self.progress_callback is not None:
            self.progress_callback(phase, message, progress)
