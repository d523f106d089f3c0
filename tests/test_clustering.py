"""
Unit tests for hierarchical bookmark clustering.

Tests the core clustering logic including:
- Recursive splitting against the density profile
- Small-group rebalancing
- Depth ceiling and failed-split forced leaves
- Forest persistence (parents, leaf-only assignments, full replace)
- Cancellation checkpoints
"""

import pytest
from unittest.mock import patch
import numpy as np

from bookmark_weaver.agents.bookmark_clusterer import BookmarkClusterer, ClusterNode
from bookmark_weaver.agents.models import (
    BookmarkStatus,
    ClusteringDensityProfile,
    ClusteringSettings,
    EmbeddedBookmark,
    FolderDensity,
)
from bookmark_weaver.pipeline.cancellation import CancellationRegistry
from bookmark_weaver.pipeline.errors import ClusteringCancelled


def make_bookmarks(count, centers=4, dim=16, noise=0.05, seed=7):
    """Bookmarks spread round-robin over well-separated random centers."""
    rng = np.random.default_rng(seed)
    center_vectors = rng.normal(size=(centers, dim))
    bookmarks = []
    for i in range(count):
        vector = center_vectors[i % centers] + rng.normal(scale=noise, size=dim)
        bookmarks.append(
            EmbeddedBookmark(
                bookmark_id=f"b{i}",
                url=f"https://site{i % centers}.example.com/page/{i}",
                title=f"Topic {i % centers} article {i}",
                vector=vector.tolist(),
            )
        )
    return bookmarks


def leaves(arena):
    return [node for node in arena if node.is_leaf and not node.deleted]


def ancestors_are_acyclic(clusters):
    parents = {c.id: c.parent_id for c in clusters}
    for cluster_id in parents:
        seen = set()
        current = cluster_id
        while current is not None:
            if current in seen:
                return False
            seen.add(current)
            current = parents.get(current)
    return True


@pytest.fixture
def clusterer(store, namer):
    return BookmarkClusterer(store, namer=namer, naming_concurrency=2)


@pytest.fixture
def medium_profile():
    return ClusteringDensityProfile(target_leaf_size=14, max_children=4, min_child_size=3, max_depth=6)


class TestBuildTree:
    """Tests for the in-memory recursive split."""

    def test_normalize_scales_rows_to_unit_length(self):
        matrix = np.array([[3.0, 4.0], [0.0, 0.0], [0.0, 2.0]])

        normalized = BookmarkClusterer.normalize(matrix)

        np.testing.assert_allclose(normalized, [[0.6, 0.8], [0.0, 0.0], [0.0, 1.0]])
        assert np.linalg.norm(normalized[0]) == pytest.approx(1.0)

    def test_fifty_items_split_into_bounded_children(self, clusterer, medium_profile):
        """Root splits into at most max_children and leaves respect the target size."""
        bookmarks = make_bookmarks(50)
        matrix = clusterer.normalize(np.array([b.vector for b in bookmarks]))

        arena = clusterer.build_tree(matrix, medium_profile)
        root = arena[0]

        assert not root.is_leaf
        assert 2 <= len(root.children) <= 4
        for leaf in leaves(arena):
            assert len(leaf.items) <= medium_profile.target_leaf_size or leaf.forced

        assigned = sorted(i for leaf in leaves(arena) for i in leaf.items)
        assert assigned == list(range(50))

    def test_leaves_meet_min_child_size(self, clusterer):
        """Every leaf holds at least min_child_size items unless it is the sole root."""
        profile = ClusteringDensityProfile(target_leaf_size=8, max_children=6, min_child_size=2)
        bookmarks = make_bookmarks(37, centers=5, noise=0.3, seed=11)
        matrix = clusterer.normalize(np.array([b.vector for b in bookmarks]))

        arena = clusterer.build_tree(matrix, profile)

        for leaf in leaves(arena):
            if leaf.id != 0:
                assert len(leaf.items) >= profile.min_child_size

    def test_small_input_is_single_leaf(self, clusterer, medium_profile):
        """Fewer items than the target leaf size yield a root leaf."""
        matrix = clusterer.normalize(np.array(make_bookmarks(3)[0].vector, ndmin=2).repeat(3, axis=0))

        arena = clusterer.build_tree(matrix, medium_profile)

        assert arena[0].is_leaf
        assert len(arena) == 1

    def test_identical_vectors_degrade_to_single_leaf(self, clusterer, medium_profile):
        """All-identical vectors cannot be separated and stay in one leaf."""
        matrix = clusterer.normalize(np.ones((40, 8)))

        arena = clusterer.build_tree(matrix, medium_profile)

        assert arena[0].is_leaf
        assert arena[0].items == list(range(40))

    def test_depth_ceiling_forces_leaf(self, clusterer):
        """Nodes at the depth ceiling become forced leaves regardless of size."""
        profile = ClusteringDensityProfile(target_leaf_size=2, max_children=2, min_child_size=1, max_depth=0)
        bookmarks = make_bookmarks(20)
        matrix = clusterer.normalize(np.array([b.vector for b in bookmarks]))

        arena = clusterer.build_tree(matrix, profile)

        assert arena[0].is_leaf
        assert arena[0].forced

    def test_failed_split_forces_leaf(self, clusterer, medium_profile):
        """A k-means failure turns the node into a forced leaf instead of aborting."""
        bookmarks = make_bookmarks(30)
        matrix = clusterer.normalize(np.array([b.vector for b in bookmarks]))

        with patch.object(BookmarkClusterer, "_kmeans", side_effect=ValueError("bad input")):
            arena = clusterer.build_tree(matrix, medium_profile)

        assert arena[0].is_leaf
        assert arena[0].forced
        assert len(arena[0].items) == 30

    def test_cancellation_aborts_split(self, store, medium_profile):
        """A cancelled user stops the recursion at the next checkpoint."""
        registry = CancellationRegistry()
        registry.cancel("user-1")
        clusterer = BookmarkClusterer(store, cancellation=registry)
        matrix = clusterer.normalize(np.ones((5, 4)))

        with pytest.raises(ClusteringCancelled):
            clusterer.build_tree(matrix, medium_profile, user_id="user-1")


class TestRebalance:
    """Tests for small-group merging."""

    def test_small_groups_merge_into_largest(self):
        arena = [
            ClusterNode(id=0, items=list(range(17)), children=[1, 2, 3]),
            ClusterNode(id=1, parent=0, items=list(range(0, 10)), depth=1),
            ClusterNode(id=2, parent=0, items=[10, 11], depth=1),
            ClusterNode(id=3, parent=0, items=list(range(12, 17)), depth=1),
        ]

        BookmarkClusterer._rebalance(arena, arena[0], min_child_size=3)

        assert arena[0].children == [1, 3]
        assert arena[2].deleted
        assert arena[2].items == []
        assert sorted(arena[1].items) == list(range(12))

    def test_all_small_groups_collapse_to_one(self):
        arena = [
            ClusterNode(id=0, items=[0, 1, 2, 3], children=[1, 2]),
            ClusterNode(id=1, parent=0, items=[0, 1], depth=1),
            ClusterNode(id=2, parent=0, items=[2, 3], depth=1),
        ]

        BookmarkClusterer._rebalance(arena, arena[0], min_child_size=3)

        assert len(arena[0].children) == 1


class TestClusterBookmarks:
    """Tests for the persisted forest."""

    def test_fifty_bookmarks_all_assigned(self, clusterer, store):
        """Scenario: 50 bookmarks with the medium profile are all assigned exactly once."""
        settings = ClusteringSettings(folder_density=FolderDensity.MEDIUM)

        result = clusterer.cluster_bookmarks("user-1", make_bookmarks(50), settings)

        roots = [c for c in result.clusters if c.parent_id is None]
        assert 1 <= len(roots) <= 4
        assigned = [a.bookmark_id for a in result.assignments]
        assert len(assigned) == 50
        assert len(set(assigned)) == 50
        assert store.count_clusters("user-1") == len(result.clusters)
        assert store.count_assignments("user-1") == 50

    def test_forest_has_no_cycles_and_same_owner(self, clusterer):
        result = clusterer.cluster_bookmarks("user-1", make_bookmarks(60, centers=6), ClusteringSettings())

        ids = {c.id for c in result.clusters}
        assert ancestors_are_acyclic(result.clusters)
        for cluster in result.clusters:
            assert cluster.user_id == "user-1"
            assert cluster.parent_id is None or cluster.parent_id in ids

    def test_only_leaves_hold_assignments(self, clusterer):
        result = clusterer.cluster_bookmarks("user-1", make_bookmarks(60, centers=6), ClusteringSettings())

        parent_ids = {c.parent_id for c in result.clusters if c.parent_id}
        assigned_clusters = {a.cluster_id for a in result.assignments}
        assert not (parent_ids & assigned_clusters)

    def test_small_set_persists_single_root(self, clusterer):
        result = clusterer.cluster_bookmarks("user-1", make_bookmarks(3), ClusteringSettings())

        assert len(result.clusters) == 1
        assert result.clusters[0].parent_id is None
        assert len(result.assignments) == 3

    def test_empty_input_clears_previous_forest(self, clusterer, store):
        clusterer.cluster_bookmarks("user-1", make_bookmarks(5), ClusteringSettings())
        assert store.count_clusters("user-1") == 1

        result = clusterer.cluster_bookmarks("user-1", [], ClusteringSettings())

        assert result.clusters == []
        assert store.count_clusters("user-1") == 0

    def test_rerun_replaces_previous_forest(self, clusterer, store):
        first = clusterer.cluster_bookmarks("user-1", make_bookmarks(30), ClusteringSettings())
        second = clusterer.cluster_bookmarks("user-1", make_bookmarks(30), ClusteringSettings())

        stored_ids = {c.id for c in store.get_clusters_for_user("user-1")}
        assert stored_ids == {c.id for c in second.clusters}
        assert not stored_ids & {c.id for c in first.clusters}

    def test_other_users_untouched(self, clusterer, store):
        clusterer.cluster_bookmarks("user-1", make_bookmarks(10), ClusteringSettings())
        clusterer.cluster_bookmarks("user-2", make_bookmarks(10), ClusteringSettings())

        assert store.count_clusters("user-1") == 1
        assert store.count_clusters("user-2") == 1

    def test_malformed_vectors_are_dropped_and_marked_error(self, clusterer, store):
        bookmark = store.upsert_bookmark("user-1", "bad", "https://bad.example.com", "Bad", "hash-bad")
        store.transition_bookmark(bookmark.id, BookmarkStatus.EMBEDDED)
        bookmarks = make_bookmarks(6, dim=16)
        bookmarks.append(
            EmbeddedBookmark(bookmark_id=bookmark.id, url=bookmark.url, title="Bad", vector=[1.0, 2.0])
        )

        result = clusterer.cluster_bookmarks("user-1", bookmarks, ClusteringSettings())

        assert result.total_bookmarks == 6
        assert bookmark.id not in {a.bookmark_id for a in result.assignments}
        assert store.get_bookmark(bookmark.id).status == BookmarkStatus.ERROR

    def test_progress_phases_reported(self, store, namer):
        phases = []
        clusterer = BookmarkClusterer(
            store, namer=namer, progress_callback=lambda phase, message, progress: phases.append(phase)
        )

        clusterer.cluster_bookmarks("user-1", make_bookmarks(20), ClusteringSettings())

        assert phases == ["clustering", "naming", "complete"]

    def test_names_come_from_namer(self, clusterer, namer):
        result = clusterer.cluster_bookmarks("user-1", make_bookmarks(10), ClusteringSettings())

        assert result.clusters[0].name == "Test Folder"
        assert namer.calls == 1

    def test_cancelled_user_raises(self, store):
        registry = CancellationRegistry()
        registry.cancel("user-1")
        clusterer = BookmarkClusterer(store, cancellation=registry)

        with pytest.raises(ClusteringCancelled):
            clusterer.cluster_bookmarks("user-1", make_bookmarks(10), ClusteringSettings())

        assert store.count_clusters("user-1") == 0
