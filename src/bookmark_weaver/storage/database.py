"""
SQLite database handler for bookmarks, the shared vector cache and cluster forests.
"""

import sqlite3
import struct
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, UTC
from pathlib import Path
from typing import Iterator, Optional, Union

from bookmark_weaver.config import get_logger
from bookmark_weaver.agents.models import (
    Bookmark,
    BookmarkStatus,
    Cluster,
    ClusterAssignment,
    ClusteringRun,
    ClusteringRunState,
    EmbeddedBookmark,
    SharedVectorEntry,
)
from .base import BookmarkStore

logger = get_logger(__name__)

IN_FLIGHT_STATUSES = {BookmarkStatus.PENDING, BookmarkStatus.ENRICHED}


def _pack_vector(vector: list[float]) -> bytes:
    return struct.pack(f'{len(vector)}f', *vector)


def _unpack_vector(blob: Optional[bytes]) -> Optional[list[float]]:
    if blob is None:
        return None
    num_floats = len(blob) // 4
    return list(struct.unpack(f'{num_floats}f', blob))


class BookmarkDB(BookmarkStore):
    """SQLite database handler shared by all pipeline workers.

    A single connection is shared between worker threads and every access
    is serialized through a re-entrant lock.
    """

    def __init__(self, db_path: Union[Path, str]):
        """
        Initialize the database connection.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.RLock()
        self._initialize_schema()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        """Yield a cursor under the connection lock; commit on success."""
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def _initialize_schema(self):
        """Create the database schema if it doesn't exist."""
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    tier TEXT NOT NULL DEFAULT 'free',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS bookmarks (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    external_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    title TEXT,
                    ai_title TEXT,
                    description TEXT,
                    content_hash TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(user_id, external_id)
                )
            """)

            # Shared cross-user vector cache (one row per canonical URL)
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS shared_vectors (
                    content_hash TEXT PRIMARY KEY,
                    url TEXT NOT NULL,
                    vector BLOB,
                    created_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS clusters (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    parent_id TEXT,
                    created_at TIMESTAMP NOT NULL,
                    FOREIGN KEY (parent_id) REFERENCES clusters(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS cluster_assignments (
                    cluster_id TEXT NOT NULL,
                    bookmark_id TEXT NOT NULL,
                    PRIMARY KEY (cluster_id, bookmark_id),
                    FOREIGN KEY (cluster_id) REFERENCES clusters(id) ON DELETE CASCADE
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS clustering_runs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    state TEXT NOT NULL,
                    started_at TIMESTAMP NOT NULL,
                    finished_at TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_bookmarks_user_status
                ON bookmarks(user_id, status)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_bookmarks_content_hash
                ON bookmarks(content_hash)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_clusters_user
                ON clusters(user_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_cluster_assignments_bookmark
                ON cluster_assignments(bookmark_id)
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_clustering_runs_user
                ON clustering_runs(user_id, started_at)
            """)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def set_user_tier(self, user_id: str, tier: str) -> None:
        """Create or update a user with the given tier."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO users (id, tier) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET tier = excluded.tier
            """,
                (user_id, tier),
            )

    def get_user_tier(self, user_id: str) -> str:
        """Get a user's tier ("free" for unknown users)."""
        with self._transaction() as cursor:
            cursor.execute("SELECT tier FROM users WHERE id = ?", (user_id,))
            row = cursor.fetchone()
        return row["tier"] if row else "free"

    # ------------------------------------------------------------------
    # Bookmarks
    # ------------------------------------------------------------------

    def _row_to_bookmark(self, row: sqlite3.Row) -> Bookmark:
        return Bookmark(
            id=row["id"],
            user_id=row["user_id"],
            external_id=row["external_id"],
            url=row["url"],
            title=row["title"] or "",
            ai_title=row["ai_title"],
            description=row["description"],
            content_hash=row["content_hash"],
            status=BookmarkStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

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

        Re-ingesting the same pair never creates a second row; the existing
        row is refreshed and returned to pending.

        Args:
            user_id: Owner of the bookmark
            external_id: Browser-assigned bookmark ID
            url: Bookmarked URL
            title: User-visible title
            content_hash: Hash of the canonical URL

        Returns:
            The stored bookmark
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO bookmarks
                (id, user_id, external_id, url, title, content_hash, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)
                ON CONFLICT(user_id, external_id) DO UPDATE SET
                    url = excluded.url,
                    title = excluded.title,
                    content_hash = excluded.content_hash,
                    status = 'pending',
                    updated_at = CURRENT_TIMESTAMP
            """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    external_id,
                    url,
                    title,
                    content_hash,
                    datetime.now(UTC).isoformat(),
                ),
            )
            cursor.execute(
                "SELECT * FROM bookmarks WHERE user_id = ? AND external_id = ?",
                (user_id, external_id),
            )
            row = cursor.fetchone()
        return self._row_to_bookmark(row)

    def get_bookmark(self, bookmark_id: str) -> Optional[Bookmark]:
        """Get a bookmark by ID."""
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM bookmarks WHERE id = ?", (bookmark_id,))
            row = cursor.fetchone()
        return self._row_to_bookmark(row) if row else None

    def get_bookmarks_for_user(
        self, user_id: str, status: Optional[BookmarkStatus] = None
    ) -> list[Bookmark]:
        """
        Get a user's bookmarks, optionally filtered by status.

        Args:
            user_id: Owner of the bookmarks
            status: Optional status filter

        Returns:
            Bookmarks in ingestion order
        """
        with self._transaction() as cursor:
            if status is None:
                cursor.execute(
                    "SELECT * FROM bookmarks WHERE user_id = ? ORDER BY created_at, rowid",
                    (user_id,),
                )
            else:
                cursor.execute(
                    """
                    SELECT * FROM bookmarks WHERE user_id = ? AND status = ?
                    ORDER BY created_at, rowid
                """,
                    (user_id, status.value),
                )
            rows = cursor.fetchall()
        return [self._row_to_bookmark(row) for row in rows]

    def count_bookmarks_by_status(self, user_id: str) -> dict[BookmarkStatus, int]:
        """Count a user's bookmarks per status (every status is present in the result)."""
        counts = {status: 0 for status in BookmarkStatus}
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT status, COUNT(*) AS count FROM bookmarks
                WHERE user_id = ? GROUP BY status
            """,
                (user_id,),
            )
            for row in cursor.fetchall():
                counts[BookmarkStatus(row["status"])] = row["count"]
        return counts

    def count_bookmarks(self, user_id: str) -> int:
        """Count all bookmarks owned by a user."""
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM bookmarks WHERE user_id = ?", (user_id,))
            return cursor.fetchone()[0]

    def count_existing_external_ids(self, user_id: str, external_ids: list[str]) -> int:
        """Count how many of the given external IDs already exist for a user."""
        if not external_ids:
            return 0

        unique_ids = list(set(external_ids))
        total = 0
        # SQLite caps the number of bound parameters per statement
        with self._transaction() as cursor:
            for start in range(0, len(unique_ids), 500):
                chunk = unique_ids[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                cursor.execute(
                    f"""
                    SELECT COUNT(*) FROM bookmarks
                    WHERE user_id = ? AND external_id IN ({placeholders})
                """,
                    [user_id, *chunk],
                )
                total += cursor.fetchone()[0]
        return total

    def transition_bookmark(
        self,
        bookmark_id: str,
        new_status: BookmarkStatus,
        allowed_from: Optional[set[BookmarkStatus]] = None,
    ) -> bool:
        """
        Move a bookmark to a new status if its current status allows it.

        Args:
            bookmark_id: Bookmark to update
            new_status: Target status
            allowed_from: Statuses the bookmark may currently be in (None = any)

        Returns:
            True if the row was updated
        """
        with self._transaction() as cursor:
            if allowed_from is None:
                cursor.execute(
                    """
                    UPDATE bookmarks SET status = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                """,
                    (new_status.value, bookmark_id),
                )
            else:
                placeholders = ",".join("?" * len(allowed_from))
                cursor.execute(
                    f"""
                    UPDATE bookmarks SET status = ?, updated_at = CURRENT_TIMESTAMP
                    WHERE id = ? AND status IN ({placeholders})
                """,
                    [new_status.value, bookmark_id, *(s.value for s in allowed_from)],
                )
            return cursor.rowcount > 0

    def update_bookmark_enrichment(
        self,
        bookmark_id: str,
        description: str,
        ai_title: Optional[str] = None,
    ) -> bool:
        """
        Record enrichment output and mark the bookmark enriched.

        Only bookmarks still in flight (pending or enriched) are touched, so a
        re-delivered job cannot resurrect an idle or finished bookmark.

        Returns:
            True if the row was updated
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE bookmarks
                SET description = ?, ai_title = COALESCE(?, ai_title),
                    status = 'enriched', updated_at = CURRENT_TIMESTAMP
                WHERE id = ? AND status IN ('pending', 'enriched')
            """,
                (description, ai_title, bookmark_id),
            )
            return cursor.rowcount > 0

    def reset_in_flight_to_idle(self, user_id: str) -> int:
        """
        Move a user's pending and enriched bookmarks to idle.

        Returns:
            Number of bookmarks reset
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE bookmarks SET status = 'idle', updated_at = CURRENT_TIMESTAMP
                WHERE user_id = ? AND status IN ('pending', 'enriched')
            """,
                (user_id,),
            )
            return cursor.rowcount

    def get_embedded_bookmarks(self, user_id: str) -> list[EmbeddedBookmark]:
        """
        Get all embedded bookmarks of a user joined with their cached vectors.

        Args:
            user_id: Owner of the bookmarks

        Returns:
            Embedded bookmarks in ingestion order
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT b.id, b.url, b.title, b.ai_title, b.description, v.vector
                FROM bookmarks b
                JOIN shared_vectors v ON v.content_hash = b.content_hash
                WHERE b.user_id = ? AND b.status = 'embedded' AND v.vector IS NOT NULL
                ORDER BY b.created_at, b.rowid
            """,
                (user_id,),
            )
            rows = cursor.fetchall()

        return [
            EmbeddedBookmark(
                bookmark_id=row["id"],
                url=row["url"],
                title=row["ai_title"] or row["title"] or "",
                description=row["description"],
                vector=_unpack_vector(row["vector"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Shared vector cache
    # ------------------------------------------------------------------

    def _row_to_shared_vector(self, row: sqlite3.Row) -> SharedVectorEntry:
        return SharedVectorEntry(
            content_hash=row["content_hash"],
            url=row["url"],
            vector=_unpack_vector(row["vector"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def ensure_shared_vector(self, content_hash: str, url: str) -> SharedVectorEntry:
        """Create the cache entry for a canonical URL if absent and return it."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT OR IGNORE INTO shared_vectors (content_hash, url, vector, created_at)
                VALUES (?, ?, NULL, ?)
            """,
                (content_hash, url, datetime.now(UTC).isoformat()),
            )
            cursor.execute(
                "SELECT * FROM shared_vectors WHERE content_hash = ?", (content_hash,)
            )
            row = cursor.fetchone()
        return self._row_to_shared_vector(row)

    def get_shared_vector(self, content_hash: str) -> Optional[SharedVectorEntry]:
        """Get a cache entry by content hash."""
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM shared_vectors WHERE content_hash = ?", (content_hash,)
            )
            row = cursor.fetchone()
        return self._row_to_shared_vector(row) if row else None

    def store_shared_vector(
        self, content_hash: str, url: str, vector: list[float]
    ) -> list[float]:
        """
        Store a vector with first-writer-wins semantics.

        A vector already present is never overwritten; the caller gets back
        whatever ended up stored.

        Returns:
            The stored vector
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO shared_vectors (content_hash, url, vector, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(content_hash) DO UPDATE SET
                    vector = COALESCE(shared_vectors.vector, excluded.vector)
            """,
                (content_hash, url, _pack_vector(vector), datetime.now(UTC).isoformat()),
            )
            cursor.execute(
                "SELECT vector FROM shared_vectors WHERE content_hash = ?", (content_hash,)
            )
            row = cursor.fetchone()
        return _unpack_vector(row["vector"])

    def count_shared_vectors(self, with_vector_only: bool = True) -> int:
        """Count cache entries (by default only those holding a vector)."""
        query = "SELECT COUNT(*) FROM shared_vectors"
        if with_vector_only:
            query += " WHERE vector IS NOT NULL"
        with self._transaction() as cursor:
            cursor.execute(query)
            return cursor.fetchone()[0]

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    def _row_to_cluster(self, row: sqlite3.Row) -> Cluster:
        return Cluster(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            parent_id=row["parent_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def delete_clusters_for_user(self, user_id: str) -> int:
        """
        Delete every cluster (and assignment) owned by a user.

        Returns:
            Number of clusters deleted
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM cluster_assignments WHERE cluster_id IN
                (SELECT id FROM clusters WHERE user_id = ?)
            """,
                (user_id,),
            )
            cursor.execute("DELETE FROM clusters WHERE user_id = ?", (user_id,))
            return cursor.rowcount

    def add_cluster(self, cluster: Cluster) -> str:
        """Persist a cluster row and return its ID."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO clusters (id, user_id, name, parent_id, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (
                    cluster.id,
                    cluster.user_id,
                    cluster.name,
                    cluster.parent_id,
                    cluster.created_at.isoformat(),
                ),
            )
        return cluster.id

    def add_assignments(self, cluster_id: str, bookmark_ids: list[str]) -> int:
        """
        Assign bookmarks to a leaf cluster.

        Returns:
            Number of assignment rows written
        """
        with self._transaction() as cursor:
            cursor.executemany(
                """
                INSERT OR IGNORE INTO cluster_assignments (cluster_id, bookmark_id)
                VALUES (?, ?)
            """,
                [(cluster_id, bookmark_id) for bookmark_id in bookmark_ids],
            )
            return cursor.rowcount

    def get_clusters_for_user(
        self, user_id: str, limit: Optional[int] = None, offset: int = 0
    ) -> list[Cluster]:
        """
        Get a user's clusters in creation order (parents before children).

        Args:
            user_id: Owner of the clusters
            limit: Optional page size
            offset: Rows to skip

        Returns:
            List of clusters
        """
        query = "SELECT * FROM clusters WHERE user_id = ? ORDER BY created_at, rowid"
        params: list = [user_id]
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_cluster(row) for row in rows]

    def count_clusters(self, user_id: str) -> int:
        """Count a user's clusters."""
        with self._transaction() as cursor:
            cursor.execute("SELECT COUNT(*) FROM clusters WHERE user_id = ?", (user_id,))
            return cursor.fetchone()[0]

    def get_assignments_for_clusters(self, cluster_ids: list[str]) -> list[ClusterAssignment]:
        """Get leaf assignments for the given clusters."""
        if not cluster_ids:
            return []

        assignments = []
        with self._transaction() as cursor:
            for start in range(0, len(cluster_ids), 500):
                chunk = cluster_ids[start:start + 500]
                placeholders = ",".join("?" * len(chunk))
                cursor.execute(
                    f"""
                    SELECT cluster_id, bookmark_id FROM cluster_assignments
                    WHERE cluster_id IN ({placeholders})
                    ORDER BY rowid
                """,
                    chunk,
                )
                assignments.extend(
                    ClusterAssignment(cluster_id=row["cluster_id"], bookmark_id=row["bookmark_id"])
                    for row in cursor.fetchall()
                )
        return assignments

    def count_assignments(self, user_id: str) -> int:
        """Count bookmarks assigned to any of a user's clusters."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT COUNT(DISTINCT a.bookmark_id) FROM cluster_assignments a
                JOIN clusters c ON c.id = a.cluster_id
                WHERE c.user_id = ?
            """,
                (user_id,),
            )
            return cursor.fetchone()[0]

    def count_embedded_unassigned(self, user_id: str) -> int:
        """Count embedded bookmarks that no cluster of the user contains."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT COUNT(*) FROM bookmarks b
                WHERE b.user_id = ? AND b.status = 'embedded'
                AND NOT EXISTS (
                    SELECT 1 FROM cluster_assignments a
                    JOIN clusters c ON c.id = a.cluster_id
                    WHERE a.bookmark_id = b.id AND c.user_id = b.user_id
                )
            """,
                (user_id,),
            )
            return cursor.fetchone()[0]

    # ------------------------------------------------------------------
    # Clustering runs
    # ------------------------------------------------------------------

    def _row_to_run(self, row: sqlite3.Row) -> ClusteringRun:
        return ClusteringRun(
            id=row["id"],
            user_id=row["user_id"],
            state=ClusteringRunState(row["state"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=(
                datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None
            ),
        )

    def start_clustering_run(self, user_id: str) -> ClusteringRun:
        """Record the start of a clustering run."""
        run = ClusteringRun(id=str(uuid.uuid4()), user_id=user_id)
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO clustering_runs (id, user_id, state, started_at)
                VALUES (?, ?, ?, ?)
            """,
                (run.id, user_id, run.state.value, run.started_at.isoformat()),
            )
        return run

    def finish_clustering_run(self, run_id: str, state: ClusteringRunState) -> None:
        """Record the final state of a clustering run."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE clustering_runs SET state = ?, finished_at = ?
                WHERE id = ?
            """,
                (state.value, datetime.now(UTC).isoformat(), run_id),
            )

    def get_latest_clustering_run(self, user_id: str) -> Optional[ClusteringRun]:
        """Get the most recently started clustering run of a user."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM clustering_runs WHERE user_id = ?
                ORDER BY started_at DESC, rowid DESC LIMIT 1
            """,
                (user_id,),
            )
            row = cursor.fetchone()
        return self._row_to_run(row) if row else None

    def close(self):
        """Close the database connection."""
        with self._lock:
            self.conn.close()
