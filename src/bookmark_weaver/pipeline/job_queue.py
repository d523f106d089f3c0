"""
Durable multi-stage job queue backed by SQLite.

Jobs survive process restarts. Delivery is at-least-once: a job left
``active`` by a crashed worker is returned to ``waiting`` on recovery, so
stage processors must tolerate re-delivery.
"""

import json
import random
import sqlite3
import threading
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Optional, Union

from pydantic import BaseModel, Field

from bookmark_weaver.config import get_logger
from bookmark_weaver.pipeline.errors import is_retryable

logger = get_logger(__name__)


class Stage(str, Enum):
    """Pipeline stages, in processing order."""
    INGEST = "ingest"
    ENRICHMENT = "enrichment"
    EMBEDDING = "embedding"
    CLUSTERING = "clustering"


class JobState(str, Enum):
    """Lifecycle states of a queued job."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)


class PipelineJob(BaseModel):
    """A unit of work for one stage.

    Attributes:
        id: Queue-assigned job ID
        stage: Stage that consumes the job
        payload: Stage-specific payload (always carries ``user_id``)
        attempts: Number of times the job has been claimed
        max_attempts: Attempt budget before the job fails permanently
        state: Current job state
        run_at: Epoch seconds before which the job is not claimable
        idempotency_key: Optional key deduplicating queued jobs
        progress: Last progress report from the processor
        last_error: Message of the most recent failure
    """

    id: int
    stage: Stage
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    state: JobState = JobState.WAITING
    run_at: float = 0.0
    idempotency_key: Optional[str] = None
    progress: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None
    created_at: float = 0.0

    @property
    def user_id(self) -> Optional[str]:
        return self.payload.get("user_id")


class JobQueue:
    """SQLite-backed queue shared by every stage.

    Args:
        db_path: Path to the queue database, or ":memory:"
        default_max_attempts: Attempt budget per stage
        backoff_base: Delay before the first retry, in seconds
        backoff_max: Upper bound on the retry delay
        jitter_ratio: Random extra delay as a fraction of the backoff
        clock: Time source (epoch seconds)
    """

    def __init__(
        self,
        db_path: Union[Path, str] = ":memory:",
        default_max_attempts: Optional[dict[Stage, int]] = None,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        jitter_ratio: float = 0.25,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        self.default_max_attempts = default_max_attempts or {}
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter_ratio = jitter_ratio
        self.clock = clock

        self._initialize_schema()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Cursor]:
        with self._lock:
            cursor = self.conn.cursor()
            try:
                yield cursor
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    def _initialize_schema(self):
        with self._transaction() as cursor:
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stage TEXT NOT NULL,
                    user_id TEXT,
                    payload TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    run_at REAL NOT NULL,
                    idempotency_key TEXT,
                    progress TEXT,
                    last_error TEXT,
                    created_at REAL NOT NULL,
                    finished_at REAL
                )
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_ready
                ON jobs(state, stage, run_at)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_user
                ON jobs(user_id, stage, state)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_idempotency
                ON jobs(idempotency_key)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_finished
                ON jobs(state, finished_at)
            """)

    def _row_to_job(self, row: sqlite3.Row) -> PipelineJob:
        return PipelineJob(
            id=row["id"],
            stage=Stage(row["stage"]),
            payload=json.loads(row["payload"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            state=JobState(row["state"]),
            run_at=row["run_at"],
            idempotency_key=row["idempotency_key"],
            progress=json.loads(row["progress"]) if row["progress"] else None,
            last_error=row["last_error"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        stage: Stage,
        payload: dict[str, Any],
        delay: float = 0.0,
        idempotency_key: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> PipelineJob:
        """
        Add a job to a stage.

        If ``idempotency_key`` matches a job that is still waiting or delayed,
        that job is returned instead of creating a duplicate. Jobs already
        running do not absorb new work, since they may have read their
        inputs already.

        Args:
            stage: Target stage
            payload: JSON-serializable job payload
            delay: Seconds before the job becomes claimable
            idempotency_key: Optional deduplication key
            max_attempts: Attempt budget (defaults to the stage's budget)

        Returns:
            The queued job
        """
        now = self.clock()
        attempts_budget = max_attempts or self.default_max_attempts.get(stage, 3)
        state = JobState.DELAYED if delay > 0 else JobState.WAITING

        with self._transaction() as cursor:
            if idempotency_key:
                cursor.execute(
                    """
                    SELECT * FROM jobs
                    WHERE idempotency_key = ? AND state IN ('waiting', 'delayed')
                    ORDER BY id LIMIT 1
                """,
                    (idempotency_key,),
                )
                existing = cursor.fetchone()
                if existing:
                    logger.debug(f"Job with key {idempotency_key} already queued (#{existing['id']})")
                    return self._row_to_job(existing)

            cursor.execute(
                """
                INSERT INTO jobs
                (stage, user_id, payload, attempts, max_attempts, state, run_at,
                 idempotency_key, created_at)
                VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?)
            """,
                (
                    stage.value,
                    payload.get("user_id"),
                    json.dumps(payload),
                    attempts_budget,
                    state.value,
                    now + delay,
                    idempotency_key,
                    now,
                ),
            )
            job_id = cursor.lastrowid
            cursor.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            return self._row_to_job(cursor.fetchone())

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def claim(self, stage: Optional[Stage] = None, ignore_delay: bool = False) -> Optional[PipelineJob]:
        """
        Atomically take the next ready job and mark it active.

        Args:
            stage: Stage to claim from (None = any stage)
            ignore_delay: Treat delayed jobs as ready regardless of run_at

        Returns:
            The claimed job, or None if nothing is ready
        """
        query = "SELECT * FROM jobs WHERE state IN ('waiting', 'delayed')"
        params: list = []
        if not ignore_delay:
            query += " AND run_at <= ?"
            params.append(self.clock())
        if stage is not None:
            query += " AND stage = ?"
            params.append(stage.value)
        query += " ORDER BY run_at, id LIMIT 1"

        with self._transaction() as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            if row is None:
                return None
            cursor.execute(
                """
                UPDATE jobs SET state = 'active', attempts = attempts + 1
                WHERE id = ?
            """,
                (row["id"],),
            )
            cursor.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],))
            return self._row_to_job(cursor.fetchone())

    def complete(self, job_id: int) -> bool:
        """
        Mark a job completed.

        Returns:
            False if the job no longer exists (it was cancelled while running)
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                UPDATE jobs SET state = 'completed', finished_at = ?
                WHERE id = ? AND state = 'active'
            """,
                (self.clock(), job_id),
            )
            return cursor.rowcount > 0

    def backoff_delay(self, attempts: int) -> float:
        """Exponential backoff with random jitter for the given attempt count."""
        delay = min(self.backoff_max, self.backoff_base * (2 ** max(0, attempts - 1)))
        return delay + random.uniform(0, delay * self.jitter_ratio)

    def fail(self, job: PipelineJob, error: BaseException) -> Optional[JobState]:
        """
        Record a failed attempt.

        Retryable errors with attempts left send the job back as delayed
        with exponential backoff; anything else fails it permanently.

        Returns:
            The job's new state, or None if the job was cancelled meanwhile
        """
        message = f"{type(error).__name__}: {error}"[:1000]
        retry = is_retryable(error) and job.attempts < job.max_attempts

        with self._transaction() as cursor:
            if retry:
                delay = self.backoff_delay(job.attempts)
                cursor.execute(
                    """
                    UPDATE jobs SET state = 'delayed', run_at = ?, last_error = ?
                    WHERE id = ? AND state = 'active'
                """,
                    (self.clock() + delay, message, job.id),
                )
                new_state = JobState.DELAYED
            else:
                cursor.execute(
                    """
                    UPDATE jobs SET state = 'failed', last_error = ?, finished_at = ?
                    WHERE id = ? AND state = 'active'
                """,
                    (message, self.clock(), job.id),
                )
                new_state = JobState.FAILED

            if cursor.rowcount == 0:
                return None
        return new_state

    def update_progress(self, job_id: int, progress: dict[str, Any]) -> None:
        """Store a processor's latest progress report on the job."""
        with self._transaction() as cursor:
            cursor.execute(
                "UPDATE jobs SET progress = ? WHERE id = ?",
                (json.dumps(progress), job_id),
            )

    def recover_stalled(self) -> int:
        """
        Return jobs left active by a dead process to the waiting state.

        Returns:
            Number of jobs recovered
        """
        with self._transaction() as cursor:
            cursor.execute("UPDATE jobs SET state = 'waiting' WHERE state = 'active'")
            recovered = cursor.rowcount
        if recovered:
            logger.info(f"Recovered {recovered} stalled jobs")
        return recovered

    def prune_finished(self, older_than: float) -> int:
        """
        Delete completed and failed jobs that finished more than ``older_than`` seconds ago.

        Returns:
            Number of jobs deleted
        """
        cutoff = self.clock() - older_than
        with self._transaction() as cursor:
            cursor.execute(
                """
                DELETE FROM jobs
                WHERE state IN ('completed', 'failed') AND finished_at <= ?
            """,
                (cutoff,),
            )
            pruned = cursor.rowcount
        if pruned:
            logger.info(f"Pruned {pruned} finished jobs")
        return pruned

    # ------------------------------------------------------------------
    # Inspection and cancellation
    # ------------------------------------------------------------------

    def get_job(self, job_id: int) -> Optional[PipelineJob]:
        """Get a job by ID."""
        with self._transaction() as cursor:
            cursor.execute("SELECT * FROM jobs WHERE id = ?", (job_id,))
            row = cursor.fetchone()
        return self._row_to_job(row) if row else None

    def find_jobs(
        self,
        stage: Optional[Stage] = None,
        user_id: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
    ) -> list[PipelineJob]:
        """
        List jobs matching the given filters, oldest first.

        Args:
            stage: Optional stage filter
            user_id: Optional owner filter
            states: Optional state filter
        """
        query = "SELECT * FROM jobs WHERE 1 = 1"
        params: list = []
        if stage is not None:
            query += " AND stage = ?"
            params.append(stage.value)
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if states is not None:
            state_values = [s.value for s in states]
            query += f" AND state IN ({','.join('?' * len(state_values))})"
            params.extend(state_values)
        query += " ORDER BY id"

        with self._transaction() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_job(row) for row in rows]

    def latest_job(self, stage: Stage, user_id: str) -> Optional[PipelineJob]:
        """Get a user's most recently created job in a stage, in any state."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                SELECT * FROM jobs WHERE stage = ? AND user_id = ?
                ORDER BY id DESC LIMIT 1
            """,
                (stage.value, user_id),
            )
            row = cursor.fetchone()
        return self._row_to_job(row) if row else None

    def has_pending_jobs(self, stage: Stage, user_id: str) -> bool:
        """Check whether a user has a waiting, delayed or active job in a stage."""
        return bool(self.find_jobs(stage=stage, user_id=user_id, states=PENDING_STATES))

    def count_by_state(self, stage: Optional[Stage] = None) -> dict[JobState, int]:
        """Count jobs per state, optionally for one stage."""
        counts = {state: 0 for state in JobState}
        query = "SELECT state, COUNT(*) AS count FROM jobs"
        params: list = []
        if stage is not None:
            query += " WHERE stage = ?"
            params.append(stage.value)
        query += " GROUP BY state"

        with self._transaction() as cursor:
            cursor.execute(query, params)
            for row in cursor.fetchall():
                counts[JobState(row["state"])] = row["count"]
        return counts

    def cancel_matching(
        self,
        predicate: Callable[[PipelineJob], bool],
        stages: Optional[Iterable[Stage]] = None,
    ) -> int:
        """
        Remove every waiting, delayed or active job matching a predicate.

        Active jobs are removed from the queue immediately; their workers
        notice through the cancellation registry and their completion is
        ignored.

        Args:
            predicate: Selects the jobs to remove
            stages: Stages to consider (None = all stages)

        Returns:
            Number of jobs removed
        """
        stage_set = set(stages) if stages is not None else set(Stage)
        with self._transaction() as cursor:
            cursor.execute(
                "SELECT * FROM jobs WHERE state IN ('waiting', 'delayed', 'active')"
            )
            doomed = [
                job.id
                for job in (self._row_to_job(row) for row in cursor.fetchall())
                if job.stage in stage_set and predicate(job)
            ]
            cursor.executemany("DELETE FROM jobs WHERE id = ?", [(job_id,) for job_id in doomed])

        if doomed:
            logger.info(f"Removed {len(doomed)} queued jobs")
        return len(doomed)

    def cancel_user_jobs(self, user_id: str) -> int:
        """Remove every queued or running job belonging to a user."""
        return self.cancel_matching(lambda job: job.user_id == user_id)

    def close(self):
        """Close the queue database connection."""
        with self._lock:
            self.conn.close()
