"""
Cancellation registry for cooperative early exit.

Stage processors receive a registry instance and check it at their
checkpoints; nothing is interrupted preemptively.
"""

import threading

from bookmark_weaver.config import get_logger

logger = get_logger(__name__)


class CancellationRegistry:
    """Thread-safe set of user IDs whose in-flight work must be abandoned."""

    def __init__(self):
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def cancel(self, user_id: str) -> None:
        """Mark a user's work as cancelled."""
        with self._lock:
            self._cancelled.add(user_id)
        logger.info(f"Marked user {user_id} as cancelled")

    def clear(self, user_id: str) -> None:
        """Allow a user's work to run again (new ingest or manual re-run)."""
        with self._lock:
            self._cancelled.discard(user_id)

    def is_cancelled(self, user_id: str) -> bool:
        """Check whether a user's work has been cancelled."""
        with self._lock:
            return user_id in self._cancelled

    def __contains__(self, user_id: str) -> bool:
        return self.is_cancelled(user_id)
