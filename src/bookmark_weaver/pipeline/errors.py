"""
Error taxonomy for the processing pipeline.
"""

import sqlite3

import httpx
import openai


class PipelineError(Exception):
    """Base class for pipeline errors."""


class TransientError(PipelineError):
    """A failure worth retrying with backoff (timeouts, rate limits, not-ready-yet)."""


class QuotaExceededError(PipelineError):
    """Raised when an ingest would push a user past their tier quota. Never retried."""

    def __init__(self, tier: str, limit: int, requested: int):
        self.tier = tier
        self.limit = limit
        self.requested = requested
        super().__init__(
            f"Bookmark quota exceeded for tier '{tier}': {requested} requested, limit is {limit}"
        )


class ClusteringCancelled(PipelineError):
    """Raised at a clustering checkpoint when the user has been cancelled."""


class EmbeddingConfigurationError(PipelineError):
    """Raised when no embedding backend is configured."""


# Collaborator and storage-lock failures that are safe to retry
RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientError,
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    httpx.TimeoutException,
    httpx.TransportError,
    sqlite3.OperationalError,
)


def is_retryable(exc: BaseException) -> bool:
    """Return True if a failed job should be retried with backoff."""
    return isinstance(exc, RETRYABLE_EXCEPTIONS)
