"""
Configuration management for the application.
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Keys
    openai_api_key: Optional[str] = None

    # Model Configuration
    openai_embedding_model: str = "text-embedding-3-small"
    openai_llm_model: str = "gpt-4o-mini"

    # Database Configuration
    db_path: Path = Path("./data/bookmark_weaver.db")

    # Stage worker concurrency
    ingest_concurrency: int = 2
    enrichment_concurrency: int = 16
    embedding_concurrency: int = 4  # Kept low to respect embedding rate limits
    clustering_concurrency: int = 1  # One run at a time per process

    # Retry policy
    ingest_max_attempts: int = 3
    enrichment_max_attempts: int = 3
    embedding_max_attempts: int = 5
    clustering_max_attempts: int = 5
    retry_backoff_base_seconds: float = 1.0
    retry_backoff_max_seconds: float = 60.0
    retry_jitter_ratio: float = 0.25
    queue_poll_interval_seconds: float = 0.5

    # Finished job retention
    job_retention_seconds: float = 86400.0
    job_prune_interval_seconds: float = 300.0

    # Collaborator timeouts
    metadata_fetch_timeout_seconds: float = 5.0
    embedding_timeout_seconds: float = 30.0
    naming_timeout_seconds: float = 15.0

    # Pipeline behaviour
    clustering_delay_seconds: float = 5.0
    clustering_min_embedded_ratio: float = 0.9
    ingest_progress_every: int = 25

    # Clustering / naming
    naming_sample_size: int = 8
    naming_min_items_for_llm: int = 3
    naming_concurrency: int = 3
    max_cluster_depth: int = 6

    # Tier quotas (total bookmarks per user)
    free_tier_bookmark_limit: int = 500
    pro_tier_bookmark_limit: int = 20000

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    def max_attempts_for(self, stage: str) -> int:
        """Return the configured attempt budget for a pipeline stage."""
        return getattr(self, f"{stage}_max_attempts", 3)

    def concurrency_for(self, stage: str) -> int:
        """Return the configured worker count for a pipeline stage."""
        return getattr(self, f"{stage}_concurrency", 1)

    def quota_for_tier(self, tier: str) -> int:
        """Return the bookmark quota for a user tier (unknown tiers get the free quota)."""
        if tier == "pro":
            return self.pro_tier_bookmark_limit
        return self.free_tier_bookmark_limit


# Global settings instance
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global settings
    if settings is None:
        settings = Settings()
    return settings


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure application-wide logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
