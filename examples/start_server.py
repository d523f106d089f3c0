"""
Bookmark Weaver launcher.

Prints the pipeline configuration and the backlog left in the job queue,
then serves the API. The stage workers start with the app and pick up any
jobs left over from a previous run.

Usage:
    uv run python examples/start_server.py
"""

import sys
from pathlib import Path

# Add src to path so we can import bookmark_weaver
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bookmark_weaver.config import Settings, get_settings
from bookmark_weaver.pipeline.job_queue import JobQueue, JobState, Stage


def print_pipeline(settings: Settings) -> None:
    """Per-stage worker counts and retry budgets."""
    print("Pipeline stages:")
    for stage in Stage:
        print(
            f"  - {stage.value:<11} workers={settings.concurrency_for(stage.value):<3}"
            f" attempts={settings.max_attempts_for(stage.value)}"
        )
    print(
        f"  retry backoff {settings.retry_backoff_base_seconds}s"
        f" → {settings.retry_backoff_max_seconds}s (+{settings.retry_jitter_ratio:.0%} jitter)"
    )
    print(
        f"  clustering starts {settings.clustering_delay_seconds}s after ingest,"
        f" once {settings.clustering_min_embedded_ratio:.0%} of bookmarks are embedded"
    )
    print(
        f"  quotas: free={settings.free_tier_bookmark_limit}"
        f" pro={settings.pro_tier_bookmark_limit}"
    )
    print()


def print_backlog(settings: Settings) -> None:
    """Jobs still queued in the database from a previous run."""
    queue = JobQueue(settings.db_path)
    try:
        print(f"Job queue ({settings.db_path}):")
        for stage in Stage:
            counts = queue.count_by_state(stage)
            queued = counts[JobState.WAITING] + counts[JobState.DELAYED]
            print(
                f"  - {stage.value:<11} queued={queued:<5} stalled={counts[JobState.ACTIVE]:<5}"
                f" failed={counts[JobState.FAILED]}"
            )
        print(f"  finished jobs are kept for {settings.job_retention_seconds / 3600:g}h")
        print()
    finally:
        queue.close()


def main():
    settings = get_settings()

    print("=" * 80)
    print("Bookmark Weaver")
    print("=" * 80)
    print()
    print(f"Naming model:    {settings.openai_llm_model}")
    print(f"Embedding model: {settings.openai_embedding_model}")
    if not settings.openai_api_key:
        print("! OPENAI_API_KEY not set: embedding jobs will fail, folder names are heuristic")
    print()

    print_pipeline(settings)
    print_backlog(settings)

    print(f"Serving on http://{settings.host}:{settings.port} (docs at /docs)")
    print("=" * 80)
    print()

    import uvicorn
    from bookmark_weaver.server.app import app

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nStopped")
        sys.exit(0)
