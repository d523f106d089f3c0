"""
Example demonstrating the bookmark pipeline end to end.

This example shows:
1. Submitting a batch of bookmarks for one user
2. Running enrichment, embedding and clustering synchronously
3. Printing the resulting nested folder tree
4. Re-clustering the same bookmarks with a different density and tone
"""

import sys
from pathlib import Path

# Add src to path so we can import bookmark_weaver
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bookmark_weaver.config import get_settings, setup_logging
from bookmark_weaver.pipeline.service import PipelineService

USER_ID = "example-user"

BOOKMARKS = [
    # Graph databases
    ("1", "https://neo4j.com/docs", "Neo4j Documentation - Graph Database"),
    ("2", "https://neo4j.com/docs/cypher-manual", "Cypher Query Language Tutorial"),
    ("3", "https://neo4j.com/developer/graph-algorithms", "Graph Algorithms in Neo4j"),
    # React
    ("4", "https://react.dev/learn", "React Documentation - Learn React"),
    ("5", "https://react.dev/reference/react/hooks", "React Hooks API Reference"),
    ("6", "https://react.dev/reference/react/Component", "React Component API Reference"),
    # Machine learning
    ("7", "https://arxiv.org/abs/1706.03762", "Attention Is All You Need"),
    ("8", "https://huggingface.co/docs", "Hugging Face Transformers Documentation"),
    ("9", "https://pytorch.org/docs", "PyTorch Documentation"),
    # Travel
    ("10", "https://www.lonelyplanet.com/japan", "Japan Travel Guide"),
    ("11", "https://www.japan-guide.com/e/e2164.html", "Kyoto Travel: Top Sights"),
    ("12", "https://www.seat61.com/Japan.htm", "Train travel in Japan"),
    # Duplicate URL saved twice
    ("13", "https://NEO4J.com/docs/", "new tab"),
]


def print_folders(folders, indent=0):
    """Print a nested folder tree."""
    for folder in folders:
        print(f"{'  ' * indent}{folder.name}/")
        for bookmark in folder.bookmarks:
            marker = " (duplicate)" if bookmark.duplicate else ""
            print(f"{'  ' * (indent + 1)}- {bookmark.title}{marker}")
        print_folders(folder.folders, indent + 1)


def main():
    """Run the bookmark pipeline example."""

    settings = get_settings()
    if not settings.openai_api_key:
        print("ERROR: OPENAI_API_KEY not set in .env file")
        print("Please add your OpenAI API key to .env")
        return

    setup_logging("WARNING")
    settings = settings.model_copy(update={"db_path": ":memory:", "clustering_delay_seconds": 0.0})
    service = PipelineService.from_settings(settings)

    print("=" * 80)
    print("Bookmark Weaver Example: Hierarchical Folders")
    print("=" * 80)
    print()

    # =========================================================================
    # Phase 1: Ingest and run every stage
    # =========================================================================
    print("-" * 80)
    print(f"PHASE 1: Ingesting {len(BOOKMARKS)} bookmarks")
    print("-" * 80)
    print()

    service.submit_ingest(
        USER_ID,
        [{"external_id": ext_id, "url": url, "title": title} for ext_id, url, title in BOOKMARKS],
        settings={"folder_density": "more", "naming_tone": "clear"},
    )
    executed = service.scheduler.drain()

    status = service.get_status(USER_ID)
    print(f"✓ Executed {executed} jobs")
    print(f"📊 {status.embedded_count} embedded, {status.errored_count} errors, "
          f"{status.cluster_count} folders, done: {status.is_done}")
    print()
    print_folders(service.get_structure(USER_ID, nested=True).folders)
    print()

    # =========================================================================
    # Phase 2: Re-cluster with different settings (vectors come from the cache)
    # =========================================================================
    print("-" * 80)
    print("PHASE 2: Re-clustering with fewer folders, playful names and emojis")
    print("-" * 80)
    print()

    service.trigger_clustering(
        USER_ID,
        {"folder_density": "less", "naming_tone": "playful", "use_emoji_names": True},
    )
    service.scheduler.drain()

    print_folders(service.get_structure(USER_ID, nested=True).folders)
    print()

    service.close()
    print("=" * 80)
    print("Example complete")
    print("=" * 80)


if __name__ == "__main__":
    main()
