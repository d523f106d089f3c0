"""
End-to-end tests for the bookmark pipeline.

Runs the whole ingest → enrichment → embedding → clustering flow
synchronously with ``Scheduler.drain`` against in-memory stores.
"""

import httpx
import pytest

from bookmark_weaver.agents.metadata_provider import PageMetadata
from bookmark_weaver.agents.models import ClusteringRunState
from bookmark_weaver.pipeline.errors import QuotaExceededError
from bookmark_weaver.pipeline.job_queue import JobQueue, JobState, Stage
from bookmark_weaver.pipeline.service import PipelineService
from bookmark_weaver.storage.database import BookmarkDB


def run_pipeline(service, user_id, bookmarks, settings=None):
    service.submit_ingest(user_id, bookmarks, settings)
    return service.scheduler.drain()


class TestHappyPath:
    """Tests for a batch flowing through every stage."""

    def test_new_bookmarks_end_up_clustered(self, service, sample_bookmarks, embedder):
        run_pipeline(service, "user-1", sample_bookmarks)

        status = service.get_status("user-1")
        assert status.embedded_count == 3
        assert status.pending_count == 0
        assert status.cluster_count >= 1
        assert status.assigned_count == 3
        assert status.latest_run_state == ClusteringRunState.COMPLETED
        assert status.is_done
        assert len(embedder.calls) == 3

    def test_is_done_is_stable_once_reached(self, service, sample_bookmarks):
        run_pipeline(service, "user-1", sample_bookmarks)

        assert all(service.get_status("user-1").is_done for _ in range(3))
        assert service.queue.find_jobs(Stage.CLUSTERING, "user-1", [JobState.WAITING]) == []

    def test_new_ingest_resets_is_done_until_clustered(self, service, sample_bookmarks):
        run_pipeline(service, "user-1", sample_bookmarks)

        service.submit_ingest("user-1", [
            {"external_id": "4", "url": "https://example.com/finance/budget", "title": "Budget finance tips"},
        ])
        assert not service.get_status("user-1").is_done

        service.scheduler.drain()
        status = service.get_status("user-1")
        assert status.is_done
        assert status.assigned_count == 4

    def test_enrichment_stores_description_and_ai_title(self, service, metadata_provider):
        url = "https://realpython.com/async-io-python/"
        metadata_provider.pages[url] = PageMetadata(
            title="Async IO in Python: A Complete Walkthrough",
            description="Learn asyncio step by step",
        )

        run_pipeline(service, "user-1", [{"external_id": "1", "url": url, "title": "New Tab"}])

        bookmark = service.store.get_bookmarks_for_user("user-1")[0]
        assert bookmark.description == "Learn asyncio step by step"
        assert bookmark.ai_title == "Async IO in Python: A Complete Walkthrough"
        assert bookmark.display_title == bookmark.ai_title

    def test_good_title_gets_no_ai_title(self, service, sample_bookmarks):
        run_pipeline(service, "user-1", sample_bookmarks[:1])

        assert service.store.get_bookmarks_for_user("user-1")[0].ai_title is None


class TestDeduplication:
    """Tests for the shared vector cache inside the pipeline."""

    def test_duplicate_url_in_batch_embeds_once(self, service, embedder):
        bookmarks = [
            {"external_id": "1", "url": "https://docs.python.org/3/", "title": "Python docs"},
            {"external_id": "2", "url": "https://DOCS.python.org/3#top", "title": "Python docs again"},
        ]

        run_pipeline(service, "user-1", bookmarks)

        assert len(embedder.calls) == 1
        assert service.get_status("user-1").embedded_count == 2

    def test_cache_is_shared_across_users(self, service, sample_bookmarks, embedder, metadata_provider):
        run_pipeline(service, "user-1", sample_bookmarks)
        run_pipeline(service, "user-2", sample_bookmarks)

        assert len(embedder.calls) == 3
        assert len(metadata_provider.calls) == 3
        status = service.get_status("user-2")
        assert status.embedded_count == 3
        assert status.is_done

    def test_reingest_does_not_duplicate_rows(self, service, sample_bookmarks, embedder):
        run_pipeline(service, "user-1", sample_bookmarks)
        run_pipeline(service, "user-1", sample_bookmarks)

        assert service.store.count_bookmarks("user-1") == 3
        assert len(embedder.calls) == 3
        assert service.get_status("user-1").assigned_count == 3

    def test_url_change_while_embedding_queued_embeds_new_url(self, service, embedder):
        old_url = "https://docs.python.org/2/"
        new_url = "https://docs.python.org/3/"
        service.submit_ingest("user-1", [{"external_id": "1", "url": old_url, "title": "Python docs"}])
        service.scheduler.drain(stages=[Stage.INGEST, Stage.ENRICHMENT])

        service.submit_ingest("user-1", [{"external_id": "1", "url": new_url, "title": "Python docs"}])
        service.scheduler.drain()

        assert len(embedder.calls) == 1
        assert new_url in embedder.calls[0]
        assert service.cache.lookup(new_url) is not None
        assert service.cache.lookup(old_url) is None

        status = service.get_status("user-1")
        assert status.embedded_count == 1
        assert status.assigned_count == 1
        assert status.embedded_unassigned_count == 0
        assert status.is_done
        assert service.queue.find_jobs(Stage.CLUSTERING, "user-1", [JobState.WAITING]) == []


class TestFailures:
    """Tests for degraded and failing collaborators."""

    def test_metadata_failure_degrades_to_empty_metadata(self, service, sample_bookmarks, metadata_provider):
        metadata_provider.failing.add(sample_bookmarks[0]["url"])

        run_pipeline(service, "user-1", sample_bookmarks)

        status = service.get_status("user-1")
        assert status.embedded_count == 3
        assert status.errored_count == 0
        assert status.is_done

    def test_transient_embedding_error_is_retried(self, service, sample_bookmarks, embedder):
        embedder.failures.append(httpx.ConnectTimeout("slow upstream"))

        run_pipeline(service, "user-1", sample_bookmarks)

        status = service.get_status("user-1")
        assert status.embedded_count == 3
        assert status.errored_count == 0
        assert len(embedder.calls) == 4

    def test_permanent_embedding_error_marks_bookmark_error(self, service, sample_bookmarks, embedder):
        embedder.failures.append(ValueError("input rejected"))

        run_pipeline(service, "user-1", sample_bookmarks)

        status = service.get_status("user-1")
        assert status.errored_count == 1
        assert status.embedded_count == 2
        assert status.assigned_count == 2
        assert status.is_done

    def test_missing_embedder_marks_all_errors(self, store, queue, test_settings, namer, metadata_provider,
                                               cancellation, sample_bookmarks):
        service = PipelineService(
            store,
            queue,
            settings=test_settings,
            embedder=None,
            namer=namer,
            metadata_provider=metadata_provider,
            cancellation=cancellation,
        )

        run_pipeline(service, "user-1", sample_bookmarks)

        status = service.get_status("user-1")
        assert status.errored_count == 3
        assert status.cluster_count == 0
        assert not status.is_done

    def test_clustering_waits_for_embedding_coverage(self, service, sample_bookmarks):
        service.submit_ingest("user-1", sample_bookmarks)
        service.scheduler.drain(stages=[Stage.INGEST])

        assert service.scheduler.run_once(Stage.CLUSTERING)

        job = service.queue.find_jobs(Stage.CLUSTERING, "user-1")[0]
        assert job.state == JobState.DELAYED
        assert job.progress["phase"] == "waiting_for_embeddings"
        assert service.store.get_latest_clustering_run("user-1") is None

        service.scheduler.drain()
        assert service.get_status("user-1").is_done


class TestCancellation:
    """Tests for cancelling a user's work."""

    def test_cancel_mid_enrichment(self, service, sample_bookmarks, embedder):
        service.submit_ingest("user-1", sample_bookmarks)
        service.scheduler.drain(stages=[Stage.INGEST])
        service.scheduler.run_once(Stage.ENRICHMENT)

        result = service.cancel("user-1")

        assert result == {"removed_jobs": 4, "idle_bookmarks": 3}
        assert service.scheduler.drain() == 0

        status = service.get_status("user-1")
        assert status.pending_count == 0
        assert status.enriched_count == 0
        assert status.idle_count == 3
        assert status.latest_run_state is None
        assert not status.is_done
        assert embedder.calls == []

    def test_cancel_during_ingest_item_leaves_nothing_pending(self, service, sample_bookmarks, monkeypatch):
        ensure_entry = service.cache.ensure_entry

        def ensure_then_cancel(url):
            # The first item has already passed its cancellation check
            if not service.cancellation.is_cancelled("user-1"):
                service.cancel("user-1")
            return ensure_entry(url)

        monkeypatch.setattr(service.cache, "ensure_entry", ensure_then_cancel)
        service.submit_ingest("user-1", sample_bookmarks)
        service.scheduler.drain()

        status = service.get_status("user-1")
        assert status.pending_count == 0
        assert status.enriched_count == 0
        assert status.idle_count == 1
        assert service.store.count_clusters("user-1") == 0

    def test_status_idles_bookmarks_that_arrive_after_cancel(self, service, sample_bookmarks):
        service.cancel("user-1")
        # A late write from an ingest item that passed its checkpoint before the cancel
        service.store.upsert_bookmark("user-1", "9", "https://example.com/late", "Late", "hash-late")

        status = service.get_status("user-1")

        assert status.pending_count == 0
        assert status.idle_count == 1

    def test_cancel_without_clearing_queue_skips_work(self, service, sample_bookmarks, embedder):
        service.submit_ingest("user-1", sample_bookmarks)
        service.scheduler.drain(stages=[Stage.INGEST])

        result = service.cancel("user-1", clear_all_queued_work=False)
        service.scheduler.drain()

        assert result["removed_jobs"] == 0
        assert embedder.calls == []
        assert service.store.count_clusters("user-1") == 0

    def test_cancel_leaves_other_users_alone(self, service, sample_bookmarks):
        service.submit_ingest("user-1", sample_bookmarks)
        service.submit_ingest("user-2", sample_bookmarks)

        service.cancel("user-1")
        service.scheduler.drain()

        assert service.get_status("user-2").is_done
        assert service.store.count_bookmarks("user-1") == 0

    def test_new_ingest_clears_cancellation(self, service, sample_bookmarks):
        service.cancel("user-1")

        run_pipeline(service, "user-1", sample_bookmarks)

        assert service.get_status("user-1").is_done

    def test_cancelled_user_gets_no_recovery_run(self, service, sample_bookmarks):
        service.submit_ingest("user-1", sample_bookmarks)
        service.scheduler.drain(stages=[Stage.INGEST, Stage.ENRICHMENT, Stage.EMBEDDING])

        service.cancel("user-1")
        status = service.get_status("user-1")

        assert status.embedded_unassigned_count == 3
        assert not status.is_clustering_active
        assert service.queue.find_jobs(Stage.CLUSTERING, "user-1", [JobState.WAITING]) == []


class TestRecoveryAndTrigger:
    """Tests for recovery and manually triggered clustering."""

    def test_status_requeues_clustering_for_unassigned_bookmarks(self, service, sample_bookmarks):
        service.submit_ingest("user-1", sample_bookmarks)
        service.scheduler.drain(stages=[Stage.INGEST, Stage.ENRICHMENT, Stage.EMBEDDING])
        service.queue.cancel_matching(lambda job: True, stages=[Stage.CLUSTERING])

        status = service.get_status("user-1")

        assert status.is_clustering_active
        assert not status.is_done
        assert len(service.queue.find_jobs(Stage.CLUSTERING, "user-1", [JobState.WAITING])) == 1

        service.scheduler.drain()
        assert service.get_status("user-1").is_done

    def test_trigger_clustering_replaces_forest(self, service, sample_bookmarks):
        run_pipeline(service, "user-1", sample_bookmarks)
        before = {c.id for c in service.store.get_clusters_for_user("user-1")}

        job = service.trigger_clustering("user-1", {"folder_density": "more"})
        service.scheduler.drain()

        after = {c.id for c in service.store.get_clusters_for_user("user-1")}
        assert job.payload["settings"]["folder_density"] == "more"
        assert after and not before & after

    def test_trigger_dedupes_waiting_job(self, service):
        first = service.trigger_clustering("user-1")
        second = service.trigger_clustering("user-1", {"naming_tone": "playful"})

        assert first.id == second.id


class TestQuota:
    """Tests for per-tier bookmark quotas."""

    @pytest.fixture
    def limited_service(self, store, queue, test_settings, embedder, namer, metadata_provider, cancellation):
        return PipelineService(
            store,
            queue,
            settings=test_settings.model_copy(update={"free_tier_bookmark_limit": 3}),
            embedder=embedder,
            namer=namer,
            metadata_provider=metadata_provider,
            cancellation=cancellation,
        )

    def test_batch_over_quota_is_rejected(self, limited_service, sample_bookmarks):
        extra = sample_bookmarks + [{"external_id": "4", "url": "https://example.com/4", "title": "Four"}]

        with pytest.raises(QuotaExceededError) as exc_info:
            limited_service.submit_ingest("user-1", extra)

        assert exc_info.value.tier == "free"
        assert exc_info.value.limit == 3
        assert exc_info.value.requested == 4
        assert limited_service.queue.find_jobs(Stage.INGEST) == []

    def test_known_bookmarks_do_not_count_twice(self, limited_service, sample_bookmarks):
        run_pipeline(limited_service, "user-1", sample_bookmarks)

        limited_service.submit_ingest("user-1", sample_bookmarks)

    def test_queued_batches_count_toward_quota(self, limited_service, sample_bookmarks):
        limited_service.submit_ingest("user-1", sample_bookmarks[:2])

        with pytest.raises(QuotaExceededError) as exc_info:
            limited_service.submit_ingest("user-1", [
                sample_bookmarks[2],
                {"external_id": "4", "url": "https://example.com/4", "title": "Four"},
            ])

        assert exc_info.value.requested == 4
        assert len(limited_service.queue.find_jobs(Stage.INGEST)) == 1

    def test_resubmitting_queued_bookmarks_does_not_count_twice(self, limited_service, sample_bookmarks):
        limited_service.submit_ingest("user-1", sample_bookmarks)

        job = limited_service.submit_ingest("user-1", sample_bookmarks)

        assert job.stage == Stage.INGEST

    def test_pro_tier_has_higher_limit(self, limited_service, store, sample_bookmarks):
        store.set_user_tier("user-1", "pro")
        extra = sample_bookmarks + [{"external_id": "4", "url": "https://example.com/4", "title": "Four"}]

        job = limited_service.submit_ingest("user-1", extra)

        assert job.stage == Stage.INGEST


class TestStructure:
    """Tests for the structure view."""

    def test_flat_structure_pages_clusters(self, service, sample_bookmarks):
        run_pipeline(service, "user-1", sample_bookmarks)

        first = service.get_structure("user-1", page=1, page_size=1)
        empty = service.get_structure("user-1", page=2, page_size=1)

        assert len(first.clusters) == 1
        assert first.total_clusters == 1
        assert {a.bookmark_id for a in first.assignments} == {
            b.id for b in service.store.get_bookmarks_for_user("user-1")
        }
        assert first.folders is None
        assert empty.clusters == []
        assert empty.total_clusters == 1

    def test_nested_structure_flags_duplicate_urls(self, service):
        bookmarks = [
            {"external_id": "1", "url": "https://docs.python.org/3/", "title": "Python docs"},
            {"external_id": "2", "url": "https://docs.python.org/3", "title": "Python docs copy"},
            {"external_id": "3", "url": "https://www.lonelyplanet.com/japan", "title": "Japan travel guide"},
        ]
        run_pipeline(service, "user-1", bookmarks)

        view = service.get_structure("user-1", nested=True)

        def walk(folders):
            for folder in folders:
                yield from folder.bookmarks
                yield from walk(folder.folders)

        nodes = list(walk(view.folders))
        assert len(nodes) == 3
        assert sum(node.duplicate for node in nodes) == 1
        assert view.folders[0].name == "Test Folder"

    def test_structure_of_unknown_user_is_empty(self, service):
        view = service.get_structure("nobody", nested=True)

        assert view.clusters == []
        assert view.total_clusters == 0
        assert view.folders == []


class TestBackgroundWorkers:
    """Tests for the threaded scheduler running the real pipeline."""

    def test_workers_finish_a_batch(self, tmp_path, test_settings, embedder, namer, metadata_provider,
                                    sample_bookmarks):
        import time

        db_path = tmp_path / "pipeline.db"
        service = PipelineService(
            BookmarkDB(db_path),
            JobQueue(db_path, backoff_base=0.0, backoff_max=0.0, jitter_ratio=0.0),
            settings=test_settings,
            embedder=embedder,
            namer=namer,
            metadata_provider=metadata_provider,
        )

        service.submit_ingest("user-1", sample_bookmarks)
        service.start_workers()
        deadline = time.time() + 10
        while not service.get_status("user-1").is_done and time.time() < deadline:
            time.sleep(0.05)
        done = service.get_status("user-1").is_done
        service.close()

        assert done
        assert len(embedder.calls) == 3
