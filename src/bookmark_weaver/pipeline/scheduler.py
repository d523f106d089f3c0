"""
Per-stage worker pool pulling jobs from the shared queue.

Each stage gets its own fixed number of worker threads, which bounds the
stage's concurrency independently of the others.
"""

import threading
from abc import ABC, abstractmethod
from typing import Optional

from bookmark_weaver.config import get_logger
from bookmark_weaver.pipeline.job_queue import JobQueue, JobState, PipelineJob, Stage

logger = get_logger(__name__)


class StageProcessor(ABC):
    """Handles the jobs of one pipeline stage.

    Processors must tolerate re-delivery of the same job: the queue delivers
    at least once.
    """

    stage: Stage

    @abstractmethod
    def process(self, job: PipelineJob) -> None:
        """
        Process one job.

        Raising marks the attempt as failed; the queue decides whether to
        retry based on the exception type and the remaining attempts.
        """
        pass

    def on_failure(self, job: PipelineJob, error: BaseException) -> None:
        """Hook called once a job has failed permanently."""
        pass


class Scheduler:
    """
    Runs stage processors against the job queue.

    Attributes:
        queue: Shared job queue
        processors: Processor per stage
        concurrency: Worker thread count per stage
        poll_interval: Seconds an idle worker sleeps before polling again
        job_retention: Seconds finished jobs are kept before pruning (None = forever)
        prune_interval: Seconds between prune sweeps
    """

    def __init__(
        self,
        queue: JobQueue,
        processors: dict[Stage, StageProcessor],
        concurrency: Optional[dict[Stage, int]] = None,
        poll_interval: float = 0.5,
        job_retention: Optional[float] = None,
        prune_interval: float = 300.0,
    ):
        self.queue = queue
        self.processors = processors
        self.concurrency = concurrency or {}
        self.poll_interval = poll_interval
        self.job_retention = job_retention
        self.prune_interval = prune_interval

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        """Recover stalled jobs and spawn the worker threads."""
        if self.is_running:
            logger.warning("Scheduler already running")
            return

        self.queue.recover_stalled()
        self._stop_event.clear()
        self._threads = []

        for stage in self.processors:
            worker_count = max(1, self.concurrency.get(stage, 1))
            for index in range(worker_count):
                thread = threading.Thread(
                    target=self._worker_loop,
                    args=(stage,),
                    name=f"{stage.value}-worker-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)

        if self.job_retention is not None:
            thread = threading.Thread(
                target=self._maintenance_loop, name="queue-maintenance", daemon=True
            )
            thread.start()
            self._threads.append(thread)

        logger.info(f"Started {len(self._threads)} scheduler threads across {len(self.processors)} stages")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal workers to exit and wait for them to finish their current job."""
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("Scheduler stopped")

    def _worker_loop(self, stage: Stage) -> None:
        while not self._stop_event.is_set():
            try:
                job = self.queue.claim(stage)
            except Exception as e:
                logger.error(f"Failed to claim {stage.value} job: {e}", exc_info=True)
                self._stop_event.wait(self.poll_interval)
                continue

            if job is None:
                self._stop_event.wait(self.poll_interval)
                continue

            self.execute(job)

    def _maintenance_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.queue.prune_finished(self.job_retention)
            except Exception as e:
                logger.error(f"Failed to prune finished jobs: {e}", exc_info=True)
            self._stop_event.wait(self.prune_interval)

    def execute(self, job: PipelineJob) -> Optional[JobState]:
        """
        Run one claimed job through its stage processor and record the outcome.

        Returns:
            The job's resulting state (None if it was removed while running)
        """
        processor = self.processors[job.stage]
        try:
            processor.process(job)
        except Exception as e:
            new_state = self.queue.fail(job, e)
            if new_state == JobState.DELAYED:
                logger.warning(
                    f"{job.stage.value} job #{job.id} failed (attempt {job.attempts}/"
                    f"{job.max_attempts}), retrying: {e}"
                )
            elif new_state == JobState.FAILED:
                logger.error(
                    f"{job.stage.value} job #{job.id} failed permanently: {e}", exc_info=True
                )
                try:
                    processor.on_failure(job, e)
                except Exception as hook_error:
                    logger.error(
                        f"Failure hook for {job.stage.value} job #{job.id} raised: {hook_error}",
                        exc_info=True,
                    )
            return new_state

        if self.queue.complete(job.id):
            return JobState.COMPLETED
        return None

    def run_once(self, stage: Optional[Stage] = None, ignore_delay: bool = True) -> bool:
        """
        Claim and execute a single job in the calling thread.

        Returns:
            True if a job was executed
        """
        if stage is not None and stage not in self.processors:
            raise KeyError(f"No processor registered for stage {stage.value}")

        job = self.queue.claim(stage, ignore_delay=ignore_delay)
        if job is None:
            return False
        self.execute(job)
        return True

    def drain(
        self,
        stages: Optional[list[Stage]] = None,
        ignore_delay: bool = True,
        max_jobs: int = 10_000,
    ) -> int:
        """
        Execute jobs synchronously until none are ready.

        Delayed jobs (including retries) are treated as ready by default so
        the whole pipeline can be run deterministically in one thread.

        Args:
            stages: Restrict draining to these stages (None = all registered stages)
            ignore_delay: Run delayed jobs without waiting for their run_at
            max_jobs: Safety limit on the number of jobs executed

        Returns:
            Number of jobs executed
        """
        allowed = stages if stages is not None else list(self.processors)
        executed = 0
        while executed < max_jobs:
            ran = False
            for stage in allowed:
                if self.run_once(stage, ignore_delay=ignore_delay):
                    executed += 1
                    ran = True
                    break
            if not ran:
                break
        return executed
