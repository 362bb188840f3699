"""
Single-worker job runner.

Work is pushed onto a bounded queue and executed one item at a time by one
daemon thread, so at most one file is ingested per process. The runner is
built by the application lifespan and kept on ``app.state``.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Set

from hirextra.core.config import settings
from hirextra.db.models import JobStatus
from hirextra.domain.ingestion.errors import JobAlreadyQueuedError
from hirextra.domain.ingestion.jobs import JobRepository
from hirextra.domain.ingestion.pipeline import IngestionPipeline
from hirextra.domain.ingestion.repository import CandidateRepository

logger = logging.getLogger(__name__)

PROCESS = "process"
PURGE = "purge"


@dataclass(frozen=True)
class WorkItem:
    kind: str
    job_id: str
    resume: bool = False
    fast_forward: bool = False


_STOP = WorkItem(kind="stop", job_id="")


class IngestionRunner:
    def __init__(
        self,
        pipeline: IngestionPipeline,
        jobs: JobRepository,
        candidates: CandidateRepository,
        max_queue_size: Optional[int] = None,
    ):
        self.pipeline = pipeline
        self.jobs = jobs
        self.candidates = candidates
        self._queue: "queue.Queue[WorkItem]" = queue.Queue(
            maxsize=max_queue_size or settings.ingestion_queue_size
        )
        self._pending: Set[str] = set()
        self._pending_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._thread = threading.Thread(target=self._work, name="ingestion-runner", daemon=True)
        self._thread.start()
        logger.info("Ingestion runner started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Finish the queued work, then stop the worker thread."""
        if not self.running:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        logger.info("Ingestion runner stopped")

    def join(self) -> None:
        """Block until every queued item has been processed."""
        self._queue.join()

    def is_pending(self, job_id: str) -> bool:
        with self._pending_lock:
            return job_id in self._pending

    def submit_process(self, job_id: str, *, resume: bool = False, fast_forward: bool = False) -> None:
        """
        Queue a processing run for ``job_id``.

        Raises:
            JobAlreadyQueuedError: If the job is already queued or running.
            queue.Full: If the queue is at capacity.
        """
        with self._pending_lock:
            if job_id in self._pending:
                raise JobAlreadyQueuedError(f"Job {job_id} is already queued or running")
            self._queue.put_nowait(WorkItem(PROCESS, job_id, resume, fast_forward))
            self._pending.add(job_id)
        logger.info(f"Queued job {job_id} (resume={resume})")

    def submit_purge(self, job_id: str) -> None:
        """Queue soft-deletion of a job's records."""
        self._queue.put_nowait(WorkItem(PURGE, job_id))
        logger.info(f"Queued record purge for job {job_id}")

    def enqueue_interrupted_jobs(self) -> int:
        """Queue resumes for jobs a previous process left in PROCESSING."""
        count = 0
        for job in self.jobs.list_by_status(JobStatus.PROCESSING):
            try:
                self.submit_process(job.id, resume=True)
                count += 1
            except JobAlreadyQueuedError:
                continue
        if count:
            logger.info(f"Re-queued {count} interrupted jobs")
        return count

    def _work(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._execute(item)
            finally:
                self._queue.task_done()

    def _execute(self, item: WorkItem) -> None:
        try:
            if item.kind == PROCESS:
                self.pipeline.run(item.job_id, resume=item.resume, fast_forward=item.fast_forward)
            elif item.kind == PURGE:
                purged = self.candidates.soft_delete_by_job(item.job_id)
                logger.info(f"Purged {purged} records of job {item.job_id}")
        except Exception:
            # The worker must survive a failed item; the job row carries the error.
            logger.exception(f"Work item {item.kind} for job {item.job_id} failed")
        finally:
            if item.kind == PROCESS:
                with self._pending_lock:
                    self._pending.discard(item.job_id)
