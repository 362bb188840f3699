"""
Ingestion job lifecycle, persistence and progress accounting.

``JobRepository`` is the only code that writes ``IngestionJob`` rows; every
mutation goes through one lock so the worker thread and request handlers
never interleave partial updates. During a run the counters live in a
``JobProgressTracker`` owned by the pipeline, which pushes them to the
repository at a throttled rate.
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from hirextra.core.config import settings
from hirextra.db.models import IngestionJob, JobStatus
from hirextra.domain.ingestion.errors import InvalidJobTransition, JobNotFoundError

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: Dict[str, set] = {
    JobStatus.UPLOADING: {JobStatus.MAPPING_PENDING, JobStatus.FAILED, JobStatus.DELETED},
    JobStatus.MAPPING_PENDING: {JobStatus.PROCESSING, JobStatus.DELETED},
    # PROCESSING -> PROCESSING is a resume of an interrupted run.
    JobStatus.PROCESSING: {
        JobStatus.PROCESSING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.DELETED,
    },
    JobStatus.COMPLETED: {JobStatus.DELETED},
    JobStatus.FAILED: {JobStatus.PROCESSING, JobStatus.DELETED},
    JobStatus.DELETED: {JobStatus.DELETED},
}

RESUMABLE_STATUSES = (JobStatus.FAILED, JobStatus.PROCESSING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def check_transition(job_id: str, current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidJobTransition(job_id, current, target)


class JobRepository:
    """Serialized access to ``IngestionJob`` rows."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def _load(self, session: Session, job_id: str) -> IngestionJob:
        job = session.get(IngestionJob, job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    @staticmethod
    def _detach(session: Session, job: IngestionJob) -> IngestionJob:
        session.refresh(job)
        session.expunge(job)
        return job

    def create(
        self,
        *,
        status: str = JobStatus.UPLOADING,
        upload_id: Optional[str] = None,
        original_name: Optional[str] = None,
        storage_key: Optional[str] = None,
        headers: Optional[List[str]] = None,
        mapping: Optional[Dict[str, str]] = None,
        require_name: Optional[bool] = None,
    ) -> IngestionJob:
        with self._lock, self._session_factory() as session:
            job = IngestionJob(
                status=status,
                upload_id=upload_id,
                original_name=original_name,
                storage_key=storage_key,
                headers=list(headers or []),
                mapping=dict(mapping or {}),
                require_name=require_name,
            )
            session.add(job)
            session.commit()
            logger.info(f"Created ingestion job {job.id} in {status}")
            return self._detach(session, job)

    def get(self, job_id: str) -> IngestionJob:
        with self._session_factory() as session:
            job = self._load(session, job_id)
            session.expunge(job)
            return job

    def get_status(self, job_id: str) -> str:
        return self.get(job_id).status

    def find_by_upload_id(self, upload_id: str) -> Optional[IngestionJob]:
        with self._session_factory() as session:
            job = (
                session.query(IngestionJob)
                .filter(IngestionJob.upload_id == upload_id)
                .order_by(IngestionJob.created_at.desc())
                .first()
            )
            if job is not None:
                session.expunge(job)
            return job

    def find_pending_by_storage_key(self, storage_key: str) -> Optional[IngestionJob]:
        with self._session_factory() as session:
            job = (
                session.query(IngestionJob)
                .filter(
                    IngestionJob.storage_key == storage_key,
                    IngestionJob.status == JobStatus.MAPPING_PENDING,
                )
                .order_by(IngestionJob.created_at.desc())
                .first()
            )
            if job is not None:
                session.expunge(job)
            return job

    def list_recent(self, limit: int = 100) -> List[IngestionJob]:
        with self._session_factory() as session:
            jobs = (
                session.query(IngestionJob)
                .order_by(IngestionJob.created_at.desc())
                .limit(limit)
                .all()
            )
            for job in jobs:
                session.expunge(job)
            return jobs

    def list_by_status(self, status: str) -> List[IngestionJob]:
        with self._session_factory() as session:
            jobs = session.query(IngestionJob).filter(IngestionJob.status == status).all()
            for job in jobs:
                session.expunge(job)
            return jobs

    def transition(self, job_id: str, target: str, **fields) -> IngestionJob:
        """
        Move a job to ``target`` and set ``fields`` in the same update.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobTransition: If the lifecycle does not allow the move.
        """
        with self._lock, self._session_factory() as session:
            job = self._load(session, job_id)
            check_transition(job_id, job.status, target)
            previous = job.status
            job.status = target
            for name, value in fields.items():
                setattr(job, name, value)
            if target == JobStatus.DELETED and job.deleted_at is None:
                job.deleted_at = _utcnow()
            session.commit()
            logger.info(f"Job {job_id}: {previous} -> {target}")
            return self._detach(session, job)

    def update_mapping(
        self,
        job_id: str,
        mapping: Dict[str, str],
        *,
        headers: Optional[List[str]] = None,
        require_name: Optional[bool] = None,
    ) -> IngestionJob:
        """Set the field mapping of a job that is waiting for one."""
        with self._lock, self._session_factory() as session:
            job = self._load(session, job_id)
            if job.status != JobStatus.MAPPING_PENDING:
                raise InvalidJobTransition(job_id, job.status, JobStatus.MAPPING_PENDING)
            job.mapping = dict(mapping)
            # Headers sent with the mapping replace the upload-time ones.
            if headers:
                job.headers = list(headers)
            job.require_name = require_name
            session.commit()
            return self._detach(session, job)

    def update_progress(
        self,
        job_id: str,
        *,
        total_rows: int,
        success_rows: int,
        failed_rows: int,
        failure_reasons: Dict[str, int],
        excess_failure_count: int,
    ) -> str:
        """
        Write counters of a running job; returns the job's current status.

        Counters are only written while the job is PROCESSING so a concurrent
        delete is never overwritten.
        """
        with self._lock, self._session_factory() as session:
            job = self._load(session, job_id)
            if job.status == JobStatus.PROCESSING:
                job.total_rows = total_rows
                job.success_rows = success_rows
                job.failed_rows = failed_rows
                job.failure_reasons = dict(failure_reasons)
                job.excess_failure_count = excess_failure_count
                session.commit()
            return job.status

    def finish(self, job_id: str, target: str, *, error: Optional[str] = None, **counters) -> Optional[IngestionJob]:
        """
        Record the final status and counters of a run.

        Returns None without writing when the job was deleted meanwhile.
        """
        with self._lock, self._session_factory() as session:
            job = self._load(session, job_id)
            if job.status == JobStatus.DELETED:
                logger.info(f"Job {job_id} was deleted during processing; leaving it DELETED")
                return None
            check_transition(job_id, job.status, target)
            job.status = target
            job.error = error
            job.completed_at = _utcnow()
            for name, value in counters.items():
                setattr(job, name, value)
            session.commit()
            logger.info(f"Job {job_id}: PROCESSING -> {target}")
            return self._detach(session, job)


class JobProgressTracker:
    """
    In-memory counters of one pipeline run.

    The tracker is the only writer of a job's counters while the run is active.
    ``failure_reasons`` holds at most ``failure_reason_limit`` distinct codes;
    failures with further codes are only counted in ``excess_failure_count``.
    """

    def __init__(
        self,
        repository: JobRepository,
        job_id: str,
        *,
        total_rows: int = 0,
        success_rows: int = 0,
        failed_rows: int = 0,
        failure_reasons: Optional[Dict[str, int]] = None,
        excess_failure_count: int = 0,
        interval_seconds: Optional[float] = None,
        failure_reason_limit: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.repository = repository
        self.job_id = job_id
        self.total_rows = total_rows
        self.success_rows = success_rows
        self.failed_rows = failed_rows
        self.failure_reasons: Dict[str, int] = dict(failure_reasons or {})
        self.excess_failure_count = excess_failure_count
        self.interval_seconds = (
            settings.progress_update_interval_seconds if interval_seconds is None else interval_seconds
        )
        self.failure_reason_limit = failure_reason_limit or settings.failure_reason_limit
        self._clock = clock
        self._last_flush = clock()
        self.flush_count = 0

    @property
    def rows_accounted(self) -> int:
        return self.success_rows + self.failed_rows

    def record_read(self, count: int = 1) -> None:
        self.total_rows += count

    def record_success(self, count: int) -> None:
        self.success_rows += count

    def record_failure(self, reason: str, count: int = 1) -> None:
        if count <= 0:
            return
        self.failed_rows += count
        if reason in self.failure_reasons or len(self.failure_reasons) < self.failure_reason_limit:
            self.failure_reasons[reason] = self.failure_reasons.get(reason, 0) + count
        else:
            self.excess_failure_count += count

    def counters(self) -> Dict[str, object]:
        return {
            "total_rows": self.total_rows,
            "success_rows": self.success_rows,
            "failed_rows": self.failed_rows,
            "failure_reasons": dict(self.failure_reasons),
            "excess_failure_count": self.excess_failure_count,
        }

    def maybe_flush(self, force: bool = False) -> bool:
        """Push counters to the job row if the throttle window elapsed."""
        now = self._clock()
        if not force and now - self._last_flush < self.interval_seconds:
            return False
        self.repository.update_progress(self.job_id, **self.counters())
        self._last_flush = now
        self.flush_count += 1
        return True
