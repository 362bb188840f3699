"""
Streaming ingestion of one stored file into candidate records.

Data flow for a run::

    blob chunks -> text lines -> logical lines -> fields -> cleaned records
        -> BackpressureController -> BatchWriter -> JobProgressTracker

Rows are pulled lazily, so at most one batch of records is held in memory.
"""
import logging
import time
from contextlib import closing
from datetime import datetime, timezone
from itertools import islice
from typing import Callable, Dict, Iterator, List, Optional

from hirextra.core.config import settings
from hirextra.db.models import IngestionJob, JobStatus
from hirextra.domain.ingestion.backpressure import BackpressureController
from hirextra.domain.ingestion.batch_writer import BatchWriter
from hirextra.domain.ingestion.cleaning import normalize_mapping, transform_row
from hirextra.domain.ingestion.errors import (
    InvalidJobTransition,
    MalformedRowError,
    StreamFatalError,
)
from hirextra.domain.ingestion.header_locator import (
    expected_headers_from_mapping,
    locate_header_row,
)
from hirextra.domain.ingestion.jobs import (
    RESUMABLE_STATUSES,
    JobProgressTracker,
    JobRepository,
)
from hirextra.domain.ingestion.line_parser import iter_logical_lines, iter_text_lines, parse_line
from hirextra.domain.ingestion.repository import CandidateRepository
from hirextra.integrations.storage import BlobStore, StorageError, StorageNotFoundError

logger = logging.getLogger(__name__)


class _JobDeleted(Exception):
    """The job was deleted while its rows were being read."""


class IngestionPipeline:
    def __init__(
        self,
        store: BlobStore,
        jobs: JobRepository,
        candidates: CandidateRepository,
        *,
        batch_size: Optional[int] = None,
        require_name: Optional[bool] = None,
        check_interval_seconds: Optional[float] = None,
        progress_interval_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.jobs = jobs
        self.candidates = candidates
        self.batch_size = batch_size or settings.ingest_batch_size
        self.require_name = settings.require_name if require_name is None else require_name
        self.check_interval_seconds = (
            settings.job_check_interval_seconds if check_interval_seconds is None else check_interval_seconds
        )
        self.progress_interval_seconds = progress_interval_seconds
        self._clock = clock
        self._sleep = sleep

    def run(self, job_id: str, *, resume: bool = False, fast_forward: bool = False) -> Optional[IngestionJob]:
        """
        Process a job's source file.

        A resume seeds the counters from the previous run and reads the file
        again from the start; with ``fast_forward`` the rows already accounted
        for are skipped instead of being validated again.

        Returns the finished job, or None if it was deleted while running.

        Raises:
            JobNotFoundError: If the job does not exist.
            InvalidJobTransition: If the job is not in a startable state.
        """
        job = self.jobs.get(job_id)
        if resume:
            if job.status not in RESUMABLE_STATUSES:
                raise InvalidJobTransition(job_id, job.status, JobStatus.PROCESSING)
            seed = job.rows_accounted
            tracker = self._tracker(
                job_id,
                total_rows=seed,
                success_rows=job.success_rows,
                failed_rows=job.failed_rows,
                failure_reasons=job.failure_reasons,
                excess_failure_count=job.excess_failure_count,
            )
            skip = seed if fast_forward else 0
            logger.info(f"Resuming job {job_id} from {seed} accounted rows (fast_forward={fast_forward})")
        else:
            if job.status != JobStatus.MAPPING_PENDING:
                raise InvalidJobTransition(job_id, job.status, JobStatus.PROCESSING)
            tracker = self._tracker(job_id)
            skip = 0

        self.jobs.transition(
            job_id,
            JobStatus.PROCESSING,
            started_at=datetime.now(timezone.utc),
            completed_at=None,
            error=None,
            **tracker.counters(),
        )

        writer = BatchWriter(
            self.candidates,
            source_file=job.storage_key or job.original_name or "",
            job_id=job_id,
            sleep=self._sleep,
        )
        controller = BackpressureController(self.batch_size, sink=self._sink(writer, tracker))

        try:
            rows = self._iter_records(job, tracker, skip)
            controller.consume(rows)
        except _JobDeleted:
            logger.info(f"Job {job_id} was deleted; stopped after {tracker.total_rows} rows")
            return None
        except StreamFatalError as exc:
            # Rows already parsed are still written so the counters add up.
            controller.flush()
            logger.error(f"Job {job_id} failed: {exc}")
            return self.jobs.finish(job_id, JobStatus.FAILED, error=str(exc), **tracker.counters())
        except Exception as exc:
            logger.exception(f"Unexpected error while processing job {job_id}")
            self.jobs.finish(job_id, JobStatus.FAILED, error=str(exc), **tracker.counters())
            raise

        finished = self.jobs.finish(job_id, JobStatus.COMPLETED, **tracker.counters())
        logger.info(
            f"Job {job_id} completed: {tracker.total_rows} rows, "
            f"{tracker.success_rows} inserted, {tracker.failed_rows} failed"
        )
        return finished

    def _tracker(self, job_id: str, **seed) -> JobProgressTracker:
        return JobProgressTracker(
            self.jobs,
            job_id,
            interval_seconds=self.progress_interval_seconds,
            clock=self._clock,
            **seed,
        )

    @staticmethod
    def _sink(writer: BatchWriter, tracker: JobProgressTracker) -> Callable[[List[Dict[str, str]]], None]:
        def write_batch(batch: List[Dict[str, str]]) -> None:
            outcome = writer.write(batch)
            tracker.record_success(outcome.inserted)
            for reason, count in outcome.failure_reasons.items():
                tracker.record_failure(reason, count)
            tracker.maybe_flush()

        return write_batch

    def _open_lines(self, key: str) -> Iterator[str]:
        try:
            with closing(self.store.get(key)) as chunks:
                yield from iter_text_lines(chunks)
        except StorageNotFoundError as exc:
            raise StreamFatalError(f"Source file not found: {key}") from exc
        except StorageError as exc:
            raise StreamFatalError(f"Reading {key} failed: {exc}") from exc

    def _iter_records(self, job: IngestionJob, tracker: JobProgressTracker, skip: int) -> Iterator[Dict[str, str]]:
        mapping = normalize_mapping(job.mapping)
        key = job.storage_key
        if not key:
            raise StreamFatalError(f"Job {job.id} has no source file")

        try:
            header_index = locate_header_row(self.store, key, expected_headers_from_mapping(mapping))
        except StorageNotFoundError as exc:
            raise StreamFatalError(f"Source file not found: {key}") from exc
        except StorageError as exc:
            raise StreamFatalError(f"Reading {key} failed: {exc}") from exc

        require_name = self.require_name if job.require_name is None else job.require_name
        physical = self._open_lines(key)
        with closing(physical):
            leading = list(islice(physical, header_index + 1))
            # Headers frozen at upload time win over what is in the file now.
            headers = list(job.headers or [])
            if not headers and leading:
                headers = parse_line(leading[-1], header=True)
            column_count = len(headers)

            rejections_logged = 0
            skipped = 0
            data_row = 0
            last_check = self._clock()

            for line in iter_logical_lines(physical):
                if not line.strip():
                    continue
                data_row += 1

                now = self._clock()
                if now - last_check >= self.check_interval_seconds:
                    last_check = now
                    if self.jobs.get_status(job.id) == JobStatus.DELETED:
                        raise _JobDeleted()

                if skipped < skip:
                    skipped += 1
                    continue

                # Rejected rows never reach the sink, so counters are pushed here too.
                tracker.maybe_flush()
                tracker.record_read()
                values = parse_line(line)
                if len(values) != column_count:
                    error = MalformedRowError(data_row, column_count, len(values))
                    tracker.record_failure(error.reason)
                    if rejections_logged < settings.rejection_log_limit:
                        rejections_logged += 1
                        logger.warning(f"Job {job.id}: {error}")
                    continue

                result = transform_row(dict(zip(headers, values)), mapping, require_name=require_name)
                if not result.accepted:
                    tracker.record_failure(result.reason)
                    if rejections_logged < settings.rejection_log_limit:
                        rejections_logged += 1
                        logger.warning(f"Job {job.id}: row {data_row} rejected ({result.reason})")
                    continue

                yield result.record

                if data_row % 10000 == 0:
                    logger.info(f"Job {job.id}: {data_row} rows read")
