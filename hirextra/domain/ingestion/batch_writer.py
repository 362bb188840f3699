"""
Write batches of accepted records with bounded retries.

A batch never aborts the run: whatever could not be written is reported
back as failed rows and the pipeline moves on to the next batch.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from hirextra.core.config import settings
from hirextra.domain.ingestion.errors import (
    PERSISTENCE_ERROR,
    BatchPersistenceError,
    TransientStorageError,
)
from hirextra.domain.ingestion.repository import CandidateRepository

logger = logging.getLogger(__name__)


@dataclass
class BatchOutcome:
    inserted: int = 0
    failed: int = 0
    attempts: int = 0
    failure_reasons: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None


class BatchWriter:
    def __init__(
        self,
        repository: CandidateRepository,
        *,
        source_file: str,
        job_id: str,
        max_retries: Optional[int] = None,
        base_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.repository = repository
        self.source_file = source_file
        self.job_id = job_id
        self.max_retries = settings.ingest_max_retries if max_retries is None else max_retries
        self.base_delay_seconds = (
            settings.ingest_retry_base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        )
        self._sleep = sleep

    def write(self, records: Sequence[Mapping[str, str]]) -> BatchOutcome:
        """
        Persist ``records``; transient failures are retried ``max_retries`` times
        with exponential backoff.
        """
        if not records:
            return BatchOutcome()

        total = len(records)
        attempt = 0
        while True:
            attempt += 1
            try:
                inserted = self.repository.insert_many(
                    records, source_file=self.source_file, job_id=self.job_id
                )
                failed = total - inserted
                return BatchOutcome(
                    inserted=inserted,
                    failed=failed,
                    attempts=attempt,
                    failure_reasons={PERSISTENCE_ERROR: failed} if failed else {},
                )
            except BatchPersistenceError as exc:
                logger.warning(f"Job {self.job_id}: {exc}; {exc.inserted_count} of {total} rows written")
                return BatchOutcome(
                    inserted=exc.inserted_count,
                    failed=exc.failed_count,
                    attempts=attempt,
                    failure_reasons=exc.reasons,
                    error=str(exc),
                )
            except TransientStorageError as exc:
                if attempt > self.max_retries:
                    message = f"Batch of {total} rows not written after {attempt} attempts: {exc}"
                    logger.error(f"Job {self.job_id}: {message}")
                    return self._failed(total, attempt, message)
                delay = self.base_delay_seconds * 2 ** (attempt - 1)
                logger.warning(
                    f"Job {self.job_id}: transient write failure (attempt {attempt}/{self.max_retries + 1}), "
                    f"retrying in {delay:.2f}s: {exc}"
                )
                self._sleep(delay)
            except SQLAlchemyError as exc:
                message = f"Batch of {total} rows failed: {exc}"
                logger.error(f"Job {self.job_id}: {message}")
                return self._failed(total, attempt, message)

    @staticmethod
    def _failed(total: int, attempts: int, message: str) -> BatchOutcome:
        return BatchOutcome(
            failed=total,
            attempts=attempts,
            failure_reasons={PERSISTENCE_ERROR: total},
            error=message,
        )
