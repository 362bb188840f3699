"""
Exceptions raised by the ingestion pipeline.

Row-level problems (malformed lines, validation rejections) are counted and
the run continues. Batch problems are retried or counted. Only stream-level
failures end a run as FAILED.
"""
from typing import Dict, Optional

# Failure reason codes recorded on a job.
COLUMN_MISMATCH = "COLUMN_MISMATCH"
MISSING_NAME = "MISSING_NAME"
NO_CONTACT_INFO = "NO_CONTACT_INFO"
DUPLICATE_RECORD = "DUPLICATE_RECORD"
PERSISTENCE_ERROR = "PERSISTENCE_ERROR"


class IngestionError(Exception):
    """Base exception for ingestion failures."""
    pass


class TransientStorageError(IngestionError):
    """Raised for connectivity failures that are worth retrying."""
    pass


class MalformedRowError(IngestionError):
    """Raised when a line cannot be tokenized into the expected columns."""

    reason = COLUMN_MISMATCH

    def __init__(self, row_number: int, expected: int, actual: int):
        self.row_number = row_number
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Row {row_number}: column count mismatch (expected {expected}, got {actual})"
        )


class BatchPersistenceError(IngestionError):
    """
    Raised when rows of a batch were rejected by the database.

    The rows that could be written are committed; ``reasons`` counts the
    others by failure reason.
    """

    def __init__(
        self,
        message: str,
        *,
        inserted_count: int,
        reasons: Dict[str, int],
    ):
        self.inserted_count = inserted_count
        self.reasons = {reason: count for reason, count in reasons.items() if count}
        super().__init__(message)

    @property
    def failed_count(self) -> int:
        return sum(self.reasons.values())


class DuplicateRecordError(BatchPersistenceError):
    """Raised when a bulk insert hit a uniqueness constraint part-way through."""

    def __init__(self, inserted_count: int, failed_count: int, message: Optional[str] = None):
        super().__init__(
            message or f"{failed_count} records violated a uniqueness constraint",
            inserted_count=inserted_count,
            reasons={DUPLICATE_RECORD: failed_count},
        )


class StreamFatalError(IngestionError):
    """The source stream itself failed or the source object is missing."""
    pass


class HeaderDiscoveryTimeout(IngestionError):
    """Reading the header row took longer than the configured bound."""
    pass


class ChunkUploadError(IngestionError):
    """The reassembled upload could not be stored."""
    pass


class InvalidJobTransition(IngestionError):
    """Raised when a job status change is not allowed by the lifecycle."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class JobNotFoundError(IngestionError):
    """Raised when a job id does not exist."""
    pass


class JobAlreadyQueuedError(IngestionError):
    """Raised when a job already has a queued or running pipeline."""
    pass
