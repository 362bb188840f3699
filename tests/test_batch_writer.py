"""
Tests for batch persistence with retries.
"""

import pytest
from sqlalchemy import event
from sqlalchemy.exc import DataError, OperationalError, ProgrammingError

from hirextra.db.models import Candidate
from hirextra.domain.ingestion.batch_writer import BatchWriter
from hirextra.domain.ingestion.errors import (
    DUPLICATE_RECORD,
    PERSISTENCE_ERROR,
    BatchPersistenceError,
    DuplicateRecordError,
    TransientStorageError,
)
from hirextra.domain.ingestion.repository import CandidateRepository


class FakeRepository:
    """Raises the queued errors in order, then inserts everything."""

    def __init__(self, errors=()):
        self.errors = list(errors)
        self.calls = 0

    def insert_many(self, records, *, source_file, job_id):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return len(records)


def _writer(repository, sleeps, max_retries=3):
    return BatchWriter(
        repository,
        source_file="people.csv",
        job_id="job-1",
        max_retries=max_retries,
        base_delay_seconds=0.5,
        sleep=sleeps.append,
    )


RECORDS = [{"full_name": f"Person {i}", "email": f"p{i}@example.com"} for i in range(10)]


def test_successful_write():
    sleeps = []
    outcome = _writer(FakeRepository(), sleeps).write(RECORDS)
    assert (outcome.inserted, outcome.failed, outcome.attempts) == (10, 0, 1)
    assert outcome.failure_reasons == {}
    assert sleeps == []


def test_transient_failures_are_retried_with_backoff():
    sleeps = []
    repository = FakeRepository([TransientStorageError("down"), TransientStorageError("down")])
    outcome = _writer(repository, sleeps).write(RECORDS)
    assert outcome.inserted == 10
    assert outcome.attempts == 3
    assert sleeps == [0.5, 1.0]


def test_exhausted_retries_fail_the_whole_batch():
    sleeps = []
    repository = FakeRepository([TransientStorageError("down")] * 10)
    outcome = _writer(repository, sleeps).write(RECORDS)
    assert repository.calls == 4
    assert outcome.inserted == 0
    assert outcome.failed == 10
    assert outcome.failure_reasons == {PERSISTENCE_ERROR: 10}
    assert sleeps == [0.5, 1.0, 2.0]


def test_duplicates_are_not_retried():
    sleeps = []
    repository = FakeRepository([DuplicateRecordError(inserted_count=7, failed_count=3)])
    outcome = _writer(repository, sleeps).write(RECORDS)
    assert repository.calls == 1
    assert (outcome.inserted, outcome.failed) == (7, 3)
    assert outcome.failure_reasons == {DUPLICATE_RECORD: 3}


def test_rows_rejected_by_the_database_are_counted_by_reason():
    sleeps = []
    error = BatchPersistenceError(
        "3 of 10 rows were rejected by the database",
        inserted_count=7,
        reasons={DUPLICATE_RECORD: 1, PERSISTENCE_ERROR: 2},
    )
    outcome = _writer(FakeRepository([error]), sleeps).write(RECORDS)
    assert (outcome.inserted, outcome.failed, outcome.attempts) == (7, 3, 1)
    assert outcome.failure_reasons == {DUPLICATE_RECORD: 1, PERSISTENCE_ERROR: 2}
    assert sleeps == []


def test_non_transient_database_error_fails_without_retry():
    sleeps = []
    error = ProgrammingError("INSERT", {}, Exception("no such table"))
    repository = FakeRepository([error])
    outcome = _writer(repository, sleeps).write(RECORDS)
    assert repository.calls == 1
    assert outcome.failed == 10
    assert outcome.failure_reasons == {PERSISTENCE_ERROR: 10}
    assert "no such table" in outcome.error


def test_empty_batch_is_a_no_op():
    repository = FakeRepository()
    outcome = _writer(repository, []).write([])
    assert repository.calls == 0
    assert (outcome.inserted, outcome.failed, outcome.attempts) == (0, 0, 0)


class TestCandidateRepository:
    def test_insert_many_records_provenance(self, candidate_repository, session_factory):
        inserted = candidate_repository.insert_many(
            [{"full_name": "Jane Doe", "email": "jane@example.com", "phone": ""}],
            source_file="people.csv",
            job_id="job-1",
        )
        assert inserted == 1

        with session_factory() as session:
            candidate = session.query(Candidate).one()
        assert candidate.source_file == "people.csv"
        assert candidate.ingestion_job_id == "job-1"
        assert candidate.is_deleted is False
        assert candidate.phone is None

    def test_soft_delete_by_job(self, candidate_repository):
        candidate_repository.insert_many(
            [{"full_name": "A", "email": "a@x.io"}, {"full_name": "B", "email": "b@x.io"}],
            source_file="a.csv",
            job_id="job-1",
        )
        candidate_repository.insert_many(
            [{"full_name": "C", "email": "c@x.io"}], source_file="b.csv", job_id="job-2"
        )
        assert candidate_repository.soft_delete_by_job("job-1") == 2
        assert candidate_repository.count_by_job("job-1") == 0
        assert candidate_repository.count_by_job("job-1", include_deleted=True) == 2
        assert candidate_repository.count_by_job("job-2") == 1

    def test_connection_failure_is_transient(self):
        class BrokenSession:
            def __enter__(self):
                return self

            def __exit__(self, *exc_info):
                return False

            def execute(self, *args, **kwargs):
                raise OperationalError("INSERT", {}, Exception("connection refused"))

        repository = CandidateRepository(BrokenSession)
        with pytest.raises(TransientStorageError):
            repository.insert_many([{"full_name": "A"}], source_file="a.csv", job_id="job-1")

    def test_value_too_long_only_fails_its_row(self, engine, candidate_repository):
        def reject_long_values(conn, cursor, statement, parameters, context, executemany):
            rows = parameters if executemany else [parameters]
            for row in rows:
                values = row.values() if isinstance(row, dict) else row
                if any(isinstance(value, str) and len(value) > 320 for value in values):
                    raise DataError(statement, parameters, Exception("value too long for type character varying(320)"))

        event.listen(engine, "before_cursor_execute", reject_long_values)
        records = list(RECORDS[:9]) + [{"full_name": "Long Email", "email": "x" * 400 + "@example.com"}]

        outcome = _writer(candidate_repository, []).write(records)

        assert (outcome.inserted, outcome.failed) == (9, 1)
        assert outcome.failure_reasons == {PERSISTENCE_ERROR: 1}
        assert candidate_repository.count_by_job("job-1") == 9
