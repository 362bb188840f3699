"""
Persistence of candidate records.
"""
import logging
from typing import Dict, Iterator, List, Mapping, Sequence, Tuple

from sqlalchemy import insert, update
from sqlalchemy.exc import DataError, DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import sessionmaker

from hirextra.db.models import CANDIDATE_FIELDS, Candidate
from hirextra.domain.ingestion.errors import (
    DUPLICATE_RECORD,
    PERSISTENCE_ERROR,
    BatchPersistenceError,
    DuplicateRecordError,
    TransientStorageError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (OperationalError, DisconnectionError, PoolTimeoutError)
# Errors caused by individual rows; the rest of the batch can still be written.
_ROW_ERRORS = (IntegrityError, DataError)


class CandidateRepository:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def insert_many(self, records: Sequence[Mapping[str, str]], *, source_file: str, job_id: str) -> int:
        """
        Insert ``records`` for one job and return how many were written.

        Raises:
            TransientStorageError: On connectivity failures; nothing was written.
            DuplicateRecordError: When some rows violated a uniqueness constraint;
                the other rows are written.
            BatchPersistenceError: When some rows were rejected for other
                reasons, such as a value too long for its column; the other
                rows are written.
        """
        rows = [
            {
                **{field_name: record.get(field_name) or None for field_name in CANDIDATE_FIELDS},
                "source_file": source_file,
                "ingestion_job_id": job_id,
                "is_deleted": False,
            }
            for record in records
        ]
        if not rows:
            return 0

        try:
            with self._session_factory() as session:
                try:
                    session.execute(insert(Candidate), rows)
                    session.commit()
                    return len(rows)
                except _ROW_ERRORS as exc:
                    session.rollback()
                    logger.warning(
                        f"Bulk insert of {len(rows)} rows was rejected ({type(exc).__name__}); "
                        f"inserting row by row"
                    )
                    return self._insert_individually(session, rows)
        except _TRANSIENT_ERRORS as exc:
            raise TransientStorageError(f"Database unavailable: {exc}") from exc

    @staticmethod
    def _insert_individually(session, rows: List[Dict[str, object]]) -> int:
        inserted = 0
        duplicates = 0
        rejected = 0
        for row in rows:
            try:
                with session.begin_nested():
                    session.execute(insert(Candidate), [row])
                inserted += 1
            except IntegrityError:
                duplicates += 1
            except DataError as exc:
                rejected += 1
                logger.debug(f"Row rejected by the database: {exc.orig}")
        session.commit()
        if rejected:
            raise BatchPersistenceError(
                f"{duplicates + rejected} of {len(rows)} rows were rejected by the database",
                inserted_count=inserted,
                reasons={DUPLICATE_RECORD: duplicates, PERSISTENCE_ERROR: rejected},
            )
        if duplicates:
            raise DuplicateRecordError(inserted, duplicates)
        return inserted

    def count_by_job(self, job_id: str, include_deleted: bool = False) -> int:
        with self._session_factory() as session:
            query = session.query(Candidate).filter(Candidate.ingestion_job_id == job_id)
            if not include_deleted:
                query = query.filter(Candidate.is_deleted.is_(False))
            return query.count()

    def soft_delete_by_job(self, job_id: str) -> int:
        with self._session_factory() as session:
            result = session.execute(
                update(Candidate)
                .where(Candidate.ingestion_job_id == job_id, Candidate.is_deleted.is_(False))
                .values(is_deleted=True)
            )
            session.commit()
            return result.rowcount or 0

    def iter_active(self, page_size: int = 1000) -> Iterator[List[Tuple[int, Dict[str, str]]]]:
        """Yield pages of ``(id, fields)`` for records that are not soft-deleted."""
        last_id = 0
        while True:
            with self._session_factory() as session:
                page = (
                    session.query(Candidate)
                    .filter(Candidate.is_deleted.is_(False), Candidate.id > last_id)
                    .order_by(Candidate.id)
                    .limit(page_size)
                    .all()
                )
                batch = [
                    (
                        candidate.id,
                        {name: getattr(candidate, name) or "" for name in CANDIDATE_FIELDS},
                    )
                    for candidate in page
                ]
            if not batch:
                return
            yield batch
            last_id = batch[-1][0]

    def apply_changes(self, updates: Mapping[int, Mapping[str, str]], deleted_ids: Sequence[int]) -> None:
        with self._session_factory() as session:
            for candidate_id, values in updates.items():
                session.execute(
                    update(Candidate)
                    .where(Candidate.id == candidate_id)
                    .values({name: values.get(name) or None for name in CANDIDATE_FIELDS})
                )
            if deleted_ids:
                session.execute(
                    update(Candidate)
                    .where(Candidate.id.in_(list(deleted_ids)))
                    .values(is_deleted=True)
                )
            session.commit()
