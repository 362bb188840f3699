"""
ORM models for ingestion jobs and the candidate records they produce.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from hirextra.db.session import Base


def _utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class JobStatus:
    UPLOADING = "UPLOADING"
    MAPPING_PENDING = "MAPPING_PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    DELETED = "DELETED"

    ALL = (UPLOADING, MAPPING_PENDING, PROCESSING, COMPLETED, FAILED, DELETED)


# Column names of the canonical candidate fields, in mapping order.
CANDIDATE_FIELDS = (
    "full_name",
    "email",
    "phone",
    "company",
    "industry",
    "job_title",
    "skills",
    "experience",
    "country",
    "locality",
    "location",
    "linkedin_url",
    "github_url",
    "summary",
)


class IngestionJob(Base):
    """One tracked run of turning a stored file into candidate records."""
    __tablename__ = "ingestion_jobs"

    id = Column(String(36), primary_key=True, default=_new_id)
    upload_id = Column(String(100), nullable=True, index=True)
    original_name = Column(String(500), nullable=True)
    storage_key = Column(String(1000), nullable=True, index=True)
    status = Column(String(20), nullable=False, default=JobStatus.UPLOADING, index=True)

    mapping = Column(JSON, nullable=False, default=dict)
    headers = Column(JSON, nullable=False, default=list)
    require_name = Column(Boolean, nullable=True)

    total_rows = Column(Integer, nullable=False, default=0)
    success_rows = Column(Integer, nullable=False, default=0)
    failed_rows = Column(Integer, nullable=False, default=0)
    failure_reasons = Column(JSON, nullable=False, default=dict)
    excess_failure_count = Column(Integer, nullable=False, default=0)

    error = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def rows_accounted(self) -> int:
        return (self.success_rows or 0) + (self.failed_rows or 0)


class Candidate(Base):
    """A cleaned candidate record created from one accepted source row."""
    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, autoincrement=True)

    full_name = Column(String(255), nullable=True)
    email = Column(String(320), nullable=True)
    phone = Column(String(32), nullable=True)
    company = Column(String(255), nullable=True)
    industry = Column(String(255), nullable=True)
    job_title = Column(String(255), nullable=True)
    skills = Column(Text, nullable=True)
    experience = Column(String(50), nullable=True)
    country = Column(String(255), nullable=True)
    locality = Column(String(255), nullable=True)
    location = Column(String(255), nullable=True)
    linkedin_url = Column(String(500), nullable=True)
    github_url = Column(String(500), nullable=True)
    summary = Column(Text, nullable=True)

    source_file = Column(String(500), nullable=True)
    ingestion_job_id = Column(String(36), nullable=True, index=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_candidates_job_deleted", "ingestion_job_id", "is_deleted"),
    )
