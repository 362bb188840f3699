"""
Pytest configuration and fixtures for the ingestion tests.

Every test gets its own in-memory SQLite database and a filesystem blob store
under ``tmp_path``; nothing talks to Postgres or S3 unless marked integration.
"""

import os

os.environ["SKIP_DB_INIT"] = "1"
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("STORAGE_PROVIDER", "local")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from hirextra.db import models  # noqa: F401
from hirextra.db.models import JobStatus
from hirextra.db.session import Base
from hirextra.domain.ingestion.cleaning import normalize_mapping
from hirextra.domain.ingestion.jobs import JobRepository
from hirextra.domain.ingestion.pipeline import IngestionPipeline
from hirextra.domain.ingestion.repository import CandidateRepository
from hirextra.integrations.storage import LocalBlobStore


PEOPLE_HEADERS = ["Full Name", "Email", "Phone", "LinkedIn"]
PEOPLE_MAPPING = {
    "fullName": "Full Name",
    "email": "Email",
    "phone": "Phone",
    "linkedinUrl": "LinkedIn",
}

# Banner line, then six data rows: three valid, one without contact info,
# one without a name and one with the wrong number of columns.
PEOPLE_CSV = (
    "Export generated 2024-01-01\n"
    "Full Name,Email,Phone,LinkedIn\n"
    "Jane Doe,jane@example.com,,\n"
    "John Smith,not-an-email,,\n"
    ",,,linkedin.com/in/anon\n"
    '"Doe, Jr.",jr@example.com,"+1 (415) 555-1234",\n'
    "Broken,row\n"
    "Alex Roe,,4155551234,\n"
)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def job_repository(session_factory):
    return JobRepository(session_factory)


@pytest.fixture
def candidate_repository(session_factory):
    return CandidateRepository(session_factory)


@pytest.fixture
def pipeline(blob_store, job_repository, candidate_repository):
    return IngestionPipeline(
        blob_store,
        job_repository,
        candidate_repository,
        batch_size=2,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def people_job(blob_store, job_repository):
    """A MAPPING_PENDING job whose source file is PEOPLE_CSV."""
    key = "uploads/1700000000000_people.csv"
    blob_store.put(key, PEOPLE_CSV.encode("utf-8"))
    return job_repository.create(
        status=JobStatus.MAPPING_PENDING,
        original_name="people.csv",
        storage_key=key,
        headers=PEOPLE_HEADERS,
        mapping=normalize_mapping(PEOPLE_MAPPING),
    )
