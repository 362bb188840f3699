"""
Service wiring shared by the routers.

The application lifespan builds one ``IngestionServices`` and stores it on
``app.state``; endpoints receive it through ``get_services`` so tests can swap
it with ``app.dependency_overrides``.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import sessionmaker

from hirextra.domain.ingestion.chunk_reassembler import ChunkReassembler, UploadService
from hirextra.domain.ingestion.jobs import JobRepository
from hirextra.domain.ingestion.pipeline import IngestionPipeline
from hirextra.domain.ingestion.repository import CandidateRepository
from hirextra.domain.ingestion.runner import IngestionRunner
from hirextra.integrations.storage import BlobStore


@dataclass
class IngestionServices:
    store: BlobStore
    jobs: JobRepository
    candidates: CandidateRepository
    uploads: UploadService
    pipeline: IngestionPipeline
    runner: IngestionRunner


def build_services(
    session_factory: sessionmaker,
    store: BlobStore,
    *,
    temp_dir: Optional[str] = None,
    pipeline: Optional[IngestionPipeline] = None,
) -> IngestionServices:
    jobs = JobRepository(session_factory)
    candidates = CandidateRepository(session_factory)
    pipeline = pipeline or IngestionPipeline(store, jobs, candidates)
    return IngestionServices(
        store=store,
        jobs=jobs,
        candidates=candidates,
        uploads=UploadService(ChunkReassembler(store, temp_dir=temp_dir), jobs),
        pipeline=pipeline,
        runner=IngestionRunner(pipeline, jobs, candidates),
    )


def get_services(request: Request) -> IngestionServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Ingestion services are not initialized")
    return services
