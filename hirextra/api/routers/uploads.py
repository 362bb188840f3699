"""
Chunked upload, header preview and process-start endpoints.
"""
import logging
import os
import queue
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from hirextra.api.dependencies import IngestionServices, get_services
from hirextra.api.schemas.shared import (
    ChunkUploadResponse,
    HeadersRequest,
    HeadersResponse,
    ProcessRequest,
    ProcessResponse,
)
from hirextra.core.config import settings
from hirextra.db.models import JobStatus
from hirextra.domain.ingestion.cleaning import normalize_mapping
from hirextra.domain.ingestion.errors import (
    ChunkUploadError,
    HeaderDiscoveryTimeout,
    JobAlreadyQueuedError,
)
from hirextra.domain.ingestion.header_locator import preview_headers
from hirextra.integrations.storage import StorageError, StorageNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])


def _ensure_within_chunk_limit(upload: UploadFile) -> None:
    limit = settings.upload_max_chunk_size_mb * 1024 * 1024
    if upload.size is not None and upload.size > limit:
        raise HTTPException(
            status_code=413,
            detail=f"Chunk exceeds the maximum size of {settings.upload_max_chunk_size_mb} MB",
        )


@router.post("/upload-chunk", response_model=ChunkUploadResponse, response_model_exclude_none=True)
def upload_chunk_endpoint(
    file: UploadFile = File(...),
    file_name: str = Form(..., alias="fileName"),
    chunk_index: int = Form(..., alias="chunkIndex"),
    total_chunks: int = Form(..., alias="totalChunks"),
    upload_id: Optional[str] = Form(None, alias="uploadId"),
    services: IngestionServices = Depends(get_services),
):
    """
    Receive one chunk of a file upload.

    Intermediate chunks answer with the upload progress; the final chunk
    answers with the storage key, the header row and the job id.
    """
    _ensure_within_chunk_limit(file)
    try:
        receipt = services.uploads.handle_chunk(
            file_name,
            chunk_index,
            total_chunks,
            file.file,
            upload_id=upload_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChunkUploadError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not receipt.done:
        return ChunkUploadResponse(
            status=receipt.status,
            upload_id=receipt.upload_id,
            progress_percent=receipt.progress_percent,
        )

    logger.info(f"Upload of {file_name} stored as {receipt.storage_key} ({len(receipt.headers)} headers)")
    return ChunkUploadResponse(
        status=receipt.status,
        upload_id=receipt.upload_id,
        progress_percent=receipt.progress_percent,
        storage_key=receipt.storage_key,
        headers=receipt.headers,
        job_id=receipt.job_id,
    )


@router.post("/headers", response_model=HeadersResponse)
def preview_headers_endpoint(
    request: HeadersRequest,
    services: IngestionServices = Depends(get_services),
):
    """Return the header row of a stored file, reading only its first bytes."""
    try:
        headers = preview_headers(services.store, request.storage_key)
    except HeaderDiscoveryTimeout as e:
        raise HTTPException(status_code=504, detail=str(e))
    except StorageNotFoundError:
        raise HTTPException(status_code=404, detail=f"File not found: {request.storage_key}")
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Storage error: {str(e)}")

    return HeadersResponse(headers=headers, storage_key=request.storage_key)


@router.post("/process", response_model=ProcessResponse)
async def process_file_endpoint(
    request: ProcessRequest,
    services: IngestionServices = Depends(get_services),
):
    """
    Start ingesting a stored file with the given field mapping.

    Processing runs in the background; poll ``/jobs/{job_id}/status``.
    """
    mapping = normalize_mapping(request.mapping)
    if not mapping:
        raise HTTPException(status_code=400, detail="Mapping must assign at least one field")

    job = services.jobs.find_pending_by_storage_key(request.storage_key)
    if job is not None:
        job = services.jobs.update_mapping(
            job.id,
            mapping,
            headers=request.headers,
            require_name=request.require_name,
        )
    else:
        job = services.jobs.create(
            status=JobStatus.MAPPING_PENDING,
            original_name=os.path.basename(request.storage_key),
            storage_key=request.storage_key,
            headers=request.headers,
            mapping=mapping,
            require_name=request.require_name,
        )

    try:
        services.runner.submit_process(job.id)
    except JobAlreadyQueuedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except queue.Full:
        raise HTTPException(status_code=503, detail="Ingestion queue is full; try again later")

    return ProcessResponse(job_id=job.id)
