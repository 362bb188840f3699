"""
Reassemble chunked browser uploads and hand the result to blob storage.
"""
import csv
import logging
import os
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional, Union

from hirextra.core.config import settings
from hirextra.db.models import JobStatus
from hirextra.domain.ingestion.errors import ChunkUploadError, HeaderDiscoveryTimeout
from hirextra.domain.ingestion.header_locator import call_with_timeout
from hirextra.domain.ingestion.jobs import JobRepository
from hirextra.domain.ingestion.line_parser import iter_text_lines, parse_line
from hirextra.integrations.storage import BlobStore, StorageError

logger = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9.-]")

CHUNK_RECEIVED = "chunk_received"
DONE = "done"


def validate_chunk_index(chunk_index: int, total_chunks: int) -> None:
    if total_chunks < 1 or not 0 <= chunk_index < total_chunks:
        raise ValueError(f"Chunk index {chunk_index} is out of range for {total_chunks} chunks")


def sanitize_file_name(file_name: str) -> str:
    return _UNSAFE_NAME_CHARS.sub("_", os.path.basename(file_name or "")) or "upload"


def generate_storage_key(file_name: str, timestamp_ms: Optional[int] = None) -> str:
    """Build the blob key ``uploads/<epoch ms>_<sanitized name>``."""
    ts = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
    return f"uploads/{ts}_{sanitize_file_name(file_name)}"


@dataclass
class ChunkReceipt:
    status: str
    upload_id: str
    progress_percent: int = 0
    storage_key: Optional[str] = None
    headers: List[str] = field(default_factory=list)
    job_id: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.status == DONE


def _read_headers_csv(path: Path) -> List[str]:
    with open(path, newline="", encoding="utf-8-sig", errors="replace") as handle:
        for row in csv.reader(handle):
            if any(cell.strip() for cell in row):
                return [cell.strip() or f"Column_{i + 1}" for i, cell in enumerate(row)]
    return []


def _read_headers_manual(path: Path, preview_bytes: int) -> List[str]:
    # Only the head of the file is read; a file without newlines may be huge.
    with open(path, "rb") as handle:
        head = handle.read(preview_bytes)
    for line in iter_text_lines([head]):
        if line.strip():
            return parse_line(line, header=True)
    return []


class ChunkReassembler:
    """
    Append numbered chunks of one upload to a local temporary file.

    On the final chunk the headers are read, the file is stored under a new
    blob key and the temporary file is removed whether or not that worked.
    """

    def __init__(
        self,
        store: BlobStore,
        temp_dir: Optional[Union[str, Path]] = None,
        header_timeout_seconds: Optional[float] = None,
        header_preview_bytes: Optional[int] = None,
    ):
        self.store = store
        directory = temp_dir or settings.upload_temp_dir or os.path.join(
            tempfile.gettempdir(), "hirextra_uploads"
        )
        self.temp_dir = Path(directory)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.header_timeout_seconds = (
            settings.header_read_timeout_seconds
            if header_timeout_seconds is None
            else header_timeout_seconds
        )
        self.header_preview_bytes = header_preview_bytes or settings.header_preview_bytes

    def temp_path(self, upload_id: str, file_name: str) -> Path:
        return self.temp_dir / f"{sanitize_file_name(upload_id)}_{sanitize_file_name(file_name)}"

    def accept_chunk(
        self,
        upload_id: str,
        file_name: str,
        chunk_index: int,
        total_chunks: int,
        payload: Union[bytes, BinaryIO],
    ) -> ChunkReceipt:
        """
        Store one chunk.

        Raises:
            ValueError: If the chunk index is outside ``[0, total_chunks)``.
            ChunkUploadError: If the final blob upload failed.
        """
        validate_chunk_index(chunk_index, total_chunks)

        path = self.temp_path(upload_id, file_name)
        # Chunk 0 starts over so a retried upload never appends to stale bytes.
        mode = "wb" if chunk_index == 0 else "ab"
        with open(path, mode) as handle:
            if isinstance(payload, (bytes, bytearray)):
                handle.write(payload)
            else:
                shutil.copyfileobj(payload, handle)

        if chunk_index + 1 < total_chunks:
            return ChunkReceipt(
                status=CHUNK_RECEIVED,
                upload_id=upload_id,
                progress_percent=round((chunk_index + 1) / total_chunks * 100),
            )

        logger.info(f"Upload {upload_id} fully assembled at {path}")
        try:
            headers = self.read_headers(path)
            storage_key = generate_storage_key(file_name)
            with open(path, "rb") as handle:
                self.store.put(storage_key, handle, content_type="text/csv")
        except StorageError as exc:
            logger.error(f"Storing upload {upload_id} failed: {exc}")
            raise ChunkUploadError(f"Failed to store uploaded file: {exc}") from exc
        finally:
            path.unlink(missing_ok=True)

        return ChunkReceipt(
            status=DONE,
            upload_id=upload_id,
            progress_percent=100,
            storage_key=storage_key,
            headers=headers,
        )

    def read_headers(self, path: Path) -> List[str]:
        """Read the header row with the csv module, falling back to a manual line read."""
        try:
            headers = call_with_timeout(_read_headers_csv, self.header_timeout_seconds, path)
            if headers:
                return headers
        except (HeaderDiscoveryTimeout, csv.Error, OSError) as exc:
            logger.warning(f"CSV header read failed for {path.name} ({exc}); reading the first line manually")

        headers = _read_headers_manual(path, self.header_preview_bytes)
        if not headers:
            logger.warning(f"No header row found in {path.name}")
        return headers


class UploadService:
    """Tie chunk reassembly to the lifecycle of the upload's ingestion job."""

    def __init__(self, reassembler: ChunkReassembler, jobs: JobRepository):
        self.reassembler = reassembler
        self.jobs = jobs

    def handle_chunk(
        self,
        file_name: str,
        chunk_index: int,
        total_chunks: int,
        payload: Union[bytes, BinaryIO],
        upload_id: Optional[str] = None,
    ) -> ChunkReceipt:
        validate_chunk_index(chunk_index, total_chunks)
        # Clients that do not send an upload id are keyed by file name.
        upload_id = upload_id or sanitize_file_name(file_name)

        job = None
        if chunk_index > 0:
            job = self.jobs.find_by_upload_id(upload_id)
        if job is None or job.status != JobStatus.UPLOADING:
            job = self.jobs.create(
                status=JobStatus.UPLOADING,
                upload_id=upload_id,
                original_name=file_name,
            )

        try:
            receipt = self.reassembler.accept_chunk(
                upload_id, file_name, chunk_index, total_chunks, payload
            )
        except ChunkUploadError as exc:
            self.jobs.transition(job.id, JobStatus.FAILED, error=str(exc))
            raise

        receipt.job_id = job.id
        if receipt.done:
            self.jobs.transition(
                job.id,
                JobStatus.MAPPING_PENDING,
                storage_key=receipt.storage_key,
                headers=receipt.headers,
            )
        return receipt
