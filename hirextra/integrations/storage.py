"""
Blob storage for uploaded source files.

The pipeline only needs a small capability set (``BlobStore``): put, get as a
byte stream, ranged get, exists and delete. ``S3BlobStore`` talks to any
S3-compatible provider through boto3; ``LocalBlobStore`` keeps objects in a
directory for development and tests.
"""
import logging
import os
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Protocol, Union

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from hirextra.core.config import settings

logger = logging.getLogger(__name__)

STREAM_CHUNK_SIZE = 1024 * 1024
MULTIPART_THRESHOLD = 16 * 1024 * 1024

BlobData = Union[bytes, BinaryIO]


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class StorageConnectionError(StorageError):
    """Raised when the storage service cannot be reached."""
    pass


class StorageUploadError(StorageError):
    """Raised when file upload fails."""
    pass


class StorageDownloadError(StorageError):
    """Raised when file download fails."""
    pass


class StorageNotFoundError(StorageDownloadError):
    """Raised when the requested object does not exist."""
    pass


class ObjectStream:
    """
    Chunks of one stored object.

    The object is opened when the stream is created, so ``close()`` releases
    it even if iteration never started.
    """

    def __init__(self, chunks: Iterator[bytes], release: Callable[[], None]):
        self._chunks = chunks
        self._release = release
        self.closed = False

    def __iter__(self) -> "ObjectStream":
        return self

    def __next__(self) -> bytes:
        if self.closed:
            raise StopIteration
        try:
            return next(self._chunks)
        except Exception:
            self.close()
            raise

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._chunks.close()
        finally:
            self._release()


class BlobStore(Protocol):
    def put(self, key: str, data: BlobData, content_type: str = "application/octet-stream") -> str:
        ...

    def get(self, key: str) -> Iterator[bytes]:
        ...

    def get_range(self, key: str, start: int, end: int) -> Iterator[bytes]:
        ...

    def exists(self, key: str) -> bool:
        ...

    def delete(self, key: str) -> None:
        ...


_CONNECTION_ERRORS = (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "Unknown")


def get_storage_client():
    """
    Get S3-compatible storage client.

    Returns:
        boto3 S3 client configured for the storage provider

    Raises:
        ValueError: If storage configuration is incomplete
        StorageConnectionError: If the client cannot be created
    """
    if not settings.storage_bucket_name:
        raise ValueError(
            "Storage configuration is incomplete. Please set STORAGE_BUCKET_NAME "
            "(and credentials unless the environment provides them)."
        )

    config = Config(
        signature_version="s3v4",
        retries={"max_attempts": settings.storage_max_retries, "mode": "standard"},
    )

    client_kwargs = {
        "service_name": "s3",
        "config": config,
    }
    if settings.storage_access_key_id and settings.storage_secret_access_key:
        client_kwargs["aws_access_key_id"] = settings.storage_access_key_id
        client_kwargs["aws_secret_access_key"] = settings.storage_secret_access_key

    # Endpoint URL for non-AWS providers (B2, MinIO, etc.)
    if settings.storage_endpoint_url:
        client_kwargs["endpoint_url"] = settings.storage_endpoint_url

    if settings.storage_region:
        client_kwargs["region_name"] = settings.storage_region

    try:
        return boto3.client(**client_kwargs)
    except (BotoCoreError, ValueError) as e:
        logger.error(f"Failed to create storage client: {e}")
        raise StorageConnectionError(f"Failed to connect to storage: {str(e)}")


class S3BlobStore:
    """BlobStore backed by an S3-compatible bucket."""

    def __init__(self, bucket_name: str, client=None):
        self.bucket_name = bucket_name
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_storage_client()
        return self._client

    def put(self, key: str, data: BlobData, content_type: str = "application/octet-stream") -> str:
        """
        Upload an object. Bytes go up in one request; file objects are streamed
        with boto3's managed multipart transfer so large uploads never sit in memory.
        """
        try:
            if isinstance(data, (bytes, bytearray)):
                self.client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=bytes(data),
                    ContentType=content_type,
                )
            else:
                self.client.upload_fileobj(
                    data,
                    self.bucket_name,
                    key,
                    ExtraArgs={"ContentType": content_type},
                    Config=TransferConfig(multipart_threshold=MULTIPART_THRESHOLD),
                )
            logger.info(f"File uploaded to storage: {key}")
            return key
        except _CONNECTION_ERRORS as e:
            logger.error(f"Storage unreachable while uploading {key}: {e}")
            raise StorageConnectionError(f"Upload failed: {str(e)}")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Storage upload failed for {key}: {str(e)}")
            raise StorageUploadError(f"Upload failed: {str(e)}")

    def get(self, key: str) -> Iterator[bytes]:
        body = self._get_body(key)
        return ObjectStream(self._iter_body(key, body), body.close)

    def get_range(self, key: str, start: int, end: int) -> Iterator[bytes]:
        """Stream bytes ``start`` through ``end`` (inclusive) of an object."""
        body = self._get_body(key, byte_range=f"bytes={start}-{end}")
        return ObjectStream(self._iter_body(key, body), body.close)

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in ("404", "NoSuchKey", "NotFound"):
                return False
            logger.error(f"Error checking file existence: {str(e)}")
            raise StorageError(f"Failed to check {key}: {str(e)}")
        except _CONNECTION_ERRORS as e:
            raise StorageConnectionError(f"Failed to check {key}: {str(e)}")

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
            logger.info(f"File deleted from storage: {key}")
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error deleting file from storage: {str(e)}")
            raise StorageError(f"Failed to delete {key}: {str(e)}")

    def _get_body(self, key: str, byte_range: Optional[str] = None):
        params = {"Bucket": self.bucket_name, "Key": key}
        if byte_range:
            params["Range"] = byte_range
        try:
            return self.client.get_object(**params)["Body"]
        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ("NoSuchKey", "404"):
                raise StorageNotFoundError(f"File not found: {key}")
            logger.error(f"Storage download failed: {error_code} - {str(e)}")
            raise StorageDownloadError(f"Download failed: {str(e)}")
        except _CONNECTION_ERRORS as e:
            raise StorageConnectionError(f"Download failed: {str(e)}")

    def _iter_body(self, key: str, body) -> Iterator[bytes]:
        try:
            for chunk in body.iter_chunks(chunk_size=STREAM_CHUNK_SIZE):
                yield chunk
        except _CONNECTION_ERRORS as e:
            raise StorageConnectionError(f"Stream interrupted for {key}: {str(e)}")
        except BotoCoreError as e:
            raise StorageDownloadError(f"Stream failed for {key}: {str(e)}")


class LocalBlobStore:
    """BlobStore that keeps objects as files under a root directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, key: str, data: BlobData, content_type: str = "application/octet-stream") -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, "wb") as handle:
                if isinstance(data, (bytes, bytearray)):
                    handle.write(data)
                else:
                    while True:
                        chunk = data.read(STREAM_CHUNK_SIZE)
                        if not chunk:
                            break
                        handle.write(chunk)
        except OSError as e:
            raise StorageUploadError(f"Upload failed: {str(e)}")
        logger.info(f"File stored locally: {key}")
        return key

    def get(self, key: str) -> Iterator[bytes]:
        handle = self._open(key)
        return ObjectStream(self._iter_file(handle, None), handle.close)

    def get_range(self, key: str, start: int, end: int) -> Iterator[bytes]:
        handle = self._open(key)
        handle.seek(start)
        return ObjectStream(self._iter_file(handle, end - start + 1), handle.close)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            os.remove(path)

    def _open(self, key: str) -> BinaryIO:
        try:
            return open(self._path(key), "rb")
        except FileNotFoundError:
            raise StorageNotFoundError(f"File not found: {key}")
        except OSError as e:
            raise StorageDownloadError(f"Download failed: {str(e)}")

    @staticmethod
    def _iter_file(handle: BinaryIO, remaining: Optional[int]) -> Iterator[bytes]:
        while remaining is None or remaining > 0:
            size = STREAM_CHUNK_SIZE if remaining is None else min(STREAM_CHUNK_SIZE, remaining)
            chunk = handle.read(size)
            if not chunk:
                return
            if remaining is not None:
                remaining -= len(chunk)
            yield chunk


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Return the process-wide blob store selected by ``storage_provider``."""
    global _blob_store
    if _blob_store is None:
        if settings.storage_provider == "local":
            _blob_store = LocalBlobStore(settings.storage_local_root)
        else:
            _blob_store = S3BlobStore(settings.storage_bucket_name)
    return _blob_store
