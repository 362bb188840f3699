"""
Tests for the blob stores.

S3 behaviour is exercised against moto's in-memory S3.
"""

import io

import boto3
import pytest
from moto import mock_aws

from hirextra.core.config import settings
from hirextra.integrations import storage
from hirextra.integrations.storage import (
    LocalBlobStore,
    S3BlobStore,
    StorageError,
    StorageNotFoundError,
    get_blob_store,
    get_storage_client,
)

TEST_BUCKET = "hirextra-test-uploads"


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mocked AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def s3_store(aws_credentials):
    with mock_aws():
        client = boto3.client("s3", region_name="us-east-1")
        client.create_bucket(Bucket=TEST_BUCKET)
        yield S3BlobStore(TEST_BUCKET, client=client)


class TestS3BlobStore:
    def test_put_and_get_bytes(self, s3_store):
        s3_store.put("uploads/1_a.csv", b"Name,Email\nJane,j@x.io\n", content_type="text/csv")
        assert b"".join(s3_store.get("uploads/1_a.csv")) == b"Name,Email\nJane,j@x.io\n"
        head = s3_store.client.head_object(Bucket=TEST_BUCKET, Key="uploads/1_a.csv")
        assert head["ContentType"] == "text/csv"

    def test_put_file_object(self, s3_store):
        s3_store.put("uploads/2_b.csv", io.BytesIO(b"x" * 5000))
        assert len(b"".join(s3_store.get("uploads/2_b.csv"))) == 5000

    def test_get_range(self, s3_store):
        s3_store.put("uploads/3_c.csv", b"0123456789")
        assert b"".join(s3_store.get_range("uploads/3_c.csv", 2, 5)) == b"2345"

    def test_exists_and_delete(self, s3_store):
        s3_store.put("uploads/4_d.csv", b"data")
        assert s3_store.exists("uploads/4_d.csv")
        s3_store.delete("uploads/4_d.csv")
        assert not s3_store.exists("uploads/4_d.csv")

    def test_missing_key_raises_on_get(self, s3_store):
        with pytest.raises(StorageNotFoundError):
            s3_store.get("uploads/missing.csv")
        with pytest.raises(StorageNotFoundError):
            s3_store.get_range("uploads/missing.csv", 0, 10)

    def test_closing_an_unread_stream_releases_the_body(self, s3_store, monkeypatch):
        s3_store.put("uploads/5_e.csv", b"Name\nJane\n")
        closed = []
        get_body = s3_store._get_body

        def tracked_body(key, byte_range=None):
            body = get_body(key, byte_range)
            close = body.close

            def record_close():
                closed.append(key)
                close()

            body.close = record_close
            return body

        monkeypatch.setattr(s3_store, "_get_body", tracked_body)
        stream = s3_store.get("uploads/5_e.csv")
        stream.close()

        assert closed == ["uploads/5_e.csv"]
        assert list(stream) == []


class TestLocalBlobStore:
    def test_round_trip(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        store.put("uploads/1_a.csv", io.BytesIO(b"abcdef"))
        assert store.exists("uploads/1_a.csv")
        assert b"".join(store.get("uploads/1_a.csv")) == b"abcdef"
        assert b"".join(store.get_range("uploads/1_a.csv", 1, 3)) == b"bcd"
        store.delete("uploads/1_a.csv")
        assert not store.exists("uploads/1_a.csv")

    def test_range_past_end(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        store.put("short.csv", b"abc")
        assert b"".join(store.get_range("short.csv", 0, 1023)) == b"abc"

    def test_missing_key(self, tmp_path):
        with pytest.raises(StorageNotFoundError):
            LocalBlobStore(tmp_path).get("nope.csv")

    def test_stream_closes_file(self, tmp_path, monkeypatch):
        store = LocalBlobStore(tmp_path)
        store.put("a.csv", b"abc")
        handles = []
        open_file = store._open

        def tracked_open(key):
            handles.append(open_file(key))
            return handles[-1]

        monkeypatch.setattr(store, "_open", tracked_open)

        unread = store.get("a.csv")
        unread.close()
        assert handles[0].closed

        assert b"".join(store.get_range("a.csv", 0, 1)) == b"ab"
        assert handles[1].closed

    def test_keys_cannot_escape_root(self, tmp_path):
        store = LocalBlobStore(tmp_path / "root")
        with pytest.raises(StorageError):
            store.put("../outside.csv", b"x")


def test_local_provider_is_selected(tmp_path, monkeypatch):
    monkeypatch.setattr(storage, "_blob_store", None)
    monkeypatch.setattr(settings, "storage_provider", "local")
    monkeypatch.setattr(settings, "storage_local_root", str(tmp_path / "local"))

    store = get_blob_store()

    assert isinstance(store, LocalBlobStore)
    assert get_blob_store() is store


def test_storage_client_requires_bucket(monkeypatch):
    monkeypatch.setattr(settings, "storage_bucket_name", "")
    with pytest.raises(ValueError):
        get_storage_client()


def test_storage_client_uses_configured_endpoint(aws_credentials, monkeypatch):
    monkeypatch.setattr(settings, "storage_bucket_name", TEST_BUCKET)
    monkeypatch.setattr(settings, "storage_endpoint_url", "https://s3.us-west-004.backblazeb2.com")
    client = get_storage_client()
    assert client.meta.endpoint_url == "https://s3.us-west-004.backblazeb2.com"
