"""
Tests for the HTTP endpoints.

The application's services are replaced with ones bound to the per-test SQLite
database and local blob store; the runner thread is started for real and
``runner.join()`` waits for queued work.
"""

import pytest
from fastapi.testclient import TestClient

from hirextra.api.dependencies import build_services, get_services
from hirextra.db.models import JobStatus
from hirextra.domain.ingestion.errors import HeaderDiscoveryTimeout
from hirextra.integrations.storage import StorageConnectionError, StorageUploadError
from hirextra.main import app

from conftest import PEOPLE_CSV, PEOPLE_HEADERS, PEOPLE_MAPPING


@pytest.fixture
def services(session_factory, blob_store, pipeline, tmp_path):
    services = build_services(
        session_factory,
        blob_store,
        temp_dir=str(tmp_path / "chunks"),
        pipeline=pipeline,
    )
    services.runner.start()
    yield services
    services.runner.stop(timeout=5)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def _upload(client, content, file_name="people.csv", upload_id="up-1", parts=2):
    size = len(content) // parts + 1
    chunks = [content[i:i + size] for i in range(0, len(content), size)]
    response = None
    for index, chunk in enumerate(chunks):
        response = client.post(
            "/upload-chunk",
            files={"file": (file_name, chunk, "text/csv")},
            data={
                "fileName": file_name,
                "chunkIndex": str(index),
                "totalChunks": str(len(chunks)),
                "uploadId": upload_id,
            },
        )
        assert response.status_code == 200
    return response.json()


def test_root(client):
    """Test root endpoint."""
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Hirextra Ingestion API", "version": "1.0.0"}


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestUploadChunk:
    def test_intermediate_chunk_reports_progress(self, client):
        response = client.post(
            "/upload-chunk",
            files={"file": ("people.csv", b"Full Name,Email\n", "text/csv")},
            data={"fileName": "people.csv", "chunkIndex": "0", "totalChunks": "2", "uploadId": "up-1"},
        )
        assert response.status_code == 200
        assert response.json() == {
            "status": "chunk_received",
            "uploadId": "up-1",
            "progressPercent": 50,
        }

    def test_final_chunk_returns_key_headers_and_job(self, client, services):
        body = _upload(client, b"Full Name,Email\nJane Doe,jane@example.com\n")

        assert body["status"] == "done"
        assert body["storageKey"].startswith("uploads/")
        assert body["headers"] == ["Full Name", "Email"]
        assert services.jobs.get(body["jobId"]).status == JobStatus.MAPPING_PENDING

    def test_out_of_range_chunk(self, client):
        response = client.post(
            "/upload-chunk",
            files={"file": ("people.csv", b"x", "text/csv")},
            data={"fileName": "people.csv", "chunkIndex": "5", "totalChunks": "2"},
        )
        assert response.status_code == 400

    def test_storage_failure(self, client, services, monkeypatch):
        def fail(key, data, content_type="application/octet-stream"):
            raise StorageUploadError("bucket unavailable")

        monkeypatch.setattr(services.store, "put", fail)
        response = client.post(
            "/upload-chunk",
            files={"file": ("people.csv", b"Full Name\n", "text/csv")},
            data={"fileName": "people.csv", "chunkIndex": "0", "totalChunks": "1", "uploadId": "up-f"},
        )
        assert response.status_code == 502
        assert "bucket unavailable" in response.json()["detail"]
        assert services.jobs.find_by_upload_id("up-f").status == JobStatus.FAILED


class TestHeaders:
    def test_preview(self, client, blob_store):
        blob_store.put("uploads/1_people.csv", PEOPLE_CSV.encode())
        response = client.post("/headers", json={"storageKey": "uploads/1_people.csv"})
        assert response.status_code == 200
        assert response.json() == {
            "headers": ["Export generated 2024-01-01"],
            "storageKey": "uploads/1_people.csv",
        }

    def test_missing_file(self, client):
        response = client.post("/headers", json={"storageKey": "uploads/missing.csv"})
        assert response.status_code == 404

    def test_timeout(self, client, monkeypatch):
        def slow(store, key):
            raise HeaderDiscoveryTimeout("Reading headers exceeded 5 second timeout")

        monkeypatch.setattr("hirextra.api.routers.uploads.preview_headers", slow)
        response = client.post("/headers", json={"storageKey": "uploads/1_people.csv"})
        assert response.status_code == 504

    def test_storage_unreachable(self, client, monkeypatch):
        def unreachable(store, key):
            raise StorageConnectionError("endpoint unreachable")

        monkeypatch.setattr("hirextra.api.routers.uploads.preview_headers", unreachable)
        response = client.post("/headers", json={"storageKey": "uploads/1_people.csv"})
        assert response.status_code == 502


class TestProcess:
    def test_upload_then_process(self, client, services):
        upload = _upload(client, PEOPLE_CSV.encode())

        response = client.post(
            "/process",
            json={
                "storageKey": upload["storageKey"],
                "headers": PEOPLE_HEADERS,
                "mapping": {**PEOPLE_MAPPING, "githubUrl": None},
            },
        )
        assert response.status_code == 200
        job_id = response.json()["jobId"]
        assert job_id == upload["jobId"]

        services.runner.join()

        status = client.get(f"/jobs/{job_id}/status").json()
        assert status["status"] == JobStatus.COMPLETED
        assert (status["totalRows"], status["successRows"], status["failedRows"]) == (6, 3, 3)
        assert status["failureReasons"]["COLUMN_MISMATCH"] == 1
        assert status["completedAt"] is not None

    def test_process_without_upload_creates_job(self, client, services, blob_store):
        blob_store.put("uploads/2_people.csv", PEOPLE_CSV.encode())
        response = client.post(
            "/process",
            json={
                "storageKey": "uploads/2_people.csv",
                "headers": PEOPLE_HEADERS,
                "mapping": PEOPLE_MAPPING,
                "requireName": False,
            },
        )
        assert response.status_code == 200
        services.runner.join()

        job = services.jobs.get(response.json()["jobId"])
        assert job.original_name == "2_people.csv"
        assert job.success_rows == 4

    def test_empty_mapping_is_rejected(self, client):
        response = client.post(
            "/process",
            json={"storageKey": "uploads/1_people.csv", "headers": [], "mapping": {"favouriteColour": "x"}},
        )
        assert response.status_code == 400


class TestJobs:
    def test_unknown_job(self, client):
        assert client.get("/jobs/missing/status").status_code == 404
        assert client.post("/jobs/missing/resume").status_code == 404
        assert client.delete("/jobs/missing").status_code == 404

    def test_list_jobs(self, client, people_job):
        body = client.get("/jobs").json()
        assert body["totalCount"] == 1
        assert body["jobs"][0]["id"] == people_job.id
        assert body["jobs"][0]["status"] == JobStatus.MAPPING_PENDING

    def test_completed_job_cannot_resume(self, client, pipeline, people_job):
        pipeline.run(people_job.id)
        response = client.post(f"/jobs/{people_job.id}/resume", json={"fastForward": True})
        assert response.status_code == 409

    def test_resume_failed_job(self, client, services, job_repository, people_job):
        job_repository.transition(people_job.id, JobStatus.PROCESSING, total_rows=2, success_rows=1, failed_rows=1)
        job_repository.finish(people_job.id, JobStatus.FAILED, error="worker restarted")

        response = client.post(f"/jobs/{people_job.id}/resume", json={"fastForward": True})
        assert response.status_code == 200
        assert response.json() == {"jobId": people_job.id, "resumeFrom": 2}

        services.runner.join()
        status = client.get(f"/jobs/{people_job.id}/status").json()
        assert status["status"] == JobStatus.COMPLETED
        assert status["totalRows"] == 6
        assert status["error"] is None

    def test_delete_purges_records(self, client, services, pipeline, people_job, candidate_repository):
        pipeline.run(people_job.id)
        assert candidate_repository.count_by_job(people_job.id) == 3

        response = client.delete(f"/jobs/{people_job.id}")
        assert response.status_code == 200
        assert response.json()["status"] == JobStatus.DELETED

        services.runner.join()
        assert candidate_repository.count_by_job(people_job.id) == 0
        assert client.get(f"/jobs/{people_job.id}/status").json()["status"] == JobStatus.DELETED
