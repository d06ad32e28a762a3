"""
Tests for the /jobs HTTP and WebSocket endpoints.

The app runs with in-process fake executors; pipelines execute on the
TestClient's event loop while the client context is open.
"""

import asyncio
import time
from pathlib import Path
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

from mediajobs.config import AppSettings
from mediajobs.execution.errors import ErrorKind, StageError
from mediajobs.jobs.models import JobStatus
from mediajobs.main import create_app

from fakes import FakeDownloader, fake_registry

URL = "https://example.com/watch?v=abc123"


def wait_for_status(client, job_id, statuses, timeout=5.0):
    """Poll GET /jobs/{id} until the job reaches one of statuses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/jobs/{job_id}").json()
        if job["status"] in statuses:
            return job
        time.sleep(0.01)
    raise AssertionError(f"Job {job_id} never reached {statuses}")


@pytest.fixture
def settings(tmp_path):
    return AppSettings(downloads_dir=tmp_path / "downloads", db_path=None)


@pytest.fixture
def opener():
    return Mock()


@pytest.fixture
def client(settings, opener):
    app = create_app(settings, executors=fake_registry(), opener=opener)
    with TestClient(app) as test_client:
        yield test_client


class TestCreate:

    def test_create_returns_201_and_runs(self, client, settings):
        response = client.post("/jobs", json={"url": URL, "options": {"keepVideo": True}})

        assert response.status_code == 201
        body = response.json()
        job_id = body["jobId"]
        assert body["job"]["id"] == job_id
        assert body["job"]["outputDir"] == str(settings.downloads_dir / job_id)
        assert body["job"]["options"]["keepVideo"] is True

        final = wait_for_status(client, job_id, {"COMPLETED", "FAILED"})
        assert final["status"] == "COMPLETED"
        assert Path(final["artifacts"]["transcript"]).is_file()

    def test_output_dir_is_root_for_job_directory(self, client, tmp_path):
        root = tmp_path / "elsewhere"
        body = client.post("/jobs", json={"url": URL, "outputDir": str(root)}).json()
        assert body["job"]["outputDir"] == str(root / body["jobId"])
        assert (root / body["jobId"]).is_dir()

    def test_malformed_url_is_422(self, client):
        response = client.post("/jobs", json={"url": "not a url"})
        assert response.status_code == 422
        assert response.json()["detail"]["field"] == "url"
        assert client.get("/jobs").json()["count"] == 0

    def test_bad_option_is_422(self, client):
        response = client.post("/jobs", json={"url": URL, "options": {"postAction": "burn"}})
        assert response.status_code == 422

    def test_missing_url_is_422(self, client):
        assert client.post("/jobs", json={}).status_code == 422


class TestQueries:

    def test_unknown_job_is_404(self, client):
        assert client.get("/jobs/job_missing").status_code == 404
        assert client.post("/jobs/job_missing/cancel").status_code == 404
        assert client.delete("/jobs/job_missing").status_code == 404

    def test_list_filter_and_stats(self, client):
        ids = [client.post("/jobs", json={"url": URL}).json()["jobId"] for _ in range(2)]
        for job_id in ids:
            wait_for_status(client, job_id, {"COMPLETED"})

        listing = client.get("/jobs", params={"status": "COMPLETED"}).json()
        assert [job["id"] for job in listing["jobs"]] == ids
        assert listing["count"] == 2
        assert client.get("/jobs", params={"status": "PENDING"}).json()["count"] == 0

        stats = client.get("/jobs/stats").json()
        assert stats["total"] == 2
        assert stats["completed"] == 2

    def test_unknown_status_filter_is_422(self, client):
        assert client.get("/jobs", params={"status": "SLEEPING"}).status_code == 422

    def test_health(self, client):
        health = client.get("/health").json()
        assert health["status"] == "ok"
        assert health["persistence"] is False
        assert set(health["executors"]) == {s.value for s in (
            JobStatus.DOWNLOADING, JobStatus.EXTRACTING, JobStatus.TRANSCRIBING, JobStatus.PACKING,
        )}


class TestLifecycleEndpoints:

    def test_cancel_completed_is_409(self, client):
        job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]
        wait_for_status(client, job_id, {"COMPLETED"})

        assert client.post(f"/jobs/{job_id}/cancel").status_code == 409
        assert client.post(f"/jobs/{job_id}/retry").status_code == 409

    def test_cleanup_removes_job_and_directory(self, client, settings):
        job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]
        wait_for_status(client, job_id, {"COMPLETED"})
        job_dir = settings.downloads_dir / job_id
        assert job_dir.is_dir()

        response = client.delete(f"/jobs/{job_id}")

        assert response.status_code == 200
        assert response.json() == {"jobId": job_id, "removed": True}
        assert not job_dir.exists()
        assert client.get(f"/jobs/{job_id}").status_code == 404

    def test_cleanup_can_keep_files(self, client, settings):
        job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]
        wait_for_status(client, job_id, {"COMPLETED"})

        client.delete(f"/jobs/{job_id}", params={"removeFiles": "false"})

        assert (settings.downloads_dir / job_id / "transcript.txt").is_file()

    def test_open_directory(self, client, opener, settings):
        job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]

        response = client.post(f"/jobs/{job_id}/open")

        assert response.status_code == 200
        assert response.json()["path"] == str(settings.downloads_dir / job_id)
        opener.assert_called_once_with(settings.downloads_dir / job_id)


class TestRunningJobs:

    @pytest.fixture
    def gated_client(self, settings, opener):
        downloader = FakeDownloader(gate=asyncio.Event(), progress=())
        app = create_app(settings, executors=fake_registry(downloader=downloader), opener=opener)
        with TestClient(app) as test_client:
            yield test_client

    def test_cleanup_active_job_is_409(self, gated_client):
        job_id = gated_client.post("/jobs", json={"url": URL}).json()["jobId"]
        wait_for_status(gated_client, job_id, {"DOWNLOADING"})

        assert gated_client.delete(f"/jobs/{job_id}").status_code == 409

    def test_cancel_running_job(self, gated_client):
        job_id = gated_client.post("/jobs", json={"url": URL}).json()["jobId"]
        wait_for_status(gated_client, job_id, {"DOWNLOADING"})

        response = gated_client.post(f"/jobs/{job_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert gated_client.delete(f"/jobs/{job_id}").status_code == 200

    def test_event_stream_filters_by_job(self, gated_client):
        job_id = gated_client.post("/jobs", json={"url": URL}).json()["jobId"]
        wait_for_status(gated_client, job_id, {"DOWNLOADING"})

        with gated_client.websocket_connect(f"/jobs/events?jobId={job_id}") as websocket:
            # Events for other jobs are not forwarded
            gated_client.post("/jobs", json={"url": URL})
            gated_client.post(f"/jobs/{job_id}/cancel")

            changed = websocket.receive_json()
            assert changed["type"] == "job:stage-changed"
            assert changed["jobId"] == job_id
            assert changed["oldStatus"] == "DOWNLOADING"
            assert changed["newStatus"] == "CANCELLED"
            assert websocket.receive_json()["type"] == "job:cancelled"


class TestEventStream:

    def test_stream_receives_job_events(self, client):
        with client.websocket_connect("/jobs/events") as websocket:
            job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]

            created = websocket.receive_json()
            assert created["type"] == "job:created"
            assert created["jobId"] == job_id
            assert created["job"]["status"] == "PENDING"
            assert "timestamp" in created

            seen = [created["type"]]
            while True:
                message = websocket.receive_json()
                seen.append(message["type"])
                if message["type"] == "job:stage-changed" and message["newStatus"] == "COMPLETED":
                    break

        assert "job:progress" in seen
        assert "job:failed" not in seen


class TestRetryEndpoint:

    def test_retry_failed_job(self, settings, opener):
        downloader = FakeDownloader(failures=[
            StageError.for_stage(JobStatus.DOWNLOADING, ErrorKind.NETWORK_ERROR, "Connection reset"),
        ])
        app = create_app(settings, executors=fake_registry(downloader=downloader), opener=opener)

        with TestClient(app) as client:
            job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]
            failed = wait_for_status(client, job_id, {"FAILED"})
            assert failed["error"]["code"] == "DOWNLOAD_NETWORK_ERROR"

            response = client.post(f"/jobs/{job_id}/retry")
            assert response.status_code == 200
            assert response.json()["error"] is None

            final = wait_for_status(client, job_id, {"COMPLETED"})
            assert final["attempt"] == 2


class TestRecoveryOnStartup:

    def test_interrupted_job_restored_as_failed(self, tmp_path, opener):
        settings = AppSettings(downloads_dir=tmp_path / "downloads", db_path=tmp_path / "jobs.db")

        downloader = FakeDownloader(gate=asyncio.Event())
        first = create_app(settings, executors=fake_registry(downloader=downloader), opener=opener)
        with TestClient(first) as client:
            job_id = client.post("/jobs", json={"url": URL}).json()["jobId"]
            wait_for_status(client, job_id, {"DOWNLOADING"})
        # Shutdown left the job mid-download

        second = create_app(settings, executors=fake_registry(), opener=opener)
        with TestClient(second) as client:
            restored = client.get(f"/jobs/{job_id}").json()
            assert restored["status"] == "FAILED"
            assert restored["error"]["code"] == "JOB_INTERRUPTED"
            assert client.get("/health").json()["persistence"] is True

            client.post(f"/jobs/{job_id}/retry")
            assert wait_for_status(client, job_id, {"COMPLETED"})["attempt"] == 2
