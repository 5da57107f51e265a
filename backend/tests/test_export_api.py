"""
Tests for the export HTTP API.

The app is created with a pre-built orchestrator (fake ffmpeg, mocked HTTP
origin) and the local storage backend, and driven through TestClient.
"""

import time
import uuid

import pytest
from fastapi.testclient import TestClient

from fakes import FakeInvoker, build_orchestrator
from timeline_export.main import create_app


def _payload(asset_id: str, **settings_overrides) -> dict:
    export_settings = {"resolution": "720p", "fps": 30, "quality": "medium"}
    export_settings.update(settings_overrides)
    return {
        "clips": [
            {
                "id": "video-1",
                "type": "video",
                "trackId": "track-1",
                "assetId": asset_id,
                "timelineStartMs": 0,
                "timelineEndMs": 2000,
            },
            {
                "id": "caption-1",
                "type": "caption",
                "trackId": "track-2",
                "timelineStartMs": 200,
                "timelineEndMs": 250,
                "properties": {"text": "Hi <b>there</b>", "style": {"color": "#ffffff"}},
            },
        ],
        "tracks": [{"id": "track-1", "index": 0}, {"id": "track-2", "index": 1}],
        "exportSettings": export_settings,
    }


@pytest.fixture
def invoker() -> FakeInvoker:
    return FakeInvoker()


@pytest.fixture
def client(settings, storage, media_server, invoker):
    orchestrator = build_orchestrator(settings, storage, media_server, invoker)
    app = create_app(orchestrator=orchestrator, storage_service=storage, run_sweeper=False)
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def asset_id(client) -> str:
    asset_id = str(uuid.uuid4())
    response = client.put(f"/api/storage/upload/assets/{asset_id}.mp4", content=b"fake-media-bytes")
    assert response.status_code == 200
    return asset_id


def _wait_for(client: TestClient, job_id: str, predicate, timeout: float = 10.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/export/status/{job_id}").json()["job"]
        if predicate(job) or time.monotonic() > deadline:
            return job
        time.sleep(0.02)


class TestStartExport:
    def test_start_returns_job_id_and_warnings(self, client, asset_id):
        response = client.post("/api/export/start", json=_payload(asset_id))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert uuid.UUID(data["jobId"])
        assert any("extended to 100ms" in w for w in data["warnings"])

    def test_invalid_timeline_is_rejected_with_errors(self, client, asset_id):
        response = client.post("/api/export/start", json=_payload(asset_id, fps=5))

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert response.json()["success"] is False
        assert detail["code"] == "TIMELINE_INVALID"
        assert detail["retryable"] is False
        assert any("fps" in e for e in detail["details"]["errors"])

    def test_malformed_body(self, client):
        response = client.post("/api/export/start", json={"clips": []})

        assert response.status_code == 422


class TestExportFlow:
    def test_completed_export_can_be_downloaded(self, client, asset_id):
        job_id = client.post("/api/export/start", json=_payload(asset_id)).json()["jobId"]

        job = _wait_for(client, job_id, lambda j: j["status"] in ("completed", "failed"))

        assert job["status"] == "completed", job
        assert job["progress"] == 100
        assert job["downloadUrl"].endswith(f"/exports/{job_id}.mp4")
        assert job["exportSettings"]["resolution"] == "720p"

        download = client.get(f"/api/export/download/{job_id}")
        assert download.status_code == 200
        assert download.headers["content-type"] == "video/mp4"
        assert download.headers["content-disposition"].startswith('attachment; filename="video-export-')
        assert len(download.content) > 0

        redirect = client.get(f"/api/export/download/{job_id}?redirect=true", follow_redirects=False)
        assert redirect.status_code == 307
        assert redirect.headers["location"] == job["downloadUrl"]

    def test_status_polling_is_stable(self, client, asset_id):
        job_id = client.post("/api/export/start", json=_payload(asset_id)).json()["jobId"]
        _wait_for(client, job_id, lambda j: j["status"] == "completed")

        first = client.get(f"/api/export/status/{job_id}").json()
        second = client.get(f"/api/export/status/{job_id}").json()

        assert first == second

    def test_unknown_job(self, client):
        response = client.get("/api/export/status/does-not-exist")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "JOB_NOT_FOUND"

    def test_health_reports_job_counts(self, client, asset_id):
        job_id = client.post("/api/export/start", json=_payload(asset_id)).json()["jobId"]
        _wait_for(client, job_id, lambda j: j["status"] == "completed")

        health = client.get("/health").json()

        assert health["status"] == "healthy"
        assert health["jobs"]["completed"] == 1


class TestCancelExport:
    @pytest.fixture
    def invoker(self) -> FakeInvoker:
        return FakeInvoker("hang")

    def test_cancel_running_job(self, client, asset_id, invoker):
        job_id = client.post("/api/export/start", json=_payload(asset_id)).json()["jobId"]
        deadline = time.monotonic() + 10
        while not invoker.started.is_set() and time.monotonic() < deadline:
            time.sleep(0.02)

        not_ready = client.get(f"/api/export/download/{job_id}")
        assert not_ready.status_code == 400
        assert not_ready.json()["detail"]["code"] == "JOB_NOT_READY"

        response = client.delete(f"/api/export/cancel/{job_id}")
        assert response.status_code == 200
        assert response.json()["message"] == "Job cancelled"
        assert response.json()["job"]["status"] == "failed"

        again = client.delete(f"/api/export/cancel/{job_id}")
        assert again.json()["message"] == "Job already failed"

    def test_cancel_unknown_job(self, client):
        response = client.delete("/api/export/cancel/nope")

        assert response.status_code == 404


class TestLocalStorageApi:
    def test_upload_and_fetch(self, client):
        client.put("/api/storage/upload/assets/a.png", content=b"\x89PNG")

        response = client.get("/api/storage/files/assets/a.png")

        assert response.status_code == 200
        assert response.content == b"\x89PNG"
        assert response.headers["content-type"] == "image/png"

    def test_missing_file(self, client):
        assert client.get("/api/storage/files/assets/missing.png").status_code == 404

    def test_empty_upload_rejected(self, client):
        assert client.put("/api/storage/upload/assets/empty.bin", content=b"").status_code == 400
