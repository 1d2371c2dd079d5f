"""Tests for the monitoring dashboard and artifact downloads."""

import pytest
from fastapi.testclient import TestClient

from dashboard import app, get_service


@pytest.fixture
def client(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestPages:
    def test_home_lists_jobs(self, client, service):
        job_id = service.submit("owner-1", ["a.png"], job_id="job-home")

        response = client.get("/")

        assert response.status_code == 200
        assert job_id in response.text
        assert "Waiting" in response.text

    def test_job_detail(self, client, service):
        service.submit("owner-1", ["a.png"], job_id="job-detail")

        response = client.get("/job/job-detail")

        assert response.status_code == 200
        assert "pending" in response.text

    def test_unknown_job_detail(self, client):
        assert client.get("/job/nope").status_code == 404

    def test_failed_and_config_pages(self, client, service):
        service.db.set_config("max_attempts", "4")

        assert "No failed jobs" in client.get("/failed").text
        assert "max_attempts" in client.get("/config").text
        assert client.get("/metrics").status_code == 200


class TestJson:
    def test_metrics_json(self, client, service, worker):
        service.submit("owner-1", ["a.png"])
        worker.process_next()
        service.submit("owner-1", ["b.png"])

        data = client.get("/metrics/json").json()

        assert data["completed"] == 1
        assert data["pending"] == 1
        assert data["failed"] == 0

    def test_queue_json(self, client, service):
        service.submit("owner-1", ["a.png"])

        data = client.get("/queue/json").json()

        assert data["waiting"] == 1
        assert data["paused"] is False


class TestDownloads:
    def test_download_item_and_archive(self, client, service, worker):
        job_id = service.submit("owner-1", ["a.png", "b.png"], "batch")
        worker.process_next()

        item = client.get(f"/job/{job_id}/artifacts/1")
        archive = client.get(f"/job/{job_id}/archive")

        assert item.status_code == 200
        assert item.content == b"rendered:b.png:png"
        assert item.headers["content-type"] == "image/png"
        assert archive.status_code == 200
        assert archive.headers["content-type"] == "application/zip"

    def test_not_completed_is_a_conflict(self, client, service):
        job_id = service.submit("owner-1", ["a.png"])

        response = client.get(f"/job/{job_id}/artifacts/0")

        assert response.status_code == 409
        assert response.json()["detail"] == "not_completed"

    def test_missing_index_or_archive(self, client, service, worker):
        job_id = service.submit("owner-1", ["a.png"])
        worker.process_next()

        assert client.get(f"/job/{job_id}/artifacts/5").status_code == 404
        assert client.get(f"/job/{job_id}/archive").status_code == 404
        assert client.get("/job/nope/artifacts/0").status_code == 404

    def test_expired_download(self, client, service, worker, clock):
        job_id = service.submit("owner-1", ["a.png"])
        worker.process_next()
        clock.current = service.get_job(job_id).expires_at
        clock.advance(1)

        response = client.get(f"/job/{job_id}/artifacts/0")

        assert response.status_code == 410
        assert response.json()["detail"] == "expired"
