from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from vulnscan_core.engine.errors import PersistenceFailure
from vulnscan_core.engine.scan_service import ScanService
from vulnscan_core.main import create_app


@pytest.fixture
def service(settings, session_factory, fake_adapters):
    return ScanService(settings, session_factory=session_factory, adapters=fake_adapters)


@pytest.fixture
def client(service):
    with TestClient(create_app(service=service)) as client:
        yield client


def test_health_check(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_responses_carry_trace_id(client):
    resp = client.get("/health")
    assert resp.headers["X-Trace-Id"]


def test_enqueue_scan_job(client, service):
    scan = service.store.create_scan("example.com", "combined")
    resp = client.post("/scan/jobs", json={"scan_id": scan.id, "target": "example.com", "scan_type": "combined"})
    assert resp.status_code == 200
    data = resp.json()
    assert "job_id" in data
    assert data["status"] == "submitted"

    assert service.queue.wait_until_idle(timeout=10)
    status = client.get(f"/scan/jobs/{data['job_id']}").json()
    assert status["state"] == "completed"
    assert status["progress"] == 100
    assert status["data"]["scan_id"] == scan.id


def test_enqueue_unknown_scan(client):
    resp = client.post("/scan/jobs", json={"scan_id": "nope", "target": "example.com", "scan_type": "nmap"})
    assert resp.status_code == 200
    assert resp.json() == {"success": False, "error": "Scan not found"}


def test_enqueue_rejects_unknown_scan_type(client, service):
    scan = service.store.create_scan("example.com", "nmap")
    resp = client.post("/scan/jobs", json={"scan_id": scan.id, "target": "example.com", "scan_type": "masscan"})
    assert resp.status_code == 422


def test_enqueue_only_pending_scans(client, service):
    scan = service.store.create_scan("example.com", "nmap")
    service.store.mark_running(scan.id)
    resp = client.post("/scan/jobs", json={"scan_id": scan.id, "target": "example.com", "scan_type": "nmap"})
    data = resp.json()
    assert data["success"] is False
    assert "running" in data["error"]


def test_job_status_not_found(client):
    resp = client.get("/scan/jobs/doesnotexist")
    assert resp.status_code == 200
    assert resp.json()["status"] == "not_found"


def test_queue_stats(client):
    resp = client.get("/scan/queue/stats")
    assert resp.status_code == 200
    assert set(resp.json()) >= {"waiting", "active", "completed", "failed", "delayed", "total"}


def test_scan_detail_lists_findings(client, service):
    scan = service.store.create_scan("example.com", "nmap")
    client.post("/scan/jobs", json={"scan_id": scan.id, "target": "example.com", "scan_type": "nmap"})
    assert service.queue.wait_until_idle(timeout=10)

    data = client.get(f"/scan/{scan.id}").json()
    assert data["scan"]["status"] == "complete"
    assert [f["port"] for f in data["findings"]] == [22, 80]

    assert client.get("/scan/missing").json() == {"success": False, "error": "Scan not found"}


def test_running_scan_cannot_be_deleted(client, service):
    scan = service.store.create_scan("example.com", "nmap")
    service.store.mark_running(scan.id)

    data = client.delete(f"/scan/{scan.id}").json()
    assert data["success"] is False
    assert service.store.get_scan(scan.id) is not None


def test_delete_finished_scan(client, service):
    scan = service.store.create_scan("example.com", "nmap")
    service.store.mark_running(scan.id)
    service.store.mark_complete(scan.id)

    assert client.delete(f"/scan/{scan.id}").json()["success"] is True
    assert client.delete(f"/scan/{scan.id}").json() == {"success": False, "error": "Scan not found"}


def test_caller_trace_id_is_kept(client):
    resp = client.get("/health", headers={"X-Trace-Id": "submit-42"})
    assert resp.headers["X-Trace-Id"] == "submit-42"


def test_database_outage_is_reported_as_unavailable(client, service):
    with patch.object(service.store, "get_scan", side_effect=PersistenceFailure("Database error: locked")):
        resp = client.get("/scan/some-scan", headers={"X-Trace-Id": "t-1"})
    assert resp.status_code == 503
    assert resp.json() == {"success": False, "error": "Database error: locked", "trace_id": "t-1"}
    assert resp.headers["X-Trace-Id"] == "t-1"


def test_unexpected_error_is_internal(client, service):
    with patch.object(service, "queue_stats", side_effect=RuntimeError("boom")):
        resp = client.get("/scan/queue/stats")
    assert resp.status_code == 500
    data = resp.json()
    assert data["success"] is False
    assert data["error"] == "Internal server error"
    assert data["trace_id"]
