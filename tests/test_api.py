import sys

import pytest
from fastapi.testclient import TestClient

from ad_ingest.api import create_app, set_job_manager
from ad_ingest.config import JobsConfig
from ad_ingest.jobs import ImportJobManager

from test_jobs import STUB_WORKER


@pytest.fixture
def manager(tmp_path):
    stub = tmp_path / "stub_worker.py"
    stub.write_text(STUB_WORKER, encoding="utf-8")
    return ImportJobManager(
        JobsConfig(jobs_dir=str(tmp_path / "jobs")),
        worker_command=[sys.executable, str(stub)],
    )


@pytest.fixture
def client(manager):
    with TestClient(create_app(manager)) as c:
        yield c
    set_job_manager(None)


def test_upload_poll_and_stop_flow(client, manager):
    resp = client.post(
        "/import-jobs",
        files={"file": ("ads.ndjson", b'{"ad_archive_id": "1"}\n{"ad_archive_id": "2"}\n', "application/x-ndjson")},
        data={"debug": "1"},
    )
    assert resp.status_code == 202
    body = resp.json()
    assert body["recordCount"] == 2
    job_id = body["jobId"]

    manager.wait(job_id, timeout=20)
    state = client.get(f"/import-jobs/{job_id}").json()
    assert state["status"] == "done"
    assert state["debug"] is True
    assert state["fileName"] == "ads.ndjson"
    assert "stdoutTail" not in state

    debug_state = client.get(f"/import-jobs/{job_id}", params={"debug": "1"}).json()
    assert "stderrTail" in debug_state

    stop = client.post(f"/import-jobs/{job_id}/stop")
    assert stop.status_code == 200
    assert stop.json()["success"] is True


def test_invalid_upload_is_a_400(client):
    resp = client.post("/import-jobs", files={"file": ("empty.json", b"", "application/json")})
    assert resp.status_code == 400
    resp = client.post("/import-jobs", files={"file": ("bad.json", b'{"x": 1}', "application/json")})
    assert resp.status_code == 400
    assert "Unsupported" in resp.json()["detail"]


def test_missing_file_is_rejected(client):
    assert client.post("/import-jobs").status_code == 422


def test_unknown_job_is_a_404(client):
    assert client.get("/import-jobs/nope").status_code == 404
    resp = client.post("/import-jobs/nope/stop")
    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
