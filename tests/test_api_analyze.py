from __future__ import annotations

from fastapi.testclient import TestClient

from coach_pipeline.config import get_settings
from coach_pipeline.jobs.models import JobStage
from coach_pipeline.server import create_app, open_stores
from tests._helpers.auth import auth_headers
from tests._helpers.jobs import add_recording, put_job


def _body(rec) -> dict[str, str]:
    return {"recordingId": rec.id, "filePath": rec.file_path}


def test_submit_requires_auth() -> None:
    with TestClient(create_app()) as c:
        r = c.post("/analyze", json={"recordingId": "r", "filePath": "f"})
        assert r.status_code == 401
        r = c.post("/analyze", json={}, headers={"Authorization": "Bearer not-a-token"})
        assert r.status_code == 401


def test_submit_validates_body() -> None:
    with TestClient(create_app()) as c:
        h = auth_headers()
        r = c.post("/analyze", content=b"{nope", headers={**h, "Content-Type": "application/json"})
        assert r.status_code == 400
        r = c.post("/analyze", json={"recordingId": "r"}, headers=h)
        assert r.status_code == 400
        r = c.post("/analyze", json=["x"], headers=h)
        assert r.status_code == 400


def test_submit_unknown_or_foreign_recording_is_404() -> None:
    _, recs = open_stores()
    foreign = add_recording(recs, owner_id="user-2")
    with TestClient(create_app()) as c:
        h = auth_headers("user-1")
        assert c.post("/analyze", json={"recordingId": "nope", "filePath": "x.mp3"}, headers=h).status_code == 404
        assert c.post("/analyze", json=_body(foreign), headers=h).status_code == 404


def test_submit_with_another_owners_file_path_is_404() -> None:
    store, recs = open_stores()
    mine = add_recording(recs, owner_id="user-1")
    theirs = add_recording(recs, owner_id="user-2", with_file=True)
    with TestClient(create_app()) as c:
        r = c.post(
            "/analyze",
            json={"recordingId": mine.id, "filePath": theirs.file_path},
            headers=auth_headers("user-1"),
        )
        assert r.status_code == 404
    assert store.get_by_recording(mine.id) is None


def test_submit_started_then_queued_then_duplicate() -> None:
    _, recs = open_stores()
    first = add_recording(recs, duration_min=100)
    second = add_recording(recs)
    with TestClient(create_app()) as c:
        h = auth_headers()
        r = c.post("/analyze", json=_body(first), headers=h)
        assert r.status_code == 200
        data = r.json()
        assert data["analysisId"]
        assert data["totalChunks"] == 3
        assert data["estimatedMinutes"] > 0

        r2 = c.post("/analyze", json=_body(second), headers=h)
        assert r2.status_code == 202
        q = r2.json()
        assert q["queued"] is True
        assert q["queuePosition"] == 2
        assert q["activeCount"] == 1
        assert q["maxConcurrent"] == 1
        assert r2.headers["Retry-After"] == "60"

        r3 = c.post("/analyze", json=_body(first), headers=h)
        assert r3.status_code == 409
        assert r3.json()["detail"]["analysisId"] == data["analysisId"]


def test_submit_without_provider_key_is_500(monkeypatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "")
    get_settings.cache_clear()
    _, recs = open_stores()
    rec = add_recording(recs)
    with TestClient(create_app()) as c:
        r = c.post("/analyze", json=_body(rec), headers=auth_headers())
        assert r.status_code == 500


def test_status_reports_progress_for_owner_only() -> None:
    store, recs = open_stores()
    rec = add_recording(recs)
    job = put_job(store, recording_id=rec.id, stage=JobStage.transcribing, total_chunks=4)
    store.update(job.id, progress_message="Transcribing part 2 of 4...")
    with TestClient(create_app()) as c:
        r = c.get("/analyze", params={"recordingId": rec.id}, headers=auth_headers())
        assert r.status_code == 200
        data = r.json()
        assert data["analysisId"] == job.id
        assert data["status"] == "processing"
        assert data["stage"] == "transcribing"
        assert data["totalChunks"] == 4
        assert data["completedChunks"] == 0
        assert data["message"] == "Transcribing part 2 of 4..."
        assert data["error"] is None

        assert c.get("/analyze", params={"recordingId": rec.id}, headers=auth_headers("user-2")).status_code == 404
        assert c.get("/analyze", headers=auth_headers()).status_code == 400
        other = add_recording(recs)
        assert c.get("/analyze", params={"recordingId": other.id}, headers=auth_headers()).status_code == 404


def test_report_is_visible_to_owner_only() -> None:
    store, recs = open_stores()
    rec = add_recording(recs)
    job = put_job(store, recording_id=rec.id, stage=JobStage.done)
    with TestClient(create_app()) as c:
        r = c.get(f"/analyze/{job.id}/report", headers=auth_headers())
        assert r.status_code == 200
        assert r.json()["id"] == job.id
        assert c.get(f"/analyze/{job.id}/report", headers=auth_headers("user-2")).status_code == 404
        assert c.get("/analyze/missing/report", headers=auth_headers()).status_code == 404


def test_health_and_metrics() -> None:
    with TestClient(create_app()) as c:
        r = c.get("/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True
        assert r.headers.get("x-request-id")
        m = c.get("/metrics")
        assert m.status_code == 200
        assert "coach_pipeline_jobs_admitted_total" in m.text
