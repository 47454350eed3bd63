import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from surveysync.api import sync_routes
from surveysync.models.survey import JobStatus, SyncJob, utcnow
from surveysync.sync.engine import SyncEngine

from conftest import GID_1, SUBJECT, seed_scenario


@pytest.fixture
def engine(fake, client, session_factory, photos_dir, monkeypatch):
    seed_scenario(fake)
    sync = SyncEngine(client=client, session_factory=session_factory, photos_dir=photos_dir, page_size=2)
    sync.initialize()
    monkeypatch.setattr(sync_routes, "sync_engine", sync)
    yield sync
    sync.jobs.stop_cleanup()


@pytest.fixture
def api(engine):
    app = FastAPI()
    app.include_router(sync_routes.router)
    return TestClient(app)


def _wait_completed(api, job_id: str) -> dict:
    for _ in range(300):
        body = api.get(f"/api/sync/jobs/{job_id}").json()
        if body["status"] in ("completed", "failed"):
            return body
        time.sleep(0.05)
    raise AssertionError(f"job {job_id} did not finish")


def test_sync_poll_preview_flow(api):
    resp = api.post("/api/sync", json={"subject": SUBJECT})
    assert resp.status_code == 200
    started = resp.json()
    assert started["created"] is True
    assert started["fresh"] is False

    job = _wait_completed(api, started["job_id"])
    assert job["status"] == "completed", job["error"]
    assert job["fetched"] == 3
    assert job["attachments_downloaded"] == 5
    assert job["from_cache"] is False

    resp = api.get(f"/api/sync/jobs/{started['job_id']}/preview", params={"page_size": 2})
    assert resp.status_code == 200
    preview = resp.json()
    assert preview["subject"] == SUBJECT
    assert preview["total"] == 3
    assert preview["pages"] == 2
    assert len(preview["rows"]) == 2

    filtered = api.get(
        f"/api/sync/jobs/{started['job_id']}/preview",
        params={"hecho_detectado": "DERRAME", "date_from": "2024-01-01", "date_to": "2024-01-31"},
    ).json()
    assert [r["globalid"] for r in filtered["rows"]] == [GID_1]


def test_second_request_is_served_from_cache(api):
    first = api.post("/api/sync", json={"subject": SUBJECT}).json()
    _wait_completed(api, first["job_id"])

    second = api.post("/api/sync", json={"subject": SUBJECT}).json()
    assert second["fresh"] is True
    job = _wait_completed(api, second["job_id"])
    assert job["from_cache"] is True
    assert job["total"] == 3


def test_blank_subject_is_bad_request(api):
    resp = api.post("/api/sync", json={"subject": "   "})
    assert resp.status_code == 400


def test_unknown_job_is_not_found(api):
    assert api.get("/api/sync/jobs/missing").status_code == 404
    assert api.get("/api/sync/jobs/missing/preview").status_code == 404


def test_preview_of_running_job_is_accepted(api, session_factory):
    now = utcnow()
    with session_factory() as db:
        db.add(SyncJob(id="busy", subject=SUBJECT, status=JobStatus.syncing, created_at=now, updated_at=now))
        db.commit()

    resp = api.get("/api/sync/jobs/busy/preview")

    assert resp.status_code == 202
    assert resp.json()["preparing"] is True


def test_invalid_sort_is_bad_request(api):
    job_id = api.post("/api/sync", json={"subject": SUBJECT}).json()["job_id"]
    _wait_completed(api, job_id)

    resp = api.get(f"/api/sync/jobs/{job_id}/preview", params={"sort": "raw_json"})
    assert resp.status_code == 400


def test_cache_endpoints(api):
    resp = api.get(f"/api/sync/cache/{SUBJECT}")
    assert resp.json()["exists"] is False
    assert resp.json()["needs_sync"] is True

    job_id = api.post("/api/sync", json={"subject": SUBJECT}).json()["job_id"]
    _wait_completed(api, job_id)

    summary = api.get(f"/api/sync/cache/{SUBJECT}").json()
    assert (summary["record_count"], summary["photo_count"]) == (3, 5)
    assert summary["fresh"] is True
    assert summary["kind"] == "codigo_accion"

    stats = api.get("/api/sync/cache").json()
    assert [(s["subject"], s["record_count"]) for s in stats] == [(SUBJECT, 3)]


def test_photo_endpoints(api):
    job_id = api.post("/api/sync", json={"subject": SUBJECT}).json()["job_id"]
    _wait_completed(api, job_id)

    # Global ids match regardless of braces or case
    photos = api.get(f"/api/sync/photos/{SUBJECT}/{{{GID_1.lower()}}}").json()
    assert sorted(p["filename"] for p in photos) == ["derrame.jpg", "foto1.jpg", "foto2.jpg"]

    resp = api.get(photos[0]["url"])
    assert resp.status_code == 200
    assert resp.content.startswith(b"image-")

    assert api.get(f"/api/sync/photos/{SUBJECT}/{GID_1}/nope.jpg").status_code == 404


def test_subjects_lists_remote_codes(api, fake):
    fake.add_parent(9, "{G-9}", ca="XB-002")

    assert api.get("/api/sync/subjects").json() == [SUBJECT, "XB-002"]
    assert api.get("/api/sync/subjects", params={"search": "xb"}).json() == ["XB-002"]


def test_subjects_remote_failure_is_bad_gateway(api, fake):
    fake.failing_layers.add(0)
    assert api.get("/api/sync/subjects").status_code == 502


def test_logs_endpoint(api):
    job_id = api.post("/api/sync", json={"subject": SUBJECT}).json()["job_id"]
    _wait_completed(api, job_id)

    logs = api.get("/api/sync/logs", params={"subject": SUBJECT}).json()
    assert logs[0]["status"] == "completed"
    assert logs[0]["records_inserted"] == 3


def test_description_edit_endpoints(api):
    job_id = api.post("/api/sync", json={"subject": SUBJECT}).json()["job_id"]
    _wait_completed(api, job_id)

    resp = api.put(
        f"/api/sync/records/{{{GID_1.lower()}}}/descriptions",
        json={"field": "descrip_1", "value": "Vertimiento de efluentes"},
    )
    assert resp.status_code == 200
    assert resp.json()["descrip_1"] == "Punto de vertimiento"
    assert resp.json()["descrip_1_editada"] == "Vertimiento de efluentes"

    assert api.get(f"/api/sync/records/{GID_1}/descriptions").json()["descrip_1_editada"] == "Vertimiento de efluentes"
    assert [e["globalid"] for e in api.get(f"/api/sync/cache/{SUBJECT}/edits").json()] == [GID_1]

    rows = api.get(f"/api/sync/jobs/{job_id}/preview").json()["rows"]
    row = next(r for r in rows if r["globalid"] == GID_1)
    assert row["descrip_1_editada"] == "Vertimiento de efluentes"

    assert api.put(f"/api/sync/records/{GID_1}/descriptions", json={"field": "raw_json", "value": "x"}).status_code == 400
    assert api.put("/api/sync/records/G-404/descriptions", json={"field": "descrip_1", "value": "x"}).status_code == 404
    assert api.get("/api/sync/records/G-404/descriptions").status_code == 404
