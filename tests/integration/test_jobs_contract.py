from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from apps.api.jobs import SUBMIT_TASK, create_jobs_router
from services.ingestion.storage import JobStore


class FakeAsyncResult:
    def __init__(self, status: str, result=None):
        self.status = status
        self.result = result


class FakeCelery:
    def __init__(self):
        self.sent = []

    def send_task(self, name: str, args=None, kwargs=None):
        class R:
            id = "fake-task-id-123"
        self.sent.append((name, args, kwargs))
        return R()


def make_client(monkeypatch, tmp_path, celery_status="SUCCESS"):
    import apps.api.jobs as jobs_mod

    fake_celery = FakeCelery()
    monkeypatch.setattr(jobs_mod, "celery_app", fake_celery)
    monkeypatch.setattr(jobs_mod, "AsyncResult", lambda task_id, app=None: FakeAsyncResult(celery_status))

    job_store = JobStore(root_dir=str(tmp_path))
    app = FastAPI()
    app.include_router(create_jobs_router(job_store=job_store))
    return TestClient(app), job_store, fake_celery


FORM = {"company_name": "Acme", "job_title": "SRE", "job_description": "k8s"}


def test_jobs_submit_and_poll(monkeypatch, tmp_path):
    client, job_store, fake_celery = make_client(monkeypatch, tmp_path)

    r = client.post("/jobs", files={"file": ("cv.pdf", b"%PDF-1.7 x", "application/pdf")}, data=FORM)
    assert r.status_code == 202
    job_id = r.json()["job_id"]

    assert fake_celery.sent == [(SUBMIT_TASK, [job_id], None)]
    meta = job_store.get_json_if_exists(job_id=job_id, name="job_meta.json")
    assert meta["celery_task_id"] == "fake-task-id-123"
    assert meta["job_title"] == "SRE"
    assert job_store.get_bytes(job_id=job_id, name="input.pdf") == b"%PDF-1.7 x"

    # simulate worker wrote status + result
    job_store.put_json_atomic(job_id=job_id, obj={"state": "COMPLETE", "status": "done"}, name="status.json")
    job_store.put_json_atomic(job_id=job_id, obj={"ok": True, "record_id": "rid"}, name="result.json")

    j = client.get(f"/jobs/{job_id}").json()
    assert j["status"] == "SUCCEEDED"
    assert j["ok"] is True
    assert j["record_id"] == "rid"
    assert j["progress"]["state"] == "COMPLETE"


def test_pipeline_failure_surfaces_as_failed(monkeypatch, tmp_path):
    client, job_store, _ = make_client(monkeypatch, tmp_path)
    job_id = client.post("/jobs", files={"file": ("cv.pdf", b"%PDF-1.7 x", "application/pdf")}, data=FORM).json()["job_id"]
    job_store.put_json_atomic(job_id=job_id, obj={"ok": False, "error": "inference", "reason": "analysis failed"}, name="error.json")

    j = client.get(f"/jobs/{job_id}").json()
    assert j["status"] == "FAILED"
    assert j["reason"] == "analysis failed"


def test_running_job_reports_progress(monkeypatch, tmp_path):
    client, job_store, _ = make_client(monkeypatch, tmp_path, celery_status="STARTED")
    job_id = client.post("/jobs", files={"file": ("cv.pdf", b"%PDF-1.7 x", "application/pdf")}, data=FORM).json()["job_id"]
    job_store.put_json_atomic(job_id=job_id, obj={"state": "REQUESTING_FEEDBACK", "status": "Analyzing..."}, name="status.json")

    j = client.get(f"/jobs/{job_id}").json()
    assert j["status"] == "RUNNING"
    assert j["progress"]["status"] == "Analyzing..."


def test_non_pdf_is_rejected_before_queueing(monkeypatch, tmp_path):
    client, _, fake_celery = make_client(monkeypatch, tmp_path)
    r = client.post("/jobs", files={"file": ("x.png", b"\x89PNG", "image/png")}, data=FORM)
    assert r.status_code == 400
    assert fake_celery.sent == []


def test_unknown_job_is_404(monkeypatch, tmp_path):
    client, _, _ = make_client(monkeypatch, tmp_path)
    assert client.get("/jobs/nope").status_code == 404
