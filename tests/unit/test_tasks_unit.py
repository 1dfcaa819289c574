from __future__ import annotations

import pytest

import apps.workers.tasks as tasks_mod
from services.ingestion.storage import JobStore
from services.pipeline import Complete, Failed, FailureKind, PipelineState
from services.records import SubmissionRecord


class FakePipeline:
    def __init__(self, outcome):
        self.outcome = outcome
        self.history = []
        self.submitted = []

    async def submit(self, document, metadata, *, cancel=None, observer=None):
        self.submitted.append((document, metadata))
        for state in (PipelineState.UPLOADING_RESUME, self.outcome_state()):
            text = state.value.lower()
            self.history.append((state, text))
            observer(state, text)
        return self.outcome

    def outcome_state(self):
        return PipelineState.COMPLETE if self.outcome.ok else PipelineState.FAILED


def seed_job(jobs: JobStore, job_id="j1", blob=b"%PDF-1.7 cv"):
    jobs.put_bytes(job_id=job_id, blob=blob, name=tasks_mod.INPUT_NAME)
    jobs.put_json_atomic(
        job_id=job_id,
        obj={"job_id": job_id, "filename": "cv.pdf", "company_name": "Acme", "job_title": "SRE", "job_description": "k8s"},
        name="job_meta.json",
    )


def test_successful_submission_writes_result_and_status(tmp_path):
    jobs = JobStore(root_dir=str(tmp_path))
    seed_job(jobs)
    record = SubmissionRecord("rid", "/r", "/i", "Acme", "SRE", "k8s", {"score": 80})
    pipe = FakePipeline(Complete(record_id="rid", record=record))

    payload = tasks_mod.run_submission("j1", job_store=jobs, pipeline=pipe)

    assert payload["ok"] is True
    assert payload["record_id"] == "rid"
    assert jobs.get_json_if_exists(job_id="j1", name="result.json") == payload
    assert jobs.get_json_if_exists(job_id="j1", name="status.json") == {"state": "COMPLETE", "status": "complete"}
    document, metadata = pipe.submitted[0]
    assert document.name == "cv.pdf"
    assert metadata.job_title == "SRE"


def test_failed_submission_writes_error(tmp_path):
    jobs = JobStore(root_dir=str(tmp_path))
    seed_job(jobs)
    failed = Failed("analysis failed", FailureKind.INFERENCE, PipelineState.REQUESTING_FEEDBACK, "timeout", "rid")

    payload = tasks_mod.run_submission("j1", job_store=jobs, pipeline=FakePipeline(failed))

    assert payload["ok"] is False
    assert payload["error"] == "inference"
    assert payload["reason"] == "analysis failed"
    assert payload["record_id"] == "rid"
    assert jobs.get_json_if_exists(job_id="j1", name="error.json") == payload
    assert jobs.get_json_if_exists(job_id="j1", name="result.json") is None


def test_non_pdf_input_is_bad_input(tmp_path):
    jobs = JobStore(root_dir=str(tmp_path))
    seed_job(jobs, blob=b"GIF89a")
    with pytest.raises(tasks_mod.BadInputError):
        tasks_mod.run_submission("j1", job_store=jobs, pipeline=FakePipeline(None))


def test_missing_meta_is_bad_input(tmp_path):
    jobs = JobStore(root_dir=str(tmp_path))
    with pytest.raises(tasks_mod.BadInputError):
        tasks_mod.run_submission("nope", job_store=jobs, pipeline=FakePipeline(None))


def test_task_records_bad_input(tmp_path, monkeypatch):
    jobs = JobStore(root_dir=str(tmp_path))
    seed_job(jobs, blob=b"nope")
    monkeypatch.setattr(tasks_mod, "get_job_store", lambda: jobs)
    monkeypatch.setattr(tasks_mod, "build_pipeline", lambda: FakePipeline(None))

    payload = tasks_mod.submit_from_path("j1")

    assert payload["error"] == "bad_input"
    assert jobs.get_json_if_exists(job_id="j1", name="error.json")["error"] == "bad_input"
