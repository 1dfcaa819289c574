from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from apps.workers.celery_app import celery_app
from apps.workers.pipeline_loader import build_pipeline, get_job_store
from services.ingestion.storage import JobStore
from services.pipeline import JobMetadata, PipelineState, ResumeDocument, SubmissionPipeline
from services.rendering.renderer import looks_like_pdf

log = logging.getLogger(__name__)

INPUT_NAME = "input.pdf"


class BadInputError(ValueError):
    """Non-retriable."""


def status_writer(job_store: JobStore, job_id: str):
    def _write(state: PipelineState, text: str) -> None:
        job_store.put_json_atomic(job_id=job_id, obj={"state": state.value, "status": text}, name="status.json")

    return _write


def run_submission(job_id: str, *, job_store: JobStore, pipeline: SubmissionPipeline) -> Dict[str, Any]:
    meta = job_store.get_json_if_exists(job_id=job_id, name="job_meta.json")
    if not meta:
        raise BadInputError(f"no job_meta.json for job {job_id}")

    blob = job_store.get_bytes(job_id=job_id, name=INPUT_NAME)
    if not looks_like_pdf(blob):
        raise BadInputError("input is not a PDF")

    document = ResumeDocument(name=meta.get("filename") or INPUT_NAME, data=blob)
    metadata = JobMetadata(
        company_name=meta.get("company_name") or "",
        job_title=meta.get("job_title") or "",
        job_description=meta.get("job_description") or "",
    )

    outcome = asyncio.run(pipeline.submit(document, metadata, observer=status_writer(job_store, job_id)))
    history = [{"state": s.value, "status": t} for s, t in pipeline.history]

    if outcome.ok:
        payload = {"ok": True, "record_id": outcome.record_id, "history": history}
        job_store.put_json_atomic(job_id=job_id, obj=payload, name="result.json")
    else:
        payload = {
            "ok": False,
            "error": outcome.kind.value,
            "reason": outcome.reason,
            "detail": outcome.detail[:300],
            "record_id": outcome.record_id,
            "history": history,
        }
        job_store.put_json_atomic(job_id=job_id, obj=payload, name="error.json")
    return payload


@celery_app.task(name="resume.submit_from_path", bind=True)
def submit_from_path(self, job_id: str) -> dict:
    job_store = get_job_store()
    try:
        return run_submission(job_id, job_store=job_store, pipeline=build_pipeline())

    except BadInputError as e:
        payload = {"ok": False, "error": "bad_input", "detail": str(e)[:300]}
        job_store.put_json_atomic(job_id=job_id, obj=payload, name="error.json")
        return payload

    except Exception as e:
        log.exception("job %s crashed", job_id)
        payload = {"ok": False, "error": "job_failed", "detail": str(e)[:300]}
        job_store.put_json_atomic(job_id=job_id, obj=payload, name="error.json")
        return payload
