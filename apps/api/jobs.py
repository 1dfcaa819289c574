from __future__ import annotations

from typing import Any, Dict
from uuid import uuid4

from celery.result import AsyncResult
from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse

from apps.workers.celery_app import celery_app
from apps.workers.tasks import INPUT_NAME
from services.ingestion.storage import JobStore
from services.rendering.renderer import looks_like_pdf

SUBMIT_TASK = "resume.submit_from_path"


def _map_celery_state(state: str) -> str:
    s = (state or "").upper()
    if s in ("PENDING", "RECEIVED", "RETRY"):
        return "QUEUED"
    if s in ("STARTED",):
        return "RUNNING"
    if s in ("SUCCESS",):
        return "SUCCEEDED"
    if s in ("FAILURE", "REVOKED"):
        return "FAILED"
    return "UNKNOWN"


def get_job_details(job_id: str, job_store: JobStore) -> Dict[str, Any]:
    meta = job_store.get_json_if_exists(job_id=job_id, name="job_meta.json")
    if not meta:
        raise HTTPException(status_code=404, detail="job_not_found")

    task_id = meta.get("celery_task_id")
    if not task_id:
        # meta is written before the task id is known
        return {"job_id": job_id, "status": "QUEUED", "filename": meta.get("filename")}

    r = AsyncResult(str(task_id), app=celery_app)
    status = _map_celery_state(r.status)

    base_resp: Dict[str, Any] = {
        "job_id": job_id,
        "status": status,
        "filename": meta.get("filename"),
    }
    progress = job_store.get_json_if_exists(job_id=job_id, name="status.json")
    if progress:
        base_resp["progress"] = progress

    if status in ("SUCCEEDED", "FAILED"):
        # The task finishes SUCCESS even when the pipeline fails; the artifact decides.
        res = job_store.get_json_if_exists(job_id=job_id, name="result.json")
        if res is not None:
            return {**base_resp, "status": "SUCCEEDED", **res}
        err = job_store.get_json_if_exists(job_id=job_id, name="error.json")
        if err is not None:
            return {**base_resp, "status": "FAILED", **err}
        return {**base_resp, "status": "FAILED", "ok": False, "error": "missing_result_artifact"}

    return base_resp


def create_jobs_router(*, job_store: JobStore) -> APIRouter:
    router = APIRouter()

    @router.post("/jobs")
    async def submit_job(
        file: UploadFile = File(...),
        company_name: str = Form(""),
        job_title: str = Form(""),
        job_description: str = Form(""),
    ):
        blob = await file.read()
        if not looks_like_pdf(blob):
            raise HTTPException(status_code=400, detail="not_a_pdf")

        job_id = str(uuid4())
        job_store.put_bytes(job_id=job_id, blob=blob, name=INPUT_NAME)

        meta = {
            "job_id": job_id,
            "filename": file.filename,
            "company_name": company_name,
            "job_title": job_title,
            "job_description": job_description,
        }
        # worker reads the metadata, so it must exist before the task is queued
        job_store.put_json_atomic(job_id=job_id, obj=meta, name="job_meta.json")

        async_result = celery_app.send_task(SUBMIT_TASK, args=[job_id])

        # persist mapping so GET /jobs/{job_id} can find celery task id
        job_store.put_json_atomic(
            job_id=job_id,
            obj={**meta, "celery_task_id": async_result.id},
            name="job_meta.json",
        )

        return JSONResponse(status_code=202, content={"job_id": job_id})

    @router.get("/jobs/{job_id}")
    def job_status(job_id: str):
        return get_job_details(job_id, job_store)

    return router
