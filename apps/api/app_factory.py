# apps/api/app_factory.py
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import FastAPI, File, Form, HTTPException, Response, UploadFile
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.concurrency import run_in_threadpool

from services.artifacts import PNG_MIME
from services.kv.store import KeyValueStore
from services.pipeline import FailureKind, JobMetadata, ResumeDocument, SubmissionPipeline
from services.records import DEFAULT_KEY_PREFIX, SubmissionRecord, record_key
from services.rendering.preview import PreviewLimitError, PreviewRegistry
from services.rendering.renderer import EncodedImage, RasterRenderer, RenderError, looks_like_pdf

log = logging.getLogger(__name__)


_FAILURE_STATUS = {
    FailureKind.CONVERSION: 422,
    FailureKind.BUSY: 409,
    FailureKind.CANCELLED: 409,
}


def _history(pipeline: SubmissionPipeline) -> list:
    return [{"state": s.value, "status": t} for s, t in pipeline.history]


def _open_preview(previews: PreviewRegistry, image: Optional[EncodedImage]) -> Optional[Dict[str, str]]:
    """Caller releases the handle with DELETE on its url."""
    if image is None:
        return None
    try:
        handle = previews.acquire(image)
    except PreviewLimitError as e:
        # the submission itself is already done; only the preview is skipped
        log.warning("no preview for submission: %s", e)
        return None
    return {"handle": handle.id, "url": handle.url}


def create_app(
    *,
    pipeline_factory: Callable[[], SubmissionPipeline],
    kv: KeyValueStore,
    renderer: RasterRenderer,
    previews: Optional[PreviewRegistry] = None,
    key_prefix: str = DEFAULT_KEY_PREFIX,
) -> FastAPI:
    app = FastAPI(title="Resume Review API")
    if previews is None:
        previews = PreviewRegistry()
    app.state.previews = previews

    @app.get("/")
    async def root():
        return RedirectResponse(url="/docs")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    @app.post("/submissions")
    async def submit_resume(
        file: UploadFile = File(...),
        company_name: str = Form(""),
        job_title: str = Form(""),
        job_description: str = Form(""),
    ):
        blob = await file.read()
        if not looks_like_pdf(blob):
            raise HTTPException(status_code=400, detail="not_a_pdf")

        pipeline = pipeline_factory()
        outcome = await pipeline.submit(
            ResumeDocument(name=file.filename or "resume.pdf", data=blob),
            JobMetadata(company_name=company_name, job_title=job_title, job_description=job_description),
        )

        preview = _open_preview(previews, outcome.image)

        if outcome.ok:
            return {
                "ok": True,
                "record_id": outcome.record_id,
                "preview": preview,
                "status_history": _history(pipeline),
            }

        return JSONResponse(
            status_code=_FAILURE_STATUS.get(outcome.kind, 502),
            content={
                "ok": False,
                "reason": outcome.reason,
                "kind": outcome.kind.value,
                "detail": outcome.detail,
                "record_id": outcome.record_id,
                "preview": preview,
                "status_history": _history(pipeline),
            },
        )

    @app.get("/resumes")
    def list_resumes():
        keys = kv.list(key_prefix)
        return {"ids": [k[len(key_prefix):] for k in keys]}

    @app.get("/resumes/{record_id}")
    def get_resume(record_id: str) -> Dict[str, Any]:
        record = SubmissionRecord.from_json(kv.get(record_key(record_id, key_prefix)))
        if record is None:
            raise HTTPException(status_code=404, detail="resume_not_found")
        # readers may see the pending write; feedback is "" until analysis lands
        return {**record.to_dict(), "status": "COMPLETE" if record.is_complete else "PENDING"}

    @app.post("/previews")
    async def create_preview(file: UploadFile = File(...)):
        blob = await file.read()
        out = await run_in_threadpool(renderer.render, blob, 0)
        if isinstance(out, RenderError):
            raise HTTPException(status_code=422, detail=out.kind.value)
        try:
            handle = previews.acquire(out)
        except PreviewLimitError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return {"handle": handle.id, "url": handle.url, "width": out.width, "height": out.height}

    @app.get("/previews/{handle_id}")
    def get_preview(handle_id: str):
        image = previews.get(handle_id)
        if image is None:
            raise HTTPException(status_code=404, detail="preview_not_found")
        return Response(content=image.data, media_type=PNG_MIME)

    @app.delete("/previews/{handle_id}", status_code=204)
    def release_preview(handle_id: str):
        if not previews.release(handle_id):
            raise HTTPException(status_code=404, detail="preview_not_found")
        return Response(status_code=204)

    return app
