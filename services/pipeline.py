# services/pipeline.py
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple, Union

from starlette.concurrency import run_in_threadpool

from services.artifacts import PDF_MIME, NamedArtifact, wrap
from services.feedback.content import (
    ChatResponse,
    FeedbackParseError,
    extract_text,
    parse_feedback,
    response_from_dict,
)
from services.feedback.instructions import prepare_instructions
from services.ingestion.storage import BlobStorage
from services.inference.client import FeedbackClient
from services.kv.store import KeyValueStore
from services.records import DEFAULT_KEY_PREFIX, SubmissionRecord, new_record_id, record_key
from services.rendering.renderer import ConversionResult, EncodedImage, RasterRenderer, RenderError

log = logging.getLogger(__name__)


class PipelineError(RuntimeError):
    """Misuse of the pipeline itself; stage failures are returned as Failed."""


class PipelineState(str, Enum):
    IDLE = "IDLE"
    UPLOADING_RESUME = "UPLOADING_RESUME"
    CONVERTING_TO_IMAGE = "CONVERTING_TO_IMAGE"
    UPLOADING_IMAGE = "UPLOADING_IMAGE"
    PERSISTING_INITIAL_RECORD = "PERSISTING_INITIAL_RECORD"
    REQUESTING_FEEDBACK = "REQUESTING_FEEDBACK"
    PARSING_FEEDBACK = "PARSING_FEEDBACK"
    PERSISTING_FINAL_RECORD = "PERSISTING_FINAL_RECORD"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


STATUS_TEXT = {
    PipelineState.IDLE: "",
    PipelineState.UPLOADING_RESUME: "Uploading the file...",
    PipelineState.CONVERTING_TO_IMAGE: "Converting to image...",
    PipelineState.UPLOADING_IMAGE: "Uploading the image...",
    PipelineState.PERSISTING_INITIAL_RECORD: "Preparing data...",
    PipelineState.REQUESTING_FEEDBACK: "Analyzing...",
    PipelineState.PARSING_FEEDBACK: "Reading the analysis...",
    PipelineState.PERSISTING_FINAL_RECORD: "Saving the analysis...",
    PipelineState.COMPLETE: "Analysis complete, redirecting...",
}


class FailureKind(str, Enum):
    UPLOAD = "upload"
    CONVERSION = "conversion"
    IMAGE_UPLOAD = "image_upload"
    PERSISTENCE = "persistence"
    INFERENCE = "inference"
    FEEDBACK_PARSE = "feedback_parse"
    CANCELLED = "cancelled"
    BUSY = "busy"


REASONS = {
    FailureKind.UPLOAD: "upload failed",
    FailureKind.CONVERSION: "conversion failed",
    FailureKind.IMAGE_UPLOAD: "image upload failed",
    FailureKind.PERSISTENCE: "persistence failed",
    FailureKind.INFERENCE: "analysis failed",
    FailureKind.FEEDBACK_PARSE: "feedback parse error",
    FailureKind.CANCELLED: "cancelled",
    FailureKind.BUSY: "submission already in progress",
}


@dataclass(frozen=True)
class PipelineConfig:
    key_prefix: str = DEFAULT_KEY_PREFIX
    page_index: int = 0
    # None disables the per-call bound.
    step_timeout_s: Optional[float] = 180.0

    def __post_init__(self) -> None:
        if self.page_index < 0:
            raise PipelineError(f"page_index must be >= 0, got {self.page_index}")
        if self.step_timeout_s is not None and not self.step_timeout_s > 0:
            raise PipelineError(f"step_timeout_s must be positive, got {self.step_timeout_s}")


@dataclass(frozen=True)
class ResumeDocument:
    name: str
    data: bytes = field(repr=False)
    mime_type: str = PDF_MIME

    def as_artifact(self) -> NamedArtifact:
        return wrap(self.data, self.name, self.mime_type)


@dataclass(frozen=True)
class JobMetadata:
    company_name: str = ""
    job_title: str = ""
    job_description: str = ""


@dataclass(frozen=True)
class Complete:
    record_id: str
    record: SubmissionRecord
    image: Optional[EncodedImage] = field(default=None, repr=False)
    ok: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Failed:
    reason: str
    kind: FailureKind
    state: PipelineState
    detail: str = ""
    # Set once a pending record exists in the key-value store.
    record_id: Optional[str] = None
    # Set once the page has been converted.
    image: Optional[EncodedImage] = field(default=None, repr=False)
    ok: bool = field(default=False, init=False)


SubmissionOutcome = Union[Complete, Failed]
StatusObserver = Callable[[PipelineState, str], None]


class _Abort(Exception):
    def __init__(self, outcome: Failed) -> None:
        super().__init__(outcome.reason)
        self.outcome = outcome


async def _invoke(fn: Callable[..., Any], *args: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    result = await run_in_threadpool(fn, *args)
    if inspect.isawaitable(result):
        result = await result
    return result


def _path_of(uploaded: Any) -> Optional[str]:
    if not uploaded:
        return None
    first = uploaded[0] if isinstance(uploaded, (list, tuple)) else uploaded
    path = first.get("path") if isinstance(first, dict) else getattr(first, "path", None)
    return str(path) if path else None


class SubmissionPipeline:
    """
    upload resume -> render page 1 -> upload preview -> persist pending record
    -> request feedback -> parse -> persist completed record.

    Every stage is fail-fast and never retried; artifacts written by earlier
    stages stay where they are. Each transition is published as
    (state, status text) to the observers and kept in `history`.
    """

    def __init__(
        self,
        *,
        storage: BlobStorage,
        kv: KeyValueStore,
        inference: FeedbackClient,
        renderer: RasterRenderer,
        config: Optional[PipelineConfig] = None,
        instructions_fn: Callable[..., str] = prepare_instructions,
        id_factory: Callable[[], str] = new_record_id,
        observer: Optional[StatusObserver] = None,
    ) -> None:
        self.storage = storage
        self.kv = kv
        self.inference = inference
        self.renderer = renderer
        self.config = config or PipelineConfig()
        self.instructions_fn = instructions_fn
        self.id_factory = id_factory
        self.observer = observer

        self.state = PipelineState.IDLE
        self.status_text = ""
        self.history: List[Tuple[PipelineState, str]] = []
        self._busy = False

    @property
    def busy(self) -> bool:
        return self._busy

    async def submit(
        self,
        document: ResumeDocument,
        metadata: JobMetadata,
        *,
        cancel: Optional[asyncio.Event] = None,
        observer: Optional[StatusObserver] = None,
    ) -> SubmissionOutcome:
        if self._busy:
            return Failed(REASONS[FailureKind.BUSY], FailureKind.BUSY, self.state)

        self._busy = True
        self.history = []
        observers = [o for o in (self.observer, observer) if o is not None]
        try:
            return await self._run(document, metadata, cancel, observers)
        finally:
            self._busy = False

    async def _run(
        self,
        document: ResumeDocument,
        metadata: JobMetadata,
        cancel: Optional[asyncio.Event],
        observers: Sequence[StatusObserver],
    ) -> SubmissionOutcome:
        ctx = _RunContext(self, cancel, observers)
        try:
            # 1. original document
            ctx.enter(PipelineState.UPLOADING_RESUME)
            uploaded = await ctx.call(FailureKind.UPLOAD, self.storage.upload, [document.as_artifact()])
            resume_path = _path_of(uploaded)
            if resume_path is None:
                ctx.abort(FailureKind.UPLOAD, "storage returned no path")

            # 2. first page -> png, from the caller's bytes rather than the stored copy
            ctx.enter(PipelineState.CONVERTING_TO_IMAGE)
            converted = await ctx.call(
                FailureKind.CONVERSION,
                self.renderer.convert,
                document.data,
                document.name,
                self.config.page_index,
            )
            if isinstance(converted, RenderError):
                ctx.abort(FailureKind.CONVERSION, f"{converted.kind.value}: {converted.detail}")
            if not isinstance(converted, ConversionResult):
                ctx.abort(FailureKind.CONVERSION, "renderer returned no image")
            # From here on every outcome carries the image for a preview handle.
            ctx.image = converted.image

            # 3. preview image
            ctx.enter(PipelineState.UPLOADING_IMAGE)
            uploaded_image = await ctx.call(FailureKind.IMAGE_UPLOAD, self.storage.upload, [converted.artifact])
            image_path = _path_of(uploaded_image)
            if image_path is None:
                ctx.abort(FailureKind.IMAGE_UPLOAD, "storage returned no path")

            # 4. pending record
            ctx.enter(PipelineState.PERSISTING_INITIAL_RECORD)
            record = SubmissionRecord(
                id=self.id_factory(),
                resume_path=resume_path,
                image_path=image_path,
                company_name=metadata.company_name,
                job_title=metadata.job_title,
                job_description=metadata.job_description,
                feedback="",
            )
            key = record_key(record.id, self.config.key_prefix)
            ctx.record_id = record.id
            ok = await ctx.call(FailureKind.PERSISTENCE, self.kv.set, key, record.to_json())
            if not ok:
                ctx.abort(FailureKind.PERSISTENCE, f"set {key} was not acknowledged")

            # 5. inference
            ctx.enter(PipelineState.REQUESTING_FEEDBACK)
            instructions = self.instructions_fn(job_title=metadata.job_title, job_description=metadata.job_description)
            response = await ctx.call(FailureKind.INFERENCE, self.inference.feedback, resume_path, instructions)
            if not response:
                ctx.abort(FailureKind.INFERENCE, "inference returned no result")

            # 6. feedback text -> json
            ctx.enter(PipelineState.PARSING_FEEDBACK)
            try:
                if isinstance(response, dict):
                    response = response_from_dict(response)
                if not isinstance(response, ChatResponse):
                    raise FeedbackParseError(f"unexpected response type {type(response).__name__}")
                feedback = parse_feedback(extract_text(response.message.content))
            except FeedbackParseError as e:
                ctx.abort(FailureKind.FEEDBACK_PARSE, str(e))

            # 7. completed record, full overwrite under the same key
            ctx.enter(PipelineState.PERSISTING_FINAL_RECORD)
            record.feedback = feedback
            ok = await ctx.call(FailureKind.PERSISTENCE, self.kv.set, key, record.to_json())
            if not ok:
                ctx.abort(FailureKind.PERSISTENCE, f"set {key} was not acknowledged")

            ctx.enter(PipelineState.COMPLETE)
            return Complete(record_id=record.id, record=record, image=ctx.image)

        except _Abort as a:
            ctx.publish(PipelineState.FAILED, f"Failed: {a.outcome.reason}")
            return a.outcome

    def _set_state(self, state: PipelineState, text: str) -> None:
        self.state = state
        self.status_text = text
        self.history.append((state, text))


class _RunContext:
    """Per-submission bookkeeping: checkpoints, bounded calls and status publishing."""

    def __init__(
        self,
        pipeline: SubmissionPipeline,
        cancel: Optional[asyncio.Event],
        observers: Sequence[StatusObserver],
    ) -> None:
        self.pipeline = pipeline
        self.cancel = cancel
        self.observers = list(observers)
        self.record_id: Optional[str] = None
        self.image: Optional[EncodedImage] = None

    def publish(self, state: PipelineState, text: str) -> None:
        self.pipeline._set_state(state, text)
        log.info("submission %s: %s", self.record_id or "-", state.value)
        for obs in self.observers:
            try:
                obs(state, text)
            except Exception:
                log.exception("status observer failed on %s", state.value)

    def enter(self, state: PipelineState) -> None:
        if self.cancel is not None and self.cancel.is_set() and state is not PipelineState.COMPLETE:
            self.abort(FailureKind.CANCELLED, f"cancelled before {state.value}")
        self.publish(state, STATUS_TEXT[state])

    def abort(self, kind: FailureKind, detail: str = "") -> None:
        failed = Failed(
            reason=REASONS[kind],
            kind=kind,
            state=self.pipeline.state,
            detail=detail,
            record_id=self.record_id,
            image=self.image,
        )
        log.warning("submission %s failed in %s: %s (%s)", self.record_id or "-", failed.state.value, failed.reason, detail)
        raise _Abort(failed)

    async def call(self, kind: FailureKind, fn: Callable[..., Any], *args: Any) -> Any:
        timeout = self.pipeline.config.step_timeout_s
        try:
            return await asyncio.wait_for(_invoke(fn, *args), timeout=timeout)
        except asyncio.TimeoutError:
            self.abort(kind, f"timed out after {timeout}s")
        except Exception as e:
            log.debug("collaborator raised in %s", self.pipeline.state.value, exc_info=True)
            self.abort(kind, f"{type(e).__name__}: {e}")
