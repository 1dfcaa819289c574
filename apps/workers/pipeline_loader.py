from __future__ import annotations

from functools import lru_cache

from apps.common.settings import AppSettings, load_settings
from services.inference.client import InferenceConfig, OllamaFeedbackClient
from services.ingestion.storage import JobStore, LocalStorage
from services.kv.store import KeyValueStore, LocalKVStore, RedisKVStore
from services.pipeline import PipelineConfig, SubmissionPipeline
from services.rendering.backend import PyMuPDFBackend, ensure_backend_ready
from services.rendering.renderer import RasterRenderer, RenderConfig


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_storage() -> LocalStorage:
    return LocalStorage(root_dir=str(get_settings().storage_root))


@lru_cache(maxsize=1)
def get_job_store() -> JobStore:
    return JobStore(root_dir=str(get_settings().jobs_root))


@lru_cache(maxsize=1)
def get_kv() -> KeyValueStore:
    s = get_settings()
    if s.kv_backend == "redis":
        return RedisKVStore.from_url(s.redis_url)
    return LocalKVStore(root_dir=str(s.kv_root))


@lru_cache(maxsize=1)
def get_backend() -> PyMuPDFBackend:
    return ensure_backend_ready()


@lru_cache(maxsize=1)
def get_renderer() -> RasterRenderer:
    s = get_settings()
    return RasterRenderer(
        backend=get_backend(),
        config=RenderConfig(scale=s.render_scale, quality=s.render_quality),
    )


def build_pipeline() -> SubmissionPipeline:
    """A fresh pipeline per caller session; collaborators are shared."""
    s = get_settings()
    storage = get_storage()
    return SubmissionPipeline(
        storage=storage,
        kv=get_kv(),
        inference=OllamaFeedbackClient(
            storage=storage,
            config=InferenceConfig(
                base_url=s.ollama_url,
                model=s.ollama_model,
                timeout_s=s.inference_timeout_s,
            ),
            backend=get_backend(),
        ),
        renderer=get_renderer(),
        config=PipelineConfig(key_prefix=s.key_prefix, step_timeout_s=s.step_timeout_s),
    )
