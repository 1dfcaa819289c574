# apps/api/main.py
from apps.api.app_factory import create_app
from apps.api.jobs import create_jobs_router
from apps.common.settings import configure_logging
from apps.workers.pipeline_loader import build_pipeline, get_job_store, get_kv, get_renderer, get_settings

settings = get_settings()
configure_logging(settings.log_level)

app = create_app(
    pipeline_factory=build_pipeline,
    kv=get_kv(),
    renderer=get_renderer(),
    key_prefix=settings.key_prefix,
)
app.include_router(create_jobs_router(job_store=get_job_store()))
