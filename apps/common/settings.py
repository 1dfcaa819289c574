# apps/common/settings.py
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import yaml

KV_BACKENDS = ("local", "redis")


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    return data or {}


def _env(key: str) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if isinstance(v, str) and v.strip() else None


@dataclass(frozen=True)
class AppSettings:
    storage_root: Path
    jobs_root: Path
    kv_backend: str
    kv_root: Path
    redis_url: str
    key_prefix: str
    ollama_url: str
    ollama_model: str
    inference_timeout_s: float
    render_scale: float
    render_quality: float
    step_timeout_s: float
    log_level: str


# field -> (env var, default, converter)
_FIELDS: Dict[str, tuple] = {
    "storage_root": ("RESUME_STORAGE_ROOT", "data/uploads", str),
    "jobs_root": ("RESUME_JOBS_ROOT", "data/jobs", str),
    "kv_backend": ("RESUME_KV_BACKEND", "local", str),
    "kv_root": ("RESUME_KV_ROOT", "data/kv", str),
    "redis_url": ("REDIS_URL", "redis://127.0.0.1:6379/0", str),
    "key_prefix": ("RESUME_KEY_PREFIX", "resume:", str),
    "ollama_url": ("RESUME_OLLAMA_URL", "http://127.0.0.1:11434", str),
    "ollama_model": ("RESUME_OLLAMA_MODEL", "llama3.2:3b", str),
    "inference_timeout_s": ("RESUME_INFERENCE_TIMEOUT_S", 120.0, float),
    "render_scale": ("RESUME_RENDER_SCALE", 2.0, float),
    "render_quality": ("RESUME_RENDER_QUALITY", 0.92, float),
    "step_timeout_s": ("RESUME_STEP_TIMEOUT_S", 180.0, float),
    "log_level": ("RESUME_LOG_LEVEL", "INFO", str),
}

_PATH_FIELDS = ("storage_root", "jobs_root", "kv_root")


def _convert(name: str, raw: Any, conv: Callable[[Any], Any], cfg_path: Path) -> Any:
    try:
        return conv(raw)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid value for {name}: {raw!r}. Config file used: {cfg_path}") from e


def load_settings(config_path: Optional[str] = None) -> AppSettings:
    """
    Resolution order (highest -> lowest):
      1) RESUME_* / REDIS_URL env vars, per field
      2) config file: explicit argument, else RESUME_CONFIG_PATH, else config/app.yaml
      3) built-in defaults
    """
    cfg_path = (
        Path(config_path)
        if config_path
        else Path(_env("RESUME_CONFIG_PATH") or "config/app.yaml")
    )
    cfg = _read_yaml(cfg_path)

    values: Dict[str, Any] = {}
    for name, (env_key, default, conv) in _FIELDS.items():
        raw = _env(env_key)
        if raw is None:
            raw = cfg.get(name, default)
        values[name] = _convert(name, raw, conv, cfg_path)

    for name in _PATH_FIELDS:
        values[name] = Path(values[name]).expanduser().resolve()

    values["kv_backend"] = values["kv_backend"].lower()
    if values["kv_backend"] not in KV_BACKENDS:
        raise ValueError(
            f"Invalid kv_backend {values['kv_backend']!r}; expected one of {KV_BACKENDS}. "
            f"Config file used: {cfg_path}"
        )
    for name in ("render_scale", "step_timeout_s", "inference_timeout_s"):
        if not values[name] > 0:
            raise ValueError(f"{name} must be positive. Config file used: {cfg_path}")

    return AppSettings(**values)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
