from __future__ import annotations

import pytest

from apps.common.settings import load_settings

_ENV = [
    "RESUME_CONFIG_PATH",
    "RESUME_STORAGE_ROOT",
    "RESUME_KV_BACKEND",
    "RESUME_RENDER_SCALE",
    "RESUME_STEP_TIMEOUT_S",
    "RESUME_KEY_PREFIX",
    "REDIS_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for k in _ENV:
        monkeypatch.delenv(k, raising=False)


def test_defaults_when_config_file_missing(tmp_path):
    s = load_settings(str(tmp_path / "missing.yaml"))
    assert s.kv_backend == "local"
    assert s.key_prefix == "resume:"
    assert s.render_scale == 2.0
    assert s.render_quality == pytest.approx(0.92)
    assert s.storage_root.is_absolute()


def test_yaml_values_and_env_overrides(tmp_path, monkeypatch):
    cfg = tmp_path / "app.yaml"
    cfg.write_text(
        "storage_root: blobs\nkv_backend: redis\nrender_scale: 1.5\nkey_prefix: 'cv:'\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("RESUME_RENDER_SCALE", "3")
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/2")

    s = load_settings(str(cfg))

    assert s.kv_backend == "redis"
    assert s.render_scale == 3.0
    assert s.key_prefix == "cv:"
    assert s.redis_url == "redis://cache:6379/2"
    assert s.storage_root.name == "blobs"


def test_config_path_from_env(tmp_path, monkeypatch):
    cfg = tmp_path / "other.yaml"
    cfg.write_text("step_timeout_s: 5\n", encoding="utf-8")
    monkeypatch.setenv("RESUME_CONFIG_PATH", str(cfg))
    assert load_settings().step_timeout_s == 5.0


@pytest.mark.parametrize(
    "env, value",
    [
        ("RESUME_RENDER_SCALE", "big"),
        ("RESUME_RENDER_SCALE", "0"),
        ("RESUME_KV_BACKEND", "memcached"),
        ("RESUME_STEP_TIMEOUT_S", "-1"),
    ],
)
def test_invalid_values_raise(tmp_path, monkeypatch, env, value):
    monkeypatch.setenv(env, value)
    with pytest.raises(ValueError):
        load_settings(str(tmp_path / "missing.yaml"))
