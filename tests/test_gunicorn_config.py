"""Tests for gunicorn configuration."""
from __future__ import annotations

import importlib.util
import os
from unittest.mock import patch


def _load(name: str = "gunicorn_conf"):
    spec = importlib.util.spec_from_file_location(name, "gunicorn.conf.py")
    assert spec is not None
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[union-attr]
    return mod


def test_defaults() -> None:
    mod = _load()
    assert "8001" in mod.bind
    assert "uvicorn" in mod.worker_class
    assert mod.proc_name == "license_billing"
    assert mod.preload_app is False


def test_timeout_covers_quantity_purchase_calls() -> None:
    with patch.dict(os.environ, {}, clear=False):
        os.environ.pop("GUNICORN_TIMEOUT", None)
        assert _load("gunicorn_conf_timeout").timeout == 60


def test_env_overrides() -> None:
    with patch.dict(os.environ, {"GUNICORN_WORKERS": "4", "GUNICORN_TIMEOUT": "120"}):
        mod = _load("gunicorn_conf_custom")
    assert mod.workers == 4
    assert mod.timeout == 120
