"""
Security config guard tests.

Validates that production/staging environments fail fast when backend
credentials are missing or the backend is addressed over plain http, while
development stays permissive.
"""
from __future__ import annotations

import importlib

import pytest


def _cfg():
    from backend.web import config as cfg  # type: ignore

    return importlib.reload(cfg)


def test_prod_requires_credentials(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CARECALL_ENV", "prod")
    with pytest.raises(SystemExit):
        _cfg().ensure_secure_config_on_startup()


def test_prod_rejects_http_backend(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CARECALL_ENV", "staging")
    monkeypatch.setenv("SUPABASE_URL", "http://db.example.com")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    with pytest.raises(SystemExit) as excinfo:
        _cfg().ensure_secure_config_on_startup()
    assert "SUPABASE_URL" in str(excinfo.value)


def test_prod_rejects_http_role_function(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CARECALL_ENV", "production")
    monkeypatch.setenv("SUPABASE_URL", "https://abcd.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    monkeypatch.setenv("CARECALL_FETCH_ROLE_URL", "http://roles.internal/fetch-role")
    with pytest.raises(SystemExit):
        _cfg().ensure_secure_config_on_startup()


def test_prod_accepts_https(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CARECALL_ENV", "prod")
    monkeypatch.setenv("SUPABASE_URL", "https://abcd.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    _cfg().ensure_secure_config_on_startup()


def test_dev_is_permissive(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("SUPABASE_URL", "http://127.0.0.1:54321")
    _cfg().ensure_secure_config_on_startup()


def test_dotenv_is_never_loaded_under_pytest(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CARECALL_ENABLE_DOTENV", "true")
    cfg = _cfg()
    assert cfg.should_load_dotenv() is False
    assert cfg.load_local_env() is False
