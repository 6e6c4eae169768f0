"""
Configuration and startup security checks for the CareCall web adapter.

Why: Patient data must never travel over plain http in a deployed
environment. This module provides a single guard that enforces minimal
production safety constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os
import sys


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out/opt-in via CARECALL_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("CARECALL_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


def load_local_env() -> bool:
    if not should_load_dotenv():
        return False
    from dotenv import load_dotenv

    return load_dotenv()


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure production configuration.

    Checks (prod/stage only):
    - SUPABASE_URL and SUPABASE_ANON_KEY must be set.
    - SUPABASE_URL and CARECALL_FETCH_ROLE_URL must use https.
    """
    env = os.getenv("CARECALL_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    url = (os.getenv("SUPABASE_URL") or os.getenv("NEXT_PUBLIC_SUPABASE_URL") or "").strip()
    key = (os.getenv("SUPABASE_ANON_KEY") or os.getenv("NEXT_PUBLIC_SUPABASE_ANON_KEY") or "").strip()
    if not url or not key:
        raise SystemExit("Refusing to start: SUPABASE_URL and SUPABASE_ANON_KEY must be set in production.")

    def _must_be_https(url_value: str, var_name: str) -> None:
        if url_value and url_value.strip().lower().startswith("http://"):
            raise SystemExit(f"Refusing to start: {var_name} must use https in production (got http).")

    _must_be_https(url, "SUPABASE_URL")
    _must_be_https(os.getenv("CARECALL_FETCH_ROLE_URL", ""), "CARECALL_FETCH_ROLE_URL")
