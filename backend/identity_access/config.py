"""
Centralized backend configuration for the auth/session layer.

Intent:
    Provide a single source of truth for the two required backend values
    (service URL and anonymous API key) plus a few tunables. Missing values do
    not raise: callers check `settings.configured` and surface a persistent
    "not configured" state instead of crashing.

Behavior:
    - Accepts both `SUPABASE_URL`/`SUPABASE_ANON_KEY` and the browser-style
      `NEXT_PUBLIC_` prefixed names (first non-empty wins).
    - Derives the role-lookup function URL from the service URL unless
      `CARECALL_FETCH_ROLE_URL` overrides it.
    - Never exposes the key in `describe()`; only "Set"/"Missing".
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional
import os
import re

DEFAULT_REQUEST_TIMEOUT = 15.0
CLIENT_INFO = "carecall-dashboard"

_HOSTED_URL = re.compile(r"^https://([^.]+)\.supabase\.co/?$")


class ConfigurationError(RuntimeError):
    """Raised when an operation needs backend settings that are missing."""


def _first(env: Mapping[str, str], *names: str) -> str:
    for name in names:
        value = (env.get(name) or "").strip()
        if value:
            return value
    return ""


def derive_functions_url(base_url: str, function: str = "fetch-role") -> str:
    """Return the edge function URL for `function` on the given project.

    Hosted projects (`https://<ref>.supabase.co`) serve functions from the
    `<ref>.functions.supabase.co` host; self-hosted/local stacks expose them
    under `/functions/v1/` on the API gateway.
    """
    if not base_url:
        return ""
    m = _HOSTED_URL.match(base_url.strip())
    if m:
        return f"https://{m.group(1)}.functions.supabase.co/{function}"
    return f"{base_url.rstrip('/')}/functions/v1/{function}"


@dataclass(frozen=True)
class SupabaseSettings:
    url: str = ""
    anon_key: str = ""
    functions_url: str = ""
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    environment: str = "dev"
    client_info: str = CLIENT_INFO

    @property
    def configured(self) -> bool:
        return bool(self.url and self.anon_key)

    @property
    def rest_url(self) -> str:
        return f"{self.url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.url.rstrip('/')}/auth/v1"

    def missing(self) -> List[str]:
        names: List[str] = []
        if not self.url:
            names.append("SUPABASE_URL")
        if not self.anon_key:
            names.append("SUPABASE_ANON_KEY")
        return names

    def describe(self) -> Dict[str, str]:
        return {
            "url": "Set" if self.url else "Missing",
            "key": "Set" if self.anon_key else "Missing",
        }

    def require(self) -> "SupabaseSettings":
        if not self.configured:
            raise ConfigurationError("missing configuration: " + ", ".join(self.missing()))
        return self

    def api_headers(self, bearer: Optional[str] = None) -> Dict[str, str]:
        """Headers every backend call carries (anon key, optional user token)."""
        return {
            "apikey": self.anon_key,
            "Authorization": f"Bearer {bearer or self.anon_key}",
            "X-Client-Info": self.client_info,
        }


def _timeout_from(raw: str) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return DEFAULT_REQUEST_TIMEOUT
    return value if value > 0 else DEFAULT_REQUEST_TIMEOUT


def load_settings(environ: Optional[Mapping[str, str]] = None) -> SupabaseSettings:
    """Read settings from the environment (or the given mapping)."""
    env = os.environ if environ is None else environ
    url = _first(env, "SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL").rstrip("/")
    key = _first(env, "SUPABASE_ANON_KEY", "NEXT_PUBLIC_SUPABASE_ANON_KEY")
    functions_url = _first(env, "CARECALL_FETCH_ROLE_URL") or derive_functions_url(url)
    return SupabaseSettings(
        url=url,
        anon_key=key,
        functions_url=functions_url,
        request_timeout=_timeout_from(_first(env, "CARECALL_REQUEST_TIMEOUT")),
        environment=(_first(env, "CARECALL_ENV") or "dev").lower(),
    )


__all__ = [
    "ConfigurationError",
    "SupabaseSettings",
    "derive_functions_url",
    "load_settings",
    "CLIENT_INFO",
    "DEFAULT_REQUEST_TIMEOUT",
]
