"""
Role resolution for signed-in identities.

Why:
    The dashboard gates features by a coarse role (admin/doctor/staff). The
    authoritative source is the role-lookup function, but a sign-in must never
    fail just because that function is down. The resolver therefore walks a
    fallback chain and always returns a role.

Fallback chain:
    1. Role-lookup function (POST {user_id} -> {role}).
    2. Direct data-store query on `users` (id -> role) through the SDK client,
       which carries the signed-in user's JWT so row-level security applies.
    3. Heuristic over the auth backend's own user record: explicit metadata
       role first, then keyword matches in email/metadata text.
    4. DEFAULT_ROLE ("staff").

Only answers from steps 1 and 2 are cached; heuristics and the default are
re-evaluated next time so a recovered backend is picked up quickly.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional
import logging
import time

import httpx
from supabase import AsyncClient

from .config import SupabaseSettings
from .domain import DEFAULT_ROLE, KNOWN_ROLES, AuthUser, role_from_text
from .resilience import with_timeout
from .supabase_auth import SupabaseAuthAdapter

logger = logging.getLogger("carecall.identity_access.roles")

ROLE_CACHE_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class RoleCacheEntry:
    identity_id: str
    role: str
    resolved_at: float


class RoleCache:
    """Very small in-memory cache of resolved roles keyed by identity id."""

    def __init__(self, ttl_seconds: float = ROLE_CACHE_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, RoleCacheEntry] = {}

    def get(self, identity_id: str) -> Optional[str]:
        entry = self._entries.get(identity_id)
        if entry is None:
            return None
        if self._clock() - entry.resolved_at >= self.ttl_seconds:
            self._entries.pop(identity_id, None)
            return None
        return entry.role

    def put(self, identity_id: str, role: str) -> RoleCacheEntry:
        entry = RoleCacheEntry(identity_id=identity_id, role=role, resolved_at=self._clock())
        self._entries[identity_id] = entry
        return entry

    def invalidate(self, identity_id: str) -> None:
        self._entries.pop(identity_id, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _normalize(role: object) -> Optional[str]:
    if not isinstance(role, str):
        return None
    value = role.strip().lower()
    return value or None


def guess_role(user: AuthUser) -> Optional[str]:
    """Guess a role from a user record without asking the role table.

    An explicit known role in app/user metadata wins; otherwise the email and
    remaining metadata strings are scanned for role keywords.
    """
    for meta in (user.app_metadata, user.user_metadata):
        explicit = _normalize(meta.get("role"))
        if explicit in KNOWN_ROLES:
            return explicit
    texts: list[str] = [user.email]
    for meta in (user.app_metadata, user.user_metadata):
        texts.extend(str(v) for v in _flatten(meta.values()))
    for text in texts:
        role = role_from_text(text)
        if role:
            return role
    return None


def _flatten(values: Iterable[object]) -> Iterable[object]:
    for value in values:
        if isinstance(value, (list, tuple, set)):
            yield from _flatten(value)
        elif isinstance(value, dict):
            yield from _flatten(value.values())
        elif isinstance(value, str):
            yield value


class RoleResolver:
    """Resolve an identity id to a role; total, never raises."""

    def __init__(
        self,
        settings: SupabaseSettings,
        *,
        http: Optional[httpx.AsyncClient] = None,
        client: Optional[AsyncClient] = None,
        auth: Optional[SupabaseAuthAdapter] = None,
        cache: Optional[RoleCache] = None,
        step_timeout: Optional[float] = None,
    ) -> None:
        self.settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=settings.request_timeout)
        self._client = client
        self._auth = auth
        self.cache = cache if cache is not None else RoleCache()
        self.step_timeout = step_timeout if step_timeout is not None else settings.request_timeout

    async def resolve_role(self, identity_id: str, *, force_refresh: bool = False) -> str:
        if not identity_id:
            return DEFAULT_ROLE
        if not force_refresh:
            cached = self.cache.get(identity_id)
            if cached:
                return cached

        role = await self._attempt("role function", self._from_function(identity_id))
        if role is None and self._client is not None:
            role = await self._attempt("users table", self._from_table(identity_id))
        if role:
            self.cache.put(identity_id, role)
            return role

        if self._auth is not None:
            guessed = await self._attempt("user record", self._from_user_record(identity_id))
            if guessed:
                logger.info("role guessed from user record: %s", guessed)
                return guessed
        logger.info("role resolution fell back to default role")
        return DEFAULT_ROLE

    async def _attempt(self, step: str, awaitable) -> Optional[str]:
        try:
            return await with_timeout(awaitable, self.step_timeout, f"role lookup ({step})")
        except Exception as exc:
            logger.warning("role lookup via %s failed: %s", step, type(exc).__name__)
            return None

    async def _from_function(self, identity_id: str) -> Optional[str]:
        if not self.settings.functions_url:
            raise RuntimeError("role function not configured")
        headers = {"Content-Type": "application/json", "Cache-Control": "no-cache"}
        if self.settings.anon_key:
            headers.update(self.settings.api_headers(self._user_token()))
        resp = await self._http.post(self.settings.functions_url, json={"user_id": identity_id}, headers=headers)
        resp.raise_for_status()
        body = resp.json()
        role = _normalize(body.get("role")) if isinstance(body, dict) else None
        if role is None:
            raise ValueError("malformed role response")
        return role

    async def _from_table(self, identity_id: str) -> Optional[str]:
        result = await self._client.table("users").select("role").eq("id", identity_id).limit(1).execute()
        rows = result.data if isinstance(result.data, list) else []
        return _normalize(rows[0].get("role")) if rows else None

    def _user_token(self) -> Optional[str]:
        session = self._auth.current_session if self._auth is not None else None
        return session.access_token if session is not None else None

    async def _from_user_record(self, identity_id: str) -> Optional[str]:
        user = await self._auth.get_user()
        if user is None or user.id != identity_id:
            return None
        return guess_role(user)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


__all__ = [
    "ROLE_CACHE_TTL_SECONDS",
    "RoleCache",
    "RoleCacheEntry",
    "RoleResolver",
    "guess_role",
]
