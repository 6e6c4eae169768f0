"""
Adapter over the supabase-py async client for the session layer.

Why:
    The session coordinator and the role resolver speak in domain types
    (`AuthSession`, `AuthUser`, `AuthChangeEvent`). The vendor SDK returns its
    own pydantic models and calls auth listeners synchronously. This module
    translates both directions and nothing else: sign-in, refresh, sign-out and
    the auth-header switch on the data client stay inside the SDK.

Design:
    - `create_supabase(settings)` builds the shared `AsyncClient`.
    - SDK listener callbacks are sync; async domain listeners are scheduled as
      tasks and `settle()` awaits the ones still pending, so a caller of
      `sign_in_with_password` can rely on its listeners having run.
    - `current_session` is the last session the SDK reported, read without
      triggering a refresh.

Security: Never log credentials or tokens. Sessions stay in the SDK's memory
storage; nothing is written to disk.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Set
import inspect
import logging

from supabase import AsyncClient, AsyncClientOptions, AuthApiError, AuthRetryableError, acreate_client

from .config import SupabaseSettings
from .domain import AuthChangeEvent, AuthSession, AuthUser

logger = logging.getLogger("carecall.identity_access.auth")

AuthListener = Callable[[AuthChangeEvent, Optional[AuthSession]], Optional[Awaitable[None]]]


async def create_supabase(settings: SupabaseSettings) -> AsyncClient:
    """Create the SDK client every backend call of one auth stack goes through."""
    settings.require()
    options = AsyncClientOptions(
        headers={"X-Client-Info": settings.client_info},
        auto_refresh_token=True,
        persist_session=True,
        postgrest_client_timeout=settings.request_timeout,
        function_client_timeout=int(settings.request_timeout),
    )
    return await acreate_client(settings.url, settings.anon_key, options=options)


def _field(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def user_from_sdk(user: Any) -> Optional[AuthUser]:
    if user is None or not _field(user, "id"):
        return None
    return AuthUser(
        id=str(_field(user, "id")),
        email=str(_field(user, "email") or ""),
        user_metadata=dict(_field(user, "user_metadata") or {}),
        app_metadata=dict(_field(user, "app_metadata") or {}),
    )


def session_from_sdk(session: Any) -> Optional[AuthSession]:
    if session is None or not _field(session, "access_token"):
        return None
    expires_at = _field(session, "expires_at")
    return AuthSession(
        access_token=str(_field(session, "access_token")),
        refresh_token=str(_field(session, "refresh_token") or ""),
        expires_at=float(expires_at) if expires_at is not None else None,
        user=user_from_sdk(_field(session, "user")),
    )


def event_from_sdk(event: Any) -> Optional[AuthChangeEvent]:
    try:
        return AuthChangeEvent(str(getattr(event, "value", event)))
    except ValueError:
        return None


class SupabaseAuthAdapter:
    """Domain-typed view of `client.auth`."""

    def __init__(self, client: AsyncClient) -> None:
        self.client = client
        self._auth = client.auth
        self._session: Optional[AuthSession] = None
        self._pending: Set[asyncio.Task] = set()
        self._tracker = self._auth.on_auth_state_change(self._track_session)

    @property
    def current_session(self) -> Optional[AuthSession]:
        return self._session

    def _track_session(self, event: Any, session: Any) -> None:
        self._session = None if event_from_sdk(event) is AuthChangeEvent.SIGNED_OUT else session_from_sdk(session)

    # --- Subscriptions -----------------------------------------------------------

    def on_auth_state_change(self, listener: AuthListener) -> Any:
        """Subscribe a domain listener; returns the SDK subscription."""
        def _callback(event: Any, session: Any) -> None:
            mapped = event_from_sdk(event)
            if mapped is None:
                logger.debug("ignoring auth event %s", event)
                return
            self._dispatch(listener, mapped, session_from_sdk(session))

        return self._auth.on_auth_state_change(_callback)

    def _dispatch(self, listener: AuthListener, event: AuthChangeEvent, session: Optional[AuthSession]) -> None:
        try:
            result = listener(event, session)
        except Exception as exc:
            logger.error("auth listener failed for %s: %s", event.value, type(exc).__name__)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(self._guard(result, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def _guard(self, awaitable: Awaitable[None], event: AuthChangeEvent) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("auth listener failed for %s: %s", event.value, type(exc).__name__)

    async def settle(self) -> None:
        """Wait until every listener scheduled so far has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- Session operations ----------------------------------------------------

    async def get_session(self) -> Optional[AuthSession]:
        """Current session; the SDK refreshes an expired token on the way."""
        session = session_from_sdk(await self._auth.get_session())
        self._session = session
        return session

    async def set_session(self, access_token: str, refresh_token: str) -> Optional[AuthSession]:
        """Adopt tokens persisted by the host (e.g. from a previous run)."""
        response = await self._auth.set_session(access_token, refresh_token)
        await self.settle()
        return session_from_sdk(_field(response, "session"))

    async def sign_in_with_password(self, email: str, password: str) -> Optional[AuthSession]:
        """Exchange credentials; raises AuthApiError on rejection."""
        response = await self._auth.sign_in_with_password({"email": email, "password": password})
        await self.settle()
        return session_from_sdk(_field(response, "session"))

    async def sign_up(self, email: str, password: str, data: Optional[Dict[str, Any]] = None) -> Optional[AuthUser]:
        credentials: Dict[str, Any] = {"email": email, "password": password}
        if data:
            credentials["options"] = {"data": data}
        response = await self._auth.sign_up(credentials)
        await self.settle()
        return user_from_sdk(_field(response, "user"))

    async def sign_out(self) -> None:
        """The SDK clears the local session and emits SIGNED_OUT even when the
        backend call fails."""
        try:
            await self._auth.sign_out()
        finally:
            self._session = None
            await self.settle()

    async def get_user(self) -> Optional[AuthUser]:
        response = await self._auth.get_user()
        return user_from_sdk(_field(response, "user"))

    async def reset_password_for_email(self, email: str, redirect_to: Optional[str] = None) -> None:
        options = {"redirect_to": redirect_to} if redirect_to else {}
        await self._auth.reset_password_for_email(email, options)

    async def aclose(self) -> None:
        self._tracker.unsubscribe()
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._pending.clear()


__all__ = [
    "AuthApiError",
    "AuthRetryableError",
    "AuthListener",
    "SupabaseAuthAdapter",
    "create_supabase",
    "event_from_sdk",
    "session_from_sdk",
    "user_from_sdk",
]
