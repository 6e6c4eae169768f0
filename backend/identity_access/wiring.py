"""
Composition root for the client-side auth stack.

Why:
    The session coordinator, role resolver, diagnostics and watchdog share one
    supabase-py `AsyncClient`, one plain HTTP client (role function and
    reachability probes), one loading registry and one signal hub. Building
    them in one place keeps that sharing explicit and gives the host a single
    object to start and tear down (no module-level singletons).

Behavior:
    - Missing configuration is not an error: the stack is built without an
      SDK client and the coordinator reports "not_configured".
    - An SDK client that cannot be created (e.g. a malformed key) is logged
      and treated the same way.
    - `AuthStack.aclose()` stops the watchdog, closes the coordinator, the
      auth adapter and the shared HTTP client, in that order.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
import logging

import httpx

from .config import SupabaseSettings, load_settings
from .diagnostics import ConnectivityDiagnostics
from .roles import RoleResolver
from .session import CoordinatorTimings, SessionCoordinator
from .signals import LifecycleSignals
from .supabase_auth import SupabaseAuthAdapter, create_supabase
from .watchdog import Callback, LoadingRegistry, StuckStateWatchdog

logger = logging.getLogger("carecall.identity_access")


@dataclass
class AuthStack:
    settings: SupabaseSettings
    signals: LifecycleSignals
    registry: LoadingRegistry
    session: SessionCoordinator
    watchdog: StuckStateWatchdog
    http: httpx.AsyncClient
    client: Optional[Any] = None
    auth: Optional[SupabaseAuthAdapter] = None

    async def start(self) -> None:
        self.watchdog.start()
        await self.session.start()

    async def aclose(self) -> None:
        await self.watchdog.close()
        await self.session.close()
        if self.auth is not None:
            await self.auth.aclose()
        await self.http.aclose()

    async def __aenter__(self) -> "AuthStack":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


async def _client_for(settings: SupabaseSettings) -> Optional[Any]:
    if not settings.configured:
        logger.error("backend not configured: missing %s", ", ".join(settings.missing()))
        return None
    try:
        return await create_supabase(settings)
    except Exception as exc:
        logger.error("backend client unavailable: %s", type(exc).__name__)
        return None


async def build_auth_stack(
    settings: Optional[SupabaseSettings] = None,
    *,
    client: Optional[Any] = None,
    signals: Optional[LifecycleSignals] = None,
    reload: Optional[Callback] = None,
    on_recovery_attempt: Optional[Callback] = None,
    http: Optional[httpx.AsyncClient] = None,
    timings: CoordinatorTimings = CoordinatorTimings(),
) -> AuthStack:
    """Wire the stack; pass `client` to reuse an existing SDK client."""
    settings = settings or load_settings()
    signals = signals if signals is not None else LifecycleSignals()
    registry = LoadingRegistry()
    http = http if http is not None else httpx.AsyncClient(timeout=settings.request_timeout)
    if client is None:
        client = await _client_for(settings)

    auth = resolver = diagnostics = None
    if client is not None:
        auth = SupabaseAuthAdapter(client)
        resolver = RoleResolver(settings, http=http, client=client, auth=auth)
        diagnostics = ConnectivityDiagnostics(settings, http=http, client=client)

    session = SessionCoordinator(
        auth,
        resolver,
        client=client,
        signals=signals,
        diagnostics=diagnostics,
        registry=registry,
        timings=timings,
    )
    watchdog = StuckStateWatchdog(
        registry,
        signals,
        reload=reload,
        on_recovery_attempt=on_recovery_attempt,
    )
    return AuthStack(
        settings=settings,
        signals=signals,
        registry=registry,
        session=session,
        watchdog=watchdog,
        http=http,
        client=client,
        auth=auth,
    )


__all__ = ["AuthStack", "build_auth_stack"]
