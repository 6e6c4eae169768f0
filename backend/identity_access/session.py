"""
Session coordinator: the single authority for "who is signed in, with what role".

Why:
    The dashboard must always reach a decisive auth state (authenticated,
    unauthenticated, or not configured) no matter how flaky the network is or
    how often the user switches tabs. This module reconciles the local
    identity with the backend session and is the only writer of that identity.

Design:
    - Pull: `refresh(trigger)` runs one validation cycle. At most one cycle is
      in flight; concurrent callers await the same task. A cycle that finished
      less than a cooldown ago is not repeated (1.5s for generic triggers,
      10s for focus/visibility).
    - Push: auth-state-change events from the backend client update the
      identity independently of any running cycle.
    - Both writers take a monotonically increasing ticket when they START and
      commit only if no later-started writer committed first. Sign-out takes a
      ticket too, so an older slow validation cannot resurrect a signed-out
      identity.
    - Failures never escape: a failed session fetch resolves to
      unauthenticated, a failed role lookup resolves to DEFAULT_ROLE. Only
      sign-in/sign-up/password-reset errors propagate to the caller.

Lifecycle:
    `await coordinator.start()` subscribes to auth events and lifecycle
    signals and runs the initial validation; `await coordinator.close()`
    unsubscribes and cancels background work. `async with` does both.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional
import inspect
import itertools
import logging
import time

from supabase import AsyncClient

from .config import ConfigurationError
from .diagnostics import ConnectivityDiagnostics, DiagnosticsReport
from .domain import DEFAULT_ROLE, AuthChangeEvent, AuthSession, AuthUser, Identity
from .resilience import retry_with_backoff
from .roles import RoleResolver
from .signals import LifecycleSignals, Signal
from .supabase_auth import SupabaseAuthAdapter
from .watchdog import LoadingRegistry

logger = logging.getLogger("carecall.identity_access")

SESSION_FLAG = "auth.session"

STATUS_NOT_CONFIGURED = "not_configured"
STATUS_LOADING = "loading"
STATUS_AUTHENTICATED = "authenticated"
STATUS_UNAUTHENTICATED = "unauthenticated"

FOCUS_TRIGGERS = frozenset({"focus", "visibility"})

IdentityListener = Callable[[Optional[Identity]], Optional[Awaitable[None]]]


@dataclass
class ValidationAttempt:
    """One coordination cycle; ephemeral, never persisted."""

    trigger: str
    started_at: float
    outcome: str = "pending"
    identity: Optional[Identity] = None
    finished_at: Optional[float] = None


@dataclass(frozen=True)
class CoordinatorTimings:
    generic_cooldown: float = 1.5
    focus_cooldown: float = 10.0
    request_timeout: float = 8.0
    retries: int = 1
    retry_base_delay: float = 0.5


@dataclass
class _Counters:
    started: int = 0
    rejected: int = 0
    joined: int = 0
    history: List[ValidationAttempt] = field(default_factory=list)


class SessionCoordinator:
    def __init__(
        self,
        auth: Optional[SupabaseAuthAdapter],
        resolver: Optional[RoleResolver],
        *,
        client: Optional[AsyncClient] = None,
        signals: Optional[LifecycleSignals] = None,
        diagnostics: Optional[ConnectivityDiagnostics] = None,
        registry: Optional[LoadingRegistry] = None,
        timings: CoordinatorTimings = CoordinatorTimings(),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._auth = auth
        self._resolver = resolver
        self._client = client
        self._signals = signals
        self._diagnostics = diagnostics
        self.registry = registry if registry is not None else LoadingRegistry(clock)
        self.timings = timings
        self._clock = clock

        self._identity: Optional[Identity] = None
        self._loading = self.configured
        self.offline_assumed = False
        self.stats = _Counters()

        self._inflight: Optional[asyncio.Task] = None
        self._last_completed: Optional[float] = None
        self._tickets = itertools.count(1)
        self._committed_ticket = 0
        self._listeners: List[IdentityListener] = []
        self._subscription: Optional[Any] = None
        self._unsubscribe_signals: Optional[Callable[[], None]] = None
        self._background: set[asyncio.Task] = set()
        if self._loading:
            self.registry.begin(SESSION_FLAG)

    # --- Public state ------------------------------------------------------------

    @property
    def configured(self) -> bool:
        return self._auth is not None

    @property
    def current_identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def is_loading(self) -> bool:
        return self._loading

    @property
    def status(self) -> str:
        if not self.configured:
            return STATUS_NOT_CONFIGURED
        if self._loading:
            return STATUS_LOADING
        return STATUS_AUTHENTICATED if self._identity else STATUS_UNAUTHENTICATED

    @property
    def validation_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Observe identity changes; returns a callable that removes the listener."""
        self._listeners.append(listener)

        def _remove() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _remove

    # --- Lifecycle ---------------------------------------------------------------

    async def start(self) -> Optional[Identity]:
        if not self.configured:
            logger.error("auth backend not configured; staying signed out")
            self._set_loading(False)
            return None
        if self._subscription is None:
            self._subscription = self._auth.on_auth_state_change(self._on_auth_event)
        if self._signals is not None and self._unsubscribe_signals is None:
            self._unsubscribe_signals = self._signals.subscribe(self._on_signal)
        return await self.refresh("mount")

    async def close(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        if self._unsubscribe_signals is not None:
            self._unsubscribe_signals()
            self._unsubscribe_signals = None
        tasks = list(self._background)
        if self._inflight is not None and not self._inflight.done():
            tasks.append(self._inflight)
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._background.clear()
        self._inflight = None

    async def __aenter__(self) -> "SessionCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # --- Validation cycle (pull) ---------------------------------------------------

    def _cooldown_for(self, trigger: str) -> float:
        if trigger in FOCUS_TRIGGERS:
            return self.timings.focus_cooldown
        return self.timings.generic_cooldown

    async def refresh(self, trigger: str = "manual") -> Optional[Identity]:
        """Run (or join) one validation cycle and return the resulting identity."""
        if not self.configured:
            return None
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            self.stats.joined += 1
            logger.debug("validation already in flight; joining (%s)", trigger)
            return await asyncio.shield(inflight)
        if trigger != "mount" and self._last_completed is not None:
            since = self._clock() - self._last_completed
            if since < self._cooldown_for(trigger):
                self.stats.rejected += 1
                logger.debug("validation skipped (%s): last cycle %.2fs ago", trigger, since)
                return self._identity
        self.stats.started += 1
        task = asyncio.ensure_future(self._validate(trigger))
        self._inflight = task
        return await asyncio.shield(task)

    async def _validate(self, trigger: str) -> Optional[Identity]:
        attempt = ValidationAttempt(trigger=trigger, started_at=self._clock())
        ticket = next(self._tickets)
        self._set_loading(True)
        try:
            try:
                session = await retry_with_backoff(
                    self._auth.get_session,
                    retries=self.timings.retries,
                    base_delay=self.timings.retry_base_delay,
                    timeout=self.timings.request_timeout,
                    label="session fetch",
                )
            except Exception as exc:
                logger.warning("session validation failed (%s): %s", trigger, type(exc).__name__)
                self._schedule_diagnostics()
                attempt.outcome = "failure"
                await self._commit(ticket, None)
                return self._identity
            self.offline_assumed = False
            identity = None
            if session is not None and session.user is not None:
                identity = await self._identity_for(session.user)
            attempt.outcome = "success"
            attempt.identity = identity
            await self._commit(ticket, identity)
            return self._identity
        except Exception as exc:
            # A validation cycle never raises.
            logger.error("unexpected validation error (%s): %s", trigger, type(exc).__name__)
            attempt.outcome = "failure"
            await self._commit(ticket, None)
            return self._identity
        finally:
            attempt.finished_at = self._clock()
            self._last_completed = attempt.finished_at
            self.stats.history.append(attempt)
            del self.stats.history[:-20]
            self._set_loading(False)

    async def _identity_for(self, user: AuthUser) -> Identity:
        role = DEFAULT_ROLE
        if self._resolver is not None:
            try:
                role = await self._resolver.resolve_role(user.id) or DEFAULT_ROLE
            except Exception as exc:
                logger.warning("role resolution failed; using default role: %s", type(exc).__name__)
                role = DEFAULT_ROLE
        return Identity(id=user.id, email=user.email, role=role)

    async def _commit(self, ticket: int, identity: Optional[Identity]) -> bool:
        """Replace the identity unless a later-started writer already committed."""
        if ticket < self._committed_ticket:
            logger.debug("dropping stale identity write (ticket %s < %s)", ticket, self._committed_ticket)
            return False
        self._committed_ticket = ticket
        previous, self._identity = self._identity, identity
        if previous != identity:
            await self._notify(identity)
        return True

    async def _notify(self, identity: Optional[Identity]) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(identity)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("identity listener failed: %s", type(exc).__name__)

    def _set_loading(self, value: bool) -> None:
        self._loading = value
        if value:
            self.registry.begin(SESSION_FLAG)
        else:
            self.registry.end(SESSION_FLAG)

    def _schedule_diagnostics(self) -> None:
        if self._diagnostics is None:
            return
        task = asyncio.ensure_future(self._run_diagnostics())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _run_diagnostics(self) -> Optional[DiagnosticsReport]:
        try:
            report = await self._diagnostics.probe()
        except Exception as exc:
            logger.warning("diagnostics probe failed: %s", type(exc).__name__)
            self.offline_assumed = True
            return None
        self.offline_assumed = not report.reachable
        if self.offline_assumed:
            logger.warning("backend unreachable; continuing in offline-assumed mode: %s", "; ".join(report.details))
        return report

    # --- Auth events (push) ------------------------------------------------------

    async def _on_auth_event(self, event: AuthChangeEvent, session: Optional[AuthSession]) -> None:
        ticket = next(self._tickets)
        try:
            identity = None
            if event is not AuthChangeEvent.SIGNED_OUT and session is not None and session.user is not None:
                identity = await self._identity_for(session.user)
            logger.info("auth event %s", event.value)
            await self._commit(ticket, identity)
        except Exception as exc:
            logger.error("auth event %s handling failed: %s", event.value, type(exc).__name__)
        finally:
            if not self.validation_in_flight:
                self._set_loading(False)

    # --- Lifecycle signals -------------------------------------------------------

    async def _on_signal(self, signal: Signal) -> None:
        if signal is Signal.VISIBLE:
            await self.refresh("visibility")
        elif signal is Signal.FOCUS:
            await self.refresh("focus")
        elif signal is Signal.ONLINE:
            await self.refresh("online")

    # --- Commands ----------------------------------------------------------------

    def _require_auth(self) -> SupabaseAuthAdapter:
        if self._auth is None:
            raise ConfigurationError("auth backend not configured")
        return self._auth

    async def sign_in(self, email: str, password: str) -> None:
        """Exchange credentials; the SIGNED_IN event populates the identity.

        Raises AuthApiError (e.g. invalid credentials) so the UI can show it.
        """
        auth = self._require_auth()
        self._set_loading(True)
        try:
            await auth.sign_in_with_password(email, password)
        finally:
            if not self.validation_in_flight:
                self._set_loading(False)

    async def sign_up(self, email: str, password: str, name: str = "") -> Optional[AuthUser]:
        """Register an account and create its `users` row with the default role."""
        auth = self._require_auth()
        user = await auth.sign_up(email, password, {"name": name} if name else None)
        if user is not None and self._client is not None:
            await self._client.table("users").insert(
                {"id": user.id, "email": user.email or email, "name": name, "role": DEFAULT_ROLE}
            ).execute()
        return user

    async def request_password_reset(self, email: str, redirect_to: Optional[str] = None) -> None:
        await self._require_auth().reset_password_for_email(email, redirect_to)

    async def sign_out(self) -> None:
        """Invalidate the backend session and clear the identity immediately."""
        ticket = next(self._tickets)
        try:
            if self._auth is not None:
                await self._auth.sign_out()
        except Exception as exc:
            logger.warning("backend sign-out failed; cleared locally: %s", type(exc).__name__)
        finally:
            await self._commit(max(ticket, self._committed_ticket), None)

    def access_token(self) -> Optional[str]:
        """Token of the backend session as last reported by the SDK (None if signed out)."""
        session = self._auth.current_session if self._auth is not None else None
        return session.access_token if session is not None else None


__all__ = [
    "CoordinatorTimings",
    "SessionCoordinator",
    "ValidationAttempt",
    "SESSION_FLAG",
    "STATUS_AUTHENTICATED",
    "STATUS_LOADING",
    "STATUS_NOT_CONFIGURED",
    "STATUS_UNAUTHENTICATED",
]
