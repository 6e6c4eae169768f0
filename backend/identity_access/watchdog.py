"""
Loading-flag registry and stuck-state recovery watchdog.

Why:
    After a tab comes back from the background, in-flight fetches sometimes
    never settle and the dashboard would spin forever. Components register
    named loading flags here (no scanning of rendered text), and the watchdog
    escalates when flags stay active too long after a visibility change:

    1. "force-reset": flip every flag to false and trigger a fresh re-fetch.
    2. "page-reload": if loading persists beyond a further grace window, ask
       the host to reload.

Invariants:
    - Each tier fires at most once per stuck episode. The episode ends (and
      the "already attempted" guard resets) only once no flag is active.
    - While started, a per-flag sweep ends any single flag older than
      `flag_timeout`, so no flag stays true indefinitely.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional
import inspect
import logging
import time

from .signals import LifecycleSignals, Signal

logger = logging.getLogger("carecall.identity_access.watchdog")

Callback = Callable[..., Optional[Awaitable[None]]]

TIER_FORCE_RESET = "force-reset"
TIER_PAGE_RELOAD = "page-reload"
TIER_FLAG_TIMEOUT = "flag-timeout"
TIER_MANUAL = "manual"


async def _call(callback: Optional[Callback], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class LoadingRegistry:
    """Typed registry of named loading flags."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._active: Dict[str, float] = {}
        self._known: set[str] = set()
        self._reset_callbacks: List[Callback] = []

    def register(self, name: str) -> str:
        self._known.add(name)
        return name

    def begin(self, name: str) -> None:
        self._known.add(name)
        self._active.setdefault(name, self._clock())

    def end(self, name: str) -> None:
        self._active.pop(name, None)

    def is_active(self, name: str) -> bool:
        return name in self._active

    def any_active(self) -> bool:
        return bool(self._active)

    def active(self) -> List[str]:
        return sorted(self._active)

    def known(self) -> List[str]:
        return sorted(self._known)

    def started_at(self, name: str) -> Optional[float]:
        return self._active.get(name)

    @asynccontextmanager
    async def track(self, name: str) -> AsyncIterator[None]:
        self.begin(name)
        try:
            yield
        finally:
            self.end(name)

    def on_reset(self, callback: Callback) -> Callable[[], None]:
        """Register a re-fetch callback run after a forced reset."""
        self._reset_callbacks.append(callback)

        def _remove() -> None:
            try:
                self._reset_callbacks.remove(callback)
            except ValueError:
                pass

        return _remove

    def clear(self) -> List[str]:
        cleared = self.active()
        self._active.clear()
        return cleared

    async def force_reset(self) -> List[str]:
        """Clear every flag, then run the registered re-fetch callbacks."""
        cleared = self.clear()
        if cleared:
            logger.warning("force reset of loading flags: %s", ", ".join(cleared))
        results = await asyncio.gather(
            *(_call(callback) for callback in list(self._reset_callbacks)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("re-fetch after force reset failed: %s", type(result).__name__)
        return cleared


class StuckStateWatchdog:
    def __init__(
        self,
        registry: LoadingRegistry,
        signals: Optional[LifecycleSignals] = None,
        *,
        ceiling: float = 10.0,
        interval: float = 2.0,
        grace: float = 5.0,
        flag_timeout: Optional[float] = 30.0,
        force_reset: Optional[Callback] = None,
        reload: Optional[Callback] = None,
        on_recovery_attempt: Optional[Callback] = None,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
    ) -> None:
        self.registry = registry
        self.signals = signals
        self.ceiling = ceiling
        self.interval = interval
        self.grace = grace
        self.flag_timeout = flag_timeout
        self._force_reset = force_reset or registry.force_reset
        self._reload = reload
        self._on_recovery_attempt = on_recovery_attempt
        self._clock = clock
        self.enabled = enabled

        self.last_visible = clock()
        self.recovery_attempted = False
        self.tier: Optional[str] = None
        self._was_hidden = False
        self._episode_started: Optional[float] = None
        self._reset_at: Optional[float] = None
        self._monitor: Optional[asyncio.Task] = None
        self._sweeper: Optional[asyncio.Task] = None
        self._resetting: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # --- Lifecycle -------------------------------------------------------------

    def start(self) -> None:
        if not self.enabled:
            return
        if self.signals is not None and self._unsubscribe is None:
            self._unsubscribe = self.signals.subscribe(self._on_signal)
        if self.flag_timeout is not None and self._sweeper is None:
            self._sweeper = asyncio.ensure_future(self._sweep_loop())

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in (self._monitor, self._sweeper, self._resetting):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._monitor = None
        self._sweeper = None
        self._resetting = None

    @property
    def is_monitoring(self) -> bool:
        return self._monitor is not None and not self._monitor.done()

    # --- Signals ---------------------------------------------------------------

    async def _on_signal(self, signal: Signal) -> None:
        if signal is Signal.HIDDEN:
            self._was_hidden = True
            logger.debug("tab hidden; marking for recovery monitoring")
        elif signal is Signal.VISIBLE:
            self.handle_visible()
        elif signal is Signal.FOCUS and self._was_hidden:
            self.handle_visible()

    def handle_visible(self) -> None:
        self.last_visible = self._clock()
        if not self._was_hidden:
            return
        self._was_hidden = False
        self._reset_episode()
        if self.registry.any_active():
            self._episode_started = self.last_visible
        logger.info("tab visible again; monitoring for stuck loading states")
        if self._monitor is not None and not self._monitor.done():
            self._monitor.cancel()
        self._monitor = asyncio.ensure_future(self._monitor_loop())

    # --- Monitoring ------------------------------------------------------------

    def _reset_episode(self) -> None:
        self.recovery_attempted = False
        self.tier = None
        self._episode_started = None
        self._reset_at = None

    async def _monitor_loop(self) -> None:
        deadline = self.last_visible + self.ceiling + self.grace + 2 * self.interval
        # After a force reset keep polling until it settles or the reload tier fires.
        while self._clock() <= deadline or self.tier == TIER_FORCE_RESET:
            await asyncio.sleep(self.interval)
            await self.check()
            if self.tier == TIER_PAGE_RELOAD:
                return

    async def check(self) -> Optional[str]:
        """Inspect loading flags once; return the tier fired, if any."""
        if not self.enabled:
            return None
        now = self._clock()
        if not self.registry.any_active():
            if self.tier is not None:
                logger.info("loading settled after %s", self.tier)
            self._reset_episode()
            return None
        if self._episode_started is None:
            self._episode_started = now
        stuck_for = now - self._episode_started
        if self.tier is None and stuck_for > self.ceiling:
            logger.error(
                "stuck loading detected: %s flag(s) active for %.1fs",
                len(self.registry.active()),
                stuck_for,
            )
            self.recovery_attempted = True
            self.tier = TIER_FORCE_RESET
            self._reset_at = now
            await self._report(TIER_FORCE_RESET)
            # Re-fetches may hang too; keep polling while they run.
            self._resetting = asyncio.ensure_future(self._run_force_reset())
            return TIER_FORCE_RESET
        if self.tier == TIER_FORCE_RESET and self._reset_at is not None and now - self._reset_at > self.grace:
            self.tier = TIER_PAGE_RELOAD
            await self._do_reload()
            return TIER_PAGE_RELOAD
        return None

    async def _run_force_reset(self) -> None:
        try:
            await _call(self._force_reset)
        except Exception as exc:
            logger.error("force reset failed: %s", type(exc).__name__)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.sweep()

    async def sweep(self) -> List[str]:
        """End every single flag that has been active longer than flag_timeout."""
        if self.flag_timeout is None:
            return []
        now = self._clock()
        expired = [
            name
            for name in self.registry.active()
            if now - (self.registry.started_at(name) or now) > self.flag_timeout
        ]
        for name in expired:
            logger.warning("loading flag %s timed out; forcing it off", name)
            self.registry.end(name)
        if expired:
            await self._report(TIER_FLAG_TIMEOUT)
        return expired

    async def trigger_recovery(self, force: bool = False) -> None:
        if not force and self.recovery_attempted:
            return
        logger.info("manual recovery triggered")
        self.recovery_attempted = True
        await self._report(TIER_MANUAL)
        if force:
            await self._do_reload()

    async def _do_reload(self) -> None:
        logger.error("reloading due to persistent loading state")
        await self._report(TIER_PAGE_RELOAD)
        if self._reload is None:
            logger.error("reload requested but no reload handler is installed")
            return
        try:
            await _call(self._reload)
        except Exception as exc:
            logger.error("reload handler failed: %s", type(exc).__name__)

    async def _report(self, tier: str) -> None:
        try:
            await _call(self._on_recovery_attempt, tier)
        except Exception as exc:
            logger.error("recovery callback failed: %s", type(exc).__name__)


__all__ = [
    "LoadingRegistry",
    "StuckStateWatchdog",
    "TIER_FORCE_RESET",
    "TIER_PAGE_RELOAD",
    "TIER_FLAG_TIMEOUT",
    "TIER_MANUAL",
]
