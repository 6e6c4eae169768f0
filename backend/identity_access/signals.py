"""
Lifecycle signals: tab visibility, window focus and network reachability.

Why:
    The session coordinator, the stuck-state watchdog and the data views all
    react to the same host events. A tiny hub keeps them decoupled from
    whatever shell produces the events (browser bridge, desktop shell, tests).

Behavior:
    - `emit()` updates the tracked state and awaits handlers in subscription
      order. A handler error is logged and does not stop later handlers.
    - Repeating the current state (e.g. `visible` while visible) is dropped;
      `focus` is always delivered because a refocus is a recheck trigger.
"""
from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, List, Optional
import inspect
import logging
import time

logger = logging.getLogger("carecall.identity_access.signals")


class Signal(str, Enum):
    VISIBLE = "visible"
    HIDDEN = "hidden"
    FOCUS = "focus"
    BLUR = "blur"
    ONLINE = "online"
    OFFLINE = "offline"


Handler = Callable[[Signal], Optional[Awaitable[None]]]


class LifecycleSignals:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._handlers: List[Handler] = []
        self.is_visible = True
        self.is_focused = True
        self.is_online = True
        self.last_change = clock()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register `handler`; returns a callable that removes it again."""
        self._handlers.append(handler)

        def _unsubscribe() -> None:
            try:
                self._handlers.remove(handler)
            except ValueError:
                pass

        return _unsubscribe

    def _apply(self, signal: Signal) -> bool:
        """Update tracked state; return False when nothing changed."""
        if signal is Signal.FOCUS:
            self.is_focused = True
            return True
        if signal is Signal.BLUR:
            changed, self.is_focused = self.is_focused, False
            return changed
        if signal in (Signal.VISIBLE, Signal.HIDDEN):
            visible = signal is Signal.VISIBLE
            if self.is_visible == visible:
                return False
            self.is_visible = visible
            return True
        online = signal is Signal.ONLINE
        if self.is_online == online:
            return False
        self.is_online = online
        return True

    async def emit(self, signal: Signal | str) -> None:
        signal = Signal(signal)
        if not self._apply(signal):
            return
        self.last_change = self._clock()
        logger.debug("lifecycle signal: %s", signal.value)
        for handler in list(self._handlers):
            try:
                result = handler(signal)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error("lifecycle handler failed for %s: %s", signal.value, type(exc).__name__)


__all__ = ["Signal", "LifecycleSignals"]
