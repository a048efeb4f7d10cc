"""Cancellable deferred actions shared by timeouts, backoff and kill escalation."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable
from typing import Any


class DeferredAction:
    """Run a callback once after a delay unless cancelled first.

    On a running event loop the callback is scheduled with ``call_later``;
    otherwise (e.g. from an atexit hook) a daemon thread timer is used.
    """

    def __init__(self, delay: float, callback: Callable[[], Any] | None = None) -> None:
        self.delay = delay
        self._callback = callback
        self._handle: asyncio.TimerHandle | threading.Timer | None = None
        self._done: asyncio.Event | None = None
        self.fired = False
        self.cancelled = False

    def start(self) -> DeferredAction:
        """Schedule the action and return self."""
        if self._handle is not None:
            return self
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            timer = threading.Timer(self.delay, self._fire)
            timer.daemon = True
            self._handle = timer
            timer.start()
        else:
            self._done = asyncio.Event()
            self._handle = loop.call_later(self.delay, self._fire)
        return self

    def _fire(self) -> None:
        if self.cancelled or self.fired:
            return
        self.fired = True
        try:
            if self._callback is not None:
                self._callback()
        finally:
            if self._done is not None:
                self._done.set()

    def cancel(self) -> None:
        """Cancel the action if it has not fired yet."""
        if self.fired or self.cancelled:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()
        if self._done is not None:
            self._done.set()

    @property
    def pending(self) -> bool:
        return self._handle is not None and not (self.fired or self.cancelled)

    async def wait(self) -> bool:
        """Wait until the action fires or is cancelled. Returns True if it fired."""
        if self._done is None:
            self.start()
        if self._done is not None:
            await self._done.wait()
        return self.fired


async def defer(delay: float) -> None:
    """Suspend the current task for ``delay`` seconds."""
    await DeferredAction(delay).start().wait()
