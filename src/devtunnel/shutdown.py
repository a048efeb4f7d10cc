"""Process-level hooks that stop cloudflared before the host process goes away."""

from __future__ import annotations

import asyncio
import atexit
import os
import signal
import sys
import threading
from collections.abc import Callable
from types import FrameType, TracebackType
from typing import Any

import structlog

logger = structlog.get_logger()

HOOKED_SIGNALS = ("SIGINT", "SIGTERM", "SIGQUIT", "SIGHUP")


def install_exit_hooks(on_exit: Callable[[], None]) -> None:
    """Call ``on_exit`` on interpreter exit, termination signals and crashes.

    Signal handlers chain to whatever handler was installed before. Call once
    per process; the supervisor keeps track of that.
    """
    atexit.register(on_exit)
    _install_signal_handlers(on_exit)
    _wrap_excepthook(on_exit)
    _wrap_loop_exception_handler(on_exit)


def _install_signal_handlers(on_exit: Callable[[], None]) -> None:
    if threading.current_thread() is not threading.main_thread():
        logger.debug("Not on main thread, skipping signal hooks")
        return

    for name in HOOKED_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        previous = signal.getsignal(sig)

        def handler(
            signum: int,
            frame: FrameType | None,
            previous: Any = previous,
        ) -> None:
            logger.debug("Received signal, stopping tunnel", signal=signal.Signals(signum).name)
            on_exit()
            if callable(previous):
                previous(signum, frame)
            elif previous != signal.SIG_IGN:
                # Re-deliver with the default disposition so the host still exits
                signal.signal(signum, signal.SIG_DFL)
                os.kill(os.getpid(), signum)

        signal.signal(sig, handler)


def _wrap_excepthook(on_exit: Callable[[], None]) -> None:
    previous = sys.excepthook

    def excepthook(
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        logger.error("Uncaught exception, stopping tunnel", error=str(exc))
        on_exit()
        previous(exc_type, exc, tb)

    sys.excepthook = excepthook


def _wrap_loop_exception_handler(on_exit: Callable[[], None]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    previous = loop.get_exception_handler()

    def handler(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        if context.get("exception") is not None:
            logger.error(
                "Unhandled error in event loop, stopping tunnel", message=context.get("message")
            )
            on_exit()
        if previous is not None:
            previous(loop, context)
        else:
            loop.default_exception_handler(context)

    loop.set_exception_handler(handler)
