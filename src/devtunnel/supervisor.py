"""Supervise the cloudflared daemon process."""

from __future__ import annotations

import asyncio
import signal
import subprocess
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from .binary import find_cloudflared
from .config import DevTunnelSettings, TunnelConfig, TunnelMode
from .exceptions import (
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from .output import LineKind, OutputLine, classify_line
from .shutdown import install_exit_hooks
from .state import LifecycleState
from .timers import DeferredAction

logger = structlog.get_logger()

QUICK_TUNNEL_TIMEOUT = 30.0  # seconds to wait for a trycloudflare.com URL
KILL_ESCALATION_DELAY = 2.0  # seconds between SIGTERM and SIGKILL
STARTING_NOTICE_DELAY = 3.0
READER_DRAIN_TIMEOUT = 1.0
STREAM_LIMIT = 1024 * 1024  # bytes per output line before it is skipped


def _signal_name(returncode: int | None) -> str | None:
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return str(-returncode)


def _mask_args(args: list[str]) -> list[str]:
    masked = list(args)
    for i, arg in enumerate(masked[:-1]):
        if arg == "--token":
            masked[i + 1] = "***"
    return masked


@dataclass(eq=False)
class DaemonHandle:
    """A spawned cloudflared process and what is known about it."""

    process: asyncio.subprocess.Process
    mode: TunnelMode
    local_target: str | None = None
    url: str | None = None
    killed: bool = False
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    escalation: DeferredAction | None = None
    tasks: list[asyncio.Task[Any]] = field(default_factory=list)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        return not self.killed and self.process.returncode is None

    async def wait_closed(self) -> None:
        await self.exited.wait()


class ProcessSupervisor:
    """Spawn, watch and stop cloudflared.

    The supervisor records the current daemon in the shared LifecycleState so
    exit hooks and later sessions can find and stop it.
    """

    def __init__(
        self,
        config: TunnelConfig,
        state: LifecycleState,
        binary_path: str | None = None,
        ready_timeout: float = QUICK_TUNNEL_TIMEOUT,
        settings: DevTunnelSettings | None = None,
    ) -> None:
        self.config = config
        self.state = state
        self.binary_path = binary_path
        self.ready_timeout = ready_timeout
        self.settings = settings

    def ensure_binary(self) -> str:
        """Locate cloudflared once and remember it."""
        if self.binary_path is None:
            self.binary_path = find_cloudflared(settings=self.settings)
        return self.binary_path

    def _base_args(self, log_level: str) -> list[str]:
        args = ["tunnel", "--loglevel", log_level]
        if self.config.log_file:
            args += ["--logfile", self.config.log_file]
        return args

    async def _spawn(
        self, args: list[str], mode: TunnelMode, local_target: str | None = None
    ) -> DaemonHandle:
        binary = self.ensure_binary()
        logger.debug("Spawning cloudflared", binary=binary, args=_mask_args(args))

        kwargs: dict[str, Any] = {}
        if sys.platform == "win32":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                **kwargs,
            )
        except OSError as e:
            msg = f"Failed to start cloudflared process: {e}"
            raise ProcessSpawnError(msg) from e

        handle = DaemonHandle(process=process, mode=mode, local_target=local_target)
        self.state.daemon = handle
        logger.debug("Spawned cloudflared", pid=process.pid, mode=mode.value)
        return handle

    def _watch(
        self,
        handle: DaemonHandle,
        on_line: Callable[[OutputLine, str], None],
        on_exit: Callable[[int], None],
    ) -> None:
        process = handle.process
        assert process.stdout is not None and process.stderr is not None
        readers = [
            asyncio.create_task(self._pump(handle, process.stdout, "stdout", on_line)),
            asyncio.create_task(self._pump(handle, process.stderr, "stderr", on_line)),
        ]
        handle.tasks = [*readers, asyncio.create_task(self._watch_exit(handle, readers, on_exit))]

    async def _pump(
        self,
        handle: DaemonHandle,
        stream: asyncio.StreamReader,
        name: str,
        on_line: Callable[[OutputLine, str], None],
    ) -> None:
        while True:
            try:
                raw = await stream.readline()
            except (ValueError, asyncio.LimitOverrunError) as e:
                # readline drops the oversized chunk, so reading can resume
                logger.debug("Skipped oversized cloudflared output", stream=name, error=str(e))
                continue
            if not raw:
                break
            line = classify_line(raw.decode("utf-8", errors="replace"))
            on_line(line, name)
            self._relay(handle, line, name)

    async def _watch_exit(
        self,
        handle: DaemonHandle,
        readers: list[asyncio.Task[None]],
        on_exit: Callable[[int], None],
    ) -> None:
        returncode = await handle.process.wait()
        if handle.escalation is not None:
            handle.escalation.cancel()
        await asyncio.wait(readers, timeout=READER_DRAIN_TIMEOUT)

        log = logger.debug if handle.killed else logger.info
        log(
            "cloudflared exited",
            pid=handle.pid,
            returncode=returncode,
            signal=_signal_name(returncode),
        )
        handle.exited.set()
        on_exit(returncode)

    def _relay(self, handle: DaemonHandle, line: OutputLine, stream: str) -> None:
        """Forward a daemon output line to the log, filtered by verbosity."""
        config = self.config
        stale = handle.killed or handle is not self.state.daemon or self.state.shutting_down
        if stale and not config.debug:
            return
        if not line.text.strip():
            return
        if line.kind is LineKind.BENIGN:
            if config.log_level == "debug":
                logger.debug("cloudflared", stream=stream, line=line.text)
            return
        if line.informational and config.effective_log_level not in ("debug", "info"):
            return
        if line.kind is LineKind.ALERT and stream == "stderr":
            logger.warning("cloudflared", stream=stream, line=line.text)
        else:
            logger.info("cloudflared", stream=stream, line=line.text)

    async def start_ephemeral(self, local_target: str) -> DaemonHandle:
        """Start a quick tunnel and wait for its trycloudflare.com URL.

        Raises:
            ProcessSpawnError: If cloudflared cannot be started
            ProcessTimeoutError: If no URL shows up within ``ready_timeout``
            ProcessExitError: If cloudflared exits before printing a URL
        """
        args = [*self._base_args("info"), "--url", local_target]
        handle = await self._spawn(args, TunnelMode.EPHEMERAL, local_target)
        result: asyncio.Future[str] = asyncio.get_running_loop().create_future()

        def fail(error: Exception) -> None:
            if not result.done():
                result.set_exception(error)

        def on_line(line: OutputLine, stream: str) -> None:
            if stream == "stderr" and line.url and not result.done():
                result.set_result(line.url)

        def on_exit(returncode: int) -> None:
            fail(ProcessExitError(returncode, _signal_name(returncode)))

        timeout = self.ready_timeout
        timer = DeferredAction(timeout, lambda: fail(ProcessTimeoutError(timeout))).start()
        self._watch(handle, on_line, on_exit)
        try:
            url = await result
        except BaseException:
            self._stop(handle)
            raise
        finally:
            timer.cancel()

        handle.url = url
        handle.ready.set()
        logger.info("Quick tunnel ready", url=url, pid=handle.pid)
        return handle

    async def start_persistent(self, token: str) -> DaemonHandle:
        """Run a named tunnel with its connector token.

        Returns as soon as the process is spawned; ``handle.ready`` is set once
        cloudflared reports a registered connection.
        """
        args = [*self._base_args(self.config.effective_log_level), "run", "--token", token]
        handle = await self._spawn(args, TunnelMode.PERSISTENT)
        hostname = self.config.hostname

        def starting_notice() -> None:
            if not handle.ready.is_set() and handle.alive:
                logger.info("Tunnel is starting, waiting for connection", hostname=hostname)

        notice = DeferredAction(STARTING_NOTICE_DELAY, starting_notice).start()

        def on_line(line: OutputLine, stream: str) -> None:
            if stream == "stdout" and line.kind is LineKind.READY and not handle.ready.is_set():
                handle.ready.set()
                notice.cancel()
                logger.info("Tunnel connection registered", hostname=hostname, pid=handle.pid)

        def on_exit(returncode: int) -> None:
            notice.cancel()

        self._watch(handle, on_line, on_exit)
        return handle

    def terminate(self, sig: signal.Signals = signal.SIGTERM) -> None:
        """Stop the current daemon, if one is running.

        Marks the state as shutting down and drops the cached URL. A SIGTERM
        is followed by SIGKILL if the process is still alive after
        KILL_ESCALATION_DELAY seconds.
        """
        handle = self.state.daemon
        if handle is None or not handle.alive:
            return
        self.state.shutting_down = True
        self.state.clear_url()
        self._stop(handle, sig)

    def _stop(self, handle: DaemonHandle, sig: signal.Signals = signal.SIGTERM) -> None:
        process = handle.process
        if process.returncode is not None:
            handle.killed = True
            return

        logger.debug("Stopping cloudflared", pid=process.pid, signal=sig.name)
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            handle.killed = True
            return
        except OSError as e:
            logger.debug("Signal delivery failed", pid=process.pid, error=str(e))
            self._force_kill(handle)
        handle.killed = True

        if sig == signal.SIGTERM and handle.escalation is None:
            handle.escalation = DeferredAction(
                KILL_ESCALATION_DELAY, lambda: self._escalate(handle)
            ).start()

    def _escalate(self, handle: DaemonHandle) -> None:
        if handle.process.returncode is not None:
            return
        logger.warning("cloudflared did not exit, killing", pid=handle.pid)
        try:
            handle.process.kill()
        except ProcessLookupError:
            return
        except OSError as e:
            logger.debug("Kill failed", pid=handle.pid, error=str(e))
            self._force_kill(handle)

    def _force_kill(self, handle: DaemonHandle) -> None:
        if sys.platform != "win32":
            return
        # taskkill also takes down child processes of the daemon
        subprocess.run(
            ["taskkill", "/pid", str(handle.pid), "/T", "/F"],
            capture_output=True,
            check=False,
        )

    def register_exit_handlers(self) -> None:
        """Install exit hooks once per host process."""
        if self.state.exit_handlers_registered:
            return
        install_exit_hooks(self.terminate)
        self.state.exit_handlers_registered = True
