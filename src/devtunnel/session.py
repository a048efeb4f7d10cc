"""Top-level tunnel session: decides reuse vs restart and drives setup."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from . import host as host_helpers
from .cloudflare_client import CloudflareClient
from .config import DevTunnelSettings, TunnelConfig, config_fingerprint
from .exceptions import ConfigurationError, TunnelError, diagnose
from .host import DEFAULT_HOST, local_target, normalize_address
from .reconciler import ResourceReconciler
from .state import LifecycleState, Routing
from .supervisor import KILL_ESCALATION_DELAY, ProcessSupervisor
from .timers import defer

logger = structlog.get_logger()

DEFAULT_PORT = 5173
PORT_CHANGE_RESPAWN_DELAY = 1.0


class TunnelSession:
    """Coordinates reconciliation and the cloudflared daemon for one config.

    The LifecycleState passed in is meant to live as long as the host
    process; a new session built on the same state reuses a running daemon
    when the configuration fingerprint is unchanged.
    """

    def __init__(
        self,
        config: TunnelConfig,
        state: LifecycleState,
        *,
        client: CloudflareClient | None = None,
        supervisor: ProcessSupervisor | None = None,
        reconciler: ResourceReconciler | None = None,
        settings: DevTunnelSettings | None = None,
    ) -> None:
        self.config = config
        self.state = state
        self.settings = settings or DevTunnelSettings()
        self.client = client or CloudflareClient(
            base_url=self.settings.api_base_url,
            timeout=self.settings.request_timeout,
            debug=config.debug,
        )
        self.supervisor = supervisor or ProcessSupervisor(config, state, settings=self.settings)
        self.reconciler = reconciler or ResourceReconciler(self.client, config)

    async def start(self, address: Any = None) -> str:
        """Bring the tunnel up for a dev server and return its public URL.

        Args:
            address: Address the dev server is bound to, if known

        Returns:
            The public URL, or "" when the tunnel is disabled

        Raises:
            TunnelError: If setup fails; ``hints`` carries diagnostic advice
        """
        config = self.config
        if not config.enabled:
            logger.info("Tunnel disabled")
            return ""

        server = normalize_address(address)
        host = server.host if server else DEFAULT_HOST
        port = config.port or (server.port if server else DEFAULT_PORT)
        fingerprint = config_fingerprint(config, port)
        state = self.state

        if state.fingerprint == fingerprint and state.has_live_daemon():
            logger.info("Reusing running tunnel", pid=state.daemon.pid if state.daemon else None)
            state.shutting_down = False
            self.supervisor.register_exit_handlers()
            return await state.wait_url()

        self.supervisor.terminate()
        state.reset()
        pending = state.new_url_future()
        target = local_target(host, port)

        try:
            if config.is_persistent:
                url = await self._start_persistent(target)
            else:
                url = await self._start_ephemeral(target)
        except Exception as e:
            if not pending.done():
                pending.set_result("")
            hints = diagnose(e, config.hostname)
            if isinstance(e, TunnelError):
                e.hints = hints
            logger.error("Tunnel setup failed", error=str(e), hints=hints)
            raise

        state.fingerprint = fingerprint
        state.port = port
        state.resolve_url(url)
        self.supervisor.register_exit_handlers()
        return url

    async def _start_ephemeral(self, target: str) -> str:
        logger.debug("Quick tunnel connecting to local target", target=target)
        handle = await self.supervisor.start_ephemeral(target)
        return handle.url or ""

    async def _start_persistent(self, target: str) -> str:
        config = self.config
        token = config.api_token or self.settings.api_token
        if not token:
            msg = (
                "API token is required in persistent mode. Provide it via the api_token "
                "option or the CLOUDFLARE_API_TOKEN environment variable."
            )
            raise ConfigurationError(msg)

        self.supervisor.ensure_binary()
        result = await self.reconciler.reconcile(token, target)
        if result.ordered_certificate is not None:
            self.state.track_certificate(result.ordered_certificate)

        await self.supervisor.start_persistent(result.tunnel_token)
        self.state.routing = Routing(
            account_id=result.account_id,
            zone_id=result.zone_id,
            tunnel_id=result.tunnel_id,
            api_token=token,
        )
        logger.info("Tunnel started", url=config.public_url, tunnel_id=result.tunnel_id)
        return config.public_url

    async def on_server_listening(self, address: Any) -> None:
        """React to the dev server's actual bound address.

        A quick tunnel is respawned against the new port; a named tunnel only
        gets its ingress re-pushed. Errors are logged, not raised.
        """
        server = normalize_address(address)
        state = self.state
        if not self.config.enabled or server is None or state.port is None:
            return
        if server.port == state.port:
            return

        logger.info("Local port changed", old_port=state.port, new_port=server.port)
        target = local_target(server.host, server.port)
        try:
            if self.config.is_persistent:
                routing = state.routing
                if routing is None:
                    return
                await self.reconciler.push_ingress(
                    routing.api_token, routing.account_id, routing.tunnel_id, target
                )
            else:
                self.supervisor.terminate()
                await defer(PORT_CHANGE_RESPAWN_DELAY)
                pending = state.new_url_future()
                state.shutting_down = False
                try:
                    handle = await self.supervisor.start_ephemeral(target)
                except Exception:
                    if not pending.done():
                        pending.set_result("")
                    raise
                state.resolve_url(handle.url or "")
                logger.info("Quick tunnel updated", port=server.port, url=handle.url)

            state.fingerprint = config_fingerprint(self.config, server.port)
            state.port = server.port
        except Exception as e:
            logger.error("Failed to update tunnel for new port", port=server.port, error=str(e))

    def on_server_close(self) -> None:
        self.supervisor.terminate()

    async def close(self) -> None:
        """Stop the daemon, wait for it to exit and forget the session state."""
        handle = self.state.daemon
        self.supervisor.terminate()
        if handle is not None and handle.tasks:
            try:
                await asyncio.wait_for(handle.wait_closed(), timeout=KILL_ESCALATION_DELAY + 1.0)
            except TimeoutError:
                logger.warning("cloudflared did not exit in time", pid=handle.pid)
        self.state.reset()

    def tunnel_url(self) -> str:
        """The public URL, or "" while not ready or when disabled."""
        if not self.config.enabled:
            return ""
        return self.state.current_url()

    async def wait_tunnel_url(self) -> str:
        if not self.config.enabled:
            return ""
        return await self.state.wait_url()

    def extend_allowed_hosts(self, allowed: list[str] | bool | None) -> list[str] | bool:
        if not self.config.enabled:
            return allowed if allowed is not None else []
        extended = host_helpers.extend_allowed_hosts(allowed, self.config)
        logger.debug("Allowed hosts", hosts=extended)
        return extended
