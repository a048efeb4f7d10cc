"""Lifecycle state shared by the session and supervisor for one host process."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .models import TrackedCertificate

if TYPE_CHECKING:
    from .supervisor import DaemonHandle


@dataclass
class Routing:
    """Ids needed to re-push ingress when the local port changes."""

    account_id: str
    zone_id: str
    tunnel_id: str
    api_token: str = field(repr=False)


@dataclass
class LifecycleState:
    """Mutable tunnel state that outlives individual ``start`` calls.

    Create one per host process and pass it to the session; repeated starts
    with the same configuration then reuse the running daemon.
    """

    daemon: DaemonHandle | None = None
    fingerprint: str | None = None
    port: int | None = None
    # Always resolves to a string; "" when setup failed
    tunnel_url: asyncio.Future[str] | None = None
    shutting_down: bool = False
    exit_handlers_registered: bool = False
    certificates: dict[str, TrackedCertificate] = field(default_factory=dict)
    routing: Routing | None = None

    def has_live_daemon(self) -> bool:
        daemon = self.daemon
        return daemon is not None and daemon.alive

    def new_url_future(self) -> asyncio.Future[str]:
        """Replace the URL future with a pending one and return it."""
        self.clear_url()
        self.tunnel_url = asyncio.get_running_loop().create_future()
        return self.tunnel_url

    def resolve_url(self, url: str) -> None:
        future = self.tunnel_url
        if future is not None and not future.done():
            future.set_result(url)

    def clear_url(self) -> None:
        """Drop the cached URL, releasing anyone still waiting on it with ""."""
        self.resolve_url("")
        self.tunnel_url = None

    def current_url(self) -> str:
        """The resolved URL, or "" while pending or absent."""
        future = self.tunnel_url
        if future is None or not future.done() or future.cancelled():
            return ""
        return future.result()

    async def wait_url(self) -> str:
        future = self.tunnel_url
        if future is None:
            return ""
        return await asyncio.shield(future)

    def track_certificate(self, certificate: TrackedCertificate) -> None:
        self.certificates[certificate.id] = certificate

    def reset(self) -> None:
        """Forget the daemon and its configuration.

        Tracked certificates and the exit-hook flag belong to the host process
        and are kept.
        """
        self.clear_url()
        self.daemon = None
        self.fingerprint = None
        self.port = None
        self.shutting_down = False
        self.routing = None
