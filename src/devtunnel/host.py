"""Helpers for integrating with the host dev server."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .config import TunnelConfig

DEFAULT_HOST = "localhost"
QUICK_TUNNEL_HOST_SUFFIX = ".trycloudflare.com"

# Wildcard bind addresses are reachable through loopback
_WILDCARD_HOSTS = {"0.0.0.0", "::", "", None}


@dataclass(frozen=True)
class ServerAddress:
    host: str
    port: int


def normalize_address(address: Any) -> ServerAddress | None:
    """Turn what a dev server reports as its bound address into a ServerAddress.

    Accepts ``(host, port, ...)`` tuples as returned by ``socket.getsockname()``,
    mappings with ``host``/``address`` and ``port`` keys, a ServerAddress, or
    None. Strings (unix sockets, pipes) have no port and yield None.
    """
    if address is None or isinstance(address, str):
        return None
    if isinstance(address, ServerAddress):
        return address
    if isinstance(address, Mapping):
        host = address.get("host", address.get("address"))
        port = address.get("port")
    elif isinstance(address, tuple | list) and len(address) >= 2:
        host, port = address[0], address[1]
    else:
        return None
    if not isinstance(port, int) or isinstance(port, bool):
        return None
    if host in _WILDCARD_HOSTS:
        host = DEFAULT_HOST
    return ServerAddress(host=str(host), port=port)


def local_target(host: str, port: int) -> str:
    """HTTP origin URL cloudflared forwards to; IPv6 literals are bracketed."""
    if host in _WILDCARD_HOSTS:
        host = DEFAULT_HOST
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    return f"http://{host}:{port}"


def extend_allowed_hosts(
    allowed: list[str] | bool | None, config: TunnelConfig
) -> list[str] | bool:
    """Add the tunnel's public host to a dev server allow list.

    ``True`` means every host is already allowed and is returned as is. Quick
    tunnels get a fresh hostname on every spawn, so ephemeral mode replaces the
    list with the trycloudflare.com suffix.
    """
    if allowed is True:
        return True
    if not config.is_persistent:
        return [QUICK_TUNNEL_HOST_SUFFIX]
    hosts = list(allowed) if isinstance(allowed, list) else []
    if config.hostname and config.hostname not in hosts:
        hosts.append(config.hostname)
    return hosts
