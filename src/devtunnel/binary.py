"""Locate the cloudflared binary.

Installing cloudflared is left to the user; this module only finds it.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import structlog

from .config import DevTunnelSettings
from .exceptions import ProcessSpawnError

logger = structlog.get_logger()

BINARY_NAME = "cloudflared"
INSTALL_URL = (
    "https://developers.cloudflare.com/cloudflare-one/connections/connect-networks/"
    "downloads/"
)


def find_cloudflared(
    explicit: str | None = None,
    settings: DevTunnelSettings | None = None,
) -> str:
    """Return the path of the cloudflared binary.

    Resolution order: ``explicit``, then DEVTUNNEL_CLOUDFLARED_PATH, then PATH.

    Raises:
        ProcessSpawnError: If no executable cloudflared can be found.
    """
    configured = explicit or (settings or DevTunnelSettings()).cloudflared_path
    if configured:
        path = Path(configured).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        msg = f"cloudflared binary not found or not executable at {path}"
        raise ProcessSpawnError(msg)

    found = shutil.which(BINARY_NAME)
    if found:
        logger.debug("Found cloudflared on PATH", path=found)
        return found

    msg = f"cloudflared not on PATH. Install it: {INSTALL_URL}"
    raise ProcessSpawnError(msg)
