"""Expose a local dev server through a Cloudflare Tunnel."""

__version__ = "0.1.0"

from .config import TunnelConfig, TunnelMode, resolve_config  # noqa: E402
from .exceptions import (  # noqa: E402
    ApiError,
    ConfigurationError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
    TunnelError,
)
from .session import TunnelSession  # noqa: E402
from .state import LifecycleState  # noqa: E402

__all__ = [
    "ApiError",
    "ConfigurationError",
    "LifecycleState",
    "ProcessExitError",
    "ProcessSpawnError",
    "ProcessTimeoutError",
    "TunnelConfig",
    "TunnelError",
    "TunnelMode",
    "TunnelSession",
    "__version__",
    "resolve_config",
]
