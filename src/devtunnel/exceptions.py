"""Custom exception classes for tunnel setup and supervision."""

from __future__ import annotations

from typing import Any

TOKEN_PERMISSIONS = (
    "Zone:Zone:Read, Zone:DNS:Edit, Zone:SSL and Certificates:Edit, "
    "Account:Cloudflare Tunnel:Edit"
)


class TunnelError(Exception):
    """Base exception for all tunnel-related errors."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.hints: list[str] = []


class ConfigurationError(TunnelError, ValueError):
    """Raised when tunnel options are invalid or incomplete."""


class ApiError(TunnelError):
    """Raised when a Cloudflare API call fails or returns an unexpected shape."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: str | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.errors = errors or []


class ProcessSpawnError(TunnelError):
    """Raised when the cloudflared process cannot be launched."""


class ProcessTimeoutError(TunnelError):
    """Raised when a quick tunnel URL is not seen within the readiness window."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Quick tunnel URL not found in output within {timeout:g} seconds")


class ProcessExitError(TunnelError):
    """Raised when cloudflared exits before producing a tunnel URL."""

    def __init__(self, returncode: int | None, signal_name: str | None = None) -> None:
        self.returncode = returncode
        self.signal_name = signal_name
        super().__init__(
            f"Quick tunnel process exited before URL was found "
            f"(code: {returncode}, signal: {signal_name})"
        )


def diagnose(error: BaseException, hostname: str | None = None) -> list[str]:
    """Return actionable hints for a setup failure.

    Hints are picked by matching known substrings of the error message, so
    they also apply to errors raised outside this package.
    """
    message = str(error).lower()

    if "api token" in message or "authentication error" in message:
        return [
            "Check your API token at: https://dash.cloudflare.com/profile/api-tokens",
            f"Required permissions: {TOKEN_PERMISSIONS}",
        ]
    if "zone" in message and "not found" in message:
        domain = f"'{hostname}'" if hostname else "the hostname's"
        return [f"Make sure {domain} domain is added to your Cloudflare account"]
    if "cloudflared" in message:
        return [
            "Make sure the cloudflared binary is installed and on PATH, "
            "or set DEVTUNNEL_CLOUDFLARED_PATH to its location"
        ]
    return []
