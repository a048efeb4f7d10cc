"""Configuration for devtunnel: option validation, environment settings, config files."""

import hashlib
import json
import re
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError

CF_API_BASE = "https://api.cloudflare.com/client/v4"

DEFAULT_TUNNEL_NAME = "dev-tunnel"
QUICK_TUNNEL_NAME = "quick-tunnel"

TUNNEL_NAME_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]*[A-Za-z0-9])?$")
LOG_LEVELS = ("debug", "info", "warn", "error", "fatal")

LogLevel = Literal["debug", "info", "warn", "error", "fatal"]

# Options that only make sense when a hostname is given
PERSISTENT_ONLY_OPTIONS = (
    "api_token",
    "account_id",
    "zone_id",
    "tunnel_name",
    "dns",
    "ssl",
    "cleanup",
)
KNOWN_OPTIONS = frozenset(
    {"hostname", "port", "log_file", "log_level", "debug", "enabled", *PERSISTENT_ONLY_OPTIONS}
)


class TunnelMode(str, Enum):
    """Tunnel operating mode."""

    EPHEMERAL = "ephemeral"
    PERSISTENT = "persistent"


def _check_tunnel_name(value: str) -> str:
    if not isinstance(value, str) or not TUNNEL_NAME_RE.match(value):
        raise ValueError(
            "tunnel_name must contain only letters, numbers, and hyphens. "
            "It cannot start or end with a hyphen."
        )
    return value


class CleanupConfig(BaseModel):
    """Cleanup of resources left behind by earlier configurations."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    auto_cleanup: bool = Field(
        default=True,
        description="Delete stale DNS records and certificates owned by this tunnel on startup",
    )
    preserve_tunnels: tuple[str, ...] = Field(
        default=(),
        description="Tunnel names whose tagged resources are never deleted",
    )

    @field_validator("preserve_tunnels")
    @classmethod
    def _validate_preserved(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for name in value:
            _check_tunnel_name(name)
        return value


class TunnelConfig(BaseModel):
    """Canonical, validated tunnel configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    mode: TunnelMode = Field(description="Ephemeral (random URL) or persistent (own hostname)")

    # Shared options
    port: int | None = Field(
        default=None,
        description="Local port of the dev server (auto-detected when omitted)",
    )
    log_file: str | None = Field(default=None, description="cloudflared --logfile path")
    log_level: LogLevel | None = Field(default=None, description="cloudflared --loglevel")
    debug: bool = Field(default=False, description="Verbose diagnostics")
    enabled: bool = Field(default=True, description="Set to False to disable the tunnel")

    # Persistent mode options
    hostname: str | None = Field(default=None, description="Public hostname, e.g. dev.example.com")
    api_token: str | None = Field(default=None, repr=False, description="Cloudflare API token")
    account_id: str | None = Field(default=None, description="Cloudflare account ID")
    zone_id: str | None = Field(default=None, description="Cloudflare zone ID")
    tunnel_name: str = Field(default=DEFAULT_TUNNEL_NAME, description="Tunnel name in Cloudflare")
    dns: str | None = Field(default=None, description="Wildcard or exact DNS name to ensure")
    ssl: str | None = Field(default=None, description="Wildcard or exact edge certificate host")
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)

    @field_validator("port", mode="before")
    @classmethod
    def _validate_port(cls, value: Any) -> Any:
        if value is None:
            return value
        if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 65535:
            raise ValueError("port must be a valid number between 1 and 65535")
        return value

    @field_validator("log_level", mode="before")
    @classmethod
    def _validate_log_level(cls, value: Any) -> Any:
        if value is not None and value not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {', '.join(LOG_LEVELS)}")
        return value

    @field_validator("tunnel_name")
    @classmethod
    def _validate_tunnel_name(cls, value: str) -> str:
        return _check_tunnel_name(value)

    @model_validator(mode="after")
    def _validate_hosts(self) -> "TunnelConfig":
        if self.mode is TunnelMode.PERSISTENT and not self.hostname:
            raise ValueError("hostname is required and must be a valid string in persistent mode")
        for option in ("dns", "ssl"):
            value = getattr(self, option)
            if value and not value.startswith("*.") and value != self.hostname:
                raise ValueError(
                    f"{option} option must either be a wildcard (e.g., '*.example.com') "
                    "or exactly match the hostname"
                )
        return self

    @property
    def is_persistent(self) -> bool:
        """Check if the tunnel is bound to a caller-owned hostname."""
        return self.mode is TunnelMode.PERSISTENT

    @property
    def effective_log_level(self) -> LogLevel:
        """Log level passed to cloudflared in persistent mode."""
        if self.log_level:
            return self.log_level
        return "info" if self.debug else "warn"

    @property
    def parent_domain(self) -> str:
        """Hostname minus its first label (``a.b.example.com`` -> ``b.example.com``)."""
        return ".".join((self.hostname or "").split(".")[1:])

    @property
    def apex_domain(self) -> str:
        """Last two labels of the hostname."""
        return ".".join((self.hostname or "").split(".")[-2:])

    @property
    def public_url(self) -> str:
        return f"https://{self.hostname}" if self.hostname else ""


class DevTunnelSettings(BaseSettings):
    """Settings read from the environment."""

    model_config = SettingsConfigDict(
        env_prefix="DEVTUNNEL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    api_token: str = Field(
        default="",
        repr=False,
        validation_alias=AliasChoices(
            "CLOUDFLARE_API_TOKEN", "CLOUDFLARE_API_KEY", "DEVTUNNEL_API_TOKEN"
        ),
        description="Cloudflare API token used when no api_token option is given",
    )
    cloudflared_path: str | None = Field(
        default=None,
        description="Explicit path to the cloudflared binary",
    )
    api_base_url: str = Field(default=CF_API_BASE, description="Cloudflare API base URL")
    request_timeout: float = Field(default=30.0, gt=0, description="HTTP timeout in seconds")


def _format_validation_error(error: ValidationError) -> str:
    messages = []
    for detail in error.errors():
        msg = detail["msg"].removeprefix("Value error, ")
        loc = ".".join(str(part) for part in detail["loc"])
        # Our own validator messages already name the option
        messages.append(msg if not loc or msg.startswith(loc) else f"{loc}: {msg}")
    return "; ".join(messages)


def resolve_config(options: Mapping[str, Any] | None = None, **overrides: Any) -> TunnelConfig:
    """Validate raw options into a canonical TunnelConfig.

    Options set to None are treated as absent. The mode is persistent
    exactly when a hostname is supplied.

    Raises:
        ConfigurationError: If any option is invalid. Nothing is spawned or
            requested before this check passes.
    """
    merged = {**(options or {}), **overrides}
    raw = {key: value for key, value in merged.items() if value is not None}

    unknown = sorted(set(raw) - KNOWN_OPTIONS)
    if unknown:
        raise ConfigurationError(f"Unknown tunnel options: {', '.join(unknown)}")

    persistent = "hostname" in raw
    if not persistent:
        invalid = [opt for opt in PERSISTENT_ONLY_OPTIONS if opt in raw]
        if invalid:
            raise ConfigurationError(
                "The following options are only supported in persistent mode "
                f"(when hostname is provided): {', '.join(invalid)}. "
                "Either provide a hostname, or remove these options for ephemeral mode."
            )
        raw["tunnel_name"] = QUICK_TUNNEL_NAME
    elif not isinstance(raw["hostname"], str) or not raw["hostname"].strip():
        raise ConfigurationError(
            "hostname is required and must be a valid string in persistent mode"
        )

    mode = TunnelMode.PERSISTENT if persistent else TunnelMode.EPHEMERAL
    try:
        return TunnelConfig(mode=mode, **raw)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e


def config_fingerprint(config: TunnelConfig, port: int) -> str:
    """Digest of the settings that decide whether a running tunnel can be reused."""
    payload = {
        "mode": config.mode.value,
        "hostname": config.hostname,
        "port": port,
        "tunnel_name": config.tunnel_name,
        "dns": config.dns,
        "ssl": config.ssl,
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "devtunnel" / "config.toml"


def load_options(config_file: str | Path | None = None) -> dict[str, Any]:
    """Load raw tunnel options from a TOML config file.

    Reads the ``[devtunnel]`` table (with an optional ``[devtunnel.cleanup]``
    sub-table). A missing file yields no options.

    Args:
        config_file: Optional path to a config file

    Returns:
        Raw options, to be passed through resolve_config()
    """
    import tomllib

    config_path = Path(config_file) if config_file else DEFAULT_CONFIG_PATH
    if not config_path.exists():
        return {}

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    options: dict[str, Any] = dict(data.get("devtunnel", {}))
    if "cleanup" in options:
        options["cleanup"] = dict(options["cleanup"])
    return options
