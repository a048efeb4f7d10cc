"""Validated result types for Cloudflare API responses."""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CloudflareErrorDetail(BaseModel):
    """One entry of the ``errors`` array in an API envelope."""

    code: int | None = Field(default=None, description="Cloudflare error code")
    message: str = Field(default="Unknown error", description="Human readable message")


class ApiEnvelope(BaseModel):
    """Standard response wrapper returned by every v4 endpoint."""

    success: bool
    errors: list[CloudflareErrorDetail] = Field(default_factory=list)
    messages: list[Any] = Field(default_factory=list)
    result: Any = None


class _Resource(BaseModel):
    model_config = ConfigDict(extra="ignore")


class Account(_Resource):
    id: str
    name: str = ""


class Zone(_Resource):
    id: str
    name: str


class Tunnel(_Resource):
    """A named Cloudflare Tunnel."""

    id: str
    name: str
    account_tag: str | None = Field(default=None, description="Owning account id")
    created_at: str | None = None
    connections: list[dict[str, Any]] = Field(default_factory=list)


class DNSRecord(_Resource):
    """A DNS record; ownership is tracked through ``comment``."""

    id: str
    type: str
    name: str
    content: str
    proxied: bool = False
    comment: str | None = None
    ttl: int | None = None


class CertificatePack(_Resource):
    """An advanced edge certificate pack."""

    id: str
    hosts: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("hosts", "hostnames"),
    )
    status: str | None = None
    type: str | None = None


class TotalTLS(_Resource):
    status: str


class TrackedCertificate(BaseModel):
    """A certificate pack ordered by this process, kept for ownership attribution."""

    id: str = Field(..., description="Certificate pack id")
    hosts: list[str] = Field(..., description="Hosts on the pack, including the tag host")
    tunnel_name: str
    timestamp: str = Field(..., description="ISO-8601 order time")
    version: str = Field(..., description="devtunnel version that ordered the pack")
