"""Reconcile Cloudflare account state for a persistent tunnel.

Ensures the tunnel, its ingress routing, DNS record and edge certificate
match the configuration, and removes resources tagged for this tunnel that an
earlier configuration left behind.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from . import __version__
from .cloudflare_client import CloudflareClient, with_backoff
from .config import TunnelConfig
from .exceptions import ApiError, ConfigurationError
from .models import (
    Account,
    CertificatePack,
    DNSRecord,
    TotalTLS,
    TrackedCertificate,
    Tunnel,
    Zone,
)

logger = structlog.get_logger()

TAG_PREFIX = "devtunnel"
TUNNEL_CNAME_SUFFIX = "cfargotunnel.com"


def dns_comment(tunnel_name: str) -> str:
    """Ownership comment put on every DNS record created for a tunnel."""
    return f"{TAG_PREFIX}:{tunnel_name}"


def ssl_tag_hostname(tunnel_name: str, parent_domain: str) -> str:
    """Synthetic host added to certificate packs to mark them as ours."""
    return f"{TAG_PREFIX}-{tunnel_name}--{parent_domain}"


def tunnel_cname_target(tunnel_id: str) -> str:
    return f"{tunnel_id}.{TUNNEL_CNAME_SUFFIX}"


def covers(pack: CertificatePack, host: str) -> bool:
    """Check if a certificate pack covers ``host`` exactly or through a wildcard."""
    for pack_host in pack.hosts:
        if pack_host.startswith(f"{TAG_PREFIX}-"):
            continue
        if pack_host == host:
            return True
        if pack_host.startswith("*.") and host.endswith(pack_host[1:]):
            return True
    return False


@dataclass
class DnsCleanupReport:
    found: list[DNSRecord] = field(default_factory=list)
    deleted: list[DNSRecord] = field(default_factory=list)


@dataclass
class ReconcileResult:
    """Identifiers resolved during reconciliation."""

    account_id: str
    zone_id: str
    tunnel_id: str
    tunnel_token: str
    local_target: str
    ordered_certificate: TrackedCertificate | None = None
    dns_cleanup: DnsCleanupReport = field(default_factory=DnsCleanupReport)
    deleted_certificates: list[CertificatePack] = field(default_factory=list)


class ResourceReconciler:
    """Drive Cloudflare resources for one persistent tunnel towards the config.

    Steps run strictly in order and any error outside cleanup aborts the run.
    """

    def __init__(self, client: CloudflareClient, config: TunnelConfig) -> None:
        self.client = client
        self.config = config

    @property
    def hostname(self) -> str:
        return self.config.hostname or ""

    async def reconcile(self, api_token: str, local_target: str) -> ReconcileResult:
        """Run the full reconciliation sequence.

        Args:
            api_token: Cloudflare API token
            local_target: Origin URL the tunnel routes to, e.g. http://localhost:5173

        Returns:
            ReconcileResult with resolved ids and the tunnel run token
        """
        config = self.config
        account_id = await self.resolve_account(api_token)
        zone_id = await self.resolve_zone(api_token, account_id)
        tunnel = await self.ensure_tunnel(api_token, account_id)

        dns_report = DnsCleanupReport()
        deleted_certs: list[CertificatePack] = []
        if not config.cleanup.auto_cleanup:
            logger.debug("Cleanup skipped", auto_cleanup=False)
        elif config.tunnel_name in config.cleanup.preserve_tunnels:
            logger.info("Cleanup skipped for preserved tunnel", tunnel_name=config.tunnel_name)
        else:
            logger.info("Running resource cleanup", tunnel_name=config.tunnel_name)
            dns_report = await self.cleanup_dns_records(api_token, zone_id, tunnel.id)
            deleted_certs = await self.cleanup_certificates(api_token, zone_id)

        await self.push_ingress(api_token, account_id, tunnel.id, local_target)
        await self.ensure_dns_record(api_token, zone_id, tunnel.id)
        token = await self.fetch_tunnel_token(api_token, account_id, tunnel.id)
        ordered = await self.ensure_certificate(api_token, zone_id)

        return ReconcileResult(
            account_id=account_id,
            zone_id=zone_id,
            tunnel_id=tunnel.id,
            tunnel_token=token,
            local_target=local_target,
            ordered_certificate=ordered,
            dns_cleanup=dns_report,
            deleted_certificates=deleted_certs,
        )

    async def resolve_account(self, api_token: str) -> str:
        if self.config.account_id:
            return self.config.account_id
        accounts = await self.client.call(api_token, "GET", "/accounts", result_type=list[Account])
        if not accounts:
            msg = "No Cloudflare accounts available for this API token"
            raise ConfigurationError(msg)
        logger.debug("Resolved account", account_id=accounts[0].id, name=accounts[0].name)
        return accounts[0].id

    async def resolve_zone(self, api_token: str, account_id: str) -> str:
        """Find the zone by parent domain, falling back to the apex domain."""
        if self.config.zone_id:
            return self.config.zone_id

        parent = self.config.parent_domain
        apex = self.config.apex_domain
        zones: list[Zone] = []
        try:
            zones = await self._zones_named(api_token, parent)
        except ApiError as e:
            logger.debug("Zone lookup by parent domain failed", domain=parent, error=str(e))
        if not zones and apex != parent:
            zones = await self._zones_named(api_token, apex)
        if not zones:
            msg = f"Zone {apex} not found in account {account_id}"
            raise ConfigurationError(msg)
        logger.debug("Resolved zone", zone_id=zones[0].id, name=zones[0].name)
        return zones[0].id

    async def _zones_named(self, api_token: str, name: str) -> list[Zone]:
        return await self.client.call(
            api_token, "GET", "/zones", params={"name": name}, result_type=list[Zone]
        )

    async def ensure_tunnel(self, api_token: str, account_id: str) -> Tunnel:
        """Return the named tunnel, creating it only when absent."""
        name = self.config.tunnel_name
        tunnels = await self.client.call(
            api_token,
            "GET",
            f"/accounts/{account_id}/cfd_tunnel",
            params={"name": name, "is_deleted": "false"},
            result_type=list[Tunnel],
        )
        if tunnels:
            return tunnels[0]

        logger.info("Creating tunnel", name=name)
        tunnel = await self.client.call(
            api_token,
            "POST",
            f"/accounts/{account_id}/cfd_tunnel",
            body={"name": name, "config_src": "cloudflare"},
            result_type=Tunnel,
        )
        logger.info("Created Cloudflare tunnel", tunnel_id=tunnel.id, name=name)
        return tunnel

    async def cleanup_dns_records(
        self, api_token: str, zone_id: str, tunnel_id: str
    ) -> DnsCleanupReport:
        """Delete records tagged for this tunnel that no longer match the config.

        Failures are logged and never raised.
        """
        comment = dns_comment(self.config.tunnel_name)
        try:
            records = await self.client.call(
                api_token,
                "GET",
                f"/zones/{zone_id}/dns_records",
                params={"comment": comment, "match": "all"},
                result_type=list[DNSRecord],
            )
        except Exception as e:
            logger.error("DNS cleanup failed", error=str(e))
            return DnsCleanupReport()

        expected = tunnel_cname_target(tunnel_id)
        keep = {(self.hostname, expected)}
        if self.config.dns:
            keep.add((self.config.dns, expected))
        mismatched = [r for r in records if (r.name, r.content) not in keep]
        logger.debug("Tagged DNS records", found=len(records), mismatched=len(mismatched))

        report = DnsCleanupReport(found=mismatched)
        for record in mismatched:
            try:
                await self.client.call(
                    api_token, "DELETE", f"/zones/{zone_id}/dns_records/{record.id}"
                )
            except Exception as e:
                logger.error("Failed to delete DNS record", name=record.name, error=str(e))
                continue
            report.deleted.append(record)
            logger.info("Deleted mismatched DNS record", name=record.name, content=record.content)

        if report.found:
            logger.info(
                "DNS cleanup finished", mismatched=len(report.found), deleted=len(report.deleted)
            )
        return report

    async def cleanup_certificates(self, api_token: str, zone_id: str) -> list[CertificatePack]:
        """Delete tagged certificate packs that do not cover the hostname.

        Failures are logged and never raised.
        """
        tag = ssl_tag_hostname(self.config.tunnel_name, self.config.parent_domain)
        try:
            packs = await self._certificate_packs(api_token, zone_id)
        except Exception as e:
            logger.error("SSL certificate listing failed", error=str(e))
            return []

        ours = [p for p in packs if tag in p.hosts]
        mismatched = [p for p in ours if not covers(p, self.hostname)]
        logger.debug("Tagged certificate packs", found=len(ours), mismatched=len(mismatched))

        deleted: list[CertificatePack] = []
        for pack in mismatched:
            try:
                await self.client.call(
                    api_token, "DELETE", f"/zones/{zone_id}/ssl/certificate_packs/{pack.id}"
                )
            except Exception as e:
                logger.error("Failed to delete certificate pack", pack_id=pack.id, error=str(e))
                continue
            deleted.append(pack)
            logger.info("Deleted mismatched certificate pack", pack_id=pack.id, hosts=pack.hosts)
        return deleted

    async def push_ingress(
        self, api_token: str, account_id: str, tunnel_id: str, local_target: str
    ) -> None:
        """Overwrite the tunnel ingress so the hostname routes to ``local_target``."""
        config = {
            "ingress": [
                {"hostname": self.hostname, "service": local_target},
                {"service": "http_status:404"},
            ],
        }
        await self.client.call(
            api_token,
            "PUT",
            f"/accounts/{account_id}/cfd_tunnel/{tunnel_id}/configurations",
            body={"config": config},
        )
        logger.info(
            "Updated tunnel config",
            tunnel_id=tunnel_id,
            hostname=self.hostname,
            service=local_target,
        )

    async def _cnames_named(self, api_token: str, zone_id: str, name: str) -> list[DNSRecord]:
        return await self.client.call(
            api_token,
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"type": "CNAME", "name": name},
            result_type=list[DNSRecord],
        )

    async def _create_cname(self, api_token: str, zone_id: str, name: str, tunnel_id: str) -> None:
        target = tunnel_cname_target(tunnel_id)
        logger.info("Creating DNS record", name=name, target=target)
        await self.client.call(
            api_token,
            "POST",
            f"/zones/{zone_id}/dns_records",
            body={
                "type": "CNAME",
                "name": name,
                "content": target,
                "proxied": True,
                "comment": dns_comment(self.config.tunnel_name),
            },
            result_type=DNSRecord,
        )
        logger.info("Created DNS CNAME", name=name, target=target)

    async def ensure_dns_record(self, api_token: str, zone_id: str, tunnel_id: str) -> bool:
        """Ensure a CNAME routes the configured name to the tunnel.

        Never creates a duplicate. Without a ``dns`` option, an existing
        ``*.<parent>`` CNAME already covers the hostname.

        Returns:
            True if a record was created
        """
        dns = self.config.dns
        if dns:
            if await self._cnames_named(api_token, zone_id, dns):
                return False
            await self._create_cname(api_token, zone_id, dns, tunnel_id)
            return True

        wildcard = f"*.{self.config.parent_domain}"
        if await self._cnames_named(api_token, zone_id, wildcard):
            logger.debug("Wildcard DNS record already covers hostname", wildcard=wildcard)
            return False
        if await self._cnames_named(api_token, zone_id, self.hostname):
            return False
        await self._create_cname(api_token, zone_id, self.hostname, tunnel_id)
        return True

    async def fetch_tunnel_token(self, api_token: str, account_id: str, tunnel_id: str) -> str:
        return await self.client.call(
            api_token,
            "GET",
            f"/accounts/{account_id}/cfd_tunnel/{tunnel_id}/token",
            result_type=str,
        )

    async def _certificate_packs(self, api_token: str, zone_id: str) -> list[CertificatePack]:
        return await self.client.call(
            api_token,
            "GET",
            f"/zones/{zone_id}/ssl/certificate_packs",
            params={"status": "all"},
            result_type=list[CertificatePack],
        )

    async def ensure_certificate(self, api_token: str, zone_id: str) -> TrackedCertificate | None:
        """Order an edge certificate when nothing covers the desired host yet.

        Returns:
            The ordered pack, or None when no order was needed
        """
        try:
            packs = await self._certificate_packs(api_token, zone_id)
            ssl = self.config.ssl
            if ssl:
                desired = ssl
                if any(covers(p, desired) for p in packs):
                    logger.debug("Edge certificate already exists", host=desired)
                    return None
                validation = "txt" if desired.startswith("*.") else "http"
            else:
                desired = self.hostname
                if any(covers(p, desired) for p in packs):
                    logger.debug("Edge certificate already exists", host=desired)
                    return None
                total_tls = await self.client.call(
                    api_token, "GET", f"/zones/{zone_id}/acm/total_tls", result_type=TotalTLS
                )
                logger.debug("Total TLS", status=total_tls.status)
                if total_tls.status == "on":
                    return None
                validation = "txt"

            return await self._order_certificate(api_token, zone_id, desired, validation)
        except Exception as e:
            logger.error("SSL management error", error=str(e))
            raise

    async def _order_certificate(
        self, api_token: str, zone_id: str, host: str, validation: str
    ) -> TrackedCertificate:
        tag = ssl_tag_hostname(self.config.tunnel_name, self.config.parent_domain)
        hosts = [host, tag]
        logger.info("Requesting edge certificate", host=host, validation_method=validation)

        async def order() -> CertificatePack:
            return await self.client.call(
                api_token,
                "POST",
                f"/zones/{zone_id}/ssl/certificate_packs/order",
                body={
                    "hosts": hosts,
                    "certificate_authority": "lets_encrypt",
                    "type": "advanced",
                    "validation_method": validation,
                    "validity_days": 90,
                    "cloudflare_branding": False,
                },
                result_type=CertificatePack,
            )

        pack = await with_backoff(order, operation_name="order certificate pack")
        logger.info("Ordered certificate pack", pack_id=pack.id, hosts=hosts)
        return TrackedCertificate(
            id=pack.id,
            hosts=hosts,
            tunnel_name=self.config.tunnel_name,
            timestamp=datetime.now(UTC).isoformat(),
            version=__version__,
        )
