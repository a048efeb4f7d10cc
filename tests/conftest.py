"""Pytest fixtures for devtunnel tests."""

from __future__ import annotations

import itertools
import json
import re
import sys
from collections.abc import Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest
import respx

from devtunnel import supervisor as supervisor_module
from devtunnel.config import CF_API_BASE, DevTunnelSettings, resolve_config
from devtunnel.state import LifecycleState


def _envelope(result: Any) -> dict[str, Any]:
    return {"success": True, "errors": [], "messages": [], "result": result}


class FakeCloudflare:
    """Stateful stand-in for the Cloudflare v4 endpoints devtunnel uses.

    Served through respx; every request is recorded in ``calls`` as
    ``(method, path, params)``.
    """

    def __init__(self) -> None:
        self.accounts: list[dict[str, Any]] = [{"id": "acc-1", "name": "Acme"}]
        self.zones: list[dict[str, Any]] = [{"id": "zone-1", "name": "example.com"}]
        self.tunnels: list[dict[str, Any]] = []
        self.dns_records: list[dict[str, Any]] = []
        self.cert_packs: list[dict[str, Any]] = []
        self.configurations: dict[str, Any] = {}
        self.total_tls = "off"
        self.fail_orders = 0
        self.calls: list[tuple[str, str, dict[str, str]]] = []
        self._ids = itertools.count(1)

    def next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def add_dns_record(self, name: str, content: str, comment: str | None = None) -> dict[str, Any]:
        record = {
            "id": self.next_id("dns"),
            "type": "CNAME",
            "name": name,
            "content": content,
            "proxied": True,
            "comment": comment,
            "ttl": 1,
        }
        self.dns_records.append(record)
        return record

    def add_cert_pack(self, hosts: list[str], status: str = "active") -> dict[str, Any]:
        pack = {"id": self.next_id("cert"), "hosts": hosts, "status": status, "type": "advanced"}
        self.cert_packs.append(pack)
        return pack

    def calls_to(self, method: str, pattern: str) -> list[tuple[str, str, dict[str, str]]]:
        return [c for c in self.calls if c[0] == method and re.fullmatch(pattern, c[1])]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/client/v4")
        params = dict(request.url.params)
        method = request.method
        body = json.loads(request.content) if request.content else None
        self.calls.append((method, path, params))

        result = self._dispatch(method, path, params, body)
        if result is _NOT_FOUND:
            return httpx.Response(
                404,
                json={
                    "success": False,
                    "errors": [{"code": 7003, "message": "No route for that URI"}],
                    "messages": [],
                    "result": None,
                },
            )
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=_envelope(result))

    def _dispatch(
        self, method: str, path: str, params: dict[str, str], body: Any
    ) -> Any:
        if path == "/accounts" and method == "GET":
            return self.accounts

        if path == "/zones" and method == "GET":
            return [z for z in self.zones if z["name"] == params.get("name")]

        m = re.fullmatch(r"/accounts/([^/]+)/cfd_tunnel", path)
        if m:
            if method == "GET":
                return [t for t in self.tunnels if t["name"] == params.get("name")]
            if method == "POST":
                tunnel = {
                    "id": self.next_id("tun"),
                    "name": body["name"],
                    "account_tag": m.group(1),
                    "created_at": "2024-01-01T00:00:00Z",
                }
                self.tunnels.append(tunnel)
                return tunnel

        m = re.fullmatch(r"/accounts/[^/]+/cfd_tunnel/([^/]+)/configurations", path)
        if m and method == "PUT":
            self.configurations[m.group(1)] = body["config"]
            return {"tunnel_id": m.group(1), "version": 1}

        m = re.fullmatch(r"/accounts/[^/]+/cfd_tunnel/([^/]+)/token", path)
        if m and method == "GET":
            return f"run-token-{m.group(1)}"

        m = re.fullmatch(r"/zones/[^/]+/dns_records", path)
        if m:
            if method == "GET":
                records = self.dns_records
                if "comment" in params:
                    records = [r for r in records if r.get("comment") == params["comment"]]
                if "type" in params:
                    records = [r for r in records if r["type"] == params["type"]]
                if "name" in params:
                    records = [r for r in records if r["name"] == params["name"]]
                return records
            if method == "POST":
                record = {"id": self.next_id("dns"), "ttl": 1, **body}
                self.dns_records.append(record)
                return record

        m = re.fullmatch(r"/zones/[^/]+/dns_records/([^/]+)", path)
        if m and method == "DELETE":
            self.dns_records = [r for r in self.dns_records if r["id"] != m.group(1)]
            return {"id": m.group(1)}

        if re.fullmatch(r"/zones/[^/]+/ssl/certificate_packs", path) and method == "GET":
            return self.cert_packs

        if re.fullmatch(r"/zones/[^/]+/ssl/certificate_packs/order", path) and method == "POST":
            if self.fail_orders > 0:
                self.fail_orders -= 1
                return httpx.Response(500, text="upstream busy")
            pack = {
                "id": self.next_id("cert"),
                "hosts": body["hosts"],
                "status": "initializing",
                "type": body["type"],
            }
            self.cert_packs.append(pack)
            return pack

        m = re.fullmatch(r"/zones/[^/]+/ssl/certificate_packs/([^/]+)", path)
        if m and method == "DELETE":
            self.cert_packs = [p for p in self.cert_packs if p["id"] != m.group(1)]
            return {"id": m.group(1)}

        if re.fullmatch(r"/zones/[^/]+/acm/total_tls", path) and method == "GET":
            return {"status": self.total_tls}

        return _NOT_FOUND


_NOT_FOUND = object()


@pytest.fixture
def fake_cloudflare() -> Generator[FakeCloudflare, None, None]:
    """Fake Cloudflare API served at the real API base URL."""
    fake = FakeCloudflare()
    with respx.mock(base_url=CF_API_BASE, assert_all_called=False) as router:
        router.route().mock(side_effect=fake.handle)
        yield fake


FAKE_CLOUDFLARED = """#!{python}
import os
import signal
import sys
import time

with open(os.environ["FAKE_CLOUDFLARED_ARGS"], "a") as f:
    f.write(" ".join(sys.argv[1:]) + "\\n")

mode = os.environ.get("FAKE_CLOUDFLARED", "quick")

if mode == "quick":
    sys.stderr.write("2024-01-01T00:00:00Z INF Requesting new quick Tunnel...\\n")
    sys.stderr.write("2024-01-01T00:00:00Z INF Failed to parse ICMP reply: unknow ip version 0\\n")
    sys.stderr.write("2024-01-01T00:00:00Z INF |  https://abc-123.trycloudflare.com  |\\n")
    sys.stderr.flush()
elif mode == "crash":
    sys.stderr.write("2024-01-01T00:00:00Z ERR failed to connect to the edge\\n")
    sys.stderr.flush()
    sys.exit(3)
elif mode == "named":
    sys.stdout.write("2024-01-01T00:00:00Z INF Registered tunnel Connection abc registered\\n")
    sys.stdout.flush()
elif mode == "long-line":
    sys.stderr.write("2024-01-01T00:00:00Z WRN " + "x" * 70000 + "\\n")
    sys.stderr.write("2024-01-01T00:00:00Z INF |  https://abc-123.trycloudflare.com  |\\n")
    sys.stderr.flush()
elif mode == "stubborn":
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    sys.stderr.write("2024-01-01T00:00:00Z INF |  https://abc-123.trycloudflare.com  |\\n")
    sys.stderr.flush()

while True:
    time.sleep(0.1)
"""


@dataclass
class FakeBinary:
    path: str
    args_file: Path
    monkeypatch: pytest.MonkeyPatch = field(repr=False)

    def set_mode(self, mode: str) -> None:
        self.monkeypatch.setenv("FAKE_CLOUDFLARED", mode)

    def invocations(self) -> list[list[str]]:
        if not self.args_file.exists():
            return []
        return [line.split() for line in self.args_file.read_text().splitlines()]


@pytest.fixture
def fake_cloudflared(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeBinary:
    """An executable that prints like cloudflared; behaviour set by FAKE_CLOUDFLARED."""
    if sys.platform == "win32":
        pytest.skip("fake cloudflared script needs a POSIX shebang")
    script = tmp_path / "cloudflared"
    script.write_text(FAKE_CLOUDFLARED.replace("{python}", sys.executable))
    script.chmod(0o755)
    args_file = tmp_path / "cloudflared-args.txt"
    monkeypatch.setenv("FAKE_CLOUDFLARED_ARGS", str(args_file))
    monkeypatch.setenv("FAKE_CLOUDFLARED", "quick")
    return FakeBinary(path=str(script), args_file=args_file, monkeypatch=monkeypatch)


@pytest.fixture(autouse=True)
def exit_hooks(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Keep tests from installing real signal handlers and atexit hooks."""
    mock = MagicMock()
    monkeypatch.setattr(supervisor_module, "install_exit_hooks", mock)
    return mock


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in (
        "CLOUDFLARE_API_TOKEN",
        "CLOUDFLARE_API_KEY",
        "DEVTUNNEL_API_TOKEN",
        "DEVTUNNEL_CLOUDFLARED_PATH",
        "DEVTUNNEL_API_BASE_URL",
        "DEVTUNNEL_REQUEST_TIMEOUT",
        "SENTRY_DSN",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def settings() -> DevTunnelSettings:
    """Settings that ignore any .env file in the working directory."""
    return DevTunnelSettings(_env_file=None)


@pytest.fixture
def state() -> LifecycleState:
    return LifecycleState()


@pytest.fixture
def persistent_config():
    return resolve_config(
        hostname="dev.example.com",
        api_token="cf-token",
    )


@pytest.fixture
def ephemeral_config():
    return resolve_config()
