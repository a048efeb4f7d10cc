#!/usr/bin/env python3
"""devtunnel - CLI entry point."""

import asyncio
import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import Any

import click
import sentry_sdk
import structlog
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from . import __version__
from .binary import find_cloudflared
from .config import (
    DEFAULT_CONFIG_PATH,
    LOG_LEVELS,
    DevTunnelSettings,
    TunnelConfig,
    load_options,
    resolve_config,
)
from .exceptions import ConfigurationError, TunnelError
from .session import DEFAULT_PORT, TunnelSession
from .state import LifecycleState


def _init_sentry() -> bool:
    """Initialize Sentry for error tracking."""
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        release=f"devtunnel@{__version__}",
        traces_sample_rate=1.0 if environment == "development" else 0.2,
        integrations=[
            AsyncioIntegration(),
            HttpxIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        send_default_pii=False,
        attach_stacktrace=True,
        max_breadcrumbs=50,
        ignore_errors=[
            "asyncio.CancelledError",
            "KeyboardInterrupt",
            "SystemExit",
        ],
    )

    sentry_sdk.set_tag("service", "devtunnel")
    return True


# Initialize Sentry at module load time
_sentry_enabled = _init_sentry()

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
}


def configure_logging(log_level: str | None = None, debug: bool = False) -> None:
    """Configure structlog for console output.

    Debug diagnostics only surface with ``debug``; otherwise informational
    messages are shown unless a stricter level is requested.
    """
    if debug:
        level = logging.DEBUG
    else:
        level = max(logging.INFO, _LEVELS.get(log_level or "info", logging.INFO))

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )


configure_logging()


@click.group()
@click.version_option(version=__version__, prog_name="devtunnel")
def cli() -> None:
    """devtunnel - Expose a local dev server through a Cloudflare Tunnel.

    Without --hostname a quick tunnel with a random trycloudflare.com URL is
    started. With --hostname, DNS, certificate and routing are reconciled in
    your Cloudflare account and a named tunnel is run.
    """
    pass


def _error(message: str, hints: list[str] | None = None) -> None:
    click.echo(click.style("Error: ", fg="red", bold=True) + message, err=True)
    for hint in hints or []:
        click.echo(click.style("  Hint: ", fg="yellow") + hint, err=True)


def _build_config(options: dict[str, Any], **cli_options: Any) -> TunnelConfig:
    no_cleanup = cli_options.pop("no_cleanup", False)
    preserve = cli_options.pop("preserve_tunnels", ())
    if no_cleanup or preserve:
        cleanup = dict(options.get("cleanup", {}))
        if no_cleanup:
            cleanup["auto_cleanup"] = False
        if preserve:
            cleanup["preserve_tunnels"] = list(preserve)
        cli_options["cleanup"] = cleanup
    if not cli_options.get("debug"):
        cli_options.pop("debug", None)
    return resolve_config(options, **cli_options)


async def _serve(
    session: TunnelSession, host: str, port: int, shutdown_event: asyncio.Event
) -> None:
    url = await session.start((host, port))
    if not url:
        click.echo(click.style("Tunnel disabled.", fg="yellow"))
        return
    click.echo(click.style("Tunnel ready: ", fg="green", bold=True) + url)
    click.echo("Press Ctrl+C to stop.")
    await shutdown_event.wait()


@cli.command()
@click.option("--port", type=int, default=None, help="Local dev server port (default 5173)")
@click.option("--host", default="localhost", show_default=True, help="Local dev server host")
@click.option("--hostname", default=None, help="Public hostname; enables persistent mode")
@click.option(
    "--api-token",
    default=None,
    help="Cloudflare API token (defaults to CLOUDFLARE_API_TOKEN)",
)
@click.option("--account-id", default=None, help="Cloudflare account ID")
@click.option("--zone-id", default=None, help="Cloudflare zone ID")
@click.option("--tunnel-name", default=None, help="Tunnel name (default dev-tunnel)")
@click.option("--dns", default=None, help="Wildcard or exact DNS name to create")
@click.option("--ssl", default=None, help="Wildcard or exact host for the edge certificate")
@click.option("--no-cleanup", is_flag=True, help="Keep stale DNS records and certificates")
@click.option(
    "--preserve-tunnel",
    "preserve_tunnels",
    multiple=True,
    help="Tunnel name whose resources are never cleaned up (can be repeated)",
)
@click.option("--log-file", default=None, help="cloudflared log file")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default=None,
    help="cloudflared log level",
)
@click.option("--debug", is_flag=True, help="Verbose diagnostics")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, path_type=Path),
    help=f"Path to config file (default {DEFAULT_CONFIG_PATH})",
)
def run(
    port: int | None,
    host: str,
    config_file: Path | None,
    **cli_options: Any,
) -> None:
    """Start a tunnel and keep it running until interrupted.

    Options are loaded from (in priority order):
    1. Command line arguments
    2. Config file (~/.config/devtunnel/config.toml or --config)
    """
    options = load_options(config_file)
    try:
        config = _build_config(options, port=port, **cli_options)
    except ConfigurationError as e:
        _error(str(e))
        sys.exit(1)

    configure_logging(config.log_level, config.debug)
    session = TunnelSession(config, LifecycleState())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    exit_code = 0
    try:
        loop.run_until_complete(_serve(session, host, config.port or DEFAULT_PORT, shutdown_event))
    except TunnelError as e:
        _error(str(e), e.hints)
        exit_code = 1
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(session.close())
        # Flush Sentry events before shutdown
        if _sentry_enabled:
            sentry_sdk.flush(timeout=2.0)
        loop.close()

    if exit_code:
        sys.exit(exit_code)
    click.echo("Tunnel stopped.")


@cli.command()
def check() -> None:
    """Check that cloudflared and an API token are available."""
    click.echo(click.style("System Check", fg="cyan", bold=True))
    click.echo()

    all_ok = True
    settings = DevTunnelSettings()

    try:
        path = find_cloudflared(settings=settings)
    except TunnelError as e:
        click.echo(
            click.style("  cloudflared: ", bold=True)
            + click.style("NOT FOUND", fg="red")
            + f" ({e})"
        )
        all_ok = False
    else:
        try:
            result = subprocess.run([path, "--version"], capture_output=True, text=True, timeout=5)
            version = result.stdout.strip() or result.stderr.strip() or "unknown"
        except (OSError, subprocess.TimeoutExpired):
            version = f"found at {path}"
        click.echo(
            click.style("  cloudflared: ", bold=True)
            + click.style("OK", fg="green")
            + f" ({version})"
        )

    if settings.api_token:
        click.echo(click.style("  API token: ", bold=True) + click.style("OK", fg="green"))
    else:
        click.echo(
            click.style("  API token: ", bold=True)
            + click.style("NOT SET", fg="yellow")
            + " (optional, required with --hostname)"
        )
    click.echo()

    if all_ok:
        click.echo(click.style("All checks passed!", fg="green", bold=True))
    else:
        click.echo(click.style("Some checks failed.", fg="red", bold=True))
        sys.exit(1)


@cli.command()
def version() -> None:
    """Show version information."""
    click.echo(f"devtunnel v{__version__}")


if __name__ == "__main__":
    cli()
