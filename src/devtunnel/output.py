"""Classification of cloudflared output lines.

cloudflared reports readiness and the quick tunnel URL only as free text, so
every pattern the supervisor depends on lives here.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

QUICK_TUNNEL_URL_RE = re.compile(r"https://[a-zA-Z0-9-]+\.trycloudflare\.com")
INFO_LINE_RE = re.compile(r"^.*Z INF .*")
ALERT_RE = re.compile(r"error|failed|fatal|Z (?:ERR|FTL) ", re.IGNORECASE)

# Noise cloudflared emits on hosts without ICMP proxy support
BENIGN_MESSAGES = (
    "Failed to parse ICMP reply",
    "unknow ip version 0",
)


class LineKind(str, Enum):
    """What a line of daemon output means to the supervisor."""

    URL = "url"
    BENIGN = "benign"
    READY = "ready"
    ALERT = "alert"
    OTHER = "other"


@dataclass(frozen=True)
class OutputLine:
    text: str
    kind: LineKind
    url: str | None = None
    informational: bool = False


def classify_line(text: str) -> OutputLine:
    """Classify a single line of cloudflared output.

    Checks run in priority order: quick tunnel URL, benign noise, connection
    registered, error-like, anything else.
    """
    text = text.rstrip("\r\n")
    informational = bool(INFO_LINE_RE.match(text))

    match = QUICK_TUNNEL_URL_RE.search(text)
    if match:
        return OutputLine(text, LineKind.URL, url=match.group(0), informational=informational)
    if any(message in text for message in BENIGN_MESSAGES):
        return OutputLine(text, LineKind.BENIGN, informational=informational)
    if "Connection" in text and "registered" in text:
        return OutputLine(text, LineKind.READY, informational=informational)
    if ALERT_RE.search(text):
        return OutputLine(text, LineKind.ALERT, informational=informational)
    return OutputLine(text, LineKind.OTHER, informational=informational)
