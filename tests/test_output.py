"""Tests for cloudflared output classification."""

import pytest

from devtunnel.output import LineKind, classify_line


class TestClassifyLine:
    """Tests for classify_line."""

    def test_quick_tunnel_url(self) -> None:
        """Test the quick tunnel URL is extracted."""
        line = classify_line(
            "2024-01-01T00:00:00Z INF |  https://abc-123.trycloudflare.com                 |\n"
        )
        assert line.kind is LineKind.URL
        assert line.url == "https://abc-123.trycloudflare.com"
        assert line.informational is True

    def test_url_wins_over_other_patterns(self) -> None:
        """Test URL detection takes priority."""
        line = classify_line("error: Connection registered at https://x-y.trycloudflare.com")
        assert line.kind is LineKind.URL
        assert line.url == "https://x-y.trycloudflare.com"

    @pytest.mark.parametrize(
        "text",
        [
            "2024-01-01T00:00:00Z WRN Failed to parse ICMP reply, continue to parse as full packet",
            "2024-01-01T00:00:00Z ERR unknow ip version 0",
        ],
    )
    def test_benign_noise(self, text: str) -> None:
        """Test known ICMP noise is benign."""
        assert classify_line(text).kind is LineKind.BENIGN

    def test_connection_registered(self) -> None:
        """Test a registered connection line marks readiness."""
        line = classify_line(
            "2024-01-01T00:00:00Z INF Registered tunnel connection connIndex=0 "
            "Connection 1f2e registered location=ams01"
        )
        assert line.kind is LineKind.READY

    @pytest.mark.parametrize(
        "text",
        [
            "2024-01-01T00:00:00Z ERR Unable to reach the origin service",
            "failed to connect to the edge",
            "FATAL: bad token",
            "Error: something",
        ],
    )
    def test_alert_lines(self, text: str) -> None:
        """Test error-like lines are alerts."""
        assert classify_line(text).kind is LineKind.ALERT

    @pytest.mark.parametrize(
        "text",
        [
            "3 errors while proxying",
            "origin returned ErrorCode=502",
            "handshakeFailed for conn 1",
        ],
    )
    def test_alert_words_match_inside_other_words(self, text: str) -> None:
        """Test alert words count even when embedded in a longer word."""
        assert classify_line(text).kind is LineKind.ALERT

    def test_other_lines(self) -> None:
        """Test anything else is classified as other."""
        line = classify_line("2024-01-01T00:00:00Z INF Starting metrics server")
        assert line.kind is LineKind.OTHER
        assert line.informational is True
        assert line.url is None

    def test_informational_requires_info_marker(self) -> None:
        """Test only timestamped INF lines are informational."""
        assert classify_line("2024-01-01T00:00:00Z WRN something").informational is False
        assert classify_line("INF without timestamp").informational is False

    def test_strips_line_ending(self) -> None:
        """Test trailing line endings are stripped."""
        assert classify_line("hello\r\n").text == "hello"
