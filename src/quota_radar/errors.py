"""Error taxonomy for quota-radar.

Every failure that reaches a malfunction callback is one of these classes.
Discovery and probing phases report failures as return values; only the
telemetry path raises, and only with a classified error.
"""

from __future__ import annotations

import json

import httpx


class QuotaRadarError(Exception):
    """Base class for all classified errors."""

    #: Transient errors are covered by the next poll and stay silent in the UI.
    transient: bool = False


class DiscoveryFailure(QuotaRadarError):
    """No verified language server process was found after all phases."""


class ToolUnavailable(QuotaRadarError):
    """A required OS command is missing or blocked."""

    def __init__(self, tool: str, detail: str = ""):
        self.tool = tool
        self.detail = detail
        super().__init__(f"{tool} unavailable: {detail}" if detail else f"{tool} unavailable")


class SignalLost(QuotaRadarError):
    """Connection refused or reset while polling; the server likely restarted."""


class TransportTimeout(QuotaRadarError):
    """Telemetry request timed out. The connection target is kept."""

    transient = True


class PayloadCorrupt(QuotaRadarError):
    """Telemetry endpoint answered with malformed JSON or an unexpected shape."""


class ConfigurationError(QuotaRadarError, ValueError):
    """User supplied configuration is out of range."""


def classify_transport_error(exc: BaseException) -> QuotaRadarError:
    """Map a transport or decode exception onto the error taxonomy."""
    if isinstance(exc, QuotaRadarError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        # A rejected token means the server restarted with fresh credentials
        if exc.response.status_code in (401, 403):
            return SignalLost(f"Token rejected: HTTP {exc.response.status_code}")
        return PayloadCorrupt(f"Unexpected HTTP {exc.response.status_code}")
    if isinstance(exc, httpx.TimeoutException):
        return TransportTimeout(f"Request timed out: {exc}")
    if isinstance(exc, (httpx.ConnectError, httpx.RemoteProtocolError, httpx.ReadError)):
        return SignalLost(f"Connection failed: {exc}")
    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError)):
        return SignalLost(f"Connection failed: {exc}")
    if isinstance(exc, (json.JSONDecodeError, KeyError, TypeError, ValueError)):
        return PayloadCorrupt(f"Signal corrupted: {exc}")
    if isinstance(exc, httpx.HTTPError):
        return SignalLost(f"Transport error: {exc}")
    return QuotaRadarError(str(exc))
