"""Channel dispatcher protocol and shared message formatting."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from vulnalert.models import ChannelResult, ChannelType, DispatchIntent

SEVERITY_HEX_COLORS: dict[str, str] = {
    "CRITICAL": "#ff0000",
    "HIGH": "#ff8800",
    "MEDIUM": "#ffaa00",
    "LOW": "#00aa00",
}
DEFAULT_HEX_COLOR = "#000000"

SEVERITY_ICONS: dict[str, str] = {
    "CRITICAL": "\U0001f534",
    "HIGH": "\U0001f7e0",
    "MEDIUM": "\U0001f7e1",
    "LOW": "\U0001f7e2",
}
DEFAULT_ICON = "⚠️"

MIN_REQUEST_TIMEOUT = 0.05


@runtime_checkable
class ChannelDispatcher(Protocol):
    """Protocol for channel dispatchers.

    ``send`` reports expected delivery failures as a failed
    ``ChannelResult``; unexpected exceptions are converted by the
    coordinator. ``timeout_seconds`` is the coordinator's budget for one
    send on this channel. *deadline* is that budget as an absolute
    ``time.monotonic()`` value; work that would run past it is not
    started.
    """

    channel: ChannelType
    timeout_seconds: float

    def send(
        self,
        intent: DispatchIntent,
        config: dict[str, Any],
        deadline: float | None = None,
    ) -> ChannelResult: ...


def severity_color(severity: str | None) -> str:
    return SEVERITY_HEX_COLORS.get((severity or "").upper(), DEFAULT_HEX_COLOR)


def severity_icon(severity: str | None) -> str:
    return SEVERITY_ICONS.get((severity or "").upper(), DEFAULT_ICON)


def vulnerability_link(app_url: str, cve_id: str) -> str:
    return f"{app_url.rstrip('/')}/vulnerabilities/{cve_id}"


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def elapsed_ms(start: float, end: float) -> float:
    return round((end - start) * 1000, 3)


def bounded_timeout(timeout: float, deadline: float | None, now: float) -> float:
    """Clamp a per-request *timeout* so the request ends by *deadline*."""
    if deadline is None:
        return timeout
    return max(min(timeout, deadline - now), MIN_REQUEST_TIMEOUT)
