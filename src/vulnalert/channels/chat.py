"""Slack- and Discord-style chat webhook channels.

Chat webhooks are best-effort: one POST with a short timeout, and any
non-2xx response is a hard failure for that channel. No retry.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from vulnalert.channels.base import (
    bounded_timeout,
    elapsed_ms,
    severity_color,
    severity_icon,
    truncate,
    vulnerability_link,
)
from vulnalert.channels.configs import DiscordChannelConfig, SlackChannelConfig
from vulnalert.channels.http import ChannelDeliveryError, send_json
from vulnalert.models import ChannelResult, ChannelType, DispatchIntent, Vulnerability

FOOTER = "vulnalert security intelligence"


def _bool_label(value: bool | None) -> str:
    if value is None:
        return "Unknown"
    return "Yes" if value else "No"


class SlackDispatcher:
    """Post a severity-colored attachment to a Slack incoming webhook."""

    channel = ChannelType.SLACK

    def __init__(
        self,
        app_url: str = "http://localhost:3000",
        timeout_seconds: float = 10.0,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._app_url = app_url
        self.timeout_seconds = timeout_seconds
        self._clock = _clock or time.monotonic

    def build_payload(
        self, vuln: Vulnerability, config: SlackChannelConfig,
    ) -> dict[str, Any]:
        severity = (vuln.severity or "UNKNOWN").upper()
        software = ", ".join(vuln.affected_software[:3])
        if len(vuln.affected_software) > 3:
            software += "..."

        payload: dict[str, Any] = {
            "username": config.username,
            "attachments": [
                {
                    "color": severity_color(severity),
                    "title": f"{severity_icon(severity)} {severity} Vulnerability Alert",
                    "title_link": vulnerability_link(self._app_url, vuln.cve_id),
                    "fields": [
                        {"title": "CVE ID", "value": vuln.cve_id, "short": True},
                        {
                            "title": "CVSS Score",
                            "value": str(vuln.cvss_score) if vuln.cvss_score is not None else "N/A",
                            "short": True,
                        },
                        {"title": "Affected Software", "value": software or "N/A", "short": False},
                        {
                            "title": "Exploit Available",
                            "value": _bool_label(vuln.exploit_available),
                            "short": True,
                        },
                        {
                            "title": "Patch Available",
                            "value": _bool_label(vuln.patch_available),
                            "short": True,
                        },
                    ],
                    "text": truncate(vuln.description, 500),
                    "footer": FOOTER,
                    "ts": int(datetime.now(tz=UTC).timestamp()),
                },
            ],
        }
        if config.channel:
            payload["channel"] = config.channel
        return payload

    def send(
        self,
        intent: DispatchIntent,
        config: dict[str, Any],
        deadline: float | None = None,
    ) -> ChannelResult:
        cfg = SlackChannelConfig(**config)
        payload = self.build_payload(intent.vulnerability, cfg)
        return _post_once(
            self.channel,
            cfg.webhook_url,
            payload,
            cfg.timeout_seconds or self.timeout_seconds,
            self._clock,
            deadline,
        )


class DiscordDispatcher:
    """Post a severity-colored embed to a Discord webhook."""

    channel = ChannelType.DISCORD

    def __init__(
        self,
        app_url: str = "http://localhost:3000",
        timeout_seconds: float = 10.0,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._app_url = app_url
        self.timeout_seconds = timeout_seconds
        self._clock = _clock or time.monotonic

    def build_payload(
        self, vuln: Vulnerability, config: DiscordChannelConfig,
    ) -> dict[str, Any]:
        severity = (vuln.severity or "UNKNOWN").upper()
        software = "\n".join(vuln.affected_software[:5])
        extra = len(vuln.affected_software) - 5
        if extra > 0:
            software += f"\n... and {extra} more"

        status = (
            f"Exploit: {'Available' if vuln.exploit_available else 'Not Available'}\n"
            f"Patch: {'Available' if vuln.patch_available else 'Not Available'}"
        )

        return {
            "username": config.username,
            "embeds": [
                {
                    "title": f"{severity_icon(severity)} {severity} Vulnerability Alert",
                    "url": vulnerability_link(self._app_url, vuln.cve_id),
                    "color": int(severity_color(severity).lstrip("#"), 16),
                    "description": truncate(vuln.description, 1000),
                    "fields": [
                        {"name": "CVE ID", "value": vuln.cve_id, "inline": True},
                        {
                            "name": "CVSS Score",
                            "value": str(vuln.cvss_score) if vuln.cvss_score is not None else "N/A",
                            "inline": True,
                        },
                        {
                            "name": "Published Date",
                            "value": vuln.published_date or "N/A",
                            "inline": True,
                        },
                        {"name": "Affected Software", "value": software or "N/A", "inline": False},
                        {"name": "Status", "value": status, "inline": True},
                    ],
                    "footer": {"text": FOOTER},
                    "timestamp": datetime.now(tz=UTC).isoformat(),
                },
            ],
        }

    def send(
        self,
        intent: DispatchIntent,
        config: dict[str, Any],
        deadline: float | None = None,
    ) -> ChannelResult:
        cfg = DiscordChannelConfig(**config)
        payload = self.build_payload(intent.vulnerability, cfg)
        return _post_once(
            self.channel,
            cfg.webhook_url,
            payload,
            cfg.timeout_seconds or self.timeout_seconds,
            self._clock,
            deadline,
        )


def _post_once(
    channel: ChannelType,
    url: str,
    payload: dict[str, Any],
    timeout: float,
    clock: Callable[[], float],
    deadline: float | None = None,
) -> ChannelResult:
    start = clock()
    try:
        send_json(url, payload, timeout=bounded_timeout(timeout, deadline, start))
    except ChannelDeliveryError as exc:
        return ChannelResult.failure(
            channel, str(exc), provider=channel.value, latency_ms=elapsed_ms(start, clock()),
        )
    return ChannelResult.ok(channel, provider=channel.value, latency_ms=elapsed_ms(start, clock()))
