"""Generic webhook channel.

Sends the canonical alert envelope to a user-configured URL::

    {
      "dispatchId": "dsp-...",
      "timestamp": "2026-01-01T00:00:00+00:00",
      "ruleId": "alr-...",
      "vulnerability": {"cveId", "title", "severity", "cvssScore",
                        "affectedSoftware", "exploitAvailable", "patchAvailable"},
      "alert": {"type": "vulnerability_alert", "priority": "critical"}
    }

The envelope is a stable wire format; add fields, never rename them.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from vulnalert.channels.base import bounded_timeout, elapsed_ms
from vulnalert.channels.configs import WebhookChannelConfig
from vulnalert.channels.http import ChannelDeliveryError, send_json
from vulnalert.models import ChannelResult, ChannelType, DispatchIntent, priority_for


def build_envelope(intent: DispatchIntent, timestamp: datetime | None = None) -> dict[str, Any]:
    timestamp = timestamp or datetime.now(tz=UTC)
    return {
        "dispatchId": intent.dispatch_id,
        "timestamp": timestamp.isoformat(),
        "ruleId": intent.rule_id,
        "vulnerability": intent.vulnerability.summary(),
        "alert": {
            "type": "vulnerability_alert",
            "priority": priority_for(intent.vulnerability.severity),
        },
    }


class WebhookDispatcher:
    """Deliver the alert envelope with the configured method and headers.

    User headers are merged over the defaults. A single attempt; non-2xx
    is a hard failure.
    """

    channel = ChannelType.WEBHOOK

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._clock = _clock or time.monotonic

    def send(
        self,
        intent: DispatchIntent,
        config: dict[str, Any],
        deadline: float | None = None,
    ) -> ChannelResult:
        cfg = WebhookChannelConfig(**config)
        envelope = build_envelope(intent)

        start = self._clock()
        try:
            send_json(
                cfg.url,
                envelope,
                method=cfg.method,
                headers=cfg.headers,
                timeout=bounded_timeout(
                    cfg.timeout_seconds or self.timeout_seconds, deadline, start,
                ),
            )
        except ChannelDeliveryError as exc:
            return ChannelResult.failure(
                self.channel,
                str(exc),
                provider="webhook",
                latency_ms=elapsed_ms(start, self._clock()),
            )
        return ChannelResult.ok(
            self.channel, provider="webhook", latency_ms=elapsed_ms(start, self._clock()),
        )
