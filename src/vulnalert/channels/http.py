"""JSON-over-HTTP delivery shared by the webhook-style channels.

Uses stdlib ``urllib.request`` -- no extra dependencies required.
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Any

from vulnalert import __version__

USER_AGENT = f"vulnalert/{__version__}"


class ChannelDeliveryError(Exception):
    """Raised when an outbound delivery fails (non-2xx, timeout, network)."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


def send_json(
    url: str,
    payload: dict[str, Any],
    *,
    method: str = "POST",
    headers: dict[str, str] | None = None,
    timeout: float = 10.0,
) -> int:
    """Send *payload* as JSON and return the HTTP status.

    Any status outside 2xx raises ``ChannelDeliveryError``.
    """
    body = json.dumps(payload, sort_keys=True).encode("utf-8")
    req = urllib.request.Request(
        url,
        data=body,
        headers={
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **(headers or {}),
        },
        method=method,
    )

    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:  # noqa: S310
            status = int(resp.status)
    except urllib.error.HTTPError as exc:
        raise ChannelDeliveryError(
            f"{method} {url} failed with status {exc.code}", status=exc.code,
        ) from exc
    except TimeoutError as exc:
        raise ChannelDeliveryError(f"{method} {url} timed out after {timeout:.0f}s") from exc
    except urllib.error.URLError as exc:
        raise ChannelDeliveryError(f"{method} {url} unreachable: {exc.reason}") from exc

    if not 200 <= status < 300:
        raise ChannelDeliveryError(f"{method} {url} failed with status {status}", status=status)
    return status
