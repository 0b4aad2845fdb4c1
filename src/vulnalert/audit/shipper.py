"""Pluggable shippers forming the dispatch audit event stream.

Ships audit entries to external backends after the local file write.
Shipping is fire-and-forget: failures are warned but never fail a
dispatch round.

Built-in backends:
- FilesystemShipper: append JSON lines to a second file
- WebhookShipper: POST JSON to a URL (stdlib only)

Custom shippers just need a ``ship(entry: AuditEntry) -> None`` method.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from vulnalert.audit.logger import AuditEntry
from vulnalert.channels.http import send_json


@runtime_checkable
class AuditShipper(Protocol):
    """Protocol for audit entry shippers."""

    def ship(self, entry: AuditEntry) -> None:
        """Ship a single audit entry to an external backend."""
        ...


class FilesystemShipper:
    """Append audit entries as JSON lines to a second file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    def ship(self, entry: AuditEntry) -> None:
        line = json.dumps(entry.model_dump(mode="json"), sort_keys=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


class WebhookShipper:
    """POST audit entries as JSON to a webhook URL."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout

    def ship(self, entry: AuditEntry) -> None:
        envelope = {
            "type": "dispatch_result",
            "entry": entry.model_dump(mode="json"),
            "shipped_at": datetime.now(tz=UTC).isoformat(),
        }
        send_json(self._url, envelope, headers=self._headers, timeout=self._timeout)


class AuditShippingSettings(BaseModel):
    """The ``audit_shipping`` section of vulnalert.yaml."""

    model_config = ConfigDict(extra="forbid")

    filesystem_path: str | None = None
    webhook_url: str | None = None
    webhook_headers: dict[str, str] = Field(default_factory=dict)
    webhook_timeout: float = Field(10.0, gt=0)


def build_shippers(config: AuditShippingSettings | dict[str, Any]) -> list[AuditShipper]:
    """Build shipper instances from settings or a plain dict.

    Supported keys:
    - ``filesystem_path``: path for FilesystemShipper
    - ``webhook_url``: URL for WebhookShipper
    - ``webhook_headers``: optional headers dict for WebhookShipper
    - ``webhook_timeout``: optional timeout for WebhookShipper (default 10.0)
    """
    if not isinstance(config, AuditShippingSettings):
        config = AuditShippingSettings(**config)

    shippers: list[AuditShipper] = []

    if config.filesystem_path is not None:
        shippers.append(FilesystemShipper(config.filesystem_path))

    if config.webhook_url is not None:
        shippers.append(
            WebhookShipper(
                url=config.webhook_url,
                headers=config.webhook_headers,
                timeout=config.webhook_timeout,
            )
        )

    return shippers
