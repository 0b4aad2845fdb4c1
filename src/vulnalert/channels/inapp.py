"""In-app notification channel.

Writes a notification record directly to storage. The only way this
channel fails is storage being unavailable; that error propagates so the
coordinator records it like any other channel failure.
"""

from __future__ import annotations

import json
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from vulnalert.channels.base import elapsed_ms
from vulnalert.channels.configs import InAppChannelConfig
from vulnalert.db.connection import Database
from vulnalert.directory import NotificationPreferences
from vulnalert.models import (
    ChannelResult,
    ChannelType,
    DispatchIntent,
    Notification,
    priority_for,
)


class NotificationStore:
    """SQLite-backed store of in-app notifications."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def add(self, notification: Notification) -> Notification:
        self._db.write(
            """INSERT INTO notifications
               (notification_id, owner_id, type, title, message,
                data_json, priority, is_read, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                notification.notification_id,
                notification.owner_id,
                notification.type,
                notification.title,
                notification.message,
                json.dumps(notification.data, sort_keys=True),
                notification.priority,
                1 if notification.is_read else 0,
                notification.created_at.isoformat(),
            ),
        )
        return notification

    def list_for_owner(
        self, owner_id: str, unread_only: bool = False, limit: int = 50,
    ) -> list[Notification]:
        """Newest first."""
        sql = "SELECT * FROM notifications WHERE owner_id = ?"
        if unread_only:
            sql += " AND is_read = 0"
        sql += " ORDER BY created_at DESC LIMIT ?"
        rows = self._db.fetchall(sql, (owner_id, limit))
        return [
            Notification(
                notification_id=r["notification_id"],
                owner_id=r["owner_id"],
                type=r["type"],
                title=r["title"],
                message=r["message"],
                data=json.loads(r["data_json"]),
                priority=r["priority"],
                is_read=bool(r["is_read"]),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    def mark_read(self, notification_id: str) -> bool:
        cursor = self._db.write(
            "UPDATE notifications SET is_read = 1 WHERE notification_id = ?",
            (notification_id,),
        )
        return cursor.rowcount == 1


def build_notification(intent: DispatchIntent) -> Notification:
    vuln = intent.vulnerability
    severity = (vuln.severity or "UNKNOWN").upper()
    return Notification(
        notification_id=f"ntf-{uuid.uuid4().hex[:12]}",
        owner_id=intent.owner_id,
        title=f"New {severity} Vulnerability: {vuln.cve_id}",
        message=(
            f"{vuln.title or vuln.cve_id} has been discovered with CVSS score "
            f"{vuln.cvss_score if vuln.cvss_score is not None else 'N/A'}"
        ),
        data={
            "cveId": vuln.cve_id,
            "severity": vuln.severity,
            "cvssScore": vuln.cvss_score,
            "ruleId": intent.rule_id,
            "dispatchId": intent.dispatch_id,
        },
        priority=priority_for(vuln.severity),
        created_at=datetime.now(tz=UTC),
    )


class InAppDispatcher:
    """Store an in-app notification unless the owner has turned them off."""

    channel = ChannelType.IN_APP

    def __init__(
        self,
        store: NotificationStore,
        preferences: NotificationPreferences | None = None,
        timeout_seconds: float = 5.0,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._preferences = preferences
        self.timeout_seconds = timeout_seconds
        self._clock = _clock or time.monotonic

    def send(
        self,
        intent: DispatchIntent,
        config: dict[str, Any],
        deadline: float | None = None,
    ) -> ChannelResult:
        InAppChannelConfig(**config)
        if self._preferences is not None and not self._preferences.in_app_enabled(intent.owner_id):
            return ChannelResult.skipped(self.channel)

        start = self._clock()
        self._store.add(build_notification(intent))
        return ChannelResult.ok(
            self.channel, provider="in-app", latency_ms=elapsed_ms(start, self._clock()),
        )
