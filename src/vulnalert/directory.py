"""Collaborator protocols: user directory and notification preferences.

The pipeline only needs two questions answered about a rule owner: where
to send email, and whether in-app alerts are enabled. Real deployments
plug in their user service; ``StaticUserDirectory`` serves config files
and tests.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel


@runtime_checkable
class UserDirectory(Protocol):
    """Resolves rule owners to contact details."""

    def get_contact_email(self, owner_id: str) -> str | None: ...

    def get_display_name(self, owner_id: str) -> str | None: ...


@runtime_checkable
class NotificationPreferences(Protocol):
    """Answers whether the in-app channel is enabled for an owner."""

    def in_app_enabled(self, owner_id: str) -> bool: ...


class UserEntry(BaseModel):
    email: str | None = None
    name: str | None = None
    in_app: bool = True


class StaticUserDirectory:
    """Directory and preferences backed by an in-memory mapping.

    Satisfies both ``UserDirectory`` and ``NotificationPreferences``.
    Unknown owners have no email address and in-app enabled.
    """

    def __init__(self, users: dict[str, UserEntry | dict[str, Any]] | None = None) -> None:
        self._users: dict[str, UserEntry] = {
            owner_id: entry if isinstance(entry, UserEntry) else UserEntry(**entry)
            for owner_id, entry in (users or {}).items()
        }

    def get_contact_email(self, owner_id: str) -> str | None:
        entry = self._users.get(owner_id)
        return entry.email if entry else None

    def get_display_name(self, owner_id: str) -> str | None:
        entry = self._users.get(owner_id)
        return entry.name if entry else None

    def in_app_enabled(self, owner_id: str) -> bool:
        entry = self._users.get(owner_id)
        return entry.in_app if entry else True
