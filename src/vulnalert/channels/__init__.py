"""Channel dispatchers for alert delivery.

Dispatchers: InAppDispatcher, EmailDispatcher, SlackDispatcher,
DiscordDispatcher, WebhookDispatcher.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from vulnalert.channels.base import ChannelDispatcher
from vulnalert.channels.chat import DiscordDispatcher, SlackDispatcher
from vulnalert.channels.email import EmailDispatcher, EmailSettings, build_email_dispatcher
from vulnalert.channels.http import ChannelDeliveryError
from vulnalert.channels.inapp import InAppDispatcher, NotificationStore
from vulnalert.channels.webhook import WebhookDispatcher
from vulnalert.directory import NotificationPreferences, UserDirectory
from vulnalert.models import ChannelType


class ChannelSettings(BaseModel):
    """The ``channels`` section of vulnalert.yaml: per-channel budgets."""

    model_config = ConfigDict(extra="forbid")

    in_app_timeout_seconds: float = Field(5.0, gt=0)
    slack_timeout_seconds: float = Field(10.0, gt=0)
    discord_timeout_seconds: float = Field(10.0, gt=0)
    webhook_timeout_seconds: float = Field(10.0, gt=0)


def build_dispatchers(
    *,
    notification_store: NotificationStore,
    email: EmailSettings | None = None,
    channels: ChannelSettings | None = None,
    directory: UserDirectory | None = None,
    preferences: NotificationPreferences | None = None,
    app_url: str = "http://localhost:3000",
) -> dict[ChannelType, ChannelDispatcher]:
    """Build one dispatcher per channel type from settings."""
    channels = channels or ChannelSettings()
    email = email or EmailSettings()
    return {
        ChannelType.IN_APP: InAppDispatcher(
            notification_store,
            preferences=preferences,
            timeout_seconds=channels.in_app_timeout_seconds,
        ),
        ChannelType.EMAIL: build_email_dispatcher(email, directory=directory, app_url=app_url),
        ChannelType.SLACK: SlackDispatcher(
            app_url=app_url, timeout_seconds=channels.slack_timeout_seconds,
        ),
        ChannelType.DISCORD: DiscordDispatcher(
            app_url=app_url, timeout_seconds=channels.discord_timeout_seconds,
        ),
        ChannelType.WEBHOOK: WebhookDispatcher(timeout_seconds=channels.webhook_timeout_seconds),
    }


__all__ = [
    "ChannelDeliveryError",
    "ChannelDispatcher",
    "ChannelSettings",
    "DiscordDispatcher",
    "EmailDispatcher",
    "EmailSettings",
    "InAppDispatcher",
    "NotificationStore",
    "SlackDispatcher",
    "WebhookDispatcher",
    "build_dispatchers",
]
