"""Typed per-channel configuration parsed from ``ChannelAction.config``.

Each model is validated at rule creation time and parsed again by the
dispatcher at send time. ``timeout_seconds`` overrides the dispatcher's
default budget for that one action.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from vulnalert.models import ChannelType


def _check_url(value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ValueError(f"URL must start with http:// or https://, got '{value}'")
    return value


HttpUrlStr = Annotated[str, AfterValidator(_check_url)]


class _ChannelConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    timeout_seconds: float | None = Field(None, gt=0)


class InAppChannelConfig(_ChannelConfig):
    """In-app notifications need no addressing."""


class EmailChannelConfig(_ChannelConfig):
    to: str | None = None
    """Recipient override; defaults to the owner's contact address."""

    subject_prefix: str = ""

    @field_validator("to")
    @classmethod
    def _check_to(cls, value: str | None) -> str | None:
        if value is not None and "@" not in value:
            raise ValueError(f"Invalid email address: '{value}'")
        return value


class SlackChannelConfig(_ChannelConfig):
    webhook_url: HttpUrlStr
    channel: str | None = None
    username: str = "vulnalert"


class DiscordChannelConfig(_ChannelConfig):
    webhook_url: HttpUrlStr
    username: str = "vulnalert"


class WebhookChannelConfig(_ChannelConfig):
    url: HttpUrlStr
    method: Literal["POST", "PUT", "PATCH"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("method", mode="before")
    @classmethod
    def _upper_method(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


CHANNEL_CONFIGS: dict[ChannelType, type[_ChannelConfig]] = {
    ChannelType.IN_APP: InAppChannelConfig,
    ChannelType.EMAIL: EmailChannelConfig,
    ChannelType.SLACK: SlackChannelConfig,
    ChannelType.DISCORD: DiscordChannelConfig,
    ChannelType.WEBHOOK: WebhookChannelConfig,
}


def parse_channel_config(channel: ChannelType, config: dict[str, Any]) -> Any:
    """Parse a raw action config into the channel's typed model.

    Raises ``pydantic.ValidationError`` on malformed config.
    """
    return CHANNEL_CONFIGS[channel](**config)
