"""Config file loading and auto-discovery for vulnalert.

Searches for ``vulnalert.yaml`` in the current directory and parent
directories, parses it, validates each section and resolves relative
paths against the config file's location.

Secrets may come from the environment instead of the file:
``VULNALERT_SMTP_PASSWORD`` and ``VULNALERT_RESEND_API_KEY``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from vulnalert.audit.shipper import AuditShippingSettings
from vulnalert.channels import ChannelSettings
from vulnalert.channels.email import EmailSettings
from vulnalert.cooldown.store import DEFAULT_LEASE_SECONDS
from vulnalert.directory import UserEntry

CONFIG_FILENAME = "vulnalert.yaml"

ENV_SMTP_PASSWORD = "VULNALERT_SMTP_PASSWORD"
ENV_RESEND_API_KEY = "VULNALERT_RESEND_API_KEY"

DEFAULT_CONFIG_TEMPLATE = """\
# vulnalert configuration
database: vulnalert.db
audit_log: audit.jsonl
app_url: http://localhost:3000

max_workers: 8
channel_workers: 16
cooldown_lease_seconds: 900

email:
  primary_provider: none     # smtp | resend | none
  secondary_provider: none
  enable_fallback: true
  from_email: noreply@vulnalert.local
  from_name: vulnalert
  smtp:
    host: localhost
    port: 587
    use_tls: true
  retry:
    max_retries: 2
    base_delay_seconds: 2
  send_timeout_seconds: 10   # per attempt
  timeout_seconds: 90        # whole send, retries and fallback included

channels:
  slack_timeout_seconds: 10
  discord_timeout_seconds: 10
  webhook_timeout_seconds: 10

audit_shipping: {}

users: {}
"""


class ConfigError(ValueError):
    """Raised when a config file is malformed."""


@dataclass(frozen=True)
class VulnAlertConfig:
    """Parsed vulnalert configuration."""

    config_path: Path | None = None
    database: str = "vulnalert.db"
    audit_log: str = "audit.jsonl"
    app_url: str = "http://localhost:3000"
    max_workers: int = 8
    channel_workers: int = 16
    cooldown_lease_seconds: float = DEFAULT_LEASE_SECONDS
    email: EmailSettings = field(default_factory=EmailSettings)
    channels: ChannelSettings = field(default_factory=ChannelSettings)
    audit_shipping: AuditShippingSettings = field(default_factory=AuditShippingSettings)
    users: dict[str, UserEntry] = field(default_factory=dict)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``vulnalert.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    env: Mapping[str, str] | None = None,
) -> VulnAlertConfig:
    """Load a vulnalert config file.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Defaults, with paths relative to the current directory.
    """
    env = os.environ if env is None else env
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    if config_path is None:
        return _build_config({}, Path.cwd(), None, env)

    text = config_path.read_text(encoding="utf-8")
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    return _build_config(data, config_path.parent, config_path, env)


def _build_config(
    data: dict[str, Any],
    base: Path,
    config_path: Path | None,
    env: Mapping[str, str],
) -> VulnAlertConfig:
    def _resolve(key: str, default: str) -> str:
        return str((base / str(data.get(key) or default)).resolve())

    email_data = dict(data.get("email") or {})
    if env.get(ENV_SMTP_PASSWORD):
        email_data["smtp"] = {**(email_data.get("smtp") or {}), "password": env[ENV_SMTP_PASSWORD]}
    if env.get(ENV_RESEND_API_KEY):
        email_data["resend"] = {
            **(email_data.get("resend") or {}), "api_key": env[ENV_RESEND_API_KEY],
        }

    source = config_path or "defaults"
    try:
        email = EmailSettings(**email_data)
        channels = ChannelSettings(**(data.get("channels") or {}))
        shipping = AuditShippingSettings(**(data.get("audit_shipping") or {}))
        users = {
            str(owner): UserEntry(**(entry or {}))
            for owner, entry in (data.get("users") or {}).items()
        }
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {source}: {exc}") from exc

    if shipping.filesystem_path is not None:
        shipping = shipping.model_copy(
            update={"filesystem_path": str((base / shipping.filesystem_path).resolve())},
        )

    try:
        return VulnAlertConfig(
            config_path=config_path,
            database=_resolve("database", "vulnalert.db"),
            audit_log=_resolve("audit_log", "audit.jsonl"),
            app_url=str(data.get("app_url", "http://localhost:3000")),
            max_workers=int(data.get("max_workers", 8)),
            channel_workers=int(data.get("channel_workers", 16)),
            cooldown_lease_seconds=float(
                data.get("cooldown_lease_seconds", DEFAULT_LEASE_SECONDS),
            ),
            email=email,
            channels=channels,
            audit_shipping=shipping,
            users=users,
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid configuration in {source}: {exc}") from exc
