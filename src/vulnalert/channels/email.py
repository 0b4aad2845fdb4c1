"""Email channel with primary/secondary provider fallback.

Built-in providers:
- SmtpEmailProvider: stdlib smtplib (SSL on port 465, STARTTLS otherwise)
- ResendEmailProvider: POST to the Resend HTTP API (stdlib urllib)

The primary provider is retried per the ``RetryPolicy``. If it is still
failing and fallback is enabled, the secondary provider is retried the
same way. ``ChannelResult.provider`` names the slot ("primary" or
"secondary") that delivered, or the last one tried.

Retries and fallback stay inside the send deadline: a retry or a
fallback provider is only started when its backoff plus one full
provider timeout still fits.
"""

from __future__ import annotations

import html
import logging
import smtplib
import ssl
import time
from collections.abc import Callable
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import Any, Literal, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field, model_validator

from vulnalert.channels.base import elapsed_ms, severity_icon, vulnerability_link
from vulnalert.channels.configs import EmailChannelConfig
from vulnalert.channels.http import ChannelDeliveryError, send_json
from vulnalert.channels.retry import RetryExhausted, RetryPolicy, call_with_retry
from vulnalert.directory import UserDirectory
from vulnalert.models import ChannelResult, ChannelType, DispatchIntent

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"

ProviderKind = Literal["smtp", "resend", "none"]


class EmailMessage(BaseModel):
    """Rendered email content."""

    subject: str
    text_body: str
    html_body: str | None = None


# ------------------------------------------------------------------
# Providers
# ------------------------------------------------------------------


@runtime_checkable
class EmailProvider(Protocol):
    """Protocol for email providers.

    ``send`` raises ``ChannelDeliveryError`` on any delivery failure and
    gives up after ``timeout`` seconds.
    """

    name: str
    timeout: float

    def send(self, to_address: str, message: EmailMessage) -> None: ...


class SmtpEmailProvider:
    """Send email over SMTP using stdlib smtplib."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_address: str = "noreply@vulnalert.local",
        use_tls: bool = True,
        timeout: float = 10.0,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_address = from_address
        self.use_tls = use_tls
        self.timeout = timeout

    def build_mime(self, to_address: str, message: EmailMessage) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.subject
        msg["From"] = self.from_address
        msg["To"] = to_address
        msg.attach(MIMEText(message.text_body, "plain", "utf-8"))
        if message.html_body:
            msg.attach(MIMEText(message.html_body, "html", "utf-8"))
        return msg

    def send(self, to_address: str, message: EmailMessage) -> None:
        msg = self.build_mime(to_address, message)
        try:
            if self.port == 465:
                context = ssl.create_default_context()
                with smtplib.SMTP_SSL(
                    self.host, self.port, context=context, timeout=self.timeout,
                ) as server:
                    self._deliver(server, to_address, msg)
            else:
                with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as server:
                    if self.use_tls:
                        server.starttls()
                    self._deliver(server, to_address, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise ChannelDeliveryError(f"SMTP {self.host}:{self.port} failed: {exc}") from exc

    def _deliver(self, server: smtplib.SMTP, to_address: str, msg: MIMEMultipart) -> None:
        if self.username and self.password:
            server.login(self.username, self.password)
        server.sendmail(self.from_address, [to_address], msg.as_string())


class ResendEmailProvider:
    """Send email through the Resend HTTP API."""

    name = "resend"

    def __init__(
        self,
        api_key: str,
        from_address: str = "noreply@vulnalert.local",
        endpoint: str = RESEND_API_URL,
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self.from_address = from_address
        self.endpoint = endpoint
        self.timeout = timeout

    def send(self, to_address: str, message: EmailMessage) -> None:
        payload: dict[str, Any] = {
            "from": self.from_address,
            "to": [to_address],
            "subject": message.subject,
            "text": message.text_body,
        }
        if message.html_body:
            payload["html"] = message.html_body
        send_json(
            self.endpoint,
            payload,
            headers={"Authorization": f"Bearer {self._api_key}"},
            timeout=self.timeout,
        )


# ------------------------------------------------------------------
# Settings
# ------------------------------------------------------------------


class SmtpSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "localhost"
    port: int = 587
    username: str | None = None
    password: str | None = None
    use_tls: bool = True


class ResendSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    api_key: str | None = None
    endpoint: str = RESEND_API_URL


class EmailSettings(BaseModel):
    """The ``email`` section of vulnalert.yaml."""

    model_config = ConfigDict(extra="forbid")

    primary_provider: ProviderKind = "none"
    secondary_provider: ProviderKind = "none"
    enable_fallback: bool = True
    from_email: str = "noreply@vulnalert.local"
    from_name: str = "vulnalert"
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)
    resend: ResendSettings = Field(default_factory=ResendSettings)
    retry: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(max_retries=2, base_delay_seconds=2.0),
    )
    send_timeout_seconds: float = Field(10.0, gt=0)
    """Per-attempt provider timeout."""

    timeout_seconds: float = Field(90.0, gt=0)
    """Coordinator budget for the whole channel, retries and fallback included."""

    @model_validator(mode="after")
    def _check_providers(self) -> EmailSettings:
        uses_resend = "resend" in (self.primary_provider, self.secondary_provider)
        if uses_resend and not self.resend.api_key:
            raise ValueError(
                "resend provider selected but no API key configured "
                "(set email.resend.api_key or VULNALERT_RESEND_API_KEY)",
            )

        worst_case = self.provider_count * self.retry.worst_case_seconds(self.send_timeout_seconds)
        if worst_case > self.timeout_seconds:
            raise ValueError(
                f"email retries can take {worst_case:g}s but timeout_seconds is "
                f"{self.timeout_seconds:g}s; lower retry or send_timeout_seconds, "
                "or raise timeout_seconds",
            )
        return self

    @property
    def provider_count(self) -> int:
        """Providers a single send may use, fallback included."""
        primary = self.primary_provider != "none"
        secondary = self.secondary_provider != "none" and (self.enable_fallback or not primary)
        return int(primary) + int(secondary)

    @property
    def from_address(self) -> str:
        return formataddr((self.from_name, self.from_email)) if self.from_name else self.from_email


def build_provider(kind: ProviderKind, settings: EmailSettings) -> EmailProvider | None:
    """Build a provider instance for *kind*, or None for "none"."""
    if kind == "smtp":
        return SmtpEmailProvider(
            host=settings.smtp.host,
            port=settings.smtp.port,
            username=settings.smtp.username,
            password=settings.smtp.password,
            from_address=settings.from_address,
            use_tls=settings.smtp.use_tls,
            timeout=settings.send_timeout_seconds,
        )
    if kind == "resend":
        return ResendEmailProvider(
            api_key=settings.resend.api_key or "",
            from_address=settings.from_address,
            endpoint=settings.resend.endpoint,
            timeout=settings.send_timeout_seconds,
        )
    return None


# ------------------------------------------------------------------
# Template
# ------------------------------------------------------------------


def _yes_no(value: bool | None) -> str:
    if value is None:
        return "Unknown"
    return "Yes" if value else "No"


def render_message(
    intent: DispatchIntent,
    app_url: str,
    recipient_name: str | None = None,
    subject_prefix: str = "",
) -> EmailMessage:
    """Render the alert email for *intent*."""
    vuln = intent.vulnerability
    severity = (vuln.severity or "UNKNOWN").upper()
    icon = severity_icon(severity)
    link = vulnerability_link(app_url, vuln.cve_id)
    cvss = str(vuln.cvss_score) if vuln.cvss_score is not None else "N/A"
    software = ", ".join(vuln.affected_software) or "N/A"
    rule_name = intent.rule_name or intent.rule_id

    subject = f"{icon} {severity} Alert: {vuln.cve_id} - {vuln.title or 'Untitled'}"
    if subject_prefix:
        subject = f"{subject_prefix} {subject}"

    greeting = f"Hi {recipient_name}," if recipient_name else "Hello,"
    text_body = "\n".join([
        greeting,
        "",
        f"Your alert rule \"{rule_name}\" matched a new vulnerability.",
        "",
        f"CVE: {vuln.cve_id}",
        f"Title: {vuln.title}",
        f"Severity: {severity}",
        f"CVSS Score: {cvss}",
        f"Affected Software: {software}",
        f"Exploit Available: {_yes_no(vuln.exploit_available)}",
        f"Patch Available: {_yes_no(vuln.patch_available)}",
        "",
        vuln.description,
        "",
        f"View details: {link}",
    ])

    esc = html.escape
    rows = "".join(
        f"<tr><th align=\"left\">{esc(label)}</th><td>{esc(value)}</td></tr>"
        for label, value in (
            ("CVE", vuln.cve_id),
            ("Severity", severity),
            ("CVSS Score", cvss),
            ("Affected Software", software),
            ("Exploit Available", _yes_no(vuln.exploit_available)),
            ("Patch Available", _yes_no(vuln.patch_available)),
        )
    )
    html_body = (
        f"<html><body>"
        f"<p>{esc(greeting)}</p>"
        f"<p>Your alert rule <strong>{esc(rule_name)}</strong> matched a new vulnerability.</p>"
        f"<h2>{icon} {esc(vuln.title or vuln.cve_id)}</h2>"
        f"<table>{rows}</table>"
        f"<p>{esc(vuln.description)}</p>"
        f"<p><a href=\"{esc(link)}\">View details</a></p>"
        f"</body></html>"
    )
    return EmailMessage(subject=subject, text_body=text_body, html_body=html_body)


# ------------------------------------------------------------------
# Dispatcher
# ------------------------------------------------------------------


class EmailDispatcher:
    """Deliver alert emails with retry and provider fallback."""

    channel = ChannelType.EMAIL

    def __init__(
        self,
        primary: EmailProvider | None,
        secondary: EmailProvider | None = None,
        directory: UserDirectory | None = None,
        retry_policy: RetryPolicy | None = None,
        enable_fallback: bool = True,
        app_url: str = "http://localhost:3000",
        timeout_seconds: float = 90.0,
        _sleep: Callable[[float], None] | None = None,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._directory = directory
        self._policy = retry_policy or RetryPolicy()
        self._enable_fallback = enable_fallback
        self._app_url = app_url
        self.timeout_seconds = timeout_seconds
        self._sleep = _sleep or time.sleep
        self._clock = _clock or time.monotonic

    def _providers(self) -> list[tuple[str, EmailProvider]]:
        slots: list[tuple[str, EmailProvider]] = []
        if self._primary is not None:
            slots.append(("primary", self._primary))
        if self._secondary is not None and (self._enable_fallback or self._primary is None):
            slots.append(("secondary", self._secondary))
        return slots

    def send(
        self,
        intent: DispatchIntent,
        config: dict[str, Any],
        deadline: float | None = None,
    ) -> ChannelResult:
        cfg = EmailChannelConfig(**config)
        providers = self._providers()
        if not providers:
            return ChannelResult.skipped(self.channel)

        to_address = cfg.to
        if to_address is None and self._directory is not None:
            to_address = self._directory.get_contact_email(intent.owner_id)
        if not to_address:
            return ChannelResult.failure(
                self.channel, f"no email address for owner '{intent.owner_id}'",
            )

        recipient = self._directory.get_display_name(intent.owner_id) if self._directory else None
        message = render_message(intent, self._app_url, recipient, cfg.subject_prefix)

        start = self._clock()
        if deadline is None:
            deadline = start + (cfg.timeout_seconds or self.timeout_seconds)
        attempts = 0
        errors: list[str] = []
        slot = providers[0][0]
        for index, (name, provider) in enumerate(providers):
            # The first provider always gets one attempt; fallbacks only
            # start if a full attempt still fits.
            if index > 0 and self._clock() + provider.timeout > deadline:
                errors.append(f"{name.capitalize()}: not attempted, deadline reached")
                logger.warning(
                    "Email %s provider skipped for %s: deadline reached",
                    name, intent.dispatch_id,
                )
                break
            slot = name
            try:
                _, used = call_with_retry(
                    lambda p=provider: p.send(to_address, message),
                    self._policy,
                    retry_on=(ChannelDeliveryError,),
                    sleep=self._sleep,
                    on_retry=lambda n, exc, s=name: logger.warning(
                        "Email %s attempt %d failed for %s: %s", s, n, intent.dispatch_id, exc,
                    ),
                    deadline=deadline,
                    attempt_timeout=provider.timeout,
                    clock=self._clock,
                )
            except RetryExhausted as exc:
                attempts += exc.attempts
                errors.append(f"{name.capitalize()}: {exc.last_error}")
                logger.warning(
                    "Email %s provider exhausted after %d attempt(s) for %s: %s",
                    name, exc.attempts, intent.dispatch_id, exc.last_error,
                )
                continue
            attempts += used
            return ChannelResult.ok(
                self.channel,
                provider=slot,
                retry_count=attempts - 1,
                latency_ms=elapsed_ms(start, self._clock()),
            )

        reason = errors[0] if len(errors) == 1 else "All providers failed. " + ", ".join(errors)
        return ChannelResult.failure(
            self.channel,
            reason,
            provider=slot,
            retry_count=attempts - 1,
            latency_ms=elapsed_ms(start, self._clock()),
        )


def build_email_dispatcher(
    settings: EmailSettings,
    directory: UserDirectory | None = None,
    app_url: str = "http://localhost:3000",
) -> EmailDispatcher:
    return EmailDispatcher(
        primary=build_provider(settings.primary_provider, settings),
        secondary=build_provider(settings.secondary_provider, settings),
        directory=directory,
        retry_policy=settings.retry,
        enable_fallback=settings.enable_fallback,
        app_url=app_url,
        timeout_seconds=settings.timeout_seconds,
    )
