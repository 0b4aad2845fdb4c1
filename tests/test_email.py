"""Tests for the email channel: providers, fallback, retry accounting, template."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest
from pydantic import ValidationError

from vulnalert.channels.email import (
    EmailDispatcher,
    EmailMessage,
    EmailSettings,
    ResendEmailProvider,
    SmtpEmailProvider,
    build_email_dispatcher,
    render_message,
)
from vulnalert.channels.http import ChannelDeliveryError
from vulnalert.channels.retry import RetryPolicy
from vulnalert.directory import StaticUserDirectory
from vulnalert.models import DispatchIntent


class FakeProvider:
    """Provider that fails a fixed number of times, then succeeds."""

    def __init__(self, name: str = "fake", failures: int = 0) -> None:
        self.name = name
        self.timeout = 10.0
        self.failures = failures
        self.sent: list[tuple[str, EmailMessage]] = []
        self.calls = 0

    def send(self, to_address: str, message: EmailMessage) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ChannelDeliveryError(f"{self.name} timed out after 10s")
        self.sent.append((to_address, message))


class MockClock:
    """A controllable clock for testing time-dependent behavior."""

    def __init__(self, start: float = 1_000.0) -> None:
        self._now = start

    def __call__(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds


class HangingProvider:
    """Provider whose every attempt runs to its timeout and fails."""

    def __init__(self, name: str, clock: MockClock, timeout: float = 10.0) -> None:
        self.name = name
        self.timeout = timeout
        self.calls = 0
        self._clock = clock

    def send(self, to_address: str, message: EmailMessage) -> None:
        self.calls += 1
        self._clock.advance(self.timeout)
        raise ChannelDeliveryError(f"{self.name} timed out after {self.timeout:g}s")


@pytest.fixture()
def intent(critical_vuln) -> DispatchIntent:
    return DispatchIntent(
        dispatch_id="dsp-mail-001",
        rule_id="alr-mail-001",
        rule_name="Critical RCE",
        owner_id="user-1",
        vulnerability_id=critical_vuln.cve_id,
        vulnerability=critical_vuln,
        generated_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )


@pytest.fixture()
def directory() -> StaticUserDirectory:
    return StaticUserDirectory({"user-1": {"email": "alice@example.com", "name": "Alice"}})


def _dispatcher(primary, secondary=None, directory=None, retries=2, fallback=True):
    return EmailDispatcher(
        primary,
        secondary,
        directory=directory,
        retry_policy=RetryPolicy(max_retries=retries, base_delay_seconds=1),
        enable_fallback=fallback,
        app_url="https://app.example.com",
        _sleep=lambda _: None,
    )


class TestFallback:
    def test_primary_success(self, intent, directory):
        primary = FakeProvider("smtp")
        result = _dispatcher(primary, directory=directory).send(intent, {})
        assert result.success
        assert result.provider == "primary"
        assert result.retry_count == 0
        assert primary.sent[0][0] == "alice@example.com"

    def test_primary_retried_then_succeeds(self, intent, directory):
        primary = FakeProvider("smtp", failures=2)
        result = _dispatcher(primary, directory=directory).send(intent, {})
        assert result.success
        assert result.provider == "primary"
        assert result.retry_count == 2

    def test_primary_times_out_secondary_succeeds(self, intent, directory):
        primary = FakeProvider("smtp", failures=99)
        secondary = FakeProvider("resend")
        result = _dispatcher(primary, secondary, directory=directory).send(intent, {})
        assert result.success
        assert result.provider == "secondary"
        assert result.retry_count >= 1
        assert result.retry_count == 3
        assert primary.calls == 3
        assert len(secondary.sent) == 1

    def test_both_fail(self, intent, directory):
        primary = FakeProvider("smtp", failures=99)
        secondary = FakeProvider("resend", failures=99)
        result = _dispatcher(primary, secondary, directory=directory, retries=1).send(intent, {})
        assert not result.success
        assert result.provider == "secondary"
        assert result.retry_count == 3
        assert "Primary" in result.error_message
        assert "Secondary" in result.error_message
        assert result.latency_ms >= 0

    def test_fallback_disabled(self, intent, directory):
        primary = FakeProvider("smtp", failures=99)
        secondary = FakeProvider("resend")
        result = _dispatcher(
            primary, secondary, directory=directory, fallback=False,
        ).send(intent, {})
        assert not result.success
        assert result.provider == "primary"
        assert secondary.calls == 0

    def test_secondary_only(self, intent, directory):
        secondary = FakeProvider("resend")
        result = _dispatcher(None, secondary, directory=directory).send(intent, {})
        assert result.success
        assert result.provider == "secondary"


class TestDeadline:
    def _hanging(self, clock, directory):
        primary = HangingProvider("smtp", clock)
        secondary = HangingProvider("resend", clock)
        dispatcher = EmailDispatcher(
            primary,
            secondary,
            directory=directory,
            retry_policy=RetryPolicy(max_retries=2, base_delay_seconds=2),
            _sleep=clock.advance,
            _clock=clock,
        )
        return primary, secondary, dispatcher

    def test_both_providers_hanging_finish_within_budget(self, intent, directory):
        clock = MockClock()
        primary, secondary, dispatcher = self._hanging(clock, directory)
        start = clock()
        result = dispatcher.send(intent, {"timeout_seconds": 60})

        assert clock() - start <= 60
        assert not result.success
        assert result.provider == "secondary"
        assert primary.calls == 3
        # secondary starts at 36s: one retry fits (46 + 2 + 10 <= 60), a second does not
        assert secondary.calls == 2
        assert result.retry_count == 4
        assert result.latency_ms == pytest.approx(58_000)
        assert "All providers failed" in result.error_message

    def test_deadline_skips_fallback(self, intent, directory):
        clock = MockClock()
        primary, secondary, dispatcher = self._hanging(clock, directory)
        result = dispatcher.send(intent, {}, deadline=clock() + 25)

        assert not result.success
        assert primary.calls == 2
        assert secondary.calls == 0
        assert result.provider == "primary"
        assert result.retry_count == 1
        assert "Secondary: not attempted, deadline reached" in result.error_message

    def test_first_attempt_always_made(self, intent, directory):
        clock = MockClock()
        primary, secondary, dispatcher = self._hanging(clock, directory)
        result = dispatcher.send(intent, {}, deadline=clock() + 1)

        assert primary.calls == 1
        assert secondary.calls == 0
        assert result.retry_count == 0
        assert result.provider == "primary"


class TestRecipient:
    def test_no_provider_is_skipped(self, intent, directory):
        result = _dispatcher(None, directory=directory).send(intent, {})
        assert result.was_skipped

    def test_no_address_is_failure(self, intent):
        result = _dispatcher(FakeProvider(), directory=StaticUserDirectory()).send(intent, {})
        assert not result.success
        assert not result.was_skipped
        assert "no email address" in result.error_message

    def test_config_override_address(self, intent, directory):
        primary = FakeProvider()
        _dispatcher(primary, directory=directory).send(intent, {"to": "soc@example.com"})
        assert primary.sent[0][0] == "soc@example.com"

    def test_subject_prefix(self, intent, directory):
        primary = FakeProvider()
        _dispatcher(primary, directory=directory).send(intent, {"subject_prefix": "[prod]"})
        assert primary.sent[0][1].subject.startswith("[prod] ")


class TestTemplate:
    def test_subject_and_bodies(self, intent):
        msg = render_message(intent, "https://app.example.com", "Alice")
        assert msg.subject.endswith(
            "CRITICAL Alert: CVE-2026-0001 - Remote code execution in libexample"
        )
        assert "Hi Alice," in msg.text_body
        assert "Critical RCE" in msg.text_body
        assert "CVSS Score: 9.8" in msg.text_body
        assert "https://app.example.com/vulnerabilities/CVE-2026-0001" in msg.text_body
        assert 'href="https://app.example.com/vulnerabilities/CVE-2026-0001"' in msg.html_body

    def test_html_is_escaped(self, intent):
        vuln = intent.vulnerability.model_copy(update={"description": "<script>x</script>"})
        msg = render_message(intent.model_copy(update={"vulnerability": vuln}), "https://a")
        assert "<script>" not in msg.html_body
        assert "&lt;script&gt;" in msg.html_body


class TestProviders:
    def test_resend_posts_to_api(self):
        provider = ResendEmailProvider(api_key="re_test", from_address="alerts@example.com")
        mock = MagicMock()
        mock.return_value.__enter__.return_value.status = 200
        with patch("vulnalert.channels.http.urllib.request.urlopen", mock):
            provider.send("alice@example.com", EmailMessage(subject="s", text_body="t"))
        req = mock.call_args[0][0]
        assert req.full_url == "https://api.resend.com/emails"
        assert req.get_header("Authorization") == "Bearer re_test"
        body = json.loads(req.data)
        assert body["to"] == ["alice@example.com"]
        assert "html" not in body

    def test_smtp_starttls(self):
        provider = SmtpEmailProvider(
            host="smtp.example.com", port=587, username="u", password="p",
            from_address="alerts@example.com",
        )
        with patch("vulnalert.channels.email.smtplib.SMTP") as smtp_cls:
            provider.send("alice@example.com", EmailMessage(subject="s", text_body="t", html_body="<p>t</p>"))
        server = smtp_cls.return_value.__enter__.return_value
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")
        args = server.sendmail.call_args[0]
        assert args[0] == "alerts@example.com"
        assert args[1] == ["alice@example.com"]

    def test_smtp_ssl_port(self):
        provider = SmtpEmailProvider(host="smtp.example.com", port=465)
        with patch("vulnalert.channels.email.smtplib.SMTP_SSL") as ssl_cls:
            provider.send("alice@example.com", EmailMessage(subject="s", text_body="t"))
        server = ssl_cls.return_value.__enter__.return_value
        server.login.assert_not_called()
        server.sendmail.assert_called_once()

    def test_smtp_error_becomes_delivery_error(self):
        provider = SmtpEmailProvider(host="smtp.example.com")
        with patch("vulnalert.channels.email.smtplib.SMTP", side_effect=OSError("refused")):
            with pytest.raises(ChannelDeliveryError, match="refused"):
                provider.send("alice@example.com", EmailMessage(subject="s", text_body="t"))


class TestSettings:
    def test_defaults_have_no_provider(self):
        settings = EmailSettings()
        assert settings.primary_provider == "none"
        dispatcher = build_email_dispatcher(settings)
        assert dispatcher.timeout_seconds == 90.0

    def test_default_retries_fit_the_budget_with_fallback(self):
        settings = EmailSettings(primary_provider="smtp", secondary_provider="smtp")
        assert settings.provider_count == 2
        worst_case = 2 * settings.retry.worst_case_seconds(settings.send_timeout_seconds)
        assert worst_case <= settings.timeout_seconds

    def test_retries_longer_than_budget_rejected(self):
        with pytest.raises(ValidationError, match="timeout_seconds"):
            EmailSettings(
                primary_provider="smtp",
                secondary_provider="smtp",
                retry=RetryPolicy(max_retries=2, base_delay_seconds=5),
                timeout_seconds=60,
            )

    def test_fallback_disabled_counts_one_provider(self):
        settings = EmailSettings(
            primary_provider="smtp", secondary_provider="smtp", enable_fallback=False,
        )
        assert settings.provider_count == 1

    def test_resend_requires_key(self):
        with pytest.raises(ValidationError, match="API key"):
            EmailSettings(primary_provider="resend")

    def test_unknown_provider_rejected(self):
        with pytest.raises(ValidationError):
            EmailSettings(primary_provider="sendgrid")

    def test_from_address_formatting(self):
        settings = EmailSettings(from_email="alerts@example.com", from_name="Sec Team")
        assert settings.from_address == "Sec Team <alerts@example.com>"
