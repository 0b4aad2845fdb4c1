"""Core data models for vulnalert.

Defines the schemas for:
- Vulnerability records (what gets evaluated)
- Alert rules (conditions + channel actions)
- Cooldown state (per-rule rate limiting)
- Dispatch intents and results (what was sent, and how it went)
- Rule state and in-app notifications (what owners see)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# --- Enums ---


class Severity(enum.StrEnum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"


class ConditionField(enum.StrEnum):
    SEVERITY = "severity"
    CVSS_SCORE = "cvss_score"
    AFFECTED_SOFTWARE = "affected_software"
    CATEGORY = "category"
    EXPLOIT_AVAILABLE = "exploit_available"
    PATCH_AVAILABLE = "patch_available"
    KEV = "kev"
    TRENDING = "trending"
    TAGS = "tags"
    CWE_ID = "cwe_id"


class ConditionOperator(enum.StrEnum):
    EQUALS = "equals"
    IN = "in"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"


class ChannelType(enum.StrEnum):
    IN_APP = "in-app"
    EMAIL = "email"
    SLACK = "slack"
    DISCORD = "discord"
    WEBHOOK = "webhook"


class OutcomeStatus(enum.StrEnum):
    NOT_MATCHED = "not_matched"
    COOLDOWN = "cooldown"
    DISPATCHED = "dispatched"
    FAILED = "failed"


SKIPPED = "skipped"
"""Error message recorded for a channel that was structurally skipped."""


# --- Vulnerability ---


class Vulnerability(BaseModel):
    """A newly observed vulnerability record.

    Accepts camelCase keys from the vulnerability feed (``cveId``,
    ``cvssScore``) as well as snake_case. Unknown feed fields are kept.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    cve_id: str
    title: str = ""
    description: str = ""
    severity: str | None = None
    cvss_score: float | None = None
    affected_software: list[str] = Field(default_factory=list)
    category: str | None = None
    exploit_available: bool | None = None
    patch_available: bool | None = None
    kev: bool | None = None
    trending: bool | None = None
    tags: list[str] = Field(default_factory=list)
    cwe_id: str | None = None
    published_date: str | None = None
    references: list[str] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        """The stable vulnerability block used in outbound webhook payloads."""
        return {
            "cveId": self.cve_id,
            "title": self.title,
            "severity": self.severity,
            "cvssScore": self.cvss_score,
            "affectedSoftware": list(self.affected_software),
            "exploitAvailable": self.exploit_available,
            "patchAvailable": self.patch_available,
        }


def priority_for(severity: str | None) -> str:
    """Map a vulnerability severity to a notification priority."""
    sev = (severity or "").upper()
    if sev == Severity.CRITICAL:
        return "critical"
    if sev == Severity.HIGH:
        return "high"
    return "medium"


# --- Alert Rule Schema ---


class Condition(BaseModel):
    """A single predicate clause. All clauses in a rule are AND-ed."""

    field: ConditionField
    operator: ConditionOperator
    value: Any = None


class ChannelAction(BaseModel):
    """A delivery channel plus its channel-specific addressing/overrides."""

    channel: ChannelType
    config: dict[str, Any] = Field(default_factory=dict)


class AlertRule(BaseModel):
    """A user-defined predicate plus a set of notification channels."""

    rule_id: str
    owner_id: str
    name: str
    description: str = ""
    conditions: list[Condition]
    actions: list[ChannelAction]
    cooldown_minutes: int = Field(60, ge=0)
    is_active: bool = True
    trigger_count: int = Field(0, ge=0)
    last_triggered_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class AlertRuleCreateRequest(BaseModel):
    """Request body for creating an alert rule."""

    owner_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    conditions: list[Condition]
    actions: list[ChannelAction]
    cooldown_minutes: int = 60


class AlertRuleUpdateRequest(BaseModel):
    """Request body for updating an alert rule. All fields optional."""

    name: str | None = None
    description: str | None = None
    conditions: list[Condition] | None = None
    actions: list[ChannelAction] | None = None
    cooldown_minutes: int | None = None
    is_active: bool | None = None


# --- Cooldown ---


class CooldownState(BaseModel):
    """Per-rule rate limiting state, owned by the cooldown store."""

    rule_id: str
    last_triggered_at: datetime | None = None
    in_flight: bool = False
    in_flight_since: datetime | None = None


# --- Dispatch ---


class DispatchIntent(BaseModel):
    """One matched (rule, vulnerability) pair ready for fan-out. Not persisted."""

    dispatch_id: str
    rule_id: str
    rule_name: str = ""
    owner_id: str
    vulnerability_id: str
    vulnerability: Vulnerability
    matched_conditions: list[Condition] = Field(default_factory=list)
    generated_at: datetime


class ChannelResult(BaseModel):
    """Outcome of one channel delivery attempt.

    Build with ``ok()``, ``failure()`` or ``skipped()`` so every outcome is
    an explicit value in the audit trail.
    """

    channel: ChannelType
    success: bool
    provider: str | None = None
    retry_count: int = 0
    latency_ms: float = 0.0
    error_message: str | None = None

    @classmethod
    def ok(
        cls,
        channel: ChannelType,
        provider: str | None = None,
        retry_count: int = 0,
        latency_ms: float = 0.0,
    ) -> ChannelResult:
        return cls(
            channel=channel,
            success=True,
            provider=provider,
            retry_count=retry_count,
            latency_ms=latency_ms,
        )

    @classmethod
    def failure(
        cls,
        channel: ChannelType,
        reason: str,
        provider: str | None = None,
        retry_count: int = 0,
        latency_ms: float = 0.0,
    ) -> ChannelResult:
        return cls(
            channel=channel,
            success=False,
            provider=provider,
            retry_count=retry_count,
            latency_ms=latency_ms,
            error_message=reason,
        )

    @classmethod
    def skipped(cls, channel: ChannelType) -> ChannelResult:
        return cls(channel=channel, success=False, error_message=SKIPPED)

    @property
    def was_skipped(self) -> bool:
        return not self.success and self.error_message == SKIPPED


class DispatchResult(BaseModel):
    """Append-only audit record of one dispatch round."""

    dispatch_id: str
    rule_id: str
    owner_id: str = ""
    vulnerability_id: str
    matched_conditions: list[Condition] = Field(default_factory=list)
    channel_results: list[ChannelResult]
    completed_at: datetime

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.channel_results)

    @property
    def failed_channels(self) -> list[ChannelType]:
        return [r.channel for r in self.channel_results if not r.success]


class DispatchOutcome(BaseModel):
    """Per-rule result of evaluating one vulnerability, returned to callers."""

    rule_id: str
    status: OutcomeStatus
    dispatch_id: str | None = None
    channel_results: list[ChannelResult] = Field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class RuleState(BaseModel):
    """Current cooldown / trigger-count state of a rule, for display."""

    rule_id: str
    is_active: bool
    trigger_count: int
    cooldown_minutes: int
    last_triggered_at: datetime | None = None
    in_flight: bool = False
    cooldown_remaining_seconds: float = 0.0
    last_dispatch: DispatchResult | None = None


# --- In-app notifications ---


class Notification(BaseModel):
    """An in-app notification record written by the in-app channel."""

    notification_id: str
    owner_id: str
    type: str = "vulnerability_alert"
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    priority: str = "medium"
    is_read: bool = False
    created_at: datetime
