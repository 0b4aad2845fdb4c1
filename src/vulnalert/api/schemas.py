"""Pydantic response schemas for the vulnalert API."""

from __future__ import annotations

from pydantic import BaseModel

from vulnalert.models import DispatchOutcome


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    active_rules: int
    audit_entries: int


class EvaluateResponse(BaseModel):
    """Per-rule outcomes of one evaluation."""

    vulnerability_id: str
    outcomes: list[DispatchOutcome]
    dispatched: int
