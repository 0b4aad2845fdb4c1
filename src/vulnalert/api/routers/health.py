"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from vulnalert import __version__
from vulnalert.api.schemas import HealthResponse
from vulnalert.audit.logger import AuditLogger
from vulnalert.rules.store import SqliteRuleStore

router = APIRouter(tags=["health"])

_rules: SqliteRuleStore | None = None
_audit: AuditLogger | None = None


def init_router(rules: SqliteRuleStore, audit: AuditLogger) -> None:
    global _rules, _audit  # noqa: PLW0603
    _rules = rules
    _audit = audit


@router.get("/api/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(
        version=__version__,
        active_rules=len(_rules.list_active()) if _rules else 0,
        audit_entries=len(_audit.read_entries()) if _audit else 0,
    )
