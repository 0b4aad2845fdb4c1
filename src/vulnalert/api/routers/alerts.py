"""Alert evaluation, rule management and dispatch history API."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query

from vulnalert.api.schemas import EvaluateResponse
from vulnalert.audit.logger import AuditLogger
from vulnalert.engine.engine import RuleEngine
from vulnalert.engine.trigger import IngestionTrigger
from vulnalert.models import (
    AlertRule,
    AlertRuleCreateRequest,
    AlertRuleUpdateRequest,
    DispatchResult,
    OutcomeStatus,
    RuleState,
    Vulnerability,
)
from vulnalert.rules.store import RuleStoreError, SqliteRuleStore
from vulnalert.rules.validation import RuleValidationError

router = APIRouter(prefix="/api/alerts", tags=["alerts"])

_trigger: IngestionTrigger | None = None
_engine: RuleEngine | None = None
_rules: SqliteRuleStore | None = None
_audit: AuditLogger | None = None


def init_router(
    trigger: IngestionTrigger,
    engine: RuleEngine,
    rules: SqliteRuleStore,
    audit: AuditLogger,
) -> None:
    global _trigger, _engine, _rules, _audit  # noqa: PLW0603
    _trigger = trigger
    _engine = engine
    _rules = rules
    _audit = audit


def _rule_store() -> SqliteRuleStore:
    assert _rules is not None, "Rule store not initialized"
    return _rules


# ------------------------------------------------------------------
# Evaluation
# ------------------------------------------------------------------


@router.post("/evaluate", response_model=EvaluateResponse)
def evaluate_vulnerability(
    body: Vulnerability,
    owner_id: str | None = None,
) -> EvaluateResponse:
    assert _trigger is not None, "IngestionTrigger not initialized"
    try:
        outcomes = _trigger.evaluate_now(body, owner_id=owner_id)
    except RuleStoreError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return EvaluateResponse(
        vulnerability_id=body.cve_id,
        outcomes=outcomes,
        dispatched=sum(1 for o in outcomes if o.status == OutcomeStatus.DISPATCHED),
    )


@router.get("/rules/{rule_id}/state", response_model=RuleState)
def get_rule_state(rule_id: str) -> RuleState:
    assert _engine is not None, "RuleEngine not initialized"
    state = _engine.rule_state(rule_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return state


# ------------------------------------------------------------------
# Rule CRUD
# ------------------------------------------------------------------


@router.get("/rules", response_model=list[AlertRule])
def list_rules(
    owner_id: str | None = None,
    include_inactive: bool = False,
) -> list[AlertRule]:
    return _rule_store().list_rules(owner_id=owner_id, include_inactive=include_inactive)


@router.post("/rules", response_model=AlertRule, status_code=201)
def create_rule(body: AlertRuleCreateRequest) -> AlertRule:
    try:
        return _rule_store().create_rule(body)
    except RuleValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e


@router.get("/rules/{rule_id}", response_model=AlertRule)
def get_rule(rule_id: str) -> AlertRule:
    rule = _rule_store().get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return rule


@router.put("/rules/{rule_id}", response_model=AlertRule)
def update_rule(rule_id: str, body: AlertRuleUpdateRequest) -> AlertRule:
    try:
        result = _rule_store().update_rule(rule_id, body)
    except RuleValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    if result is None:
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return result


@router.delete("/rules/{rule_id}")
def delete_rule(rule_id: str) -> dict:
    if not _rule_store().deactivate_rule(rule_id):
        raise HTTPException(status_code=404, detail="Alert rule not found")
    return {"ok": True}


# ------------------------------------------------------------------
# Dispatch history
# ------------------------------------------------------------------


@router.get("/dispatches", response_model=list[DispatchResult])
def list_dispatches(
    rule_id: str | None = None,
    limit: int = Query(50, ge=1, le=500),
) -> list[DispatchResult]:
    assert _audit is not None, "AuditLogger not initialized"
    return _audit.list_results(rule_id=rule_id, limit=limit)
