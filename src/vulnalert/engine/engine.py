"""Rule engine: turns one vulnerability into per-rule dispatch outcomes.

Flow for each active rule:

1. Evaluate the rule's conditions against the vulnerability.
2. Claim the rule in the cooldown store (compare-and-set). A rule that
   is cooling down or already in flight is skipped silently.
3. Build a ``DispatchIntent`` and hand it to the coordinator, which fans
   out to every channel and writes the audit record.
4. Only after the coordinator returns: increment ``trigger_count`` by
   exactly one, then mark the cooldown. If the increment fails the claim
   is released and the round is reported ``failed``.

Rules are processed on a bounded thread pool. A failure in one rule is
logged and reported as a ``failed`` outcome; the others carry on.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

from vulnalert.audit.logger import AuditError, AuditLogger
from vulnalert.cooldown.store import CooldownStore
from vulnalert.dispatch.coordinator import DispatchCoordinator
from vulnalert.models import (
    AlertRule,
    DispatchIntent,
    DispatchOutcome,
    OutcomeStatus,
    RuleState,
    Vulnerability,
)
from vulnalert.rules.evaluator import evaluate
from vulnalert.rules.store import RuleStore, RuleStoreError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


class RuleEngine:
    """Evaluates active rules against incoming vulnerabilities.

    Thread-safe: all shared mutable state lives in the cooldown store and
    the rule store.
    """

    def __init__(
        self,
        rule_store: RuleStore,
        cooldown_store: CooldownStore,
        coordinator: DispatchCoordinator,
        audit_logger: AuditLogger | None = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._rules = rule_store
        self._cooldown = cooldown_store
        self._coordinator = coordinator
        self._audit = audit_logger
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="vulnalert-rule",
        )
        self._clock = _clock or time.time

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def on_vulnerability(
        self,
        vulnerability: Vulnerability | Mapping[str, Any],
        owner_id: str | None = None,
    ) -> list[DispatchOutcome]:
        """Evaluate every active rule (optionally one owner's) against *vulnerability*.

        Returns one outcome per active rule, in rule-store order. Raises
        ``RuleStoreError`` if the rules cannot be loaded.
        """
        if not isinstance(vulnerability, Vulnerability):
            vulnerability = Vulnerability.model_validate(vulnerability)

        try:
            rules = self._rules.list_active(owner_id)
        except RuleStoreError:
            logger.error(
                "Rule store unavailable; dropping evaluation of %s", vulnerability.cve_id,
            )
            raise

        futures = [
            (rule, self._pool.submit(self._process_rule, rule, vulnerability))
            for rule in rules
        ]

        outcomes: list[DispatchOutcome] = []
        for rule, future in futures:
            try:
                outcomes.append(future.result())
            except Exception as exc:
                logger.exception(
                    "Rule %s failed while processing %s", rule.rule_id, vulnerability.cve_id,
                )
                outcomes.append(
                    DispatchOutcome(
                        rule_id=rule.rule_id,
                        status=OutcomeStatus.FAILED,
                        error=f"{type(exc).__name__}: {exc}",
                    ),
                )
        return outcomes

    def rule_state(self, rule_id: str) -> RuleState | None:
        """Current cooldown and trigger-count state of a rule, or None."""
        rule = self._rules.get_rule(rule_id)
        if rule is None:
            return None

        state = self._cooldown.get_state(rule_id)
        last = state.last_triggered_at if state else None
        remaining = 0.0
        if last is not None:
            elapsed = self._clock() - last.timestamp()
            remaining = max(0.0, rule.cooldown_minutes * 60 - elapsed)

        return RuleState(
            rule_id=rule.rule_id,
            is_active=rule.is_active,
            trigger_count=rule.trigger_count,
            cooldown_minutes=rule.cooldown_minutes,
            last_triggered_at=last or rule.last_triggered_at,
            in_flight=state.in_flight if state else False,
            cooldown_remaining_seconds=round(remaining, 3),
            last_dispatch=self._audit.latest_for_rule(rule_id) if self._audit else None,
        )

    def close(self) -> None:
        """Stop accepting work and cancel rule tasks that have not started."""
        self._pool.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> RuleEngine:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Per-rule processing
    # ------------------------------------------------------------------

    def _process_rule(self, rule: AlertRule, vulnerability: Vulnerability) -> DispatchOutcome:
        result = evaluate(vulnerability, rule.conditions)
        if not result.matched:
            logger.debug("Rule %s did not match %s", rule.rule_id, vulnerability.cve_id)
            return DispatchOutcome(rule_id=rule.rule_id, status=OutcomeStatus.NOT_MATCHED)

        claim = self._cooldown.try_acquire(rule.rule_id, rule.cooldown_minutes)
        if claim is None:
            logger.debug("Rule %s is cooling down or in flight", rule.rule_id)
            return DispatchOutcome(rule_id=rule.rule_id, status=OutcomeStatus.COOLDOWN)

        intent = DispatchIntent(
            dispatch_id=f"dsp-{uuid.uuid4().hex[:16]}",
            rule_id=rule.rule_id,
            rule_name=rule.name,
            owner_id=rule.owner_id,
            vulnerability_id=vulnerability.cve_id,
            vulnerability=vulnerability,
            matched_conditions=result.matched_clauses,
            generated_at=datetime.now(tz=UTC),
        )

        triggered = False
        try:
            try:
                dispatch_result = self._coordinator.dispatch(intent, rule)
            except AuditError as exc:
                logger.error(
                    "Audit write failed for dispatch %s (rule %s); round not counted: %s",
                    intent.dispatch_id, rule.rule_id, exc,
                )
                return DispatchOutcome(
                    rule_id=rule.rule_id,
                    status=OutcomeStatus.FAILED,
                    dispatch_id=intent.dispatch_id,
                    error=f"audit write failed: {exc}",
                )

            # An uncounted round releases its claim instead of cooling down.
            try:
                count = self._rules.record_trigger(rule.rule_id, dispatch_result.completed_at)
            except RuleStoreError as exc:
                logger.error(
                    "Could not record trigger for dispatch %s (rule %s); round not counted: %s",
                    intent.dispatch_id, rule.rule_id, exc,
                )
                return DispatchOutcome(
                    rule_id=rule.rule_id,
                    status=OutcomeStatus.FAILED,
                    dispatch_id=intent.dispatch_id,
                    channel_results=dispatch_result.channel_results,
                    error=f"trigger count not recorded: {exc}",
                )
            self._cooldown.mark_triggered(rule.rule_id, claim)
            triggered = True
        finally:
            if not triggered:
                self._cooldown.release(rule.rule_id, claim)

        logger.info(
            "Rule %s dispatched %s for %s (trigger_count=%d, failed channels: %s)",
            rule.rule_id,
            intent.dispatch_id,
            vulnerability.cve_id,
            count,
            ", ".join(dispatch_result.failed_channels) or "none",
        )
        return DispatchOutcome(
            rule_id=rule.rule_id,
            status=OutcomeStatus.DISPATCHED,
            dispatch_id=intent.dispatch_id,
            channel_results=dispatch_result.channel_results,
        )
