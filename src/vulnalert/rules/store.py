"""Alert rule persistence.

Rules are queried by active flag and optionally by owner (both indexed),
never as a full-table scan. ``record_trigger`` is the only path that
changes ``trigger_count`` and does so with a single atomic increment.
"""

from __future__ import annotations

import json
import secrets
import sqlite3
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from vulnalert.db.connection import Database
from vulnalert.models import (
    AlertRule,
    AlertRuleCreateRequest,
    AlertRuleUpdateRequest,
    ChannelAction,
    Condition,
)
from vulnalert.rules.validation import (
    RuleValidationError,
    validate_actions,
    validate_conditions,
    validate_cooldown,
)


class RuleStoreError(Exception):
    """Raised when the rule store cannot be read or written."""


@runtime_checkable
class RuleStore(Protocol):
    """What the rule engine needs from rule persistence."""

    def get_rule(self, rule_id: str) -> AlertRule | None: ...

    def list_active(self, owner_id: str | None = None) -> list[AlertRule]: ...

    def record_trigger(self, rule_id: str, triggered_at: datetime | None = None) -> int: ...


class SqliteRuleStore:
    """Manages alert rules (CRUD) in SQLite."""

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Rule CRUD
    # ------------------------------------------------------------------

    def create_rule(self, req: AlertRuleCreateRequest) -> AlertRule:
        """Validate and create a new alert rule."""
        validate_conditions(req.conditions)
        validate_actions(req.actions)
        validate_cooldown(req.cooldown_minutes)

        rule_id = f"alr-{secrets.token_hex(12)}"
        now = datetime.now(tz=UTC).isoformat()

        try:
            self._db.write(
                """INSERT INTO alert_rules
                   (rule_id, owner_id, name, description, conditions_json,
                    actions_json, cooldown_minutes, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    rule_id,
                    req.owner_id,
                    req.name,
                    req.description,
                    _dump_conditions(req.conditions),
                    _dump_actions(req.actions),
                    req.cooldown_minutes,
                    now,
                    now,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise RuleValidationError(f"Alert rule '{req.name}' already exists") from exc
        except sqlite3.Error as exc:
            raise RuleStoreError(f"Failed to create rule: {exc}") from exc

        return self.get_rule(rule_id)  # type: ignore[return-value]

    def get_rule(self, rule_id: str) -> AlertRule | None:
        """Get a single alert rule by ID."""
        try:
            row = self._db.fetchone(
                "SELECT * FROM alert_rules WHERE rule_id = ?", (rule_id,)
            )
        except sqlite3.Error as exc:
            raise RuleStoreError(f"Failed to read rule {rule_id}: {exc}") from exc
        return self._row_to_rule(row) if row else None

    def list_active(self, owner_id: str | None = None) -> list[AlertRule]:
        """Active rules, optionally scoped to one owner."""
        return self.list_rules(owner_id=owner_id, include_inactive=False)

    def list_rules(
        self,
        owner_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[AlertRule]:
        """List rules, newest first."""
        where: list[str] = []
        params: list[object] = []
        if not include_inactive:
            where.append("is_active = 1")
        if owner_id is not None:
            where.append("owner_id = ?")
            params.append(owner_id)

        clause = f" WHERE {' AND '.join(where)}" if where else ""
        try:
            rows = self._db.fetchall(
                f"SELECT * FROM alert_rules{clause} ORDER BY created_at DESC",
                tuple(params),
            )
        except sqlite3.Error as exc:
            raise RuleStoreError(f"Failed to list rules: {exc}") from exc
        return [self._row_to_rule(r) for r in rows]

    def update_rule(
        self,
        rule_id: str,
        req: AlertRuleUpdateRequest,
    ) -> AlertRule | None:
        """Update an alert rule. Returns None if not found."""
        existing = self.get_rule(rule_id)
        if existing is None:
            return None

        updates: list[str] = []
        params: list[object] = []

        if req.name is not None:
            updates.append("name = ?")
            params.append(req.name)

        if req.description is not None:
            updates.append("description = ?")
            params.append(req.description)

        if req.conditions is not None:
            validate_conditions(req.conditions)
            updates.append("conditions_json = ?")
            params.append(_dump_conditions(req.conditions))

        if req.actions is not None:
            validate_actions(req.actions)
            updates.append("actions_json = ?")
            params.append(_dump_actions(req.actions))

        if req.cooldown_minutes is not None:
            validate_cooldown(req.cooldown_minutes)
            updates.append("cooldown_minutes = ?")
            params.append(req.cooldown_minutes)

        if req.is_active is not None:
            updates.append("is_active = ?")
            params.append(1 if req.is_active else 0)

        if updates:
            updates.append("updated_at = ?")
            params.append(datetime.now(tz=UTC).isoformat())
            params.append(rule_id)
            try:
                self._db.write(
                    f"UPDATE alert_rules SET {', '.join(updates)} WHERE rule_id = ?",
                    tuple(params),
                )
            except sqlite3.IntegrityError as exc:
                raise RuleValidationError(f"Alert rule '{req.name}' already exists") from exc
            except sqlite3.Error as exc:
                raise RuleStoreError(f"Failed to update rule {rule_id}: {exc}") from exc

        return self.get_rule(rule_id)

    def deactivate_rule(self, rule_id: str) -> bool:
        """Soft-delete: inactive rules are skipped but kept for history."""
        existing = self.get_rule(rule_id)
        if existing is None:
            return False
        try:
            self._db.write(
                "UPDATE alert_rules SET is_active = 0, updated_at = ? WHERE rule_id = ?",
                (datetime.now(tz=UTC).isoformat(), rule_id),
            )
        except sqlite3.Error as exc:
            raise RuleStoreError(f"Failed to deactivate rule {rule_id}: {exc}") from exc
        return True

    # ------------------------------------------------------------------
    # Triggering
    # ------------------------------------------------------------------

    def record_trigger(self, rule_id: str, triggered_at: datetime | None = None) -> int:
        """Increment ``trigger_count`` by one. Returns the new count."""
        triggered_at = triggered_at or datetime.now(tz=UTC)
        try:
            with self._db.transaction() as conn:
                cursor = conn.execute(
                    "UPDATE alert_rules "
                    "SET trigger_count = trigger_count + 1, last_triggered_at = ? "
                    "WHERE rule_id = ?",
                    (triggered_at.isoformat(), rule_id),
                )
                if cursor.rowcount != 1:
                    raise RuleStoreError(f"Rule not found: {rule_id}")
                row = conn.execute(
                    "SELECT trigger_count FROM alert_rules WHERE rule_id = ?",
                    (rule_id,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise RuleStoreError(f"Failed to record trigger for {rule_id}: {exc}") from exc
        return int(row["trigger_count"])

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> AlertRule:
        last = row["last_triggered_at"]
        return AlertRule(
            rule_id=row["rule_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
            conditions=[Condition(**c) for c in json.loads(row["conditions_json"])],
            actions=[ChannelAction(**a) for a in json.loads(row["actions_json"])],
            cooldown_minutes=row["cooldown_minutes"],
            is_active=bool(row["is_active"]),
            trigger_count=row["trigger_count"],
            last_triggered_at=datetime.fromisoformat(last) if last else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )


def _dump_conditions(conditions: list[Condition]) -> str:
    return json.dumps([c.model_dump(mode="json") for c in conditions], sort_keys=True)


def _dump_actions(actions: list[ChannelAction]) -> str:
    return json.dumps([a.model_dump(mode="json") for a in actions], sort_keys=True)
