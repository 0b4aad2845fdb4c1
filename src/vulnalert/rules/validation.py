"""Creation-time validation for alert rules.

Malformed rules are rejected here so they never reach the engine: the
evaluator assumes at least one clause and the coordinator assumes every
action has a known channel with a parseable config.
"""

from __future__ import annotations

from pydantic import ValidationError

from vulnalert.channels.configs import parse_channel_config
from vulnalert.models import ChannelAction, Condition, ConditionField, ConditionOperator

NUMERIC_FIELDS = frozenset({ConditionField.CVSS_SCORE})
BOOLEAN_FIELDS = frozenset({
    ConditionField.EXPLOIT_AVAILABLE,
    ConditionField.PATCH_AVAILABLE,
    ConditionField.KEV,
    ConditionField.TRENDING,
})


class RuleValidationError(ValueError):
    """Raised when an alert rule definition is malformed."""


def validate_conditions(conditions: list[Condition]) -> None:
    if not conditions:
        raise RuleValidationError("A rule must define at least one condition")

    for i, clause in enumerate(conditions):
        where = f"Condition {i + 1} ({clause.field} {clause.operator})"

        if clause.value is None:
            raise RuleValidationError(f"{where}: value is required")

        if clause.operator == ConditionOperator.IN:
            if not isinstance(clause.value, list) or not clause.value:
                raise RuleValidationError(f"{where}: 'in' expects a non-empty list")

        if clause.operator in (ConditionOperator.GTE, ConditionOperator.LTE):
            if clause.field not in NUMERIC_FIELDS:
                raise RuleValidationError(
                    f"{where}: numeric operators only apply to "
                    f"{', '.join(sorted(NUMERIC_FIELDS))}"
                )
            if isinstance(clause.value, bool):
                raise RuleValidationError(f"{where}: value must be numeric")
            try:
                float(clause.value)
            except (TypeError, ValueError) as exc:
                raise RuleValidationError(f"{where}: value must be numeric") from exc

        if clause.field in BOOLEAN_FIELDS and clause.operator == ConditionOperator.CONTAINS:
            raise RuleValidationError(f"{where}: 'contains' does not apply to a boolean field")


def validate_actions(actions: list[ChannelAction]) -> None:
    if not actions:
        raise RuleValidationError("A rule must define at least one channel action")

    for i, action in enumerate(actions):
        try:
            parse_channel_config(action.channel, action.config)
        except ValidationError as exc:
            raise RuleValidationError(
                f"Action {i + 1} ({action.channel}): invalid config: {exc}"
            ) from exc


def validate_cooldown(cooldown_minutes: int) -> None:
    if cooldown_minutes < 0:
        raise RuleValidationError("Cooldown minutes must be non-negative")
