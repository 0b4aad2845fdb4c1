"""Tests for rule validation and the SQLite rule store."""

from __future__ import annotations

import threading

import pytest

from vulnalert.models import (
    AlertRuleCreateRequest,
    AlertRuleUpdateRequest,
    ChannelAction,
    ChannelType,
    Condition,
    ConditionField,
    ConditionOperator,
)
from vulnalert.rules.store import RuleStoreError, SqliteRuleStore
from vulnalert.rules.validation import (
    RuleValidationError,
    validate_actions,
    validate_conditions,
)


def _request(name: str = "critical-rce", owner: str = "user-1", **kwargs) -> AlertRuleCreateRequest:
    defaults = {
        "conditions": [Condition(field="severity", operator="equals", value="CRITICAL")],
        "actions": [ChannelAction(channel="in-app")],
        "cooldown_minutes": 60,
    }
    defaults.update(kwargs)
    return AlertRuleCreateRequest(owner_id=owner, name=name, **defaults)


@pytest.fixture()
def store(db) -> SqliteRuleStore:
    return SqliteRuleStore(db)


# --- Validation ---


class TestValidateConditions:
    def test_empty_rejected(self):
        with pytest.raises(RuleValidationError, match="at least one condition"):
            validate_conditions([])

    def test_missing_value_rejected(self):
        with pytest.raises(RuleValidationError, match="value is required"):
            validate_conditions([Condition(field="severity", operator="equals")])

    def test_in_requires_list(self):
        with pytest.raises(RuleValidationError, match="non-empty list"):
            validate_conditions([Condition(field="severity", operator="in", value="HIGH")])

    def test_numeric_operator_on_text_field(self):
        with pytest.raises(RuleValidationError, match="numeric operators"):
            validate_conditions([Condition(field="severity", operator="gte", value=5)])

    def test_numeric_operator_needs_number(self):
        with pytest.raises(RuleValidationError, match="must be numeric"):
            validate_conditions([Condition(field="cvss_score", operator="gte", value="high")])

    def test_contains_on_boolean_field(self):
        with pytest.raises(RuleValidationError, match="boolean"):
            validate_conditions([Condition(field="kev", operator="contains", value=True)])

    def test_valid_conditions_pass(self):
        validate_conditions([
            Condition(field="cvss_score", operator="gte", value="7.0"),
            Condition(field="tags", operator="in", value=["remote"]),
        ])

    def test_unknown_field_rejected_by_model(self):
        with pytest.raises(ValueError):
            Condition(field="vendor", operator="equals", value="acme")


class TestValidateActions:
    def test_empty_rejected(self):
        with pytest.raises(RuleValidationError, match="at least one channel"):
            validate_actions([])

    def test_slack_requires_webhook_url(self):
        with pytest.raises(RuleValidationError, match="slack"):
            validate_actions([ChannelAction(channel="slack", config={})])

    def test_webhook_url_scheme_checked(self):
        with pytest.raises(RuleValidationError):
            validate_actions([ChannelAction(channel="webhook", config={"url": "ftp://x"})])

    def test_unknown_config_key_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_actions([ChannelAction(channel="in-app", config={"color": "red"})])

    def test_email_address_checked(self):
        with pytest.raises(RuleValidationError):
            validate_actions([ChannelAction(channel="email", config={"to": "not-an-address"})])

    def test_valid_actions_pass(self):
        validate_actions([
            ChannelAction(channel="email", config={"to": "sec@example.com"}),
            ChannelAction(channel="webhook", config={"url": "https://hooks.example.com/x", "method": "put"}),
        ])

    def test_unknown_channel_rejected_by_model(self):
        with pytest.raises(ValueError):
            ChannelAction(channel="pager", config={})


# --- Store ---


class TestCreateRule:
    def test_create_and_get(self, store):
        rule = store.create_rule(_request())
        assert rule.rule_id.startswith("alr-")
        assert rule.trigger_count == 0
        assert rule.is_active
        fetched = store.get_rule(rule.rule_id)
        assert fetched == rule

    def test_conditions_round_trip_types(self, store):
        rule = store.create_rule(_request(conditions=[
            Condition(field="cvss_score", operator="gte", value=9.0),
        ]))
        clause = store.get_rule(rule.rule_id).conditions[0]
        assert clause.field == ConditionField.CVSS_SCORE
        assert clause.operator == ConditionOperator.GTE
        assert clause.value == 9.0

    def test_invalid_rule_never_stored(self, store):
        with pytest.raises(RuleValidationError):
            store.create_rule(_request(conditions=[]))
        assert store.list_rules(include_inactive=True) == []

    def test_negative_cooldown_rejected(self, store):
        with pytest.raises(RuleValidationError):
            store.create_rule(_request(cooldown_minutes=-1))

    def test_duplicate_name_per_owner(self, store):
        store.create_rule(_request())
        with pytest.raises(RuleValidationError, match="already exists"):
            store.create_rule(_request())
        store.create_rule(_request(owner="user-2"))

    def test_get_missing(self, store):
        assert store.get_rule("alr-missing") is None


class TestListRules:
    def test_active_only_by_default(self, store):
        a = store.create_rule(_request("a"))
        b = store.create_rule(_request("b"))
        store.deactivate_rule(a.rule_id)
        assert [r.rule_id for r in store.list_active()] == [b.rule_id]
        assert len(store.list_rules(include_inactive=True)) == 2

    def test_scoped_by_owner(self, store):
        store.create_rule(_request("a", owner="user-1"))
        mine = store.create_rule(_request("b", owner="user-2"))
        assert [r.rule_id for r in store.list_active("user-2")] == [mine.rule_id]


class TestUpdateRule:
    def test_partial_update(self, store):
        rule = store.create_rule(_request())
        updated = store.update_rule(rule.rule_id, AlertRuleUpdateRequest(cooldown_minutes=5))
        assert updated.cooldown_minutes == 5
        assert updated.name == rule.name
        assert updated.updated_at >= rule.updated_at

    def test_update_validates(self, store):
        rule = store.create_rule(_request())
        with pytest.raises(RuleValidationError):
            store.update_rule(rule.rule_id, AlertRuleUpdateRequest(actions=[]))

    def test_reactivate(self, store):
        rule = store.create_rule(_request())
        store.deactivate_rule(rule.rule_id)
        updated = store.update_rule(rule.rule_id, AlertRuleUpdateRequest(is_active=True))
        assert updated.is_active

    def test_update_missing(self, store):
        assert store.update_rule("alr-missing", AlertRuleUpdateRequest(name="x")) is None

    def test_deactivate_missing(self, store):
        assert store.deactivate_rule("alr-missing") is False


class TestRecordTrigger:
    def test_increments_by_one(self, store):
        rule = store.create_rule(_request())
        assert store.record_trigger(rule.rule_id) == 1
        assert store.record_trigger(rule.rule_id) == 2
        fetched = store.get_rule(rule.rule_id)
        assert fetched.trigger_count == 2
        assert fetched.last_triggered_at is not None

    def test_unknown_rule(self, store):
        with pytest.raises(RuleStoreError):
            store.record_trigger("alr-missing")

    def test_concurrent_increments_are_exact(self, store):
        rule = store.create_rule(_request())
        barrier = threading.Barrier(10)

        def bump():
            barrier.wait()
            for _ in range(5):
                store.record_trigger(rule.rule_id)

        threads = [threading.Thread(target=bump) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert store.get_rule(rule.rule_id).trigger_count == 50

    def test_channels_preserved(self, store):
        rule = store.create_rule(_request(actions=[
            ChannelAction(channel="in-app"),
            ChannelAction(channel="webhook", config={"url": "https://example.com/h"}),
        ]))
        channels = [a.channel for a in store.get_rule(rule.rule_id).actions]
        assert channels == [ChannelType.IN_APP, ChannelType.WEBHOOK]
