"""Tests for src.analyzer.fields and src.analyzer.rule_store."""

from __future__ import annotations

import dataclasses
from datetime import timedelta

import pytest

from src.analyzer.fields import (
    EventField,
    ThreatField,
    evaluate,
    event_matches,
    parse_condition,
    resolve_event_field,
    resolve_threat_field,
    threat_matches,
)
from src.analyzer.rule_store import (
    CorrelationRuleStore,
    ResponseRuleStore,
    default_correlation_rules,
    default_response_rules,
    load_correlation_rules,
    load_response_rules,
    parse_correlation_rule,
    parse_response_rule,
)
from src.contracts.enums import ActionType, Operator
from src.contracts.errors import ConfigError, RuleValidationError
from src.contracts.rules import SAME
from tests.conftest import cond, make_event, make_threat

# ═══════════════════════════════════════════════════════════════════════════
#  Field resolution
# ═══════════════════════════════════════════════════════════════════════════


class TestFieldResolution:
    def test_canonical_names(self):
        assert resolve_event_field("actor_id") is EventField.ACTOR_ID
        assert resolve_threat_field("risk_score") is ThreatField.RISK_SCORE

    @pytest.mark.parametrize("alias,field", [
        ("userId", EventField.ACTOR_ID),
        ("propertyId", EventField.TENANT_ID),
        ("ipAddress", EventField.IP_ADDRESS),
    ])
    def test_event_aliases(self, alias, field):
        assert resolve_event_field(alias) is field

    def test_threat_aliases(self):
        assert resolve_threat_field("threatType") is ThreatField.THREAT_TYPE
        assert resolve_threat_field("riskScore") is ThreatField.RISK_SCORE

    def test_unknown_event_field(self):
        with pytest.raises(RuleValidationError, match="Unknown event field"):
            resolve_event_field("password")

    def test_unknown_threat_field(self):
        with pytest.raises(RuleValidationError):
            resolve_threat_field("actor_id")

    def test_threat_accessors(self):
        threat = make_threat(affected_resources=["user_42", "tenant_7"])
        assert ThreatField.RESOURCE_COUNT.get(threat) == 2
        assert ThreatField.INDICATOR_COUNT.get(threat) == 1
        assert ThreatField.STATUS.get(threat) == "active"


# ═══════════════════════════════════════════════════════════════════════════
#  Operators
# ═══════════════════════════════════════════════════════════════════════════


class TestEvaluate:
    def test_equals_numeric_string(self):
        assert evaluate(Operator.EQUALS, 42.0, "42")

    def test_equals_none(self):
        assert not evaluate(Operator.EQUALS, None, "x")
        assert evaluate(Operator.NOT_EQUALS, None, "x")

    def test_contains_substring(self):
        assert evaluate(Operator.CONTAINS, "PROPERTY_ACCESS_DENIED", "ACCESS")

    def test_contains_list_membership(self):
        assert evaluate(Operator.CONTAINS, ["user_1", "tenant_2"], "tenant_2")
        assert not evaluate(Operator.CONTAINS, ["user_1"], "user")

    def test_contains_none(self):
        assert not evaluate(Operator.CONTAINS, None, "x")

    def test_in_and_not_in(self):
        assert evaluate(Operator.IN, "EXPORT", ["EXPORT", "DOWNLOAD"])
        assert not evaluate(Operator.IN, "VIEW", ["EXPORT", "DOWNLOAD"])
        assert evaluate(Operator.NOT_IN, "VIEW", ["EXPORT"])

    def test_in_with_list_actual_overlaps(self):
        assert evaluate(Operator.IN, ["user_1", "tenant_2"], ["tenant_2"])

    def test_regex(self):
        assert evaluate(Operator.REGEX, "10.0.0.15", r"^10\.0\.")
        assert not evaluate(Operator.REGEX, None, ".*")

    def test_numeric_comparisons(self):
        assert evaluate(Operator.GREATER_THAN, 95, 90)
        assert not evaluate(Operator.GREATER_THAN, 90, 90)
        assert evaluate(Operator.LESS_THAN, 10, "20")

    def test_numeric_comparison_on_non_number_is_false(self):
        assert not evaluate(Operator.GREATER_THAN, "abc", 1)
        assert not evaluate(Operator.LESS_THAN, None, 1)

    def test_event_matches_alias_field(self):
        ev = make_event(actor_id="42")
        assert event_matches(cond("userId", "equals", "42"), ev)

    def test_threat_matches(self):
        threat = make_threat(risk_score=95)
        assert threat_matches(cond("risk_score", "greater_than", 90), threat)
        assert threat_matches(cond("threat_type", "in", ["brute_force", "x"]), threat)


# ═══════════════════════════════════════════════════════════════════════════
#  Condition parsing
# ═══════════════════════════════════════════════════════════════════════════


class TestParseCondition:
    def test_alias_canonicalised(self):
        c = parse_condition({"field": "userId", "operator": "equals", "value": SAME},
                            resolve_event_field)
        assert c.field == "actor_id"
        assert c.is_same

    @pytest.mark.parametrize("raw,msg", [
        ({"field": "action", "operator": "equals"}, "missing 'value'"),
        ({"field": "action", "operator": "like", "value": "x"}, "Unknown operator"),
        ({"field": "action", "operator": "in", "value": "EXPORT"}, "requires a list"),
        ({"field": "action", "operator": "greater_than", "value": "x"}, "numeric"),
        ({"field": "action", "operator": "regex", "value": "(["}, "Invalid regex"),
        ({"field": "nope", "operator": "equals", "value": "x"}, "Unknown event field"),
    ])
    def test_rejects(self, raw, msg):
        with pytest.raises(RuleValidationError, match=msg):
            parse_condition(raw, resolve_event_field)

    def test_non_mapping(self):
        with pytest.raises(RuleValidationError):
            parse_condition(["action", "equals", "x"], resolve_event_field)


# ═══════════════════════════════════════════════════════════════════════════
#  Rule parsing / validation
# ═══════════════════════════════════════════════════════════════════════════


def _raw_correlation(**overrides) -> dict:
    raw = {
        "id": "bf",
        "name": "Brute Force",
        "time_window_min": 15,
        "min_events": 5,
        "max_events": 100,
        "conditions": [
            {"field": "action", "operator": "equals", "value": "FAILED_LOGIN"},
            {"field": "actor_id", "operator": "equals", "value": SAME},
        ],
        "risk_multiplier": 2.5,
        "confidence": 85,
        "priority": 1,
    }
    raw.update(overrides)
    return raw


class TestParseCorrelationRule:
    def test_minutes_window(self):
        rule = parse_correlation_rule(_raw_correlation())
        assert rule.time_window == timedelta(minutes=15)
        assert rule.enabled is True

    def test_seconds_window(self):
        raw = _raw_correlation()
        del raw["time_window_min"]
        raw["time_window_sec"] = 90
        assert parse_correlation_rule(raw).time_window == timedelta(seconds=90)

    def test_missing_window(self):
        raw = _raw_correlation()
        del raw["time_window_min"]
        with pytest.raises(RuleValidationError, match="time_window"):
            parse_correlation_rule(raw)

    @pytest.mark.parametrize("overrides", [
        {"conditions": []},
        {"time_window_min": 0},
        {"min_events": 0},
        {"min_events": 5, "max_events": 4},
        {"risk_multiplier": 0},
        {"confidence": 101},
        {"min_events": "many"},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(RuleValidationError):
            parse_correlation_rule(_raw_correlation(**overrides))

    def test_same_with_contains_rejected(self):
        raw = _raw_correlation(conditions=[
            {"field": "actor_id", "operator": "contains", "value": SAME},
        ])
        with pytest.raises(RuleValidationError, match="SAME"):
            parse_correlation_rule(raw)


class TestParseResponseRule:
    def _raw(self, **overrides) -> dict:
        raw = {
            "id": "r1",
            "conditions": [{"field": "risk_score", "operator": "greater_than", "value": 90}],
            "actions": [{"type": "block", "parameters": {"target": "ip"}}],
        }
        raw.update(overrides)
        return raw

    def test_valid(self):
        rule = parse_response_rule(self._raw())
        assert rule.actions[0].type is ActionType.BLOCK
        assert rule.auto_execute is True

    def test_unknown_action_type(self):
        with pytest.raises(RuleValidationError, match="unknown action type"):
            parse_response_rule(self._raw(actions=[{"type": "teleport"}]))

    def test_empty_actions(self):
        with pytest.raises(RuleValidationError, match="action"):
            parse_response_rule(self._raw(actions=[]))

    def test_event_field_rejected(self):
        with pytest.raises(RuleValidationError, match="Unknown threat field"):
            parse_response_rule(self._raw(conditions=[
                {"field": "ip_address", "operator": "equals", "value": "x"},
            ]))


# ═══════════════════════════════════════════════════════════════════════════
#  Stores
# ═══════════════════════════════════════════════════════════════════════════


class TestCorrelationRuleStore:
    def test_add_and_get(self, brute_force_rule):
        store = CorrelationRuleStore()
        store.add(brute_force_rule)
        assert store.get("bf") is brute_force_rule
        assert "bf" in store
        assert len(store) == 1

    def test_duplicate_add_rejected(self, correlation_store, brute_force_rule):
        with pytest.raises(RuleValidationError, match="already exists"):
            correlation_store.add(brute_force_rule)
        assert len(correlation_store) == 1

    def test_invalid_add_leaves_store_unchanged(self, correlation_store, brute_force_rule):
        bad = dataclasses.replace(brute_force_rule, id="bad", min_events=0)
        with pytest.raises(RuleValidationError):
            correlation_store.add(bad)
        assert [r.id for r in correlation_store.list()] == ["bf"]

    def test_update(self, correlation_store):
        updated = correlation_store.update("bf", min_events=3)
        assert updated.min_events == 3
        assert correlation_store.get("bf").min_events == 3

    def test_invalid_update_leaves_store_unchanged(self, correlation_store):
        with pytest.raises(RuleValidationError):
            correlation_store.update("bf", max_events=1)
        assert correlation_store.get("bf").max_events == 100

    def test_update_unknown_field(self, correlation_store):
        with pytest.raises(RuleValidationError):
            correlation_store.update("bf", colour="red")

    def test_update_missing_rule(self, correlation_store):
        with pytest.raises(RuleValidationError, match="not found"):
            correlation_store.update("nope", min_events=3)

    def test_update_cannot_change_id(self, correlation_store):
        with pytest.raises(RuleValidationError):
            correlation_store.update("bf", id="other")

    def test_delete(self, correlation_store):
        correlation_store.delete("bf")
        assert len(correlation_store) == 0
        with pytest.raises(RuleValidationError):
            correlation_store.delete("bf")

    def test_enabled_filters(self, correlation_store):
        correlation_store.update("bf", enabled=False)
        assert correlation_store.enabled() == []
        assert len(correlation_store.list()) == 1

    def test_replace_all_is_all_or_nothing(self, correlation_store, brute_force_rule):
        good = dataclasses.replace(brute_force_rule, id="new")
        bad = dataclasses.replace(brute_force_rule, id="bad", conditions=[])
        with pytest.raises(RuleValidationError):
            correlation_store.replace_all([good, bad])
        assert [r.id for r in correlation_store.list()] == ["bf"]

    def test_list_is_snapshot(self, correlation_store, brute_force_rule):
        snapshot = correlation_store.list()
        correlation_store.add(dataclasses.replace(brute_force_rule, id="other"))
        assert len(snapshot) == 1


class TestResponseRuleStore:
    def test_invalid_add_rejected(self, response_store, block_alert_rule):
        bad = dataclasses.replace(block_alert_rule, id="bad", conditions=[])
        with pytest.raises(RuleValidationError):
            response_store.add(bad)
        assert "bad" not in response_store

    def test_same_not_allowed(self, block_alert_rule):
        bad = dataclasses.replace(block_alert_rule,
                                  conditions=[cond("threat_type", "equals", SAME)])
        with pytest.raises(RuleValidationError, match="SAME"):
            ResponseRuleStore([bad])


# ═══════════════════════════════════════════════════════════════════════════
#  Built-ins and YAML files
# ═══════════════════════════════════════════════════════════════════════════


class TestDefaultsAndFiles:
    def test_defaults_validate(self):
        assert len(CorrelationRuleStore.with_defaults()) == len(default_correlation_rules()) == 6
        assert len(ResponseRuleStore.with_defaults()) == len(default_response_rules())

    def test_shipped_yaml_matches_defaults(self):
        from_file = {r.id: r for r in load_correlation_rules("config/correlation_rules.yaml")}
        for rule in default_correlation_rules():
            assert from_file[rule.id] == rule

    def test_shipped_response_yaml_matches_defaults(self):
        from_file = {r.id: r for r in load_response_rules("config/response_rules.yaml")}
        for rule in default_response_rules():
            assert from_file[rule.id] == rule

    def test_duplicate_ids_in_file(self, tmp_path):
        path = tmp_path / "rules.yaml"
        path.write_text(
            "rules:\n"
            "  - {id: a, time_window_sec: 60, min_events: 1, max_events: 2,\n"
            "     conditions: [{field: action, operator: equals, value: X}]}\n"
            "  - {id: a, time_window_sec: 60, min_events: 1, max_events: 2,\n"
            "     conditions: [{field: action, operator: equals, value: Y}]}\n",
            encoding="utf-8",
        )
        with pytest.raises(RuleValidationError, match="Duplicate"):
            load_correlation_rules(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_correlation_rules(tmp_path / "nope.yaml")

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("rules: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_response_rules(path)

    def test_empty_file_yields_no_rules(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_response_rules(path) == []
