"""Rule stores — validated, id-keyed collections of correlation and response rules.

Rules enter the system three ways:
  1. Built-in defaults   — ``default_correlation_rules()`` / ``default_response_rules()``
  2. YAML rule files     — ``config/correlation_rules.yaml`` / ``config/response_rules.yaml``
  3. Runtime mutation    — ``add`` / ``update`` / ``delete`` on a store

Every mutation validates first; a rejected change raises
``RuleValidationError`` and leaves the store unchanged. Readers get a
snapshot list, so a concurrent update never changes a batch mid-evaluation.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import timedelta
from pathlib import Path
from typing import Any, Generic, TypeVar

from src.analyzer.fields import (
    parse_condition,
    resolve_event_field,
    resolve_threat_field,
    validate_condition,
)
from src.contracts.enums import ActionType, Operator
from src.contracts.errors import RuleValidationError
from src.contracts.rules import SAME, Condition, CorrelationRule, ResponseAction, ResponseRule
from src.shared.config_loader import load_yaml

log = logging.getLogger(__name__)

R = TypeVar("R", CorrelationRule, ResponseRule)


# ═══════════════════════════════════════════════════════════════════════════
#  Validation
# ═══════════════════════════════════════════════════════════════════════════

def validate_correlation_rule(rule: CorrelationRule) -> None:
    if not rule.id:
        raise RuleValidationError("Correlation rule id must not be empty")
    if not rule.conditions:
        raise RuleValidationError(f"Rule '{rule.id}': at least one condition is required")
    if rule.time_window <= timedelta(0):
        raise RuleValidationError(f"Rule '{rule.id}': time_window must be positive")
    if rule.min_events < 1:
        raise RuleValidationError(f"Rule '{rule.id}': min_events must be >= 1")
    if rule.max_events < rule.min_events:
        raise RuleValidationError(f"Rule '{rule.id}': max_events must be >= min_events")
    if rule.risk_multiplier <= 0:
        raise RuleValidationError(f"Rule '{rule.id}': risk_multiplier must be positive")
    if not 0 <= rule.confidence <= 100:
        raise RuleValidationError(f"Rule '{rule.id}': confidence must be within 0..100")
    for cond in rule.conditions:
        validate_condition(cond, resolve_event_field)
        if cond.is_same and cond.operator not in (Operator.EQUALS, Operator.NOT_EQUALS):
            raise RuleValidationError(
                f"Rule '{rule.id}': SAME is only valid with equals / not_equals "
                f"(field '{cond.field}')"
            )


def validate_response_rule(rule: ResponseRule) -> None:
    if not rule.id:
        raise RuleValidationError("Response rule id must not be empty")
    if not rule.conditions:
        raise RuleValidationError(f"Response rule '{rule.id}': at least one condition is required")
    if not rule.actions:
        raise RuleValidationError(f"Response rule '{rule.id}': at least one action is required")
    for cond in rule.conditions:
        validate_condition(cond, resolve_threat_field)
        if cond.is_same:
            raise RuleValidationError(f"Response rule '{rule.id}': SAME is not valid here")
    for action in rule.actions:
        if not isinstance(action.type, ActionType):
            raise RuleValidationError(
                f"Response rule '{rule.id}': unknown action type '{action.type}'"
            )


# ═══════════════════════════════════════════════════════════════════════════
#  Parsing (rule-file dicts → contracts)
# ═══════════════════════════════════════════════════════════════════════════

def _require(raw: dict[str, Any], key: str, rule_id: str) -> Any:
    if key not in raw:
        raise RuleValidationError(f"Rule '{rule_id}': missing '{key}'")
    return raw[key]


def parse_correlation_rule(raw: dict[str, Any]) -> CorrelationRule:
    """Build and validate a CorrelationRule from a rule-file mapping.

    The window may be given as ``time_window_sec`` or ``time_window_min``.
    """
    rule_id = str(raw.get("id", ""))
    if "time_window_sec" in raw:
        window = timedelta(seconds=float(raw["time_window_sec"]))
    elif "time_window_min" in raw:
        window = timedelta(minutes=float(raw["time_window_min"]))
    else:
        raise RuleValidationError(f"Rule '{rule_id}': missing 'time_window_sec'")
    try:
        rule = CorrelationRule(
            id=rule_id,
            name=str(raw.get("name", rule_id)),
            description=str(raw.get("description", "")),
            time_window=window,
            min_events=int(_require(raw, "min_events", rule_id)),
            max_events=int(_require(raw, "max_events", rule_id)),
            conditions=[parse_condition(c, resolve_event_field) for c in raw.get("conditions") or []],
            risk_multiplier=float(raw.get("risk_multiplier", 1.0)),
            confidence=float(raw.get("confidence", 50.0)),
            priority=int(raw.get("priority", 5)),
            enabled=bool(raw.get("enabled", True)),
        )
    except (TypeError, ValueError) as exc:
        raise RuleValidationError(f"Rule '{rule_id}': {exc}") from None
    validate_correlation_rule(rule)
    return rule


def parse_response_rule(raw: dict[str, Any]) -> ResponseRule:
    rule_id = str(raw.get("id", ""))
    actions: list[ResponseAction] = []
    for a in raw.get("actions") or []:
        try:
            atype = ActionType(a.get("type"))
        except ValueError:
            raise RuleValidationError(
                f"Response rule '{rule_id}': unknown action type '{a.get('type')}'"
            ) from None
        actions.append(ResponseAction(type=atype, parameters=dict(a.get("parameters") or {})))
    try:
        rule = ResponseRule(
            id=rule_id,
            name=str(raw.get("name", rule_id)),
            conditions=[parse_condition(c, resolve_threat_field) for c in raw.get("conditions") or []],
            actions=actions,
            priority=int(raw.get("priority", 5)),
            enabled=bool(raw.get("enabled", True)),
            auto_execute=bool(raw.get("auto_execute", True)),
        )
    except (TypeError, ValueError) as exc:
        raise RuleValidationError(f"Response rule '{rule_id}': {exc}") from None
    validate_response_rule(rule)
    return rule


def _parse_all(raw_rules: list[dict[str, Any]], parser) -> list:
    rules = [parser(r) for r in raw_rules]
    seen: set[str] = set()
    for r in rules:
        if r.id in seen:
            raise RuleValidationError(f"Duplicate rule id '{r.id}'")
        seen.add(r.id)
    return rules


def load_correlation_rules(path: str | Path) -> list[CorrelationRule]:
    cfg = load_yaml(path)
    rules = _parse_all(cfg.get("rules") or [], parse_correlation_rule)
    log.info("Loaded %d correlation rules from %s", len(rules), path)
    return rules


def load_response_rules(path: str | Path) -> list[ResponseRule]:
    cfg = load_yaml(path)
    rules = _parse_all(cfg.get("rules") or [], parse_response_rule)
    log.info("Loaded %d response rules from %s", len(rules), path)
    return rules


# ═══════════════════════════════════════════════════════════════════════════
#  Stores
# ═══════════════════════════════════════════════════════════════════════════

class _RuleStore(Generic[R]):
    """Lock-guarded, id-keyed rule collection."""

    kind = "rule"

    def __init__(self, rules: list[R] | None = None) -> None:
        self._lock = threading.RLock()
        self._rules: dict[str, R] = {}
        if rules:
            self.replace_all(rules)

    def _validate(self, rule: R) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def list(self) -> list[R]:
        """Snapshot of all rules in insertion order."""
        with self._lock:
            return list(self._rules.values())

    def enabled(self) -> list[R]:
        return [r for r in self.list() if r.enabled]

    def get(self, rule_id: str) -> R | None:
        with self._lock:
            return self._rules.get(rule_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._rules)

    def __contains__(self, rule_id: object) -> bool:
        with self._lock:
            return rule_id in self._rules

    def add(self, rule: R) -> R:
        self._validate(rule)
        with self._lock:
            if rule.id in self._rules:
                raise RuleValidationError(f"{self.kind} '{rule.id}' already exists")
            self._rules[rule.id] = rule
        log.info("Added %s %s", self.kind, rule.id)
        return rule

    def update(self, rule_id: str, **changes: Any) -> R:
        """Apply field changes to a copy, validate it, then swap it in."""
        if "id" in changes and changes["id"] != rule_id:
            raise RuleValidationError(f"{self.kind} id cannot be changed")
        with self._lock:
            current = self._rules.get(rule_id)
            if current is None:
                raise RuleValidationError(f"{self.kind} '{rule_id}' not found")
            try:
                updated = dataclasses.replace(current, **changes)
            except TypeError as exc:
                raise RuleValidationError(f"{self.kind} '{rule_id}': {exc}") from None
            self._validate(updated)
            self._rules[rule_id] = updated
        log.info("Updated %s %s (%s)", self.kind, rule_id, ", ".join(sorted(changes)))
        return updated

    def delete(self, rule_id: str) -> None:
        with self._lock:
            if rule_id not in self._rules:
                raise RuleValidationError(f"{self.kind} '{rule_id}' not found")
            del self._rules[rule_id]
        log.info("Deleted %s %s", self.kind, rule_id)

    def replace_all(self, rules: list[R]) -> None:
        """Atomically swap the whole rule set (all-or-nothing)."""
        staged: dict[str, R] = {}
        for rule in rules:
            self._validate(rule)
            if rule.id in staged:
                raise RuleValidationError(f"Duplicate {self.kind} id '{rule.id}'")
            staged[rule.id] = rule
        with self._lock:
            self._rules = staged


class CorrelationRuleStore(_RuleStore[CorrelationRule]):
    kind = "correlation rule"

    def _validate(self, rule: CorrelationRule) -> None:
        validate_correlation_rule(rule)

    @classmethod
    def from_yaml(cls, path: str | Path) -> CorrelationRuleStore:
        return cls(load_correlation_rules(path))

    @classmethod
    def with_defaults(cls) -> CorrelationRuleStore:
        return cls(default_correlation_rules())


class ResponseRuleStore(_RuleStore[ResponseRule]):
    kind = "response rule"

    def _validate(self, rule: ResponseRule) -> None:
        validate_response_rule(rule)

    @classmethod
    def from_yaml(cls, path: str | Path) -> ResponseRuleStore:
        return cls(load_response_rules(path))

    @classmethod
    def with_defaults(cls) -> ResponseRuleStore:
        return cls(default_response_rules())


# ═══════════════════════════════════════════════════════════════════════════
#  Built-in rule sets
# ═══════════════════════════════════════════════════════════════════════════

def _c(field: str, op: str, value: Any) -> Condition:
    return Condition(field=field, operator=Operator(op), value=value)


def default_correlation_rules() -> list[CorrelationRule]:
    return [
        CorrelationRule(
            id="coordinated_brute_force",
            name="Coordinated Brute Force Attack",
            description="Multiple failed logins for one account from different IPs",
            time_window=timedelta(minutes=15),
            min_events=5,
            max_events=100,
            conditions=[
                _c("action", "equals", "FAILED_LOGIN"),
                _c("actor_id", "equals", SAME),
                _c("ip_address", "not_equals", SAME),
            ],
            risk_multiplier=2.5,
            confidence=85,
            priority=1,
        ),
        CorrelationRule(
            id="privilege_escalation_chain",
            name="Privilege Escalation Chain",
            description="Sequence of permission-related actions by one account",
            time_window=timedelta(minutes=30),
            min_events=3,
            max_events=10,
            conditions=[
                _c("action", "contains", "PERMISSION"),
                _c("actor_id", "equals", SAME),
            ],
            risk_multiplier=3.0,
            confidence=90,
            priority=1,
        ),
        CorrelationRule(
            id="data_exfiltration_pattern",
            name="Data Exfiltration Pattern",
            description="Bulk export / download activity by one account",
            time_window=timedelta(hours=1),
            min_events=10,
            max_events=50,
            conditions=[
                _c("action", "in", ["EXPORT", "DOWNLOAD"]),
                _c("actor_id", "equals", SAME),
            ],
            risk_multiplier=2.0,
            confidence=80,
            priority=2,
        ),
        CorrelationRule(
            id="lateral_movement",
            name="Lateral Movement Detection",
            description="One account accessing resources across several properties",
            time_window=timedelta(minutes=30),
            min_events=5,
            max_events=20,
            conditions=[
                _c("action", "contains", "ACCESS"),
                _c("actor_id", "equals", SAME),
                _c("tenant_id", "not_equals", SAME),
            ],
            risk_multiplier=1.8,
            confidence=75,
            priority=3,
        ),
        CorrelationRule(
            id="reconnaissance_activity",
            name="Reconnaissance Activity",
            description="High volume of view / list / search actions by one account",
            time_window=timedelta(minutes=45),
            min_events=15,
            max_events=100,
            conditions=[
                _c("action", "in", ["VIEW", "LIST", "SEARCH"]),
                _c("actor_id", "equals", SAME),
            ],
            risk_multiplier=1.5,
            confidence=70,
            priority=4,
        ),
        CorrelationRule(
            id="session_manipulation",
            name="Session Manipulation",
            description="Unusual login / logout / session churn by one account",
            time_window=timedelta(minutes=20),
            min_events=8,
            max_events=30,
            conditions=[
                _c("action", "in", ["LOGIN", "LOGOUT", "SESSION"]),
                _c("actor_id", "equals", SAME),
            ],
            risk_multiplier=1.7,
            confidence=65,
            priority=4,
        ),
    ]


def _a(atype: str, **params: Any) -> ResponseAction:
    return ResponseAction(type=ActionType(atype), parameters=params)


def default_response_rules() -> list[ResponseRule]:
    return [
        ResponseRule(
            id="critical_brute_force",
            name="Critical Brute Force Response",
            conditions=[
                _c("threat_type", "equals", "brute_force"),
                _c("risk_score", "greater_than", 90),
            ],
            actions=[
                _a("block", target="ip", duration_sec=3600),
                _a("lock", target="account", duration_sec=1800),
                _a("alert", level="critical"),
                _a("notify", channels=["email", "sms"]),
            ],
            priority=1,
        ),
        ResponseRule(
            id="coordinated_attack_response",
            name="Coordinated Attack Response",
            conditions=[
                _c("threat_type", "equals", "coordinated_attack"),
                _c("risk_score", "greater_than", 85),
            ],
            actions=[
                _a("block", target="ip", duration_sec=3600),
                _a("alert", level="critical"),
                _a("notify", channels=["email", "sms"]),
                _a("log", level="security"),
            ],
            priority=1,
        ),
        ResponseRule(
            id="data_exfiltration_response",
            name="Data Exfiltration Response",
            conditions=[_c("threat_type", "equals", "data_exfiltration")],
            actions=[
                _a("restrict", target="data_access"),
                _a("block", target="user_session", duration_sec=1800),
                _a("alert", level="high"),
                _a("log", level="forensic"),
            ],
            priority=1,
        ),
        ResponseRule(
            id="high_privilege_escalation",
            name="High Risk Privilege Escalation",
            conditions=[
                _c("threat_type", "in", ["privilege_escalation", "privilege_probing"]),
                _c("risk_score", "greater_than", 75),
            ],
            actions=[
                _a("restrict", target="user_permissions"),
                _a("alert", level="high"),
                _a("log", level="security"),
                _a("notify", channels=["email"]),
            ],
            priority=2,
        ),
        ResponseRule(
            id="session_anomaly_response",
            name="Session Anomaly Response",
            conditions=[
                _c("threat_type", "equals", "session_hijacking"),
                _c("risk_score", "greater_than", 50),
            ],
            actions=[
                _a("restrict", target="concurrent_sessions", limit=1),
                _a("alert", level="medium"),
                _a("log", level="security"),
            ],
            priority=2,
        ),
        ResponseRule(
            id="property_access_violation",
            name="Property Access Violation Response",
            conditions=[_c("threat_type", "equals", "property_access_violation")],
            actions=[
                _a("block", target="property_access", duration_sec=600),
                _a("alert", level="medium"),
                _a("log", level="audit"),
            ],
            priority=3,
        ),
    ]
