"""Field accessors and condition operators used by declarative rules.

Rules reference event and threat attributes by name. Names are resolved at
load time to members of two closed enums (``EventField``, ``ThreatField``),
each bound to an accessor function, so an unknown field is a validation
error rather than a silent non-match at evaluation time.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from enum import Enum
from typing import Any

from src.contracts.enums import Operator
from src.contracts.errors import RuleValidationError
from src.contracts.event import SecurityEvent, format_timestamp
from src.contracts.rules import Condition
from src.contracts.threat import ThreatIntelligence

log = logging.getLogger(__name__)


class EventField(str, Enum):
    ACTION = "action"
    ACTOR_ID = "actor_id"
    TENANT_ID = "tenant_id"
    IP_ADDRESS = "ip_address"
    RESOURCE = "resource"
    RESOURCE_ID = "resource_id"
    TIMESTAMP = "timestamp"

    def get(self, event: SecurityEvent) -> Any:
        return _EVENT_ACCESSORS[self](event)


class ThreatField(str, Enum):
    THREAT_TYPE = "threat_type"
    RISK_SCORE = "risk_score"
    CONFIDENCE = "confidence"
    STATUS = "status"
    AFFECTED_RESOURCES = "affected_resources"
    INDICATOR_COUNT = "indicator_count"
    RESOURCE_COUNT = "resource_count"
    TIMELINE_LENGTH = "timeline_length"

    def get(self, threat: ThreatIntelligence) -> Any:
        return _THREAT_ACCESSORS[self](threat)


_EVENT_ACCESSORS: dict[EventField, Callable[[SecurityEvent], Any]] = {
    EventField.ACTION: lambda e: e.action,
    EventField.ACTOR_ID: lambda e: e.actor_id,
    EventField.TENANT_ID: lambda e: e.tenant_id,
    EventField.IP_ADDRESS: lambda e: e.ip_address,
    EventField.RESOURCE: lambda e: e.resource,
    EventField.RESOURCE_ID: lambda e: e.resource_id,
    EventField.TIMESTAMP: lambda e: format_timestamp(e.timestamp),
}

_THREAT_ACCESSORS: dict[ThreatField, Callable[[ThreatIntelligence], Any]] = {
    ThreatField.THREAT_TYPE: lambda t: t.threat_type,
    ThreatField.RISK_SCORE: lambda t: t.risk_score,
    ThreatField.CONFIDENCE: lambda t: t.confidence,
    ThreatField.STATUS: lambda t: t.status.value,
    ThreatField.AFFECTED_RESOURCES: lambda t: list(t.affected_resources),
    ThreatField.INDICATOR_COUNT: lambda t: len(t.indicators),
    ThreatField.RESOURCE_COUNT: lambda t: len(t.affected_resources),
    ThreatField.TIMELINE_LENGTH: lambda t: len(t.timeline),
}

# camelCase names used by rule files exported from the web app
_ALIASES = {
    "userId": "actor_id",
    "user_id": "actor_id",
    "propertyId": "tenant_id",
    "property_id": "tenant_id",
    "ipAddress": "ip_address",
    "resourceId": "resource_id",
    "threatType": "threat_type",
    "riskScore": "risk_score",
    "affectedResources": "affected_resources",
    "indicatorCount": "indicator_count",
}


def resolve_event_field(name: str) -> EventField:
    try:
        return EventField(_ALIASES.get(name, name))
    except ValueError:
        raise RuleValidationError(
            f"Unknown event field '{name}' (expected one of: "
            f"{', '.join(f.value for f in EventField)})"
        ) from None


def resolve_threat_field(name: str) -> ThreatField:
    try:
        return ThreatField(_ALIASES.get(name, name))
    except ValueError:
        raise RuleValidationError(
            f"Unknown threat field '{name}' (expected one of: "
            f"{', '.join(f.value for f in ThreatField)})"
        ) from None


# ═══════════════════════════════════════════════════════════════════════════
#  Conditions
# ═══════════════════════════════════════════════════════════════════════════

_LIST_OPERATORS = {Operator.IN, Operator.NOT_IN}
_NUMERIC_OPERATORS = {Operator.GREATER_THAN, Operator.LESS_THAN}


def parse_condition(raw: dict[str, Any], resolver: Callable[[str], Enum]) -> Condition:
    """Build a validated Condition from a rule-file dict.

    The field name is canonicalised through *resolver*; unknown fields,
    unknown operators, non-list ``in``/``not_in`` values, non-numeric
    comparisons and invalid regexes raise ``RuleValidationError``.
    """
    if not isinstance(raw, dict):
        raise RuleValidationError(f"Condition must be a mapping, got {type(raw).__name__}")
    for key in ("field", "operator", "value"):
        if key not in raw:
            raise RuleValidationError(f"Condition is missing '{key}': {raw}")
    try:
        op = Operator(raw["operator"])
    except ValueError:
        raise RuleValidationError(f"Unknown operator '{raw['operator']}'") from None
    cond = Condition(field=resolver(str(raw["field"])).value, operator=op, value=raw["value"])
    validate_condition(cond, resolver)
    return cond


def validate_condition(cond: Condition, resolver: Callable[[str], Enum]) -> None:
    resolver(cond.field)
    op, value = cond.operator, cond.value
    if op in _LIST_OPERATORS and not isinstance(value, (list, tuple, set, frozenset)):
        raise RuleValidationError(f"Operator '{op.value}' on '{cond.field}' requires a list value")
    if op in _NUMERIC_OPERATORS:
        try:
            float(value)
        except (TypeError, ValueError):
            raise RuleValidationError(
                f"Operator '{op.value}' on '{cond.field}' requires a numeric value"
            ) from None
    if op is Operator.REGEX:
        try:
            re.compile(str(value))
        except re.error as exc:
            raise RuleValidationError(f"Invalid regex for '{cond.field}': {exc}") from None


def _as_text(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def _equals(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return actual is expected
    if isinstance(actual, (int, float)) and not isinstance(actual, bool):
        try:
            return float(actual) == float(expected)
        except (TypeError, ValueError):
            return False
    return _as_text(actual) == _as_text(expected)


def evaluate(operator: Operator, actual: Any, expected: Any) -> bool:
    """Apply *operator* to an accessor result.

    List-valued actuals (e.g. ``affected_resources``) match ``contains``
    by membership and ``in`` by overlap. Missing values never match a
    positive operator.
    """
    if operator is Operator.EQUALS:
        return _equals(actual, expected)
    if operator is Operator.NOT_EQUALS:
        return not _equals(actual, expected)
    if operator is Operator.CONTAINS:
        if actual is None:
            return False
        if isinstance(actual, (list, tuple, set)):
            return any(_equals(a, expected) for a in actual)
        return _as_text(expected) in _as_text(actual)
    if operator in _LIST_OPERATORS:
        options = list(expected or [])
        if isinstance(actual, (list, tuple, set)):
            hit = any(_equals(a, o) for a in actual for o in options)
        else:
            hit = any(_equals(actual, o) for o in options)
        return hit if operator is Operator.IN else not hit
    if operator is Operator.REGEX:
        if actual is None:
            return False
        return re.search(str(expected), _as_text(actual)) is not None
    if operator in _NUMERIC_OPERATORS:
        try:
            a, e = float(actual), float(expected)
        except (TypeError, ValueError):
            return False
        return a > e if operator is Operator.GREATER_THAN else a < e
    log.warning("Unsupported operator %s", operator)
    return False


def event_matches(cond: Condition, event: SecurityEvent) -> bool:
    return evaluate(cond.operator, resolve_event_field(cond.field).get(event), cond.value)


def threat_matches(cond: Condition, threat: ThreatIntelligence) -> bool:
    return evaluate(cond.operator, resolve_threat_field(cond.field).get(threat), cond.value)
