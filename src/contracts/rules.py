"""Declarative rule contracts: correlation rules and response rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from src.contracts.enums import ActionType, Operator

# Sentinel value meaning "equal across every event in the group".
SAME = "SAME"


@dataclass(frozen=True, slots=True)
class Condition:
    """``field <operator> value``; field names are resolved by the rule store."""

    field: str
    operator: Operator
    value: Any

    @property
    def is_same(self) -> bool:
        return self.value == SAME

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "operator": self.operator.value, "value": self.value}


@dataclass(slots=True)
class CorrelationRule:
    """A multi-event pattern: matching events, grouped and bounded in time."""

    id: str
    name: str
    time_window: timedelta
    min_events: int
    max_events: int
    conditions: list[Condition]
    risk_multiplier: float = 1.0
    confidence: float = 50.0  # 0-100
    priority: int = 5  # lower = more important
    enabled: bool = True
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "time_window_sec": self.time_window.total_seconds(),
            "min_events": self.min_events,
            "max_events": self.max_events,
            "conditions": [c.to_dict() for c in self.conditions],
            "risk_multiplier": self.risk_multiplier,
            "confidence": self.confidence,
            "priority": self.priority,
            "enabled": self.enabled,
        }


@dataclass(frozen=True, slots=True)
class ResponseAction:
    """One declared mitigation step of a response rule."""

    type: ActionType
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "parameters": dict(self.parameters)}


@dataclass(slots=True)
class ResponseRule:
    """Threat conditions mapped to an ordered list of actions."""

    id: str
    name: str
    conditions: list[Condition]
    actions: list[ResponseAction]
    priority: int = 5
    enabled: bool = True
    auto_execute: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "conditions": [c.to_dict() for c in self.conditions],
            "actions": [a.to_dict() for a in self.actions],
            "priority": self.priority,
            "enabled": self.enabled,
            "auto_execute": self.auto_execute,
        }
