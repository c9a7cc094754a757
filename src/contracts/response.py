"""Outcome records of the automated response engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.contracts.enums import ActionType
from src.contracts.event import format_timestamp


@dataclass(slots=True)
class ExecutedAction:
    """A response action after the engine attempted it."""

    type: ActionType | str  # str when the declared type had no handler
    rule_id: str
    parameters: dict[str, Any]
    executed_at: datetime
    success: bool
    message: str
    duration_ms: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value if isinstance(self.type, ActionType) else self.type,
            "rule_id": self.rule_id,
            "parameters": dict(self.parameters),
            "executed_at": format_timestamp(self.executed_at),
            "success": self.success,
            "message": self.message,
            "duration_ms": round(self.duration_ms, 3),
            "details": dict(self.details),
        }


@dataclass(slots=True)
class AutomatedResponseResult:
    threat_id: str
    incident_id: str | None
    success: bool
    message: str
    matched_rules: list[str] = field(default_factory=list)
    actions_executed: list[ExecutedAction] = field(default_factory=list)
    execution_time: float = 0.0  # wall-clock ms
    errors: list[str] = field(default_factory=list)

    @property
    def failed_actions(self) -> list[ExecutedAction]:
        return [a for a in self.actions_executed if not a.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_id": self.threat_id,
            "incident_id": self.incident_id,
            "success": self.success,
            "message": self.message,
            "matched_rules": list(self.matched_rules),
            "actions_executed": [a.to_dict() for a in self.actions_executed],
            "execution_time": round(self.execution_time, 3),
            "errors": list(self.errors),
        }
