"""Модель оповіщення (SecurityAlert)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.contracts.enums import AlertChannel, Severity
from src.contracts.event import format_timestamp


@dataclass(slots=True)
class SecurityAlert:
    """Оповіщення, надіслане для кожного створеного інциденту."""

    id: str  # e.g. "ALR-INC-3F2A9C01"
    threat_id: str
    incident_id: str
    level: Severity
    title: str
    message: str
    channels: list[AlertChannel]
    created_at: datetime
    action_required: bool = False
    escalated: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threat_id": self.threat_id,
            "incident_id": self.incident_id,
            "level": self.level.value,
            "title": self.title,
            "message": self.message,
            "channels": [c.value for c in self.channels],
            "action_required": self.action_required,
            "escalated": self.escalated,
            "created_at": format_timestamp(self.created_at),
            "details": dict(self.details),
        }
