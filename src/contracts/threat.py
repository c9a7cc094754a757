"""Threat contracts — indicators, correlations and normalized threat records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from src.contracts.enums import IndicatorType, Severity, ThreatStatus
from src.contracts.event import SecurityEvent, format_timestamp, parse_timestamp


@dataclass(slots=True)
class ThreatIndicator:
    """An observable (IP, user, pattern …) tied to a threat."""

    type: IndicatorType
    value: str
    confidence: float  # 0-100
    first_seen: datetime
    last_seen: datetime
    occurrences: int = 1
    severity: Severity | None = None
    description: str = ""
    expires_at: datetime | None = None  # feed entries only

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.value}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "first_seen": format_timestamp(self.first_seen),
            "last_seen": format_timestamp(self.last_seen),
            "occurrences": self.occurrences,
            "severity": self.severity.value if self.severity else None,
            "description": self.description,
        }


@dataclass(slots=True)
class CorrelationPattern:
    rule_id: str
    event_count: int
    time_span: timedelta
    frequency: float  # events per minute
    unique_ips: int
    unique_actors: int
    unique_tenants: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "event_count": self.event_count,
            "time_span_sec": self.time_span.total_seconds(),
            "frequency": round(self.frequency, 4),
            "unique_ips": self.unique_ips,
            "unique_actors": self.unique_actors,
            "unique_tenants": self.unique_tenants,
        }


@dataclass(slots=True)
class EventCorrelation:
    """A group of events that jointly satisfied one correlation rule.

    Invariants
    ──────────
      rule.min_events <= len(events) <= rule.max_events
      pattern.time_span <= time_window
    """

    id: str
    rule_id: str
    rule_name: str
    description: str
    events: list[SecurityEvent]
    correlation_key: tuple[str, ...]
    pattern: CorrelationPattern
    risk_score: float
    confidence: float
    priority: int
    indicators: list[ThreatIndicator]
    affected_resources: list[str]
    detected_at: datetime
    time_window: timedelta

    @property
    def first_seen(self) -> datetime:
        return self.events[0].timestamp

    @property
    def last_seen(self) -> datetime:
        return self.events[-1].timestamp

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "rule_id": self.rule_id,
            "rule_name": self.rule_name,
            "description": self.description,
            "event_ids": [e.id for e in self.events],
            "correlation_key": list(self.correlation_key),
            "pattern": self.pattern.to_dict(),
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "priority": self.priority,
            "indicators": [i.to_dict() for i in self.indicators],
            "affected_resources": list(self.affected_resources),
            "detected_at": format_timestamp(self.detected_at),
            "time_window_sec": self.time_window.total_seconds(),
        }


@dataclass(slots=True)
class TimelineEntry:
    timestamp: datetime
    event: str
    severity: Severity
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_timestamp(self.timestamp),
            "event": self.event,
            "severity": self.severity.value,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> TimelineEntry:
        return cls(
            timestamp=parse_timestamp(row["timestamp"]),
            event=row.get("event", ""),
            severity=Severity(row.get("severity", "info")),
            details=dict(row.get("details") or {}),
        )


@dataclass(slots=True)
class ThreatIntelligence:
    """Normalized threat record produced by the classifier or a correlation."""

    threat_id: str
    threat_type: str
    risk_score: float  # 0-100
    confidence: float  # 0-100
    indicators: list[ThreatIndicator]
    affected_resources: list[str]
    timeline: list[TimelineEntry]
    created_at: datetime
    updated_at: datetime
    status: ThreatStatus = ThreatStatus.ACTIVE
    source_event_ids: list[int] = field(default_factory=list)

    def indicators_of(self, kind: IndicatorType) -> list[ThreatIndicator]:
        return [i for i in self.indicators if i.type is kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "threat_id": self.threat_id,
            "threat_type": self.threat_type,
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "status": self.status.value,
            "indicators": [i.to_dict() for i in self.indicators],
            "affected_resources": list(self.affected_resources),
            "timeline": [t.to_dict() for t in self.timeline],
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "source_event_ids": list(self.source_event_ids),
        }
