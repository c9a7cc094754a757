"""SecurityIncident — the durable, human-facing record of a threat."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from src.contracts.enums import IncidentStatus, Severity
from src.contracts.event import format_timestamp, parse_timestamp
from src.contracts.threat import TimelineEntry

INCIDENT_CSV_COLUMNS = [
    "id",
    "threat_id",
    "severity",
    "status",
    "title",
    "escalated",
    "created_at",
    "updated_at",
    "affected_resources",
    "response_actions",
    "resolution",
]


@dataclass(slots=True)
class SecurityIncident:
    """An incident created for one threat.

    Lifecycle
    ─────────
      open → investigating → contained → closed

    Incidents are never deleted; ``closed`` is terminal.
    """

    id: str  # e.g. "INC-3F2A9C01"
    threat_id: str
    severity: Severity
    title: str
    description: str
    created_at: datetime
    updated_at: datetime
    status: IncidentStatus = IncidentStatus.OPEN
    escalated: bool = False
    affected_resources: list[str] = field(default_factory=list)
    timeline: list[TimelineEntry] = field(default_factory=list)
    evidence: list[dict[str, Any]] = field(default_factory=list)
    response_actions: list[dict[str, Any]] = field(default_factory=list)
    resolution: str = ""

    # ── serialisation ────────────────────────────────────────────────────

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "threat_id": self.threat_id,
            "severity": self.severity.value,
            "status": self.status.value,
            "title": self.title,
            "description": self.description,
            "escalated": self.escalated,
            "affected_resources": list(self.affected_resources),
            "timeline": [t.to_dict() for t in self.timeline],
            "evidence": list(self.evidence),
            "response_actions": list(self.response_actions),
            "resolution": self.resolution,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> SecurityIncident:
        return cls(
            id=row["id"],
            threat_id=row["threat_id"],
            severity=Severity(row["severity"]),
            status=IncidentStatus(row.get("status", "open")),
            title=row.get("title", ""),
            description=row.get("description", ""),
            escalated=bool(row.get("escalated", False)),
            affected_resources=list(row.get("affected_resources") or []),
            timeline=[TimelineEntry.from_dict(t) for t in row.get("timeline") or []],
            evidence=list(row.get("evidence") or []),
            response_actions=list(row.get("response_actions") or []),
            resolution=row.get("resolution", ""),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    def to_csv_row(self) -> str:
        d = self.to_dict()
        d["affected_resources"] = ";".join(self.affected_resources)
        d["response_actions"] = ";".join(
            f"{a.get('type')}:{'ok' if a.get('success') else 'failed'}"
            for a in self.response_actions
        )
        buf = io.StringIO()
        writer = csv.writer(buf)
        writer.writerow([d[c] for c in INCIDENT_CSV_COLUMNS])
        return buf.getvalue().rstrip("\r\n")

    @staticmethod
    def csv_header() -> str:
        return ",".join(INCIDENT_CSV_COLUMNS)
