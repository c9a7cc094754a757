"""Sinks — where incidents, alerts and response audit records go.

Incident sink
─────────────
  create_incident(incident) -> id     idempotent per threat_id
  update_incident(id, patch)          field patch; ``closed`` is terminal
  close_incident(id, resolution)
  get(id) / find_by_threat(threat_id) / list()

Alert dispatcher
────────────────
  send(alert, channels) -> bool       failures are logged, never retried

Response log
────────────
  record(result)                      append-only audit of every engine run

``Memory*`` variants keep state in process; ``Jsonl*`` variants also append
every change to a JSONL file (the dashboard reads those files).
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from src.contracts.alert import SecurityAlert
from src.contracts.enums import AlertChannel, IncidentStatus, Severity
from src.contracts.incident import SecurityIncident
from src.contracts.response import AutomatedResponseResult
from src.contracts.threat import TimelineEntry
from src.shared.jsonl import append_jsonl, read_jsonl_from

log = logging.getLogger(__name__)

_PATCHABLE = {
    "status",
    "severity",
    "escalated",
    "description",
    "affected_resources",
    "timeline",
    "evidence",
    "response_actions",
    "resolution",
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IncidentSink(Protocol):
    def create_incident(self, incident: SecurityIncident) -> str: ...

    def update_incident(self, incident_id: str, patch: dict[str, Any]) -> SecurityIncident: ...

    def close_incident(self, incident_id: str, resolution: str) -> SecurityIncident: ...

    def get(self, incident_id: str) -> SecurityIncident | None: ...

    def find_by_threat(self, threat_id: str) -> SecurityIncident | None: ...

    def list(self) -> list[SecurityIncident]: ...


class AlertDispatcher(Protocol):
    def send(self, alert: SecurityAlert, channels: list[AlertChannel]) -> bool: ...


class ResponseLog(Protocol):
    def record(self, result: AutomatedResponseResult) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
#  Incidents
# ═══════════════════════════════════════════════════════════════════════════

class MemoryIncidentSink:
    """Thread-safe incident store keyed by id, with a threat_id index."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._incidents: dict[str, SecurityIncident] = {}
        self._by_threat: dict[str, str] = {}

    def _persist(self, op: str, incident: SecurityIncident) -> None:
        """Hook for durable subclasses; called under the store lock.

        Runs before the in-memory maps change, so a failed write leaves the
        store as it was and the caller may retry.
        """

    def create_incident(self, incident: SecurityIncident) -> str:
        with self._lock:
            existing = self._by_threat.get(incident.threat_id)
            if existing is not None:
                log.debug("Incident for threat %s already exists (%s)", incident.threat_id, existing)
                return existing
            if incident.id in self._incidents:
                raise ValueError(f"Incident id {incident.id} already exists")
            self._persist("create", incident)
            self._incidents[incident.id] = incident
            self._by_threat[incident.threat_id] = incident.id
        log.info("Incident %s created (threat=%s, severity=%s)",
                 incident.id, incident.threat_id, incident.severity.value)
        return incident.id

    def update_incident(self, incident_id: str, patch: dict[str, Any]) -> SecurityIncident:
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValueError(f"Incident fields not patchable: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._incidents.get(incident_id)
            if current is None:
                raise KeyError(f"Incident {incident_id} not found")
            if current.status is IncidentStatus.CLOSED:
                raise ValueError(f"Incident {incident_id} is closed")
            changes = dict(patch)
            if "status" in changes:
                changes["status"] = IncidentStatus(changes["status"])
            if "severity" in changes:
                changes["severity"] = Severity(changes["severity"])
            updated = dataclasses.replace(current, updated_at=self._clock(), **changes)
            self._persist("update", updated)
            self._incidents[incident_id] = updated
        return updated

    def close_incident(self, incident_id: str, resolution: str) -> SecurityIncident:
        current = self.get(incident_id)
        if current is None:
            raise KeyError(f"Incident {incident_id} not found")
        timeline = [
            *current.timeline,
            TimelineEntry(
                timestamp=self._clock(),
                event="Incident closed",
                severity=Severity.INFO,
                details={"resolution": resolution},
            ),
        ]
        closed = self.update_incident(
            incident_id,
            {"status": IncidentStatus.CLOSED, "resolution": resolution, "timeline": timeline},
        )
        log.info("Incident %s closed: %s", incident_id, resolution)
        return closed

    def get(self, incident_id: str) -> SecurityIncident | None:
        with self._lock:
            return self._incidents.get(incident_id)

    def find_by_threat(self, threat_id: str) -> SecurityIncident | None:
        with self._lock:
            iid = self._by_threat.get(threat_id)
            return self._incidents.get(iid) if iid else None

    def list(self) -> list[SecurityIncident]:
        with self._lock:
            return list(self._incidents.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._incidents)


class JsonlIncidentSink(MemoryIncidentSink):
    """Incident store persisted as an append-only JSONL log of snapshots.

    Each line is ``{"op": "create"|"update", "incident": {...}}``; on open
    the file is replayed and the last snapshot per incident id wins.
    """

    def __init__(self, path: str | Path, clock: Callable[[], datetime] = _utcnow) -> None:
        super().__init__(clock=clock)
        self.path = Path(path)
        self._replay()

    def _replay(self) -> None:
        records, _ = read_jsonl_from(self.path)
        for rec in records:
            try:
                inc = SecurityIncident.from_dict(rec["incident"])
            except (KeyError, TypeError, ValueError) as exc:
                log.warning("Skipping incident record: %s", exc)
                continue
            self._incidents[inc.id] = inc
            self._by_threat[inc.threat_id] = inc.id
        if self._incidents:
            log.info("Replayed %d incidents from %s", len(self._incidents), self.path)

    def _persist(self, op: str, incident: SecurityIncident) -> None:
        append_jsonl(self.path, {"op": op, "incident": incident.to_dict()})


# ═══════════════════════════════════════════════════════════════════════════
#  Alerts
# ═══════════════════════════════════════════════════════════════════════════

class LogAlertDispatcher:
    """Dispatch alerts to the application log."""

    def send(self, alert: SecurityAlert, channels: list[AlertChannel]) -> bool:
        level = logging.WARNING if alert.level in (Severity.HIGH, Severity.CRITICAL) else logging.INFO
        log.log(level, "ALERT [%s] %s — %s (channels=%s)",
                alert.level.value.upper(), alert.title, alert.message,
                ",".join(c.value for c in channels))
        return True


class JsonlAlertDispatcher(LogAlertDispatcher):
    """Log the alert and append it to the dashboard alert feed."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def send(self, alert: SecurityAlert, channels: list[AlertChannel]) -> bool:
        super().send(alert, channels)
        record = alert.to_dict()
        record["channels"] = [c.value for c in channels]
        try:
            with self._lock:
                append_jsonl(self.path, record)
        except OSError as exc:
            log.error("Alert %s could not be written to %s: %s", alert.id, self.path, exc)
            return False
        return True


class MemoryAlertDispatcher:
    """Collects alerts in a list; useful for embedding and tests."""

    def __init__(self) -> None:
        self.sent: list[tuple[SecurityAlert, list[AlertChannel]]] = []
        self._lock = threading.Lock()

    def send(self, alert: SecurityAlert, channels: list[AlertChannel]) -> bool:
        with self._lock:
            self.sent.append((alert, list(channels)))
        return True


# ═══════════════════════════════════════════════════════════════════════════
#  Response audit log
# ═══════════════════════════════════════════════════════════════════════════

class MemoryResponseLog:
    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def record(self, result: AutomatedResponseResult) -> None:
        with self._lock:
            self.records.append(result.to_dict())


class JsonlResponseLog:
    """Append-only JSONL audit of every response-engine invocation."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def record(self, result: AutomatedResponseResult) -> None:
        with self._lock:
            append_jsonl(self.path, result.to_dict())
