"""Monitoring configuration, runtime counters and incident summaries.

MonitoringConfig
────────────────
  Tunables of the real-time monitor. Loaded from ``config/monitor.yaml``
  (``monitor:`` section); unknown keys and out-of-range values raise
  ``ConfigError``. ``replace(**changes)`` returns a new validated config.

MonitoringStats
───────────────
  Counters maintained by the monitor; ``get_stats()`` returns a snapshot.

  average_response_time
      Running mean of response-engine execution time, ms.
  uptime_sec
      Seconds since the last successful ``start()`` (0 while stopped).

IncidentSummary
───────────────
  Counts of incidents by severity, status and threat type (for reports
  and the CLI ``check`` command).
"""

from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from src.analyzer.policy import DEFAULT_SEVERITY_THRESHOLDS
from src.contracts.enums import MonitorState
from src.contracts.errors import ConfigError
from src.contracts.event import format_timestamp
from src.contracts.incident import SecurityIncident
from src.shared.config_loader import load_yaml

log = logging.getLogger(__name__)


@dataclass(slots=True)
class MonitoringConfig:
    monitoring_interval_sec: float = 5.0
    threat_detection_interval_sec: float = 10.0
    correlation_interval_sec: float = 15.0
    max_events_per_batch: int = 100
    auto_response_enabled: bool = True
    max_auto_responses_per_hour: int = 50
    auto_response_min_risk: float = 60.0
    correlation_min_risk: float = 70.0
    incident_min_risk: float = 0.0
    correlation_lookback_sec: float = 3600.0
    correlation_max_events: int = 1000
    correlation_top_n: int = 20
    action_timeout_sec: float = 10.0
    shutdown_grace_sec: float = 5.0
    alert_thresholds: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_SEVERITY_THRESHOLDS)
    )

    # ── construction ─────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> MonitoringConfig:
        names = {f.name for f in dataclasses.fields(cls)}
        unknown = set(raw) - names
        if unknown:
            raise ConfigError(f"Unknown monitor settings: {', '.join(sorted(unknown))}")
        data = dict(raw)
        if "alert_thresholds" in data:
            data["alert_thresholds"] = {**DEFAULT_SEVERITY_THRESHOLDS,
                                        **(data["alert_thresholds"] or {})}
        try:
            cfg = cls(**data)
        except TypeError as exc:
            raise ConfigError(str(exc)) from None
        cfg.validate()
        return cfg

    @classmethod
    def load(cls, path: str | Path) -> MonitoringConfig:
        data = load_yaml(path)
        cfg = cls.from_dict(data.get("monitor") or {})
        log.info("Loaded monitor config from %s", path)
        return cfg

    def replace(self, **changes: Any) -> MonitoringConfig:
        names = {f.name for f in dataclasses.fields(self)}
        unknown = set(changes) - names
        if unknown:
            raise ConfigError(f"Unknown monitor settings: {', '.join(sorted(unknown))}")
        cfg = dataclasses.replace(self, **changes)
        cfg.validate()
        return cfg

    def validate(self) -> None:
        try:
            self._check()
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid monitor setting type: {exc}") from None

    def _check(self) -> None:
        for name in (
            "monitoring_interval_sec",
            "threat_detection_interval_sec",
            "correlation_interval_sec",
            "correlation_lookback_sec",
            "action_timeout_sec",
        ):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        for name in ("max_events_per_batch", "correlation_max_events", "correlation_top_n"):
            if int(getattr(self, name)) < 1:
                raise ConfigError(f"{name} must be >= 1")
        if self.max_auto_responses_per_hour < 0:
            raise ConfigError("max_auto_responses_per_hour must be >= 0")
        if self.shutdown_grace_sec < 0:
            raise ConfigError("shutdown_grace_sec must be >= 0")
        for name in ("auto_response_min_risk", "correlation_min_risk", "incident_min_risk"):
            if not 0 <= getattr(self, name) <= 100:
                raise ConfigError(f"{name} must be within 0..100")
        th = self.alert_thresholds
        try:
            ordered = th["critical"] >= th["high"] >= th["medium"]
        except KeyError as exc:
            raise ConfigError(f"alert_thresholds is missing {exc}") from None
        if not ordered:
            raise ConfigError("alert_thresholds must satisfy critical >= high >= medium")

    def to_dict(self) -> dict[str, Any]:
        d = dataclasses.asdict(self)
        d["alert_thresholds"] = dict(self.alert_thresholds)
        return d


@dataclass(slots=True)
class MonitoringStats:
    system_status: MonitorState = MonitorState.STOPPED
    start_time: datetime | None = None
    last_check: datetime | None = None
    uptime_sec: float = 0.0
    cursor: int = 0
    events_processed: int = 0
    threats_detected: int = 0
    incidents_created: int = 0
    incidents_updated: int = 0
    auto_responses_triggered: int = 0
    auto_responses_throttled: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    average_response_time: float = 0.0  # ms
    skipped_ticks: int = 0
    task_errors: dict[str, int] = field(default_factory=dict)

    def record_response_time(self, ms: float) -> None:
        n = self.auto_responses_triggered
        if n <= 0:
            return
        self.average_response_time += (ms - self.average_response_time) / n

    def to_dict(self) -> dict[str, Any]:
        d = dataclasses.asdict(self)
        d["system_status"] = self.system_status.value
        d["start_time"] = format_timestamp(self.start_time)
        d["last_check"] = format_timestamp(self.last_check)
        d["average_response_time"] = round(self.average_response_time, 3)
        d["uptime_sec"] = round(self.uptime_sec, 3)
        return d


# ═══════════════════════════════════════════════════════════════════════════
#  Incident summary
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class IncidentSummary:
    """Aggregated view over a set of incidents."""

    incidents_total: int = 0
    escalated: int = 0
    open: int = 0
    with_response: int = 0
    failed_actions: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)
    by_title: dict[str, int] = field(default_factory=dict)


def summarize(incidents: list[SecurityIncident]) -> IncidentSummary:
    s = IncidentSummary(incidents_total=len(incidents))
    if not incidents:
        log.info("No incidents to summarize")
        return s
    s.by_severity = dict(Counter(i.severity.value for i in incidents))
    s.by_status = dict(Counter(i.status.value for i in incidents))
    s.by_title = dict(Counter(i.title for i in incidents))
    s.escalated = sum(1 for i in incidents if i.escalated)
    s.open = sum(1 for i in incidents if i.status.value != "closed")
    s.with_response = sum(1 for i in incidents if i.response_actions)
    s.failed_actions = sum(
        1 for i in incidents for a in i.response_actions if not a.get("success", False)
    )
    return s
