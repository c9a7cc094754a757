"""Real-time monitor — schedules ingestion, detection and correlation.

Tasks (independent schedules, each non-reentrant and error-isolated)
──────────────────────────────────────────────────────────────────────
  ingestion    every monitoring_interval_sec
               read events with id > cursor (up to max_events_per_batch),
               advance the cursor, classify each event
  detection    every threat_detection_interval_sec
               re-classify events from the last 2 × interval
  correlation  every correlation_interval_sec
               correlate the last correlation_lookback_sec of events;
               correlations with risk >= correlation_min_risk become
               ``coordinated_attack`` threats

Threat handling
───────────────
  existing incident for threat_id → skip (idempotent across tasks); an open
                                    coordinated-attack incident whose
                                    correlation grew gains the new events
                                    instead (no new alert or response)
  risk < incident_min_risk        → skip
  otherwise create an incident, run the response engine when auto-response
  is enabled, risk >= auto_response_min_risk and the rolling-hour throttle
  admits it, then always dispatch an alert.

State machine
─────────────
  stopped → starting → running → stopping → stopped
  starting → error (initialization failed; start() may be retried)
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
import uuid
from collections import deque
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Any

from src.analyzer import policy
from src.analyzer.classifier import COORDINATED_ATTACK, ThreatClassifier
from src.analyzer.correlator import correlate
from src.analyzer.metrics import MonitoringConfig, MonitoringStats
from src.analyzer.responder import ResponseEngine
from src.analyzer.rule_store import CorrelationRuleStore
from src.analyzer.sinks import AlertDispatcher, IncidentSink
from src.analyzer.sources import EventSource
from src.contracts.alert import SecurityAlert
from src.contracts.enums import IncidentStatus, MonitorState, Severity
from src.contracts.errors import EventSourceError, MonitorStartError, MonitorStateError
from src.contracts.event import SecurityEvent
from src.contracts.incident import SecurityIncident
from src.contracts.response import AutomatedResponseResult
from src.contracts.threat import ThreatIntelligence, TimelineEntry

log = logging.getLogger(__name__)

INGESTION = "ingestion"
DETECTION = "detection"
CORRELATION = "correlation"

_INTERVAL_FIELD = {
    INGESTION: "monitoring_interval_sec",
    DETECTION: "threat_detection_interval_sec",
    CORRELATION: "correlation_interval_sec",
}

_INCIDENT_SUMMARY = {
    "brute_force": "Repeated failed authentication attempts against an account.",
    "coordinated_attack": "Multiple related events matched a correlation rule.",
    "data_exfiltration": "Export or download activity that may indicate data theft.",
    "privilege_probing": "Access to resources outside the account's permissions.",
    "privilege_escalation": "Permission changes that raise an account's privileges.",
    "property_access_violation": "Access attempt against a property the user is not assigned to.",
    "session_hijacking": "Session activity inconsistent with the legitimate user.",
    "rate_limit_violation": "Request rate above the configured limit.",
    "unusual_activity": "Security-relevant activity without a known pattern.",
}


# ═══════════════════════════════════════════════════════════════════════════
#  Auto-response throttle
# ═══════════════════════════════════════════════════════════════════════════

class AutoResponseThrottle:
    """Caps automated responses within a rolling window (default one hour)."""

    def __init__(
        self,
        max_per_window: int,
        window_sec: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_per_window = max_per_window
        self.window_sec = window_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._triggers: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._triggers and now - self._triggers[0] >= self.window_sec:
            self._triggers.popleft()

    def try_acquire(self) -> bool:
        """Record a trigger and return True if the cap allows it."""
        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._triggers) >= self.max_per_window:
                return False
            self._triggers.append(now)
            return True

    def count(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._triggers)

    def set_limit(self, max_per_window: int) -> None:
        with self._lock:
            self.max_per_window = max_per_window


# ═══════════════════════════════════════════════════════════════════════════
#  Repeating task
# ═══════════════════════════════════════════════════════════════════════════

class _RepeatingTask:
    """Daemon thread calling *fn* every *interval* seconds until stopped."""

    def __init__(self, name: str, interval: float, fn: Callable[[], None]) -> None:
        self.name = name
        self.interval = interval
        self._fn = fn
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"monitor-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self._fn()

    def signal_stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None) -> bool:
        """Wait for the thread; return True if it has exited."""
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        return not self._thread.is_alive()


# ═══════════════════════════════════════════════════════════════════════════
#  Monitor
# ═══════════════════════════════════════════════════════════════════════════

def _utcnow() -> datetime:
    return datetime.now(UTC)


class RealTimeMonitor:
    """Orchestrates the pipeline on independent schedules."""

    def __init__(
        self,
        source: EventSource,
        classifier: ThreatClassifier,
        correlation_rules: CorrelationRuleStore,
        incidents: IncidentSink,
        dispatcher: AlertDispatcher,
        responder: ResponseEngine | None = None,
        config: MonitoringConfig | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.source = source
        self.classifier = classifier
        self.correlation_rules = correlation_rules
        self.incidents = incidents
        self.dispatcher = dispatcher
        self.responder = responder
        self.config = config or MonitoringConfig()
        self.config.validate()
        self._clock = clock
        self._monotonic = monotonic

        self.throttle = AutoResponseThrottle(self.config.max_auto_responses_per_hour,
                                             clock=monotonic)
        if responder is not None:
            responder.action_timeout_sec = self.config.action_timeout_sec
        self._apply_retention()

        self._state = MonitorState.STOPPED
        self._state_lock = threading.RLock()
        self._cursor = 0
        self._cursor_lock = threading.Lock()
        self._stats = MonitoringStats()
        self._stats_lock = threading.Lock()
        self._started_mono: float | None = None

        self._guards = {name: threading.Lock() for name in _INTERVAL_FIELD}
        self._tasks: dict[str, _RepeatingTask] = {}
        self._io = ThreadPoolExecutor(max_workers=3, thread_name_prefix="monitor-io")

        self._on_incident: list[Callable[[SecurityIncident], None]] = []
        self._on_alert: list[Callable[[SecurityAlert], None]] = []
        self._on_response: list[Callable[[AutomatedResponseResult], None]] = []

    # ── observers ────────────────────────────────────────────────────────

    def on_incident(self, cb: Callable[[SecurityIncident], None]) -> None:
        self._on_incident.append(cb)

    def on_alert(self, cb: Callable[[SecurityAlert], None]) -> None:
        self._on_alert.append(cb)

    def on_response(self, cb: Callable[[AutomatedResponseResult], None]) -> None:
        self._on_response.append(cb)

    def _notify(self, callbacks: list[Callable[[Any], None]], payload: Any) -> None:
        for cb in callbacks:
            try:
                cb(payload)
            except Exception:
                log.exception("Monitor observer %r failed", cb)

    # ── state ────────────────────────────────────────────────────────────

    @property
    def state(self) -> MonitorState:
        with self._state_lock:
            return self._state

    @property
    def cursor(self) -> int:
        with self._cursor_lock:
            return self._cursor

    def _set_state(self, state: MonitorState) -> None:
        with self._state_lock:
            if state is not self._state:
                log.info("Monitor state %s → %s", self._state.value, state.value)
            self._state = state

    def start(self, initial_cursor: int | None = None) -> None:
        """Initialise collaborators and start the three schedules.

        Raises ``MonitorStartError`` (state becomes ``error``) when a
        collaborator fails its health check; ``start()`` may be retried.
        """
        with self._state_lock:
            if self._state is MonitorState.RUNNING:
                log.info("Monitor already running")
                return
            if self._state in (MonitorState.STARTING, MonitorState.STOPPING):
                raise MonitorStateError(f"Cannot start while {self._state.value}")
            self._set_state(MonitorState.STARTING)
        try:
            self.source.ping()
            init = getattr(self.classifier.provider, "initialize", None)
            if callable(init):
                init()
        except Exception as exc:
            self._set_state(MonitorState.ERROR)
            log.error("Monitor initialization failed: %s", exc)
            raise MonitorStartError(f"Monitor initialization failed: {exc}") from exc

        if initial_cursor is not None:
            with self._cursor_lock:
                self._cursor = initial_cursor
        with self._state_lock:
            for name in _INTERVAL_FIELD:
                self._start_task(name)
            self._started_mono = self._monotonic()
            with self._stats_lock:
                self._stats.start_time = self._clock()
            self._set_state(MonitorState.RUNNING)
        log.info("Monitor started (ingest=%.1fs, detect=%.1fs, correlate=%.1fs, cursor=%d)",
                 self.config.monitoring_interval_sec,
                 self.config.threat_detection_interval_sec,
                 self.config.correlation_interval_sec,
                 self.cursor)

    def stop(self, grace_sec: float | None = None) -> None:
        """Signal all schedules and wait at most *grace_sec* for in-flight ticks."""
        with self._state_lock:
            if self._state is MonitorState.ERROR:
                self._set_state(MonitorState.STOPPED)
                return
            if self._state is not MonitorState.RUNNING:
                return
            self._set_state(MonitorState.STOPPING)
            tasks = list(self._tasks.values())
            self._tasks.clear()

        grace = self.config.shutdown_grace_sec if grace_sec is None else grace_sec
        for task in tasks:
            task.signal_stop()
        deadline = time.monotonic() + grace
        for task in tasks:
            if not task.join(max(0.0, deadline - time.monotonic())):
                log.warning("Task %s still running after %.1fs grace — abandoned", task.name, grace)

        with self._state_lock:
            self._started_mono = None
            self._set_state(MonitorState.STOPPED)
        log.info("Monitor stopped")

    def close(self) -> None:
        self.stop()
        self._io.shutdown(wait=False, cancel_futures=True)
        if self.responder is not None:
            self.responder.close()

    def _start_task(self, name: str) -> None:
        interval = getattr(self.config, _INTERVAL_FIELD[name])
        fn = {INGESTION: self._ingest_tick,
              DETECTION: self._detect_tick,
              CORRELATION: self._correlate_tick}[name]
        task = _RepeatingTask(name, interval, lambda: self._guarded(name, fn))
        self._tasks[name] = task
        task.start()

    # ── configuration ────────────────────────────────────────────────────

    def update_config(self, **changes: Any) -> MonitoringConfig:
        """Validate and apply changes; only schedules whose interval changed restart."""
        new = self.config.replace(**changes)
        with self._state_lock:
            old, self.config = self.config, new
            self.throttle.set_limit(new.max_auto_responses_per_hour)
            if self.responder is not None:
                self.responder.action_timeout_sec = new.action_timeout_sec
            self._apply_retention()
            if self._state is MonitorState.RUNNING:
                for name, fld in _INTERVAL_FIELD.items():
                    if getattr(old, fld) != getattr(new, fld):
                        prev = self._tasks.pop(name, None)
                        if prev is not None:
                            prev.signal_stop()
                        self._start_task(name)
                        log.info("Rescheduled %s task: %.1fs → %.1fs",
                                 name, getattr(old, fld), getattr(new, fld))
        return new

    def _apply_retention(self) -> None:
        """Tell a source that trims history how much of it the ticks still read."""
        set_retention = getattr(self.source, "set_retention", None)
        if callable(set_retention):
            cfg = self.config
            set_retention(timedelta(seconds=max(cfg.correlation_lookback_sec,
                                                2 * cfg.threat_detection_interval_sec)))

    # ── stats ────────────────────────────────────────────────────────────

    def get_stats(self) -> MonitoringStats:
        with self._stats_lock:
            snap = dataclasses.replace(self._stats, task_errors=dict(self._stats.task_errors))
        snap.system_status = self.state
        snap.cursor = self.cursor
        started = self._started_mono
        snap.uptime_sec = self._monotonic() - started if started is not None else 0.0
        return snap

    def _bump(self, **deltas: int) -> None:
        with self._stats_lock:
            for name, delta in deltas.items():
                setattr(self._stats, name, getattr(self._stats, name) + delta)

    # ── ticks ────────────────────────────────────────────────────────────

    def force_check(self) -> MonitoringStats:
        """Run all three ticks synchronously (allowed in any state)."""
        for name, fn in ((INGESTION, self._ingest_tick),
                         (DETECTION, self._detect_tick),
                         (CORRELATION, self._correlate_tick)):
            self._guarded(name, fn, wait=getattr(self.config, _INTERVAL_FIELD[name]))
        return self.get_stats()

    def _guarded(self, name: str, fn: Callable[[], None], wait: float | None = None) -> bool:
        """Run one tick unless another tick of the same task is in flight."""
        guard = self._guards[name]
        acquired = guard.acquire(timeout=wait) if wait else guard.acquire(blocking=False)
        if not acquired:
            log.debug("%s tick skipped: previous tick still running", name)
            self._bump(skipped_ticks=1)
            return False
        try:
            fn()
        except Exception:
            log.exception("%s tick failed", name)
            with self._stats_lock:
                self._stats.task_errors[name] = self._stats.task_errors.get(name, 0) + 1
        finally:
            guard.release()
            with self._stats_lock:
                self._stats.last_check = self._clock()
        return True

    def _read(self, fn: Callable[[], list[SecurityEvent]], budget: float) -> list[SecurityEvent]:
        future = self._io.submit(fn)
        try:
            return future.result(timeout=budget)
        except TimeoutError:
            future.cancel()
            raise EventSourceError(f"Event source read exceeded {budget:g}s budget") from None

    def _ingest_tick(self) -> None:
        cfg = self.config
        since = self.cursor
        events = self._read(lambda: self.source.read_events(since, cfg.max_events_per_batch),
                            cfg.monitoring_interval_sec)
        if not events:
            return
        with self._cursor_lock:
            self._cursor = max(self._cursor, max(e.id for e in events))
        self._bump(events_processed=len(events))
        log.debug("Ingested %d events (cursor %d → %d)", len(events), since, self.cursor)
        self._classify_all(events)

    def _detect_tick(self) -> None:
        cfg = self.config
        window = timedelta(seconds=2 * cfg.threat_detection_interval_sec)
        now = self._clock()
        events = self._read(
            lambda: self.source.read_recent(window, cfg.correlation_max_events, now=now),
            cfg.threat_detection_interval_sec,
        )
        self._classify_all(events)

    def _correlate_tick(self) -> None:
        cfg = self.config
        window = timedelta(seconds=cfg.correlation_lookback_sec)
        now = self._clock()
        events = self._read(
            lambda: self.source.read_recent(window, cfg.correlation_max_events, now=now),
            cfg.correlation_interval_sec,
        )
        correlations = correlate(events, self.correlation_rules.list(),
                                 top_n=cfg.correlation_top_n, now=now)
        for corr in correlations:
            if corr.risk_score < cfg.correlation_min_risk:
                continue
            try:
                self.handle_threat(self.classifier.from_correlation(corr))
            except Exception:
                log.exception("Handling correlation %s failed", corr.id)

    def _classify_all(self, events: list[SecurityEvent]) -> None:
        for ev in events:
            try:
                threat = self.classifier.classify(ev)
            except Exception:
                log.exception("Classification of event %s failed — treated as non-threat", ev.id)
                continue
            if threat is None:
                continue
            try:
                self.handle_threat(threat)
            except Exception:
                log.exception("Handling threat %s failed", threat.threat_id)

    # ── threat → incident → response → alert ─────────────────────────────

    def handle_threat(self, threat: ThreatIntelligence) -> SecurityIncident | None:
        """Create the incident for *threat* (once), respond and alert."""
        cfg = self.config
        existing = self.incidents.find_by_threat(threat.threat_id)
        if existing is not None:
            if (threat.threat_type == COORDINATED_ATTACK
                    and existing.status is not IncidentStatus.CLOSED):
                self._extend_incident(existing, threat)
            return None
        if threat.risk_score < cfg.incident_min_risk:
            return None

        incident = self._build_incident(threat)
        incident_id = self.incidents.create_incident(incident)
        if incident_id != incident.id:
            # another task created it first
            return None
        self._bump(threats_detected=1, incidents_created=1)
        self._notify(self._on_incident, incident)

        if (cfg.auto_response_enabled and self.responder is not None
                and threat.risk_score >= cfg.auto_response_min_risk):
            if self.throttle.try_acquire():
                incident = self._respond(threat, incident)
            else:
                self._bump(auto_responses_throttled=1)
                log.warning("Auto-response cap (%d/h) reached — %s not auto-responded",
                            cfg.max_auto_responses_per_hour, threat.threat_id)

        self._dispatch_alert(threat, incident)
        return incident

    def _extend_incident(self, incident: SecurityIncident, threat: ThreatIntelligence) -> None:
        """Fold events that joined an ongoing correlation into its incident."""
        known: set[int] = set()
        for item in incident.evidence:
            if item.get("type") == "events":
                known.update(item.get("event_ids") or [])
        added = [i for i in threat.source_event_ids if i not in known]
        if not added:
            return
        evidence = [e for e in incident.evidence if e.get("type") != "events"]
        evidence.append({"type": "events", "event_ids": sorted(known.union(added))})
        resources = [*incident.affected_resources,
                     *(r for r in threat.affected_resources if r not in incident.affected_resources)]
        entry = TimelineEntry(
            timestamp=self._clock(),
            event="Correlation extended",
            severity=Severity.INFO,
            details={"event_ids": added, "risk_score": threat.risk_score},
        )
        self.incidents.update_incident(incident.id, {
            "evidence": evidence,
            "affected_resources": resources,
            "timeline": [*incident.timeline, entry],
        })
        self._bump(incidents_updated=1)
        log.info("Incident %s extended with events %s", incident.id, added)

    def _respond(self, threat: ThreatIntelligence, incident: SecurityIncident) -> SecurityIncident:
        result = self.responder.execute(threat, incident)
        self._bump(auto_responses_triggered=1)
        with self._stats_lock:
            self._stats.record_response_time(result.execution_time)
        self._notify(self._on_response, result)
        if not result.matched_rules:
            return incident

        entry = TimelineEntry(
            timestamp=self._clock(),
            event=f"Automated response: {result.message}",
            severity=Severity.INFO if result.success else Severity.MEDIUM,
            details={"rules": result.matched_rules, "errors": result.errors},
        )
        patch: dict[str, Any] = {
            "response_actions": [*incident.response_actions,
                                 *(a.to_dict() for a in result.actions_executed)],
            "timeline": [*incident.timeline, entry],
        }
        if result.success:
            patch["status"] = IncidentStatus.CONTAINED
        try:
            return self.incidents.update_incident(incident.id, patch)
        except (KeyError, ValueError) as exc:
            log.error("Could not record response on incident %s: %s", incident.id, exc)
            return incident

    def _build_incident(self, threat: ThreatIntelligence) -> SecurityIncident:
        now = self._clock()
        severity = policy.severity_for_risk(threat.risk_score, self.config.alert_thresholds)
        label = threat.threat_type.replace("_", " ").title()
        evidence: list[dict[str, Any]] = [
            {"type": "indicator", "indicator": i.key, "confidence": i.confidence,
             "occurrences": i.occurrences}
            for i in threat.indicators
        ]
        evidence.append({"type": "events", "event_ids": list(threat.source_event_ids)})
        return SecurityIncident(
            id=f"INC-{uuid.uuid4().hex[:8].upper()}",
            threat_id=threat.threat_id,
            severity=severity,
            title=f"Security Incident: {label}",
            description=(
                f"{_INCIDENT_SUMMARY.get(threat.threat_type, 'Security threat detected.')} "
                f"Risk {threat.risk_score:.0f}/100, confidence {threat.confidence:.0f}%."
            ),
            created_at=now,
            updated_at=now,
            escalated=severity is Severity.CRITICAL,
            affected_resources=list(threat.affected_resources),
            timeline=[
                *threat.timeline,
                TimelineEntry(timestamp=now, event="Incident created", severity=severity,
                              details={"threat_id": threat.threat_id}),
            ],
            evidence=evidence,
        )

    def _dispatch_alert(self, threat: ThreatIntelligence, incident: SecurityIncident) -> None:
        channels = policy.channels_for(incident.severity)
        alert = SecurityAlert(
            id=f"ALR-{incident.id}",
            threat_id=threat.threat_id,
            incident_id=incident.id,
            level=incident.severity,
            title=incident.title,
            message=(f"{threat.threat_type} detected (risk {threat.risk_score:.0f}/100) "
                     f"affecting {', '.join(incident.affected_resources) or 'unknown resources'}"),
            channels=channels,
            created_at=self._clock(),
            action_required=incident.severity in (Severity.HIGH, Severity.CRITICAL),
            escalated=incident.escalated,
            details={"status": incident.status.value,
                     "response_actions": len(incident.response_actions)},
        )
        try:
            ok = self.dispatcher.send(alert, channels)
        except Exception:
            log.exception("Alert dispatch for %s raised", incident.id)
            ok = False
        if ok:
            self._bump(alerts_sent=1)
            self._notify(self._on_alert, alert)
        else:
            self._bump(alerts_failed=1)
