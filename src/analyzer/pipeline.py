"""Pipeline — wiring and run modes.

Run modes
─────────
  run_correlation  offline: load an event file, correlate + classify,
                   create incidents (optionally respond), write reports
  run_check        build the live pipeline, run one synchronous check
  run_monitor      build the live pipeline and run until Ctrl+C,
                   refreshing the stats snapshot every poll interval

Configuration lives in ``<config_dir>/``: ``monitor.yaml``,
``correlation_rules.yaml``, ``response_rules.yaml``, ``threat_intel.yaml``.
Missing rule files fall back to the built-in rule sets.
"""

from __future__ import annotations

import csv
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

from src.analyzer.actions import ActionHandlers
from src.analyzer.classifier import ThreatClassifier
from src.analyzer.correlator import correlate
from src.analyzer.metrics import MonitoringConfig, MonitoringStats, summarize
from src.analyzer.monitor import RealTimeMonitor
from src.analyzer.reporter import (
    write_correlations_csv,
    write_incidents_csv,
    write_plots,
    write_report_txt,
    write_stats_json,
)
from src.analyzer.responder import ResponseEngine
from src.analyzer.rule_store import CorrelationRuleStore, ResponseRuleStore
from src.analyzer.sinks import (
    JsonlAlertDispatcher,
    JsonlIncidentSink,
    JsonlResponseLog,
    MemoryAlertDispatcher,
    MemoryIncidentSink,
    MemoryResponseLog,
)
from src.analyzer.sources import EventSource, JsonlEventSource, MemoryEventSource
from src.analyzer.threat_intel import StaticIndicatorFeed
from src.contracts.event import SecurityEvent
from src.contracts.threat import EventCorrelation
from src.shared.config_loader import load_yaml

log = logging.getLogger(__name__)

DEFAULT_PATHS = {
    "audit_log": "data/audit_log.jsonl",
    "incidents": "out/incidents.jsonl",
    "alerts": "out/alerts.jsonl",
    "responses": "out/responses.jsonl",
    "stats": "out/stats.json",
}


# ═══════════════════════════════════════════════════════════════════════════
#  Event loaders
# ═══════════════════════════════════════════════════════════════════════════

def _parse_event(row: dict[str, Any]) -> SecurityEvent:
    """Build a SecurityEvent from a dict (CSV DictReader row or JSON object)."""
    data = dict(row)
    details = data.get("details")
    if isinstance(details, str) and details:
        try:
            data["details"] = json.loads(details)
        except json.JSONDecodeError:
            data["details"] = {"raw": details}
    return SecurityEvent.from_dict(data)


def load_events_csv(path: str) -> list[SecurityEvent]:
    """Load audit events from a CSV file with a header row."""
    events: list[SecurityEvent] = []
    with open(path, encoding="utf-8") as fh:
        reader = csv.DictReader(fh)
        for line_no, row in enumerate(reader, 2):
            try:
                events.append(_parse_event(row))
            except (KeyError, ValueError) as exc:
                log.warning("Skipping CSV line %d: %s", line_no, exc)
    log.info("Loaded %d events from CSV: %s", len(events), path)
    return events


def load_events_jsonl(path: str) -> list[SecurityEvent]:
    """Load audit events from a JSONL (one JSON object per line) file."""
    events: list[SecurityEvent] = []
    with open(path, encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, 1):
            line = line.strip()
            if not line:
                continue
            try:
                events.append(_parse_event(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
                log.warning("Skipping JSONL line %d: %s", line_no, exc)
    log.info("Loaded %d events from JSONL: %s", len(events), path)
    return events


def load_events(path: str) -> list[SecurityEvent]:
    """Auto-detect format by file extension and load events."""
    p = Path(path)
    if p.suffix in (".jsonl", ".ndjson"):
        return load_events_jsonl(path)
    return load_events_csv(path)


# ═══════════════════════════════════════════════════════════════════════════
#  Wiring
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Components:
    """Everything the monitor needs, built from one config directory."""

    config: MonitoringConfig
    source: EventSource
    correlation_rules: CorrelationRuleStore
    response_rules: ResponseRuleStore
    classifier: ThreatClassifier
    handlers: ActionHandlers
    responder: ResponseEngine
    monitor: RealTimeMonitor
    feed: StaticIndicatorFeed
    paths: dict[str, str] = field(default_factory=dict)


def _load_rule_stores(config_dir: str) -> tuple[CorrelationRuleStore, ResponseRuleStore]:
    cdir = Path(config_dir)
    cor_path = cdir / "correlation_rules.yaml"
    resp_path = cdir / "response_rules.yaml"
    if cor_path.exists():
        correlation_rules = CorrelationRuleStore.from_yaml(cor_path)
    else:
        log.warning("%s not found — using built-in correlation rules", cor_path)
        correlation_rules = CorrelationRuleStore.with_defaults()
    if resp_path.exists():
        response_rules = ResponseRuleStore.from_yaml(resp_path)
    else:
        log.warning("%s not found — using built-in response rules", resp_path)
        response_rules = ResponseRuleStore.with_defaults()
    return correlation_rules, response_rules


def load_monitor_settings(config_dir: str) -> tuple[MonitoringConfig, dict[str, str]]:
    """Read ``monitor.yaml`` → (MonitoringConfig, paths). Missing file → defaults."""
    path = Path(config_dir) / "monitor.yaml"
    if not path.exists():
        log.warning("%s not found — using default monitor settings", path)
        return MonitoringConfig(), dict(DEFAULT_PATHS)
    data = load_yaml(path)
    cfg = MonitoringConfig.from_dict(data.get("monitor") or {})
    paths = {**DEFAULT_PATHS, **(data.get("paths") or {})}
    return cfg, paths


def build_components(
    config_dir: str = "config",
    overrides: dict[str, str] | None = None,
    source: EventSource | None = None,
    persist: bool = True,
) -> Components:
    """Wire the live pipeline.

    ``overrides`` replaces entries of the ``paths:`` section; ``source``
    replaces the JSONL audit log; ``persist=False`` keeps incidents, alerts
    and response records in memory.
    """
    cfg, paths = load_monitor_settings(config_dir)
    paths.update({k: v for k, v in (overrides or {}).items() if v})
    correlation_rules, response_rules = _load_rule_stores(config_dir)

    intel_path = Path(config_dir) / "threat_intel.yaml"
    feed = StaticIndicatorFeed(intel_path if intel_path.exists() else None)

    if source is None:
        source = JsonlEventSource(paths["audit_log"])
    if persist:
        incidents = JsonlIncidentSink(paths["incidents"])
        dispatcher = JsonlAlertDispatcher(paths["alerts"])
        response_log = JsonlResponseLog(paths["responses"])
    else:
        incidents = MemoryIncidentSink()
        dispatcher = MemoryAlertDispatcher()
        response_log = MemoryResponseLog()

    classifier = ThreatClassifier(provider=feed)
    handlers = ActionHandlers(audit=source, dispatcher=dispatcher)
    responder = ResponseEngine(
        response_rules,
        handlers.registry(),
        response_log=response_log,
        audit=source,
        action_timeout_sec=cfg.action_timeout_sec,
    )
    monitor = RealTimeMonitor(
        source=source,
        classifier=classifier,
        correlation_rules=correlation_rules,
        incidents=incidents,
        dispatcher=dispatcher,
        responder=responder,
        config=cfg,
    )
    return Components(
        config=cfg,
        source=source,
        correlation_rules=correlation_rules,
        response_rules=response_rules,
        classifier=classifier,
        handlers=handlers,
        responder=responder,
        monitor=monitor,
        feed=feed,
        paths=paths,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Offline correlation
# ═══════════════════════════════════════════════════════════════════════════

def run_correlation(
    input_path: str,
    out_dir: str = "out",
    config_dir: str = "config",
    respond: bool = False,
    plots: bool = False,
) -> dict[str, Any]:
    """Correlate and classify a recorded event file and write reports.

    Returns
    -------
    dict with keys: events, correlations, incidents, summary.
    """
    events = load_events(input_path)
    if not events:
        log.warning("No events loaded from %s — nothing to analyse.", input_path)
        return {"events": [], "correlations": [], "incidents": [], "summary": summarize([])}

    last_ts = max(e.timestamp for e in events)
    source = MemoryEventSource(events, clock=lambda: last_ts)
    comp = build_components(config_dir, source=source, persist=False)
    try:
        comp.feed.initialize()
        comp.monitor.config = comp.config.replace(auto_response_enabled=respond)
        cfg = comp.monitor.config

        correlations: list[EventCorrelation] = correlate(
            events, comp.correlation_rules.list(), top_n=cfg.correlation_top_n, now=last_ts,
        )
        for ev in sorted(events, key=lambda e: e.id):
            threat = comp.classifier.classify(ev)
            if threat is not None:
                comp.monitor.handle_threat(threat)
        for corr in correlations:
            if corr.risk_score >= cfg.correlation_min_risk:
                comp.monitor.handle_threat(comp.classifier.from_correlation(corr))

        incidents = comp.monitor.incidents.list()
        summary = summarize(incidents)
        log.info("Offline run: %d events → %d correlations, %d incidents",
                 len(events), len(correlations), len(incidents))

        out = Path(out_dir)
        out.mkdir(parents=True, exist_ok=True)
        write_correlations_csv(correlations, str(out / "correlations.csv"))
        write_incidents_csv(incidents, str(out / "incidents.csv"))
        write_report_txt(correlations, summary, str(out / "report.txt"))
        if plots:
            write_plots(correlations, summary, str(out))
    finally:
        comp.monitor.close()

    return {"events": events, "correlations": correlations,
            "incidents": incidents, "summary": summary}


# ═══════════════════════════════════════════════════════════════════════════
#  Live modes
# ═══════════════════════════════════════════════════════════════════════════

def run_check(
    config_dir: str = "config",
    overrides: dict[str, str] | None = None,
) -> MonitoringStats:
    """Build the live pipeline, run one synchronous check and write stats."""
    comp = build_components(config_dir, overrides)
    try:
        comp.feed.initialize()
        stats = comp.monitor.force_check()
        write_stats_json(stats, comp.paths["stats"])
    finally:
        comp.monitor.close()
    return stats


def run_monitor(
    config_dir: str = "config",
    overrides: dict[str, str] | None = None,
    from_end: bool = False,
    poll_interval_sec: float = 5.0,
) -> None:
    """Run the monitor until interrupted (Ctrl+C).

    The stats snapshot is rewritten every ``poll_interval_sec`` so the
    dashboard can follow along.
    """
    comp = build_components(config_dir, overrides)
    monitor = comp.monitor
    cursor = None
    if from_end:
        # skip history: start after the newest event currently in the log
        recent = comp.source.read_recent(timedelta(days=36500), 1)
        cursor = recent[-1].id if recent else 0
    monitor.start(initial_cursor=cursor)

    print(f"Monitor running → {comp.paths['audit_log']}")
    print(f"  incidents: {comp.paths['incidents']}, alerts: {comp.paths['alerts']}")
    print("  Press Ctrl+C to stop.")

    try:
        while True:
            time.sleep(poll_interval_sec)
            write_stats_json(monitor.get_stats(), comp.paths["stats"])
    except KeyboardInterrupt:
        print("\nStopping monitor …")
    finally:
        monitor.close()
        stats = monitor.get_stats()
        write_stats_json(stats, comp.paths["stats"])
        print(f"Monitor stopped. Events processed: {stats.events_processed}, "
              f"incidents: {stats.incidents_created}")
