"""Scoring policy — every tunable heuristic constant in one place.

Risk scores are deterministic, explainable heuristics on a 0-100 scale.

Correlation base score
──────────────────────
  count density   = min(50, count / min_events × 25)
  time density    = min(30, events per minute)       (30 when span == 0)
  action variety  = min(20, unique_actions × 4)
  risk            = min(100, base × rule.risk_multiplier)

Single-event risk
─────────────────
  risk = SEVERITY_BASE_RISK[severity] (+ enrichment increase, capped at 100)

Enrichment increase
───────────────────
  Σ 20 × SEVERITY_WEIGHT[indicator.severity] × confidence / 100, capped at 50
"""

from __future__ import annotations

from collections.abc import Iterable

from src.contracts.enums import AlertChannel, Severity
from src.contracts.threat import ThreatIndicator

MAX_RISK = 100.0

# ── correlation scoring ──────────────────────────────────────────────────
COUNT_DENSITY_CAP = 50.0
COUNT_DENSITY_FACTOR = 25.0
TIME_DENSITY_CAP = 30.0
ACTION_VARIETY_CAP = 20.0
ACTION_VARIETY_PER_ACTION = 4.0

IP_INDICATOR_PER_OCCURRENCE = 10.0
USER_INDICATOR_PER_OCCURRENCE = 15.0
INDICATOR_CONFIDENCE_CAP = 95.0
PATTERN_INDICATOR_CONFIDENCE = 80.0

# ── single-event scoring ─────────────────────────────────────────────────
SEVERITY_BASE_RISK: dict[Severity, float] = {
    Severity.INFO: 10.0,
    Severity.LOW: 25.0,
    Severity.MEDIUM: 50.0,
    Severity.HIGH: 75.0,
    Severity.CRITICAL: 90.0,
}

SEVERITY_WEIGHT: dict[Severity, float] = {
    Severity.INFO: 0.1,
    Severity.LOW: 0.25,
    Severity.MEDIUM: 0.5,
    Severity.HIGH: 0.75,
    Severity.CRITICAL: 1.0,
}

ENRICHMENT_PER_INDICATOR = 20.0
ENRICHMENT_CAP = 50.0

# ── incident / alert mapping ─────────────────────────────────────────────
# inclusive lower bound of each risk bucket
DEFAULT_SEVERITY_THRESHOLDS: dict[str, float] = {
    "critical": 90.0,
    "high": 75.0,
    "medium": 50.0,
}

ALERT_CHANNELS: dict[Severity, list[AlertChannel]] = {
    Severity.CRITICAL: [
        AlertChannel.EMAIL,
        AlertChannel.SMS,
        AlertChannel.PUSH,
        AlertChannel.DASHBOARD,
        AlertChannel.WEBHOOK,
    ],
    Severity.HIGH: [
        AlertChannel.EMAIL,
        AlertChannel.PUSH,
        AlertChannel.DASHBOARD,
        AlertChannel.WEBHOOK,
    ],
    Severity.MEDIUM: [AlertChannel.DASHBOARD, AlertChannel.WEBHOOK],
    Severity.LOW: [AlertChannel.DASHBOARD],
}


def clamp_risk(value: float) -> float:
    return round(max(0.0, min(MAX_RISK, value)), 2)


def severity_for_risk(
    risk_score: float,
    thresholds: dict[str, float] | None = None,
) -> Severity:
    """Map a 0-100 risk score to an incident severity (never ``info``)."""
    th = thresholds or DEFAULT_SEVERITY_THRESHOLDS
    if risk_score >= th.get("critical", 90.0):
        return Severity.CRITICAL
    if risk_score >= th.get("high", 75.0):
        return Severity.HIGH
    if risk_score >= th.get("medium", 50.0):
        return Severity.MEDIUM
    return Severity.LOW


def channels_for(severity: Severity) -> list[AlertChannel]:
    return list(ALERT_CHANNELS.get(severity, ALERT_CHANNELS[Severity.LOW]))


def risk_increase(indicators: Iterable[ThreatIndicator]) -> float:
    """Extra risk contributed by known-bad indicators (capped)."""
    total = 0.0
    for ind in indicators:
        weight = SEVERITY_WEIGHT.get(ind.severity or Severity.MEDIUM, 0.5)
        total += ENRICHMENT_PER_INDICATOR * weight * (ind.confidence / 100.0)
    return min(ENRICHMENT_CAP, total)
