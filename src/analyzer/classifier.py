"""Threat classifier — single events and correlations → ThreatIntelligence.

Classification strategy:
  1. Relevance filter — only security-flavoured actions are considered.
  2. Fixed lookups    — action → (threat type, severity, confidence).
     Benign session actions (LOGIN, LOGOUT …) are never threats; relevant
     but unmapped actions fall back to ``unusual_activity`` / low.
  3. Risk             — severity base score (``policy.SEVERITY_BASE_RISK``).
  4. Enrichment       — optional IndicatorProvider hits raise risk and
     confidence. A failing provider is logged and ignored.

Threat ids are derived from their source, so re-classifying the same input
yields the same threat id and incident creation stays idempotent:
``THR-<event id>`` for single events, ``THR-COR-<hash of rule id and
correlation key>`` for correlations. A correlation group that keeps growing
during an ongoing attack therefore maps to one threat id.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
from collections.abc import Callable
from datetime import UTC, datetime

from src.analyzer import policy
from src.analyzer.correlator import affected_resources
from src.analyzer.threat_intel import IndicatorProvider
from src.contracts.enums import IndicatorType, Severity
from src.contracts.event import AUTOMATED_ACTION_PREFIX, SecurityEvent
from src.contracts.threat import (
    EventCorrelation,
    ThreatIndicator,
    ThreatIntelligence,
    TimelineEntry,
)

log = logging.getLogger(__name__)

COORDINATED_ATTACK = "coordinated_attack"
UNUSUAL_ACTIVITY = "unusual_activity"

RELEVANT_TOKENS = (
    "SECURITY",
    "LOGIN",
    "LOGOUT",
    "ACCESS",
    "PERMISSION",
    "EXPORT",
    "DOWNLOAD",
    "SESSION",
    "RATE_LIMIT",
    "THREAT",
)

BENIGN_ACTIONS = frozenset({
    "LOGIN",
    "LOGOUT",
    "SESSION_START",
    "SESSION_END",
    "SESSION_REFRESH",
})

# action → (threat_type, severity, confidence)
ACTION_PROFILE: dict[str, tuple[str, Severity, float]] = {
    "FAILED_LOGIN":           ("brute_force",               Severity.MEDIUM,   70.0),
    "UNAUTHORIZED_ACCESS":    ("privilege_probing",         Severity.HIGH,     80.0),
    "PERMISSION_DENIED":      ("privilege_probing",         Severity.MEDIUM,   70.0),
    "PERMISSION_CHANGE":      ("privilege_escalation",      Severity.HIGH,     85.0),
    "PERMISSION_GRANT":       ("privilege_escalation",      Severity.HIGH,     85.0),
    "PROPERTY_ACCESS_DENIED": ("property_access_violation", Severity.HIGH,     85.0),
    "EXPORT":                 ("data_exfiltration",         Severity.MEDIUM,   70.0),
    "DOWNLOAD":               ("data_exfiltration",         Severity.LOW,      60.0),
    "SESSION_HIJACK":         ("session_hijacking",         Severity.CRITICAL, 90.0),
    "SESSION_ANOMALY":        ("session_hijacking",         Severity.HIGH,     80.0),
    "RATE_LIMIT_EXCEEDED":    ("rate_limit_violation",      Severity.MEDIUM,   75.0),
    "SECURITY_THREAT":        ("security_threat",           Severity.HIGH,     80.0),
}

_FALLBACK = (UNUSUAL_ACTIVITY, Severity.LOW, 50.0)


def is_relevant(action: str) -> bool:
    upper = action.upper()
    return any(tok in upper for tok in RELEVANT_TOKENS)


def severity_of(action: str) -> Severity:
    """Severity of an action for timelines; benign and unknown actions are ``info``."""
    profile = ACTION_PROFILE.get(action.upper())
    return profile[1] if profile else Severity.INFO


class ThreatClassifier:
    """Stateless per-event analyzer with optional enrichment."""

    def __init__(
        self,
        provider: IndicatorProvider | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.provider = provider
        self._clock = clock or (lambda: datetime.now(UTC))

    # ── single event ─────────────────────────────────────────────────────

    def classify(self, event: SecurityEvent) -> ThreatIntelligence | None:
        """Return a threat for *event*, or ``None`` when it is not security-relevant."""
        action = event.action.upper()
        if action.startswith(AUTOMATED_ACTION_PREFIX):
            # our own mitigation records
            return None
        if not is_relevant(action) or action in BENIGN_ACTIONS:
            return None

        threat_type, severity, confidence = ACTION_PROFILE.get(action, _FALLBACK)
        risk = policy.SEVERITY_BASE_RISK[severity]

        indicators: list[ThreatIndicator] = []
        if event.ip_address:
            indicators.append(_event_indicator(IndicatorType.IP, event.ip_address, event,
                                               confidence, severity))
        if event.actor_id:
            indicators.append(_event_indicator(IndicatorType.USER, event.actor_id, event,
                                               confidence, severity))

        hits = self._enrich(indicators)
        if hits:
            risk += policy.risk_increase(hits)
            confidence = max([confidence, *(h.confidence for h in hits)])
            indicators.extend(hits)

        now = self._clock()
        return ThreatIntelligence(
            threat_id=f"THR-{event.id}",
            threat_type=threat_type,
            risk_score=policy.clamp_risk(risk),
            confidence=confidence,
            indicators=indicators,
            affected_resources=affected_resources([event]),
            timeline=[
                TimelineEntry(
                    timestamp=event.timestamp,
                    event=f"{event.action} detected",
                    severity=severity,
                    details={"event_id": event.id, "ip_address": event.ip_address},
                )
            ],
            created_at=now,
            updated_at=now,
            source_event_ids=[event.id],
        )

    # ── correlation ──────────────────────────────────────────────────────

    def from_correlation(self, correlation: EventCorrelation) -> ThreatIntelligence:
        indicators = list(correlation.indicators)
        risk = correlation.risk_score
        confidence = correlation.confidence
        hits = self._enrich(indicators)
        if hits:
            risk += policy.risk_increase(hits)
            confidence = max([confidence, *(h.confidence for h in hits)])
            indicators.extend(hits)

        timeline = [
            TimelineEntry(
                timestamp=ev.timestamp,
                event=f"{ev.action} by {ev.actor_id or 'unknown'}",
                severity=severity_of(ev.action),
                details={"event_id": ev.id, "ip_address": ev.ip_address},
            )
            for ev in correlation.events
        ]
        timeline.append(TimelineEntry(
            timestamp=correlation.detected_at,
            event=f"Correlation rule '{correlation.rule_id}' matched",
            severity=policy.severity_for_risk(correlation.risk_score),
            details=correlation.pattern.to_dict(),
        ))
        now = self._clock()
        return ThreatIntelligence(
            threat_id=correlation_threat_id(correlation.rule_id, correlation.correlation_key),
            threat_type=COORDINATED_ATTACK,
            risk_score=policy.clamp_risk(risk),
            confidence=confidence,
            indicators=indicators,
            affected_resources=list(correlation.affected_resources),
            timeline=timeline,
            created_at=now,
            updated_at=now,
            source_event_ids=[e.id for e in correlation.events],
        )

    # ── enrichment ───────────────────────────────────────────────────────

    def _enrich(self, indicators: list[ThreatIndicator]) -> list[ThreatIndicator]:
        if self.provider is None:
            return []
        hits: list[ThreatIndicator] = []
        for ind in indicators:
            if ind.type not in (IndicatorType.IP, IndicatorType.USER):
                continue
            try:
                hit = self.provider.lookup(ind.type, ind.value)
            except Exception:
                log.warning("Indicator lookup failed for %s — continuing without enrichment",
                            ind.key, exc_info=True)
                continue
            if hit is not None:
                log.info("Indicator hit %s (severity=%s, confidence=%.0f)",
                         hit.key, hit.severity.value if hit.severity else "n/a", hit.confidence)
                hits.append(dataclasses.replace(hit))
        return hits


def correlation_threat_id(rule_id: str, key: tuple[str, ...]) -> str:
    raw = "|".join([rule_id, *key])
    return f"THR-COR-{hashlib.sha1(raw.encode('utf-8')).hexdigest()[:12].upper()}"

def _event_indicator(
    kind: IndicatorType,
    value: str,
    event: SecurityEvent,
    confidence: float,
    severity: Severity,
) -> ThreatIndicator:
    return ThreatIndicator(
        type=kind,
        value=value,
        confidence=confidence,
        first_seen=event.timestamp,
        last_seen=event.timestamp,
        severity=severity,
    )
