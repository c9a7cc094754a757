"""Correlator — group audit events into multi-event attack patterns.

Per enabled rule (rules are evaluated independently):
  1. Filter — keep events matching every non-SAME condition.
  2. Group  — bucket by the values of every ``<field> equals SAME`` condition
     (the correlation key). A ``<field> not_equals SAME`` condition is not
     part of the key: it only requires the group to span at least two
     distinct values of that field.
  3. Bound  — keep groups with min_events <= size <= max_events whose
     first-to-last span fits within the rule's time window.
  4. Score  — heuristic base score × rule.risk_multiplier (see ``policy``).

Results across all rules are ordered by risk (desc), then priority (asc),
and truncated to ``top_n``. ``correlate`` is a pure function: the same
events and rules always yield the same correlations.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter, defaultdict
from collections.abc import Iterable
from datetime import datetime, timedelta

from src.analyzer import policy
from src.analyzer.fields import EventField, event_matches, resolve_event_field
from src.contracts.enums import IndicatorType, Operator
from src.contracts.event import SecurityEvent
from src.contracts.rules import CorrelationRule
from src.contracts.threat import CorrelationPattern, EventCorrelation, ThreatIndicator

log = logging.getLogger(__name__)

DEFAULT_TOP_N = 20
UNKNOWN = "unknown"


def correlate(
    events: Iterable[SecurityEvent],
    rules: Iterable[CorrelationRule],
    *,
    top_n: int | None = DEFAULT_TOP_N,
    now: datetime | None = None,
) -> list[EventCorrelation]:
    """Apply correlation rules to a batch of events.

    Parameters
    ──────────
    events — any iterable of SecurityEvents (order does not matter)
    rules  — rules to apply; disabled rules are skipped
    top_n  — keep only the N highest-risk correlations (None = keep all)
    now    — stamped as ``detected_at``; defaults to each group's last event time

    Returns
    ───────
    Correlations sorted by risk_score desc, priority asc.
    """
    ordered = sorted(events, key=lambda e: (e.timestamp, e.id))
    if not ordered:
        return []

    results: list[EventCorrelation] = []
    n_rules = 0
    for rule in rules:
        if not rule.enabled:
            continue
        n_rules += 1
        try:
            found = _apply_rule(rule, ordered, now)
        except Exception:
            log.exception("Correlation rule %s failed — skipped for this batch", rule.id)
            continue
        if found:
            log.debug("Rule %s matched %d group(s)", rule.id, len(found))
        results.extend(found)

    results.sort(key=lambda c: (-c.risk_score, c.priority))
    if top_n is not None:
        results = results[:top_n]
    log.info("Correlator produced %d correlations from %d events (%d rules)",
             len(results), len(ordered), n_rules)
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Per-rule evaluation
# ═══════════════════════════════════════════════════════════════════════════

def _key_value(field: EventField, event: SecurityEvent) -> str:
    value = field.get(event)
    return UNKNOWN if value is None or value == "" else str(value)


def _apply_rule(
    rule: CorrelationRule,
    events: list[SecurityEvent],
    now: datetime | None,
) -> list[EventCorrelation]:
    filters = [c for c in rule.conditions if not c.is_same]
    same_fields = [
        resolve_event_field(c.field)
        for c in rule.conditions
        if c.is_same and c.operator is Operator.EQUALS
    ]
    distinct_fields = [
        resolve_event_field(c.field)
        for c in rule.conditions
        if c.is_same and c.operator is Operator.NOT_EQUALS
    ]

    matched = [e for e in events if all(event_matches(c, e) for c in filters)]
    if len(matched) < rule.min_events:
        return []

    groups: dict[tuple[str, ...], list[SecurityEvent]] = defaultdict(list)
    for ev in matched:
        groups[tuple(_key_value(f, ev) for f in same_fields)].append(ev)

    if any(UNKNOWN in key for key in groups):
        # Missing key values share one bucket and may over-merge.
        log.debug("Rule %s: events with missing correlation fields grouped as '%s'",
                  rule.id, UNKNOWN)

    out: list[EventCorrelation] = []
    for key, group in groups.items():
        if not rule.min_events <= len(group) <= rule.max_events:
            continue
        if any(len({_key_value(f, e) for e in group}) < 2 for f in distinct_fields):
            continue
        span = group[-1].timestamp - group[0].timestamp
        if span > rule.time_window:
            continue
        out.append(_build_correlation(rule, key, group, now))
    return out


def _correlation_id(rule: CorrelationRule, key: tuple[str, ...], group: list[SecurityEvent]) -> str:
    raw = "|".join([rule.id, *key, str(group[0].id), str(group[-1].id)])
    return f"COR-{hashlib.sha1(raw.encode('utf-8')).hexdigest()[:12].upper()}"


def base_score(event_count: int, min_events: int, span: timedelta, unique_actions: int) -> float:
    """Rule-independent base score in 0..100 (before the risk multiplier)."""
    count_density = min(
        policy.COUNT_DENSITY_CAP,
        event_count / min_events * policy.COUNT_DENSITY_FACTOR,
    )
    minutes = span.total_seconds() / 60.0
    if minutes > 0:
        time_density = min(policy.TIME_DENSITY_CAP, event_count / minutes)
    else:
        time_density = policy.TIME_DENSITY_CAP
    variety = min(policy.ACTION_VARIETY_CAP, unique_actions * policy.ACTION_VARIETY_PER_ACTION)
    return count_density + time_density + variety


def _indicators(group: list[SecurityEvent]) -> list[ThreatIndicator]:
    indicators: list[ThreatIndicator] = []

    def _collect(kind: IndicatorType, values: list[str | None], per_occ: float) -> None:
        seen: dict[str, list[SecurityEvent]] = {}
        for ev, value in zip(group, values):
            if value:
                seen.setdefault(value, []).append(ev)
        for value, evs in seen.items():
            indicators.append(ThreatIndicator(
                type=kind,
                value=value,
                confidence=min(policy.INDICATOR_CONFIDENCE_CAP, len(evs) * per_occ),
                first_seen=evs[0].timestamp,
                last_seen=evs[-1].timestamp,
                occurrences=len(evs),
            ))

    _collect(IndicatorType.IP, [e.ip_address for e in group], policy.IP_INDICATOR_PER_OCCURRENCE)
    _collect(IndicatorType.USER, [e.actor_id for e in group], policy.USER_INDICATOR_PER_OCCURRENCE)

    actions = Counter(e.action for e in group)
    if len(actions) > 1:
        indicators.append(ThreatIndicator(
            type=IndicatorType.PATTERN,
            value=f"multi_action_{len(actions)}",
            confidence=policy.PATTERN_INDICATOR_CONFIDENCE,
            first_seen=group[0].timestamp,
            last_seen=group[-1].timestamp,
            occurrences=len(group),
            description=", ".join(sorted(actions)),
        ))
    return indicators


def affected_resources(events: Iterable[SecurityEvent]) -> list[str]:
    """Ordered, de-duplicated ``user_*`` / ``tenant_*`` / ``<resource>_<id>`` labels."""
    resources: dict[str, None] = {}
    for ev in events:
        if ev.actor_id:
            resources[f"user_{ev.actor_id}"] = None
        if ev.tenant_id:
            resources[f"tenant_{ev.tenant_id}"] = None
        if ev.resource and ev.resource_id:
            resources[f"{ev.resource}_{ev.resource_id}"] = None
    return list(resources)


def _build_correlation(
    rule: CorrelationRule,
    key: tuple[str, ...],
    group: list[SecurityEvent],
    now: datetime | None,
) -> EventCorrelation:
    count = len(group)
    span = group[-1].timestamp - group[0].timestamp
    minutes = span.total_seconds() / 60.0
    frequency = count / minutes if minutes > 0 else float(count)
    unique_actions = len({e.action for e in group})

    score = base_score(count, rule.min_events, span, unique_actions)
    risk = policy.clamp_risk(score * rule.risk_multiplier)

    pattern = CorrelationPattern(
        rule_id=rule.id,
        event_count=count,
        time_span=span,
        frequency=frequency,
        unique_ips=len({e.ip_address for e in group if e.ip_address}),
        unique_actors=len({e.actor_id for e in group if e.actor_id}),
        unique_tenants=len({e.tenant_id for e in group if e.tenant_id}),
    )
    key_label = ", ".join(key) if key else "all"
    return EventCorrelation(
        id=_correlation_id(rule, key, group),
        rule_id=rule.id,
        rule_name=rule.name,
        description=(
            f"{rule.name}: {count} events in {int(span.total_seconds())}s "
            f"(key: {key_label})"
        ),
        events=list(group),
        correlation_key=key,
        pattern=pattern,
        risk_score=risk,
        confidence=float(rule.confidence),
        priority=rule.priority,
        indicators=_indicators(group),
        affected_resources=affected_resources(group),
        detected_at=now or group[-1].timestamp,
        time_window=rule.time_window,
    )
