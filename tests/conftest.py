"""Shared fixtures for the security correlation & response pipeline tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.analyzer.rule_store import CorrelationRuleStore, ResponseRuleStore
from src.contracts.enums import (
    ActionType,
    IndicatorType,
    Operator,
    Severity,
)
from src.contracts.event import SecurityEvent
from src.contracts.incident import SecurityIncident
from src.contracts.rules import (
    SAME,
    Condition,
    CorrelationRule,
    ResponseAction,
    ResponseRule,
)
from src.contracts.threat import ThreatIndicator, ThreatIntelligence

BASE_TS = datetime(2026, 2, 26, 10, 0, 0, tzinfo=UTC)


# ── Timestamp helpers ────────────────────────────────────────────────────


def ts_offset(seconds: float = 0, base: datetime = BASE_TS) -> datetime:
    """Return an aware UTC datetime offset from *base* by *seconds*."""
    return base + timedelta(seconds=seconds)


class FakeClock:
    """Settable wall clock (``clock()``) for monitor / feed / handler tests."""

    def __init__(self, start: datetime = BASE_TS) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# ── Helper: create contracts with sensible defaults ─────────────────────


def make_event(
    *,
    id: int = 1,
    ts: datetime | None = None,
    seconds: float = 0,
    action: str = "FAILED_LOGIN",
    actor_id: str | None = "42",
    tenant_id: str | None = "7",
    resource: str | None = None,
    resource_id: str | None = None,
    ip_address: str | None = "10.0.0.1",
    details: dict | None = None,
) -> SecurityEvent:
    return SecurityEvent(
        id=id,
        timestamp=ts if ts is not None else ts_offset(seconds),
        action=action,
        actor_id=actor_id,
        tenant_id=tenant_id,
        resource=resource,
        resource_id=resource_id,
        ip_address=ip_address,
        details=details or {},
    )


def make_indicator(
    *,
    type: IndicatorType = IndicatorType.IP,
    value: str = "10.0.0.1",
    confidence: float = 70.0,
    severity: Severity | None = Severity.MEDIUM,
) -> ThreatIndicator:
    return ThreatIndicator(
        type=type,
        value=value,
        confidence=confidence,
        first_seen=BASE_TS,
        last_seen=BASE_TS,
        severity=severity,
    )


def make_threat(
    *,
    threat_id: str = "THR-1",
    threat_type: str = "brute_force",
    risk_score: float = 95.0,
    confidence: float = 80.0,
    indicators: list[ThreatIndicator] | None = None,
    affected_resources: list[str] | None = None,
    source_event_ids: list[int] | None = None,
) -> ThreatIntelligence:
    return ThreatIntelligence(
        threat_id=threat_id,
        threat_type=threat_type,
        risk_score=risk_score,
        confidence=confidence,
        indicators=indicators if indicators is not None else [make_indicator()],
        affected_resources=(
            affected_resources if affected_resources is not None else ["user_42", "tenant_7"]
        ),
        timeline=[],
        created_at=BASE_TS,
        updated_at=BASE_TS,
        source_event_ids=source_event_ids if source_event_ids is not None else [1],
    )


def make_incident(
    *,
    id: str = "INC-0001",
    threat_id: str = "THR-1",
    severity: Severity = Severity.HIGH,
    title: str = "Security Incident: Brute Force",
) -> SecurityIncident:
    return SecurityIncident(
        id=id,
        threat_id=threat_id,
        severity=severity,
        title=title,
        description="test incident",
        created_at=BASE_TS,
        updated_at=BASE_TS,
        affected_resources=["user_42"],
    )


def cond(field: str, op: str, value) -> Condition:
    return Condition(field=field, operator=Operator(op), value=value)


def failed_logins(count: int, *, spacing_sec: float = 120, actor_id: str = "42",
                  ips: list[str] | None = None, start_id: int = 1) -> list[SecurityEvent]:
    """*count* FAILED_LOGIN events for one actor, rotating through *ips*."""
    ips = ips or ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
    return [
        make_event(id=start_id + i, seconds=i * spacing_sec, actor_id=actor_id,
                   ip_address=ips[i % len(ips)])
        for i in range(count)
    ]


# ── Rule fixtures ───────────────────────────────────────────────────────


@pytest.fixture
def brute_force_rule() -> CorrelationRule:
    """min 5 FAILED_LOGIN for the same actor within 15 minutes."""
    return CorrelationRule(
        id="bf",
        name="Brute Force",
        time_window=timedelta(minutes=15),
        min_events=5,
        max_events=100,
        conditions=[
            cond("action", "equals", "FAILED_LOGIN"),
            cond("actor_id", "equals", SAME),
        ],
        risk_multiplier=2.5,
        confidence=85,
        priority=1,
    )


@pytest.fixture
def block_alert_rule() -> ResponseRule:
    return ResponseRule(
        id="critical_block",
        name="Critical block",
        conditions=[cond("risk_score", "greater_than", 90)],
        actions=[
            ResponseAction(type=ActionType.BLOCK, parameters={"target": "ip"}),
            ResponseAction(type=ActionType.ALERT, parameters={"level": "critical"}),
        ],
        priority=1,
    )


@pytest.fixture
def correlation_store(brute_force_rule) -> CorrelationRuleStore:
    return CorrelationRuleStore([brute_force_rule])


@pytest.fixture
def response_store(block_alert_rule) -> ResponseRuleStore:
    return ResponseRuleStore([block_alert_rule])
