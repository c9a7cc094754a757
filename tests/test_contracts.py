"""Tests for src.contracts — events, threats, incidents, responses."""

from __future__ import annotations

import csv
import io
import json
from datetime import UTC, datetime, timedelta, timezone

import pytest

from src.contracts.enums import ActionType, IncidentStatus, IndicatorType, Operator, Severity
from src.contracts.event import SecurityEvent, format_timestamp, parse_timestamp
from src.contracts.incident import INCIDENT_CSV_COLUMNS, SecurityIncident
from src.contracts.response import AutomatedResponseResult, ExecutedAction
from src.contracts.rules import SAME, Condition
from src.contracts.threat import TimelineEntry
from tests.conftest import BASE_TS, make_event, make_incident, make_indicator, make_threat

# ═══════════════════════════════════════════════════════════════════════════
#  Timestamps
# ═══════════════════════════════════════════════════════════════════════════


class TestTimestamps:
    def test_parse_z_suffix(self):
        assert parse_timestamp("2026-02-26T10:00:00Z") == BASE_TS

    def test_parse_offset_converted_to_utc(self):
        dt = parse_timestamp("2026-02-26T12:00:00+02:00")
        assert dt == BASE_TS
        assert dt.tzinfo == UTC

    def test_naive_assumed_utc(self):
        assert parse_timestamp("2026-02-26T10:00:00") == BASE_TS

    def test_datetime_passthrough(self):
        aware = datetime(2026, 2, 26, 11, 0, tzinfo=timezone(timedelta(hours=1)))
        assert parse_timestamp(aware) == BASE_TS

    def test_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_timestamp("not-a-date")

    def test_format_uses_z(self):
        assert format_timestamp(BASE_TS) == "2026-02-26T10:00:00Z"

    def test_format_none(self):
        assert format_timestamp(None) is None


# ═══════════════════════════════════════════════════════════════════════════
#  SecurityEvent
# ═══════════════════════════════════════════════════════════════════════════


class TestSecurityEvent:
    def test_from_dict_canonical(self):
        ev = SecurityEvent.from_dict({
            "id": "17",
            "timestamp": "2026-02-26T10:00:00Z",
            "action": "FAILED_LOGIN",
            "actor_id": 42,
            "ip_address": "10.0.0.1",
        })
        assert ev.id == 17
        assert ev.actor_id == "42"
        assert ev.tenant_id is None
        assert ev.details == {}

    def test_from_dict_camel_case_keys(self):
        ev = SecurityEvent.from_dict({
            "id": 1,
            "createdAt": "2026-02-26T10:00:00Z",
            "action": "EXPORT",
            "userId": 5,
            "propertyId": 9,
            "ipAddress": "1.2.3.4",
            "resourceId": "r-1",
        })
        assert ev.timestamp == BASE_TS
        assert ev.actor_id == "5"
        assert ev.tenant_id == "9"
        assert ev.ip_address == "1.2.3.4"
        assert ev.resource_id == "r-1"

    def test_empty_strings_become_none(self):
        ev = SecurityEvent.from_dict({
            "id": 1, "timestamp": "2026-02-26T10:00:00Z", "action": "LOGIN",
            "actor_id": "", "ip_address": "",
        })
        assert ev.actor_id is None
        assert ev.ip_address is None

    def test_non_dict_details_wrapped(self):
        ev = SecurityEvent.from_dict({
            "id": 1, "timestamp": "2026-02-26T10:00:00Z", "action": "X", "details": "oops",
        })
        assert ev.details == {"raw": "oops"}

    def test_missing_required_raises_key_error(self):
        with pytest.raises(KeyError):
            SecurityEvent.from_dict({"id": 1, "action": "LOGIN"})

    def test_bad_id_raises_value_error(self):
        with pytest.raises(ValueError):
            SecurityEvent.from_dict({"id": "x", "timestamp": "2026-02-26T10:00:00Z",
                                     "action": "LOGIN"})

    def test_to_json_is_single_line(self):
        ev = make_event(details={"note": "hello"})
        line = ev.to_json()
        assert "\n" not in line
        parsed = json.loads(line)
        assert parsed["timestamp"] == "2026-02-26T10:00:00Z"
        assert parsed["details"] == {"note": "hello"}

    def test_frozen(self):
        ev = make_event()
        with pytest.raises(AttributeError):
            ev.action = "LOGIN"  # type: ignore[misc]


# ═══════════════════════════════════════════════════════════════════════════
#  Rules / threats
# ═══════════════════════════════════════════════════════════════════════════


class TestConditionAndThreat:
    def test_condition_is_same(self):
        assert Condition("actor_id", Operator.EQUALS, SAME).is_same
        assert not Condition("action", Operator.EQUALS, "LOGIN").is_same

    def test_indicator_key(self):
        assert make_indicator(value="1.2.3.4").key == "ip:1.2.3.4"

    def test_indicators_of(self):
        threat = make_threat(indicators=[
            make_indicator(),
            make_indicator(type=IndicatorType.USER, value="42"),
        ])
        assert [i.value for i in threat.indicators_of(IndicatorType.USER)] == ["42"]

    def test_threat_to_dict(self):
        d = make_threat().to_dict()
        assert d["threat_id"] == "THR-1"
        assert d["status"] == "active"
        assert d["indicators"][0]["type"] == "ip"
        assert d["created_at"].endswith("Z")

    def test_timeline_entry_round_trip(self):
        entry = TimelineEntry(timestamp=BASE_TS, event="x", severity=Severity.HIGH,
                              details={"a": 1})
        assert TimelineEntry.from_dict(entry.to_dict()) == entry


# ═══════════════════════════════════════════════════════════════════════════
#  SecurityIncident
# ═══════════════════════════════════════════════════════════════════════════


class TestSecurityIncident:
    def test_defaults(self):
        inc = make_incident()
        assert inc.status is IncidentStatus.OPEN
        assert inc.escalated is False
        assert inc.response_actions == []

    def test_dict_round_trip_preserves_fields(self):
        inc = make_incident()
        inc.timeline.append(TimelineEntry(BASE_TS, "created", Severity.HIGH))
        inc.response_actions.append({"type": "block", "success": True})
        restored = SecurityIncident.from_dict(json.loads(json.dumps(inc.to_dict())))
        assert restored == inc

    def test_csv_row_matches_header(self):
        inc = make_incident()
        inc.response_actions.extend([
            {"type": "block", "success": True},
            {"type": "alert", "success": False},
        ])
        values = next(csv.reader(io.StringIO(inc.to_csv_row())))
        assert len(values) == len(INCIDENT_CSV_COLUMNS)
        assert SecurityIncident.csv_header() == ",".join(INCIDENT_CSV_COLUMNS)
        assert values[INCIDENT_CSV_COLUMNS.index("response_actions")] == "block:ok;alert:failed"


# ═══════════════════════════════════════════════════════════════════════════
#  Response records
# ═══════════════════════════════════════════════════════════════════════════


class TestResponseRecords:
    def _action(self, success: bool, atype=ActionType.BLOCK) -> ExecutedAction:
        return ExecutedAction(type=atype, rule_id="r", parameters={}, executed_at=BASE_TS,
                              success=success, message="m")

    def test_failed_actions(self):
        result = AutomatedResponseResult(
            threat_id="THR-1", incident_id=None, success=False, message="x",
            actions_executed=[self._action(False), self._action(True, ActionType.ALERT)],
        )
        assert [a.type for a in result.failed_actions] == [ActionType.BLOCK]

    def test_unknown_type_serialised_as_string(self):
        assert self._action(False, "teleport").to_dict()["type"] == "teleport"

    def test_result_to_dict(self):
        result = AutomatedResponseResult(
            threat_id="THR-1", incident_id="INC-1", success=True, message="ok",
            matched_rules=["r"], actions_executed=[self._action(True)], execution_time=1.23456,
        )
        d = result.to_dict()
        assert d["execution_time"] == 1.235
        assert d["actions_executed"][0]["type"] == "block"
