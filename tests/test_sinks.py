"""Tests for src.analyzer.sinks — incidents, alerts, response log."""

from __future__ import annotations

import json

import pytest

from src.analyzer.sinks import (
    JsonlAlertDispatcher,
    JsonlIncidentSink,
    JsonlResponseLog,
    LogAlertDispatcher,
    MemoryIncidentSink,
    MemoryResponseLog,
)
from src.contracts.alert import SecurityAlert
from src.contracts.enums import AlertChannel, IncidentStatus, Severity
from src.contracts.response import AutomatedResponseResult
from tests.conftest import BASE_TS, FakeClock, make_incident, ts_offset


def _alert(level: Severity = Severity.HIGH) -> SecurityAlert:
    return SecurityAlert(
        id="ALR-INC-0001",
        threat_id="THR-1",
        incident_id="INC-0001",
        level=level,
        title="Security Incident: Brute Force",
        message="5 failed logins",
        channels=[AlertChannel.EMAIL, AlertChannel.DASHBOARD],
        created_at=BASE_TS,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(ts_offset(60))


@pytest.fixture
def sink(clock) -> MemoryIncidentSink:
    return MemoryIncidentSink(clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
#  MemoryIncidentSink
# ═══════════════════════════════════════════════════════════════════════════


class TestMemoryIncidentSink:
    def test_create_and_get(self, sink):
        assert sink.create_incident(make_incident()) == "INC-0001"
        assert sink.get("INC-0001").threat_id == "THR-1"
        assert sink.find_by_threat("THR-1").id == "INC-0001"
        assert len(sink) == 1

    def test_create_is_idempotent_per_threat(self, sink):
        sink.create_incident(make_incident())
        again = sink.create_incident(make_incident(id="INC-0002"))
        assert again == "INC-0001"
        assert len(sink) == 1

    def test_duplicate_id_for_other_threat_rejected(self, sink):
        sink.create_incident(make_incident())
        with pytest.raises(ValueError):
            sink.create_incident(make_incident(threat_id="THR-2"))

    def test_update_patch(self, sink, clock):
        sink.create_incident(make_incident())
        updated = sink.update_incident("INC-0001", {"status": "investigating", "escalated": True})
        assert updated.status is IncidentStatus.INVESTIGATING
        assert updated.escalated is True
        assert updated.updated_at == clock.now
        assert sink.get("INC-0001") is updated

    def test_update_coerces_severity(self, sink):
        sink.create_incident(make_incident())
        assert sink.update_incident("INC-0001", {"severity": "critical"}).severity is Severity.CRITICAL

    def test_update_rejects_unpatchable_fields(self, sink):
        sink.create_incident(make_incident())
        with pytest.raises(ValueError, match="not patchable"):
            sink.update_incident("INC-0001", {"threat_id": "THR-9"})
        assert sink.get("INC-0001").threat_id == "THR-1"

    def test_update_unknown_incident(self, sink):
        with pytest.raises(KeyError):
            sink.update_incident("INC-404", {"escalated": True})

    def test_close_is_terminal(self, sink):
        sink.create_incident(make_incident())
        closed = sink.close_incident("INC-0001", "false positive")
        assert closed.status is IncidentStatus.CLOSED
        assert closed.resolution == "false positive"
        assert closed.timeline[-1].event == "Incident closed"
        with pytest.raises(ValueError, match="closed"):
            sink.update_incident("INC-0001", {"escalated": True})

    def test_close_unknown(self, sink):
        with pytest.raises(KeyError):
            sink.close_incident("INC-404", "x")

    def test_list_snapshot(self, sink):
        sink.create_incident(make_incident())
        sink.create_incident(make_incident(id="INC-0002", threat_id="THR-2"))
        assert [i.id for i in sink.list()] == ["INC-0001", "INC-0002"]


# ═══════════════════════════════════════════════════════════════════════════
#  JsonlIncidentSink
# ═══════════════════════════════════════════════════════════════════════════


class _FlakySink(MemoryIncidentSink):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fail_writes = False

    def _persist(self, op, incident) -> None:
        if self.fail_writes:
            raise OSError("disk full")


class TestJsonlIncidentSink:
    def test_writes_create_and_update_records(self, tmp_path, clock):
        path = tmp_path / "incidents.jsonl"
        sink = JsonlIncidentSink(path, clock=clock)
        sink.create_incident(make_incident())
        sink.update_incident("INC-0001", {"status": "contained"})
        lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
        assert [rec["op"] for rec in lines] == ["create", "update"]
        assert lines[-1]["incident"]["status"] == "contained"

    def test_replay_restores_latest_snapshot(self, tmp_path, clock):
        path = tmp_path / "incidents.jsonl"
        first = JsonlIncidentSink(path, clock=clock)
        first.create_incident(make_incident())
        first.update_incident("INC-0001", {"escalated": True})

        reopened = JsonlIncidentSink(path, clock=clock)
        assert len(reopened) == 1
        assert reopened.get("INC-0001").escalated is True
        # idempotence survives a restart
        assert reopened.create_incident(make_incident(id="INC-0009")) == "INC-0001"

    def test_replay_skips_bad_records(self, tmp_path, clock):
        path = tmp_path / "incidents.jsonl"
        path.write_text('{"op": "create"}\n', encoding="utf-8")
        assert len(JsonlIncidentSink(path, clock=clock)) == 0

    def test_failed_create_leaves_no_trace(self, tmp_path, clock):
        blocker = tmp_path / "state"
        blocker.write_text("", encoding="utf-8")  # a file where the directory should be
        path = blocker / "incidents.jsonl"
        sink = JsonlIncidentSink(path, clock=clock)
        with pytest.raises(OSError):
            sink.create_incident(make_incident())
        assert sink.find_by_threat("THR-1") is None
        assert sink.get("INC-0001") is None

        blocker.unlink()
        assert sink.create_incident(make_incident()) == "INC-0001"
        assert JsonlIncidentSink(path, clock=clock).find_by_threat("THR-1").id == "INC-0001"

    def test_failed_update_keeps_previous_snapshot(self, clock):
        sink = _FlakySink(clock=clock)
        sink.create_incident(make_incident())
        sink.fail_writes = True
        with pytest.raises(OSError):
            sink.update_incident("INC-0001", {"status": "contained"})
        assert sink.get("INC-0001").status is IncidentStatus.OPEN


# ═══════════════════════════════════════════════════════════════════════════
#  Alerts / response log
# ═══════════════════════════════════════════════════════════════════════════


class TestAlertDispatchers:
    def test_log_dispatcher(self, caplog):
        with caplog.at_level("WARNING", logger="src.analyzer.sinks"):
            assert LogAlertDispatcher().send(_alert(), [AlertChannel.EMAIL]) is True
        assert "ALERT [HIGH]" in caplog.text

    def test_jsonl_dispatcher_appends(self, tmp_path):
        path = tmp_path / "alerts.jsonl"
        dispatcher = JsonlAlertDispatcher(path)
        assert dispatcher.send(_alert(), [AlertChannel.SMS]) is True
        record = json.loads(path.read_text(encoding="utf-8"))
        assert record["id"] == "ALR-INC-0001"
        assert record["channels"] == ["sms"]

    def test_jsonl_dispatcher_write_failure(self, tmp_path):
        path = tmp_path / "alerts.jsonl"
        path.mkdir()
        assert JsonlAlertDispatcher(path).send(_alert(), [AlertChannel.SMS]) is False


class TestResponseLogs:
    def _result(self) -> AutomatedResponseResult:
        return AutomatedResponseResult(threat_id="THR-1", incident_id=None, success=True,
                                       message="No response rules matched")

    def test_memory(self):
        log = MemoryResponseLog()
        log.record(self._result())
        assert log.records[0]["threat_id"] == "THR-1"

    def test_jsonl(self, tmp_path):
        path = tmp_path / "responses.jsonl"
        JsonlResponseLog(path).record(self._result())
        assert json.loads(path.read_text(encoding="utf-8"))["message"] == "No response rules matched"
