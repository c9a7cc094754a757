"""Tests for src.analyzer.sources and src.shared.jsonl — audit log access."""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from src.analyzer.sources import JsonlEventSource, MemoryEventSource
from src.contracts.errors import EventSourceError
from src.shared.jsonl import append_jsonl, read_jsonl_from
from tests.conftest import FakeClock, failed_logins, make_event, ts_offset


def _write_lines(path, lines: list[str]) -> None:
    with path.open("a", encoding="utf-8") as fh:
        for line in lines:
            fh.write(line + "\n")


def _event_line(id: int, seconds: float = 0, action: str = "FAILED_LOGIN") -> str:
    return make_event(id=id, seconds=seconds, action=action).to_json()


# ═══════════════════════════════════════════════════════════════════════════
#  JSONL helpers
# ═══════════════════════════════════════════════════════════════════════════


class TestJsonlHelpers:
    def test_append_creates_parent(self, tmp_path):
        path = tmp_path / "deep" / "log.jsonl"
        append_jsonl(path, {"a": 1})
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1}

    def test_read_from_offset(self, tmp_path):
        path = tmp_path / "log.jsonl"
        append_jsonl(path, {"n": 1})
        records, offset = read_jsonl_from(path)
        assert records == [{"n": 1}]
        append_jsonl(path, {"n": 2})
        records, offset2 = read_jsonl_from(path, offset)
        assert records == [{"n": 2}]
        assert offset2 > offset

    def test_partial_line_left_for_next_read(self, tmp_path):
        path = tmp_path / "log.jsonl"
        path.write_text('{"n": 1}\n{"n": 2', encoding="utf-8")
        records, offset = read_jsonl_from(path)
        assert records == [{"n": 1}]
        with path.open("a", encoding="utf-8") as fh:
            fh.write("}\n")
        records, _ = read_jsonl_from(path, offset)
        assert records == [{"n": 2}]

    def test_malformed_and_non_object_lines_skipped(self, tmp_path):
        path = tmp_path / "log.jsonl"
        _write_lines(path, ['{"n": 1}', "not json", "[1, 2]", "", '{"n": 2}'])
        records, _ = read_jsonl_from(path)
        assert records == [{"n": 1}, {"n": 2}]

    def test_missing_file(self, tmp_path):
        assert read_jsonl_from(tmp_path / "nope.jsonl", 7) == ([], 7)


# ═══════════════════════════════════════════════════════════════════════════
#  MemoryEventSource
# ═══════════════════════════════════════════════════════════════════════════


class TestMemoryEventSource:
    def test_read_events_after_cursor(self):
        source = MemoryEventSource(failed_logins(5))
        assert [e.id for e in source.read_events(2, 10)] == [3, 4, 5]
        assert [e.id for e in source.read_events(0, 2)] == [1, 2]
        assert source.read_events(5, 10) == []

    def test_ids_with_gaps_and_out_of_order_insert(self):
        source = MemoryEventSource([make_event(id=10), make_event(id=3), make_event(id=7)])
        assert [e.id for e in source.read_events(3, 10)] == [7, 10]
        assert source.max_id == 10

    def test_read_recent(self):
        source = MemoryEventSource(failed_logins(5, spacing_sec=600))  # 0 .. 40 min
        recent = source.read_recent(timedelta(minutes=15), 100, now=ts_offset(2400))
        assert [e.id for e in recent] == [4, 5]
        assert [e.id for e in source.read_recent(timedelta(hours=1), 1, now=ts_offset(2400))] == [5]

    def test_read_recent_zero_limit(self):
        source = MemoryEventSource(failed_logins(2))
        assert source.read_recent(timedelta(hours=1), 0, now=ts_offset(60)) == []

    def test_append_assigns_next_id_and_clock(self):
        clock = FakeClock(ts_offset(999))
        source = MemoryEventSource(failed_logins(2), clock=clock)
        ev = source.append("AUTOMATED_IP_BLOCK", ip_address="10.0.0.1",
                           details={"reason": "test"})
        assert ev.id == 3
        assert ev.timestamp == ts_offset(999)
        assert ev.details == {"reason": "test"}
        assert len(source) == 3

    def test_empty_source(self):
        source = MemoryEventSource()
        assert source.max_id == 0
        assert source.append("X").id == 1


# ═══════════════════════════════════════════════════════════════════════════
#  JsonlEventSource
# ═══════════════════════════════════════════════════════════════════════════


class TestJsonlEventSource:
    def test_tails_new_lines(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [_event_line(1), _event_line(2, 60)])
        source = JsonlEventSource(path)
        assert [e.id for e in source.read_events(0, 10)] == [1, 2]
        _write_lines(path, [_event_line(3, 120)])
        assert [e.id for e in source.read_events(2, 10)] == [3]

    def test_bad_records_skipped(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [
            _event_line(1),
            "{broken",
            json.dumps({"id": 2, "action": "LOGIN"}),  # no timestamp
            json.dumps({"id": "x", "timestamp": "2026-02-26T10:00:00Z", "action": "A"}),
            _event_line(3),
        ])
        assert [e.id for e in JsonlEventSource(path).read_events(0, 10)] == [1, 3]

    def test_camel_case_records(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [json.dumps({
            "id": 1, "createdAt": "2026-02-26T10:00:00Z", "action": "EXPORT",
            "userId": 5, "propertyId": 2, "ipAddress": "1.1.1.1",
        })])
        ev = JsonlEventSource(path).read_events(0, 1)[0]
        assert (ev.actor_id, ev.tenant_id, ev.ip_address) == ("5", "2", "1.1.1.1")

    def test_shrunk_file_reread_without_duplicates(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [_event_line(1), _event_line(2)])
        source = JsonlEventSource(path)
        source.read_events(0, 10)
        # rotation: the file now holds fewer bytes than the stored offset
        path.write_text(_event_line(3) + "\n", encoding="utf-8")
        assert [e.id for e in source.read_events(0, 10)] == [1, 2, 3]

    def test_append_writes_line_and_dedups(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [_event_line(1)])
        source = JsonlEventSource(path, clock=FakeClock(ts_offset(30)))
        ev = source.append("AUTOMATED_ACCOUNT_LOCK", actor_id="42")
        assert ev.id == 2
        lines = path.read_text(encoding="utf-8").splitlines()
        assert json.loads(lines[-1])["action"] == "AUTOMATED_ACCOUNT_LOCK"
        # the appended line is not ingested a second time
        assert [e.id for e in source.read_events(0, 10)] == [1, 2]

    def test_retention_releases_consumed_history(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [_event_line(n, n * 60) for n in range(1, 6)])  # 1..5 min
        source = JsonlEventSource(path, clock=FakeClock(ts_offset(300)),
                                  retention=timedelta(seconds=150))
        assert len(source.read_events(0, 10)) == 5
        assert len(source) == 5  # nothing consumed yet

        assert source.read_events(5, 10) == []
        assert len(source) == 3  # ids 1 and 2 are old and consumed
        assert source.max_id == 5

        # an old line past the cursor is kept until it is consumed
        _write_lines(path, [_event_line(6, 0)])
        assert [e.id for e in source.read_events(5, 10)] == [6]

        # rotation replays released ids; they stay released
        path.write_text(_event_line(1, 60) + "\n", encoding="utf-8")
        source.read_events(6, 10)
        recent = source.read_recent(timedelta(days=1), 100, now=ts_offset(300))
        assert [e.id for e in recent] == [3, 4, 5]
        assert source._seen == {3, 4, 5}

    def test_append_after_release_keeps_ids_increasing(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        _write_lines(path, [_event_line(1), _event_line(2)])
        source = JsonlEventSource(path, clock=FakeClock(ts_offset(3600)),
                                  retention=timedelta(seconds=60))
        source.read_events(2, 10)
        assert len(source) == 0
        assert source.append("AUTOMATED_IP_BLOCK").id == 3

    def test_missing_file_reads_empty(self, tmp_path):
        assert JsonlEventSource(tmp_path / "audit.jsonl").read_events(0, 10) == []

    def test_ping_missing_directory(self, tmp_path):
        source = JsonlEventSource(tmp_path / "nope" / "audit.jsonl")
        with pytest.raises(EventSourceError):
            source.ping()

    def test_ping_ok(self, tmp_path):
        JsonlEventSource(tmp_path / "audit.jsonl").ping()

    def test_unreadable_path_wrapped(self, tmp_path):
        # a directory where the file should be
        path = tmp_path / "audit.jsonl"
        path.mkdir()
        with pytest.raises(EventSourceError):
            JsonlEventSource(path).read_events(0, 10)
