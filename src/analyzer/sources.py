"""Event sources — the audit log as seen by the pipeline.

Contract (``EventSource``)
──────────────────────────
  read_events(since_id, limit)   — events with id > since_id, ascending id
  read_recent(window, limit)     — the most recent events within ``window``
  append(action, ...)            — write a new audit record (used by
                                   response handlers to record mitigations)
  ping()                         — raise if the source is unusable

Ids are monotonic but may have gaps. Two implementations:
``MemoryEventSource`` (tests, embedding) and ``JsonlEventSource`` (tails an
append-only JSONL audit file, keeping a byte offset between reads).
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections.abc import Callable, Iterable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from src.contracts.errors import EventSourceError
from src.contracts.event import SecurityEvent
from src.shared.jsonl import append_jsonl, read_jsonl_from

log = logging.getLogger(__name__)


class EventSource(Protocol):
    def read_events(self, since_id: int, limit: int) -> list[SecurityEvent]: ...

    def read_recent(
        self, window: timedelta, limit: int, now: datetime | None = None
    ) -> list[SecurityEvent]: ...

    def append(self, action: str, **fields: Any) -> SecurityEvent: ...

    def ping(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class MemoryEventSource:
    """Thread-safe in-memory audit log."""

    def __init__(
        self,
        events: Iterable[SecurityEvent] = (),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._events: list[SecurityEvent] = []
        self._ids: list[int] = []
        self._last_id = 0
        for ev in events:
            self.add(ev)

    def add(self, event: SecurityEvent) -> None:
        """Insert an externally created event (keeps id order)."""
        with self._lock:
            idx = bisect.bisect_right(self._ids, event.id)
            self._ids.insert(idx, event.id)
            self._events.insert(idx, event)
            self._last_id = max(self._last_id, event.id)

    def extend(self, events: Iterable[SecurityEvent]) -> None:
        for ev in events:
            self.add(ev)

    @property
    def max_id(self) -> int:
        with self._lock:
            return self._last_id

    def read_events(self, since_id: int, limit: int) -> list[SecurityEvent]:
        with self._lock:
            start = bisect.bisect_right(self._ids, since_id)
            return self._events[start:start + limit]

    def read_recent(
        self, window: timedelta, limit: int, now: datetime | None = None
    ) -> list[SecurityEvent]:
        cutoff = (now or self._clock()) - window
        with self._lock:
            recent = [e for e in self._events if e.timestamp >= cutoff]
        recent.sort(key=lambda e: (e.timestamp, e.id))
        return recent[-limit:] if limit else []

    def append(self, action: str, **fields: Any) -> SecurityEvent:
        with self._lock:
            next_id = self._last_id + 1
            event = SecurityEvent(
                id=next_id,
                timestamp=self._clock(),
                action=action,
                details=dict(fields.pop("details", None) or {}),
                **fields,
            )
            self._ids.append(event.id)
            self._events.append(event)
            self._last_id = next_id
        return event

    def discard(self, before: datetime, up_to_id: int) -> list[int]:
        """Drop events older than *before* whose id is at most *up_to_id*.

        Returns the ids of the dropped events.
        """
        with self._lock:
            keep = [e for e in self._events if e.timestamp >= before or e.id > up_to_id]
            if len(keep) == len(self._events):
                return []
            dropped = [e.id for e in self._events if e.timestamp < before and e.id <= up_to_id]
            self._events = keep
            self._ids = [e.id for e in keep]
        return dropped

    def ping(self) -> None:
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class JsonlEventSource(MemoryEventSource):
    """Audit log backed by an append-only JSONL file.

    New lines are picked up on every read by tailing from the last byte
    offset. Lines that fail to parse are skipped with a warning; a file that
    shrinks (rotation / truncation) is re-read from the start.

    With a ``retention`` window only recent history stays in memory: after
    each read, events older than the window whose id is at or below the
    highest ``since_id`` asked for are dropped. Lines re-read later with an
    id at or below the highest dropped id are ignored.
    """

    def __init__(
        self,
        path: str | Path,
        clock: Callable[[], datetime] = _utcnow,
        retention: timedelta | None = None,
    ) -> None:
        super().__init__(clock=clock)
        self.path = Path(path)
        self.retention = retention
        self._offset = 0
        self._io_lock = threading.Lock()
        self._seen: set[int] = set()
        self._consumed = 0
        self._floor = 0

    def set_retention(self, window: timedelta | None) -> None:
        self.retention = window

    def _refresh(self) -> None:
        with self._io_lock:
            try:
                size = self.path.stat().st_size if self.path.exists() else 0
                if size < self._offset:
                    log.warning("%s shrank (%d < %d bytes) — re-reading from start",
                                self.path.name, size, self._offset)
                    self._offset = 0
                records, self._offset = read_jsonl_from(self.path, self._offset)
            except OSError as exc:
                raise EventSourceError(f"Cannot read audit log {self.path}: {exc}") from exc
            added = 0
            for row in records:
                try:
                    ev = SecurityEvent.from_dict(row)
                except (KeyError, TypeError, ValueError) as exc:
                    log.warning("Skipping audit record %s: %s", row.get("id", "?"), exc)
                    continue
                if ev.id in self._seen or ev.id <= self._floor:
                    continue
                self._seen.add(ev.id)
                self.add(ev)
                added += 1
            if added:
                log.debug("Audit log %s: +%d events (offset=%d)", self.path.name, added, self._offset)
            self._trim()

    def _trim(self) -> None:
        if self.retention is None:
            return
        dropped = self.discard(self._clock() - self.retention, self._consumed)
        if dropped:
            self._floor = max(self._floor, max(dropped))
            self._seen.difference_update(dropped)
            log.debug("Audit log %s: released %d events up to id %d",
                      self.path.name, len(dropped), self._floor)

    def read_events(self, since_id: int, limit: int) -> list[SecurityEvent]:
        self._consumed = max(self._consumed, since_id)
        self._refresh()
        return super().read_events(since_id, limit)

    def read_recent(
        self, window: timedelta, limit: int, now: datetime | None = None
    ) -> list[SecurityEvent]:
        self._refresh()
        return super().read_recent(window, limit, now)

    def append(self, action: str, **fields: Any) -> SecurityEvent:
        self._refresh()
        with self._io_lock:
            event = super().append(action, **fields)
            self._seen.add(event.id)
            try:
                append_jsonl(self.path, event.to_dict())
            except OSError as exc:
                raise EventSourceError(f"Cannot append to audit log {self.path}: {exc}") from exc
        return event

    def ping(self) -> None:
        if not self.path.parent.is_dir():
            raise EventSourceError(f"Audit log directory does not exist: {self.path.parent}")
        self._refresh()
