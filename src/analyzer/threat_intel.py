"""Indicator feed — local store of known-bad observables used for enrichment.

Entries are keyed ``"<type>:<value>"`` and may carry an expiry; expired
entries are dropped lazily on lookup. The feed is optional: the classifier
degrades to its fixed lookups when no provider is configured.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

from src.contracts.enums import IndicatorType, Severity
from src.contracts.errors import ConfigError
from src.contracts.threat import ThreatIndicator
from src.shared.config_loader import load_yaml

log = logging.getLogger(__name__)


class IndicatorProvider(Protocol):
    def lookup(self, type: IndicatorType, value: str) -> ThreatIndicator | None: ...


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StaticIndicatorFeed:
    """In-process indicator store, optionally seeded from a YAML file."""

    def __init__(
        self,
        path: str | Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._path = Path(path) if path else None
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, ThreatIndicator] = {}
        self._hits = 0
        self._expired = 0
        self._loaded = False

    # ── lifecycle ────────────────────────────────────────────────────────

    def initialize(self) -> None:
        """Load the configured YAML file (if any). Errors propagate to the caller.

        Only the first successful call loads; later calls (a monitor restart,
        a retried start) leave the entries and their occurrence counts as-is.
        """
        if self._loaded:
            return
        if self._path is not None:
            n = self.load_yaml(self._path)
            log.info("Indicator feed initialised with %d entries from %s", n, self._path)
        self._loaded = True

    def load_yaml(self, path: str | Path) -> int:
        cfg = load_yaml(path)
        loaded = 0
        for raw in cfg.get("indicators") or []:
            self.add(_parse_indicator(raw, self._clock()), ttl=_ttl(raw))
            loaded += 1
        return loaded

    # ── queries ──────────────────────────────────────────────────────────

    def lookup(self, type: IndicatorType, value: str) -> ThreatIndicator | None:
        key = f"{IndicatorType(type).value}:{value}"
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at is not None and entry.expires_at <= self._clock():
                del self._entries[key]
                self._expired += 1
                log.debug("Indicator %s expired", key)
                return None
            self._hits += 1
            return entry

    def stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
            return {
                "total": len(entries),
                "by_type": dict(Counter(e.type.value for e in entries)),
                "by_severity": dict(
                    Counter(e.severity.value for e in entries if e.severity)
                ),
                "hits": self._hits,
                "expired": self._expired,
            }

    # ── mutation ─────────────────────────────────────────────────────────

    def add(self, indicator: ThreatIndicator, ttl: timedelta | None = None) -> None:
        if ttl is not None:
            indicator.expires_at = self._clock() + ttl
        with self._lock:
            existing = self._entries.get(indicator.key)
            if existing is not None:
                indicator.first_seen = min(existing.first_seen, indicator.first_seen)
                indicator.occurrences = existing.occurrences + 1
            self._entries[indicator.key] = indicator

    def remove(self, type: IndicatorType, value: str) -> bool:
        key = f"{IndicatorType(type).value}:{value}"
        with self._lock:
            return self._entries.pop(key, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _ttl(raw: dict[str, Any]) -> timedelta | None:
    if raw.get("ttl_hours") is not None:
        return timedelta(hours=float(raw["ttl_hours"]))
    return None


def _parse_indicator(raw: dict[str, Any], now: datetime) -> ThreatIndicator:
    try:
        return ThreatIndicator(
            type=IndicatorType(raw["type"]),
            value=str(raw["value"]),
            confidence=float(raw.get("confidence", 50)),
            first_seen=now,
            last_seen=now,
            severity=Severity(raw.get("severity", "medium")),
            description=str(raw.get("description", "")),
        )
    except (KeyError, ValueError) as exc:
        raise ConfigError(f"Invalid indicator entry {raw}: {exc}") from None
