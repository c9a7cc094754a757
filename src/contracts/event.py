"""SecurityEvent — one persisted audit-log record as seen by the pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

# JSON / CSV column order
EVENT_COLUMNS: list[str] = [
    "id",
    "timestamp",
    "actor_id",
    "tenant_id",
    "action",
    "resource",
    "resource_id",
    "ip_address",
]

# Prefix of audit records written by automated response handlers.
AUTOMATED_ACTION_PREFIX = "AUTOMATED_"

# Audit-log rows written by the hospitality app use camelCase keys.
_LEGACY_KEYS = {
    "userId": "actor_id",
    "user_id": "actor_id",
    "propertyId": "tenant_id",
    "property_id": "tenant_id",
    "resourceId": "resource_id",
    "ipAddress": "ip_address",
    "ip": "ip_address",
    "createdAt": "timestamp",
    "created_at": "timestamp",
}


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse ISO-8601 (``Z`` or explicit offset) into an aware UTC datetime.

    Naive values are assumed to be UTC.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def format_timestamp(dt: datetime | None) -> str | None:
    """Render a datetime as ISO-8601 UTC with a ``Z`` suffix."""
    if dt is None:
        return None
    return dt.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _opt_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


@dataclass(frozen=True, slots=True)
class SecurityEvent:
    """One audit-log record. Read-only to the pipeline."""

    id: int  # monotonic, assigned by the source
    timestamp: datetime  # aware, UTC
    action: str  # free-form verb, e.g. FAILED_LOGIN, EXPORT
    actor_id: str | None = None
    tenant_id: str | None = None  # property / business unit
    resource: str | None = None
    resource_id: str | None = None
    ip_address: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    # ── serialisation ─────────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> SecurityEvent:
        """Build an event from a JSON object; camelCase audit keys are accepted.

        Raises ``KeyError`` when ``id``, ``timestamp`` or ``action`` is missing
        and ``ValueError`` when they cannot be parsed.
        """
        data = dict(row)
        for legacy, canonical in _LEGACY_KEYS.items():
            if legacy in data and canonical not in data:
                data[canonical] = data.pop(legacy)
        details = data.get("details") or {}
        if not isinstance(details, dict):
            details = {"raw": details}
        return cls(
            id=int(data["id"]),
            timestamp=parse_timestamp(data["timestamp"]),
            action=str(data["action"]),
            actor_id=_opt_str(data.get("actor_id")),
            tenant_id=_opt_str(data.get("tenant_id")),
            resource=_opt_str(data.get("resource")),
            resource_id=_opt_str(data.get("resource_id")),
            ip_address=_opt_str(data.get("ip_address")),
            details=details,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {c: getattr(self, c) for c in EVENT_COLUMNS}
        d["timestamp"] = format_timestamp(self.timestamp)
        d["details"] = dict(self.details)
        return d

    def to_json(self) -> str:
        """Return a compact single-line JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"), default=str)
