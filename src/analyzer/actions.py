"""Response action handlers — one callable per ActionType.

Handlers receive ``(action, threat, incident)`` and return
``(message, details)``; they raise ``ActionError`` when the threat lacks the
target an action needs (no IP indicator for ``block ip``, no ``user_*``
resource for ``lock account`` …). The engine turns raised errors into failed
``ExecutedAction`` records, so a handler never has to catch its own errors.

Mitigations are recorded through the audit log's append contract as
``AUTOMATED_*`` records. Transport of notifications (email, SMS, push) is
delegated to the alert dispatcher.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from src.analyzer import policy
from src.analyzer.sinks import AlertDispatcher
from src.analyzer.sources import EventSource
from src.contracts.alert import SecurityAlert
from src.contracts.enums import ActionType, AlertChannel, IndicatorType, Severity
from src.contracts.errors import ActionError
from src.contracts.event import AUTOMATED_ACTION_PREFIX, format_timestamp
from src.contracts.incident import SecurityIncident
from src.contracts.rules import ResponseAction
from src.contracts.threat import ThreatIntelligence

log = logging.getLogger(__name__)


HandlerResult = tuple[str, dict[str, Any]]
Handler = Callable[[ResponseAction, ThreatIntelligence, "SecurityIncident | None"], HandlerResult]

_DEFAULT_BLOCK_SEC = 3600
_DEFAULT_LOCK_SEC = 1800


def _users(threat: ThreatIntelligence) -> list[str]:
    users = [r.removeprefix("user_") for r in threat.affected_resources if r.startswith("user_")]
    if not users:
        raise ActionError(f"Threat {threat.threat_id} has no user_* resource to act on")
    return users


def _tenants(threat: ThreatIntelligence) -> list[str]:
    tenants = [r.removeprefix("tenant_") for r in threat.affected_resources if r.startswith("tenant_")]
    if not tenants:
        raise ActionError(f"Threat {threat.threat_id} has no tenant_* resource to act on")
    return tenants


def _ips(threat: ThreatIntelligence) -> list[str]:
    ips = list(dict.fromkeys(i.value for i in threat.indicators_of(IndicatorType.IP)))
    if not ips:
        raise ActionError(f"Threat {threat.threat_id} has no IP indicator to block")
    return ips


class ActionHandlers:
    """Built-in handlers sharing one audit log, dispatcher and mitigation table."""

    def __init__(
        self,
        audit: EventSource | None = None,
        dispatcher: AlertDispatcher | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.audit = audit
        self.dispatcher = dispatcher
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._mitigations: dict[str, datetime | None] = {}

    def registry(self) -> dict[ActionType, Handler]:
        return {
            ActionType.BLOCK: self.block,
            ActionType.LOCK: self.lock,
            ActionType.RESTRICT: self.restrict,
            ActionType.ALERT: self.alert,
            ActionType.NOTIFY: self.notify,
            ActionType.LOG: self.security_log,
        }

    # ── mitigation bookkeeping ───────────────────────────────────────────

    def _mitigate(self, key: str, duration_sec: float | None) -> datetime | None:
        now = self._clock()
        expires = now + timedelta(seconds=duration_sec) if duration_sec else None
        with self._lock:
            lapsed = [k for k, exp in self._mitigations.items() if exp is not None and exp <= now]
            for k in lapsed:
                del self._mitigations[k]
            self._mitigations[key] = expires
        return expires

    def is_mitigated(self, key: str) -> bool:
        with self._lock:
            if key not in self._mitigations:
                return False
            expires = self._mitigations[key]
            if expires is not None and expires <= self._clock():
                del self._mitigations[key]
                return False
            return True

    def active_mitigations(self) -> list[str]:
        with self._lock:
            keys = list(self._mitigations)
        return [k for k in keys if self.is_mitigated(k)]

    def _audit(self, action: str, threat: ThreatIntelligence,
               incident: SecurityIncident | None, **fields: Any) -> None:
        if self.audit is None:
            return
        details = dict(fields.pop("details", {}))
        details.update(threat_id=threat.threat_id,
                       incident_id=incident.id if incident else None)
        self.audit.append(AUTOMATED_ACTION_PREFIX + action, details=details, **fields)

    # ── handlers ─────────────────────────────────────────────────────────

    def block(self, action: ResponseAction, threat: ThreatIntelligence,
              incident: SecurityIncident | None) -> HandlerResult:
        target = action.parameters.get("target", "ip")
        duration = float(action.parameters.get("duration_sec", _DEFAULT_BLOCK_SEC))
        if target == "ip":
            values, audit_action, field = _ips(threat), "IP_BLOCK", "ip_address"
        elif target == "user_session":
            values, audit_action, field = _users(threat), "USER_BLOCK", "actor_id"
        elif target == "property_access":
            values, audit_action, field = _tenants(threat), "PROPERTY_BLOCK", "tenant_id"
        else:
            raise ActionError(f"Unknown block target '{target}'")

        expires = None
        for value in values:
            expires = self._mitigate(f"{target}:{value}", duration)
            self._audit(audit_action, threat, incident, **{field: value},
                        details={"duration_sec": duration,
                                 "expires_at": format_timestamp(expires)})
        log.warning("Blocked %s %s for %ds (threat=%s)",
                    target, ", ".join(values), duration, threat.threat_id)
        return (f"Blocked {len(values)} {target} target(s) for {int(duration)}s",
                {"target": target, "values": values, "expires_at": format_timestamp(expires)})

    def lock(self, action: ResponseAction, threat: ThreatIntelligence,
             incident: SecurityIncident | None) -> HandlerResult:
        target = action.parameters.get("target", "account")
        if target != "account":
            raise ActionError(f"Unknown lock target '{target}'")
        duration = float(action.parameters.get("duration_sec", _DEFAULT_LOCK_SEC))
        users = _users(threat)
        for user in users:
            expires = self._mitigate(f"account:{user}", duration)
            self._audit("ACCOUNT_LOCK", threat, incident, actor_id=user,
                        details={"duration_sec": duration,
                                 "expires_at": format_timestamp(expires)})
        log.warning("Locked account(s) %s for %ds (threat=%s)",
                    ", ".join(users), duration, threat.threat_id)
        return f"Locked {len(users)} account(s) for {int(duration)}s", {"users": users}

    def restrict(self, action: ResponseAction, threat: ThreatIntelligence,
                 incident: SecurityIncident | None) -> HandlerResult:
        target = action.parameters.get("target")
        if not target:
            raise ActionError("restrict requires a 'target' parameter")
        users = _users(threat)
        params = {k: v for k, v in action.parameters.items() if k != "target"}
        for user in users:
            self._mitigate(f"{target}:{user}", params.get("duration_sec"))
            self._audit("RESTRICTION", threat, incident, actor_id=user,
                        details={"restriction": target, **params})
        log.warning("Restricted %s for %s (threat=%s)", target, ", ".join(users), threat.threat_id)
        return f"Restricted {target} for {len(users)} user(s)", {"target": target, "users": users}

    def alert(self, action: ResponseAction, threat: ThreatIntelligence,
              incident: SecurityIncident | None) -> HandlerResult:
        level = Severity(action.parameters.get("level", policy.severity_for_risk(threat.risk_score)))
        channels = policy.channels_for(level)
        alert = SecurityAlert(
            id=f"ALR-{threat.threat_id}-{level.value}",
            threat_id=threat.threat_id,
            incident_id=incident.id if incident else "",
            level=level,
            title=f"Automated response: {threat.threat_type}",
            message=(f"Risk {threat.risk_score:.0f}/100 — automated mitigation in progress "
                     f"for {', '.join(threat.affected_resources) or 'unknown resources'}"),
            channels=channels,
            created_at=self._clock(),
            action_required=level in (Severity.HIGH, Severity.CRITICAL),
            details={"source": "response_engine"},
        )
        if self.dispatcher is None:
            log.warning("ALERT [%s] %s", level.value.upper(), alert.message)
            return "Alert logged (no dispatcher)", {"level": level.value}
        if not self.dispatcher.send(alert, channels):
            raise ActionError(f"Alert dispatch failed for {threat.threat_id}")
        return f"Alert sent ({level.value})", {"level": level.value,
                                               "channels": [c.value for c in channels]}

    def notify(self, action: ResponseAction, threat: ThreatIntelligence,
               incident: SecurityIncident | None) -> HandlerResult:
        raw = action.parameters.get("channels") or ["email"]
        try:
            channels = [AlertChannel(c) for c in raw]
        except ValueError as exc:
            raise ActionError(f"Invalid notification channel: {exc}") from None
        recipients = action.parameters.get("recipients", "security_team")
        self._audit("NOTIFICATION", threat, incident,
                    details={"channels": [c.value for c in channels], "recipients": recipients})
        log.info("Notification queued for %s via %s (threat=%s)",
                 recipients, ",".join(c.value for c in channels), threat.threat_id)
        return (f"Notified {recipients} via {len(channels)} channel(s)",
                {"channels": [c.value for c in channels], "recipients": recipients})

    def security_log(self, action: ResponseAction, threat: ThreatIntelligence,
                     incident: SecurityIncident | None) -> HandlerResult:
        level = action.parameters.get("level", "security")
        self._audit("SECURITY_LOG", threat, incident,
                    details={"level": level, "threat_type": threat.threat_type,
                             "risk_score": threat.risk_score,
                             "indicators": [i.key for i in threat.indicators]})
        log.info("Security log entry (%s) recorded for %s", level, threat.threat_id)
        return f"Logged ({level})", {"level": level}
