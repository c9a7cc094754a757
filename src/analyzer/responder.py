"""Automated response engine — ThreatIntelligence → mitigating actions.

Execution model:
  1. Select enabled, auto-executable rules whose conditions all hold.
  2. Order by priority (ascending, stable).
  3. Run each rule's actions in declared order through the handler registry.
     Each call is bounded by ``action_timeout_sec``; a timeout, an exception
     or a missing handler marks that action failed and execution continues.
  4. ``success`` is True iff no attempted action failed.
  5. Every invocation is appended to the response log, whatever the outcome.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime

from src.analyzer.actions import Handler
from src.analyzer.fields import threat_matches
from src.analyzer.rule_store import ResponseRuleStore
from src.analyzer.sinks import ResponseLog
from src.analyzer.sources import EventSource
from src.contracts.enums import ActionType
from src.contracts.event import AUTOMATED_ACTION_PREFIX
from src.contracts.incident import SecurityIncident
from src.contracts.response import AutomatedResponseResult, ExecutedAction
from src.contracts.rules import ResponseAction, ResponseRule
from src.contracts.threat import ThreatIntelligence

log = logging.getLogger(__name__)

DEFAULT_ACTION_TIMEOUT_SEC = 10.0


class ResponseEngine:
    """Matches threats against response rules and runs their actions."""

    def __init__(
        self,
        rules: ResponseRuleStore,
        handlers: Mapping[ActionType, Handler],
        response_log: ResponseLog | None = None,
        audit: EventSource | None = None,
        action_timeout_sec: float = DEFAULT_ACTION_TIMEOUT_SEC,
        max_workers: int = 4,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.rules = rules
        self.handlers = dict(handlers)
        self.response_log = response_log
        self.audit = audit
        self.action_timeout_sec = action_timeout_sec
        self._clock = clock or (lambda: datetime.now(UTC))
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="response-action")

    def close(self) -> None:
        """Release worker threads; hung handlers are abandoned."""
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ── rule selection ───────────────────────────────────────────────────

    def matching_rules(self, threat: ThreatIntelligence) -> list[ResponseRule]:
        matched: list[ResponseRule] = []
        for rule in self.rules.list():
            if not (rule.enabled and rule.auto_execute):
                continue
            try:
                if all(threat_matches(c, threat) for c in rule.conditions):
                    matched.append(rule)
            except Exception:
                log.exception("Response rule %s could not be evaluated — skipped", rule.id)
        matched.sort(key=lambda r: r.priority)
        return matched

    # ── execution ────────────────────────────────────────────────────────

    def execute(
        self,
        threat: ThreatIntelligence,
        incident: SecurityIncident | None = None,
    ) -> AutomatedResponseResult:
        started = time.perf_counter()
        incident_id = incident.id if incident else None
        rules = self.matching_rules(threat)

        executed: list[ExecutedAction] = []
        for rule in rules:
            for action in rule.actions:
                executed.append(self._run_action(rule, action, threat, incident))

        errors = [f"{a.rule_id}/{_type_name(a.type)}: {a.message}" for a in executed if not a.success]
        if not rules:
            message = "No response rules matched"
        elif errors:
            message = (f"Executed {len(executed)} action(s) from {len(rules)} rule(s) "
                       f"with {len(errors)} failure(s)")
        else:
            message = f"Executed {len(executed)} action(s) from {len(rules)} rule(s)"

        result = AutomatedResponseResult(
            threat_id=threat.threat_id,
            incident_id=incident_id,
            success=not errors,
            message=message,
            matched_rules=[r.id for r in rules],
            actions_executed=executed,
            execution_time=(time.perf_counter() - started) * 1000.0,
            errors=errors,
        )
        log.info("Response for %s: %s (%.1f ms)", threat.threat_id, message, result.execution_time)
        self._record(result)
        return result

    def _run_action(
        self,
        rule: ResponseRule,
        action: ResponseAction,
        threat: ThreatIntelligence,
        incident: SecurityIncident | None,
    ) -> ExecutedAction:
        executed_at = self._clock()
        t0 = time.perf_counter()
        handler = self.handlers.get(action.type)
        details: dict = {}
        if handler is None:
            success, message = False, f"No handler registered for action type '{_type_name(action.type)}'"
        else:
            future = self._executor.submit(handler, action, threat, incident)
            try:
                message, details = future.result(timeout=self.action_timeout_sec)
                success = True
            except TimeoutError:
                future.cancel()
                success = False
                message = f"Timed out after {self.action_timeout_sec:g}s"
            except Exception as exc:
                success = False
                message = str(exc) or type(exc).__name__
        duration_ms = (time.perf_counter() - t0) * 1000.0
        if not success:
            log.warning("Action %s of rule %s failed for %s: %s",
                        _type_name(action.type), rule.id, threat.threat_id, message)
        return ExecutedAction(
            type=action.type,
            rule_id=rule.id,
            parameters=dict(action.parameters),
            executed_at=executed_at,
            success=success,
            message=message,
            duration_ms=duration_ms,
            details=dict(details or {}),
        )

    def _record(self, result: AutomatedResponseResult) -> None:
        if self.response_log is not None:
            try:
                self.response_log.record(result)
            except Exception:
                log.exception("Response log write failed for %s", result.threat_id)
        if self.audit is not None and result.matched_rules:
            try:
                self.audit.append(
                    AUTOMATED_ACTION_PREFIX + "RESPONSE_EXECUTED",
                    details={
                        "threat_id": result.threat_id,
                        "incident_id": result.incident_id,
                        "rules": result.matched_rules,
                        "actions": len(result.actions_executed),
                        "failed": len(result.failed_actions),
                        "execution_time_ms": round(result.execution_time, 3),
                    },
                )
            except Exception:
                log.exception("Audit record for response %s failed", result.threat_id)


def _type_name(atype: ActionType | str) -> str:
    return atype.value if isinstance(atype, ActionType) else str(atype)
