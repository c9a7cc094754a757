"""Pipeline contracts — canonical data structures shared by all modules."""

from src.contracts.alert import SecurityAlert
from src.contracts.enums import (
    ActionType,
    AlertChannel,
    IncidentStatus,
    IndicatorType,
    MonitorState,
    Operator,
    Severity,
    ThreatStatus,
)
from src.contracts.errors import (
    ActionError,
    ConfigError,
    EventSourceError,
    MonitorStartError,
    MonitorStateError,
    RuleValidationError,
    SecurityPipelineError,
)
from src.contracts.event import SecurityEvent
from src.contracts.incident import SecurityIncident
from src.contracts.response import AutomatedResponseResult, ExecutedAction
from src.contracts.rules import SAME, Condition, CorrelationRule, ResponseAction, ResponseRule
from src.contracts.threat import (
    CorrelationPattern,
    EventCorrelation,
    ThreatIndicator,
    ThreatIntelligence,
    TimelineEntry,
)

__all__ = [
    "SAME",
    "ActionError",
    "ActionType",
    "AlertChannel",
    "AutomatedResponseResult",
    "Condition",
    "ConfigError",
    "CorrelationPattern",
    "CorrelationRule",
    "EventCorrelation",
    "EventSourceError",
    "ExecutedAction",
    "IncidentStatus",
    "IndicatorType",
    "MonitorStartError",
    "MonitorState",
    "MonitorStateError",
    "Operator",
    "ResponseAction",
    "ResponseRule",
    "RuleValidationError",
    "SecurityAlert",
    "SecurityEvent",
    "SecurityIncident",
    "SecurityPipelineError",
    "Severity",
    "ThreatIndicator",
    "ThreatIntelligence",
    "ThreatStatus",
    "TimelineEntry",
]
