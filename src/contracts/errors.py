"""Exception hierarchy for the security pipeline."""

from __future__ import annotations


class SecurityPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigError(SecurityPipelineError):
    """A configuration file or value is missing or malformed."""


class RuleValidationError(ConfigError):
    """A correlation or response rule failed validation; the store is unchanged."""


class EventSourceError(SecurityPipelineError):
    """The audit-log source could not be read or appended to."""


class ActionError(SecurityPipelineError):
    """A response action could not be carried out (missing target, bad parameters)."""


class MonitorStateError(SecurityPipelineError):
    """An operation is not valid in the monitor's current state."""


class MonitorStartError(SecurityPipelineError):
    """Monitor initialization failed; the monitor is left in the ``error`` state."""
