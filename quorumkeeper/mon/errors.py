"""Errors raised by the monitor reconciliation subsystem."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for reconciliation failures."""


class PreconditionError(MonitorError):
    """Raised when a pass cannot start: state missing or bad desired count."""


class RemoteQueryError(MonitorError):
    """Raised when the quorum status is unreachable or malformed."""


class SchedulingError(MonitorError):
    """Raised when no eligible node exists for a new member."""


class PersistenceError(MonitorError):
    """Raised when the config store cannot be read or written."""


class ConfigurationError(MonitorError, ValueError):
    """Raised for invalid configuration values such as duration strings."""
