"""
Core Module Package.

This package contains the core infrastructure components
that all other packages depend on.

Components:
- clock: Unified time abstraction
- exceptions: Base exception hierarchy
"""

from core.clock import ClockProtocol, MockClock, SystemClock
from core.exceptions import (
    ConfigurationError,
    ErrorClassification,
    InvalidConfigError,
    MissingConfigError,
    PipelineError,
    Severity,
)


__all__ = [
    "ClockProtocol",
    "SystemClock",
    "MockClock",
    "PipelineError",
    "ConfigurationError",
    "MissingConfigError",
    "InvalidConfigError",
    "Severity",
    "ErrorClassification",
]
