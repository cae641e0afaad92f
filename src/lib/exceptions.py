"""
Custom exception hierarchy for the Autopilot engine.

The pure engine functions never raise for bad data (empty or malformed
history is treated as "insufficient evidence"). These exceptions cover the
edges around the core: configuration, the message catalog, persistence and
the HTTP surface.

All exceptions inherit from AutopilotException, enabling catch-all for
engine-specific errors while keeping the ability to catch specific types.
"""

from __future__ import annotations

from typing import Any


class AutopilotException(Exception):
    """Base exception for all Autopilot errors."""

    def __init__(self, message: str = "", details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigurationError(AutopilotException):
    """Invalid threshold values, bad environment overrides, or startup failures."""


class MessageCatalogError(ConfigurationError):
    """A (behavior, intervention type) pair has no configured message."""


class ValidationError(AutopilotException):
    """Input validation, parsing, or type conversion failures."""


class StateError(AutopilotException):
    """Invalid state transitions or a profile in an impossible state."""


class ProfileNotFoundError(AutopilotException):
    """No behavioral profile exists for the requested user."""


class RepositoryError(AutopilotException):
    """Profile or event persistence failures."""
