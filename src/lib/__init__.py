"""
Lib package for the Autopilot engine.

Contains shared utilities:
- logging.py: structlog configuration
- exceptions.py: Exception hierarchy
- errors.py: Centralized error response builder
"""

from src.lib.errors import (
    CONFLICT,
    INTERNAL_ERROR,
    NOT_FOUND,
    STORAGE_UNAVAILABLE,
    VALIDATION_ERROR,
    build_error_response,
    classify_exception,
    get_error_message,
)
from src.lib.exceptions import (
    AutopilotException,
    ConfigurationError,
    MessageCatalogError,
    ProfileNotFoundError,
    RepositoryError,
    StateError,
    ValidationError,
)
from src.lib.logging import setup_logging

__all__ = [
    "CONFLICT",
    "INTERNAL_ERROR",
    "NOT_FOUND",
    "STORAGE_UNAVAILABLE",
    "VALIDATION_ERROR",
    "build_error_response",
    "classify_exception",
    "get_error_message",
    "AutopilotException",
    "ConfigurationError",
    "MessageCatalogError",
    "ProfileNotFoundError",
    "RepositoryError",
    "StateError",
    "ValidationError",
    "setup_logging",
]
