"""
Centralized Error Response Builder for the Autopilot service.

Provides consistent error codes and messages for the API layer. The builder
returns structured error dicts compatible with the API response envelope.
"""

from __future__ import annotations

from typing import Any

from src.lib.exceptions import (
    AutopilotException,
    ConfigurationError,
    ProfileNotFoundError,
    RepositoryError,
    StateError,
    ValidationError,
)

# =============================================================================
# Error Code Constants
# =============================================================================

NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
CONFLICT = "CONFLICT"
INTERNAL_ERROR = "INTERNAL_ERROR"
STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"

_ERROR_MESSAGES: dict[str, str] = {
    NOT_FOUND: "The requested resource was not found.",
    VALIDATION_ERROR: "Invalid input. Please check your request.",
    CONFLICT: "The request conflicts with the current profile state.",
    INTERNAL_ERROR: "An internal error occurred. Please try again.",
    STORAGE_UNAVAILABLE: "Profile storage is unavailable. Please retry later.",
}

# Exception type -> (error code, HTTP status). Order matters: first match wins.
_EXCEPTION_CODES: list[tuple[type[AutopilotException], str, int]] = [
    (ProfileNotFoundError, NOT_FOUND, 404),
    (ValidationError, VALIDATION_ERROR, 422),
    (StateError, CONFLICT, 409),
    (RepositoryError, STORAGE_UNAVAILABLE, 503),
    (ConfigurationError, INTERNAL_ERROR, 500),
]


# =============================================================================
# Error Response Builder
# =============================================================================


def get_error_message(code: str) -> str:
    """Get the default message for an error code, or a generic one."""
    return _ERROR_MESSAGES.get(code, "An error occurred.")


def build_error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """
    Build a structured error response dict.

    Args:
        code: Error code constant (e.g. NOT_FOUND)
        message: Optional override message
        details: Optional additional error details

    Returns:
        Structured error dict: {"code": str, "message": str, "details": dict | None}
    """
    error: dict[str, Any] = {
        "code": code,
        "message": message if message is not None else get_error_message(code),
    }
    if details is not None:
        error["details"] = details
    return error


def classify_exception(exc: AutopilotException) -> tuple[str, int]:
    """Map an engine exception to (error code, HTTP status)."""
    for exc_type, code, status in _EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code, status
    return INTERNAL_ERROR, 500


__all__ = [
    "NOT_FOUND",
    "VALIDATION_ERROR",
    "CONFLICT",
    "INTERNAL_ERROR",
    "STORAGE_UNAVAILABLE",
    "get_error_message",
    "build_error_response",
    "classify_exception",
]
