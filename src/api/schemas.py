"""
Pydantic Schemas for the Autopilot REST API.

Defines request schemas for the profile endpoints and the response envelope
shared by every route:

    {"success": bool, "data": ... | None, "error": {"code", "message", "details"} | None}
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from src.lib.errors import build_error_response
from src.models.behavior import Transaction, UserResponse

# =============================================================================
# Common Schemas
# =============================================================================


class APIError(BaseModel):
    """Standard API error body."""

    code: str
    message: str
    details: dict[str, Any] | None = None


class ResponseEnvelope(BaseModel):
    """Wrapper for every API response."""

    success: bool
    data: Any | None = None
    error: APIError | None = None


def success_response(data: Any) -> dict[str, Any]:
    """Envelope for a successful response."""
    return {"success": True, "data": data, "error": None}


def error_response(
    code: str,
    message: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Envelope for a failed response."""
    return {"success": False, "data": None, "error": build_error_response(code, message, details)}


# =============================================================================
# Profile Schemas
# =============================================================================


class TransactionCreate(BaseModel):
    """A transaction observed for the user. Negative amounts are expenses."""

    id: str | None = Field(default=None, max_length=200)
    amount: float
    category: str = Field(..., min_length=1, max_length=100)
    timestamp: datetime
    description: str = Field(default="", max_length=500)

    @field_validator("category")
    @classmethod
    def strip_category(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("category must not be blank")
        return value

    def to_transaction(self) -> Transaction:
        return Transaction(
            amount=self.amount,
            category=self.category,
            timestamp=self.timestamp,
            id=self.id,
            description=self.description,
        )


class EvaluateRequest(BaseModel):
    """Scheduled evaluation; `now` defaults to the server clock."""

    now: datetime | None = None


class InterventionResponseCreate(BaseModel):
    """The user's reaction to a delivered intervention."""

    intervention_id: str = Field(..., min_length=1, max_length=64)
    response: UserResponse
    at: datetime | None = None


class SettingsUpdate(BaseModel):
    """User-facing intervention switch."""

    interventions_enabled: bool


class BudgetAdherenceUpdate(BaseModel):
    """Adherence ratios reported by the budgeting feature (1.0 = on budget)."""

    early_month: float = Field(..., ge=0.0, le=1.0)
    current: float = Field(..., ge=0.0, le=1.0)
