"""
REST API Routes for the Autopilot service.

All responses use the envelope from src/api/schemas.py. Engine exceptions
propagate to the handlers registered in create_app().

Endpoints (all under /api/v1 prefix):
- /health - Health check
- /profiles/{user_id} - Current behavioral profile
- /profiles/{user_id}/transactions - Record a transaction and evaluate it
- /profiles/{user_id}/evaluate - Scheduled evaluation
- /profiles/{user_id}/responses - Response to a delivered intervention
- /profiles/{user_id}/reset - Start the profile over
- /profiles/{user_id}/settings - Interventions on/off
- /profiles/{user_id}/budget-adherence - Budget adherence from the budgeting feature
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

from fastapi import APIRouter, Depends, Path, Request

from src.api.schemas import (
    BudgetAdherenceUpdate,
    EvaluateRequest,
    InterventionResponseCreate,
    SettingsUpdate,
    TransactionCreate,
    success_response,
)
from src.lib.exceptions import StateError
from src.lib.logging import bind_user_context, clear_user_context
from src.services.behavior.engine import BehavioralEngine
from src.services.profile_repository import InMemoryTransactionStore, StaticBudgetAdherence

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


# =============================================================================
# Dependencies
# =============================================================================


def get_engine(request: Request) -> BehavioralEngine:
    """The engine wired into the application by create_app()."""
    return request.app.state.engine


async def user_context(
    user_id: str = Path(..., min_length=1, max_length=128),
) -> AsyncIterator[str]:
    """Bind the user id to every log line emitted while handling the request."""
    bind_user_context(user_id)
    try:
        yield user_id
    finally:
        clear_user_context()


# =============================================================================
# Endpoints
# =============================================================================


@router.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint."""
    return success_response({"status": "ok"})


@router.get("/profiles/{user_id}")
async def get_profile(
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """
    Current behavioral profile.

    Returns:
        Envelope with the serialized profile, or NOT_FOUND
    """
    profile = await engine.get_profile(user_id)
    return success_response(profile.to_dict())


@router.post("/profiles/{user_id}/transactions")
async def create_transaction(
    body: TransactionCreate,
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """
    Record a transaction and run a transaction turn for it.

    Returns:
        Envelope with the evaluation outcome (intervention, win, streak break)
    """
    transaction = body.to_transaction()
    if isinstance(engine.transactions, InMemoryTransactionStore):
        await engine.transactions.add(user_id, transaction)
    outcome = await engine.evaluate_transaction(user_id, transaction)
    return success_response(outcome.to_dict())


@router.post("/profiles/{user_id}/evaluate")
async def evaluate_profile(
    body: EvaluateRequest | None = None,
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Run a scheduled turn (streaks, wins, churn, confidence decay)."""
    now = body.now if body is not None else None
    outcome = await engine.evaluate_scheduled(user_id, now)
    return success_response(outcome.to_dict())


@router.post("/profiles/{user_id}/responses")
async def record_response(
    body: InterventionResponseCreate,
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """
    Attach a response to a delivered intervention.

    Returns:
        Envelope with the outcome, NOT_FOUND for an unknown intervention,
        or CONFLICT when the intervention already has a response
    """
    outcome = await engine.record_response(user_id, body.intervention_id, body.response, body.at)
    return success_response(outcome.to_dict())


@router.post("/profiles/{user_id}/reset")
async def reset_profile(
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Reset the profile to a neutral state, ending any streak."""
    outcome = await engine.reset(user_id)
    return success_response(outcome.to_dict())


@router.put("/profiles/{user_id}/settings")
async def update_settings(
    body: SettingsUpdate,
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """Switch interventions on or off."""
    profile = await engine.set_interventions_enabled(user_id, body.interventions_enabled)
    return success_response(profile.to_dict())


@router.put("/profiles/{user_id}/budget-adherence")
async def update_budget_adherence(
    body: BudgetAdherenceUpdate,
    user_id: str = Depends(user_context),
    engine: BehavioralEngine = Depends(get_engine),
) -> dict[str, Any]:
    """
    Store budget adherence for the end-of-month classifier.

    Only available when adherence is held by the service itself.
    """
    provider = engine.budget_provider
    if not isinstance(provider, StaticBudgetAdherence):
        raise StateError("Budget adherence is supplied by an external provider")
    provider.set(user_id, body.early_month, body.current)
    logger.info("Budget adherence updated: early=%.2f current=%.2f", body.early_month, body.current)
    return success_response({"early_month": body.early_month, "current": body.current})
