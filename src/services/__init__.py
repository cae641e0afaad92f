"""
Services for the Autopilot engine.

Services:
    - profile_repository: Collaborator Protocols plus in-memory and
      SQLAlchemy implementations
    - behavior: Detectors, moment classifier, state machine, decision engine,
      messages, wins/relapses and the BehavioralEngine orchestrator

Reference: DESIGN.md Section 2 (System Overview)
"""

from .profile_repository import (
    BudgetAdherence,
    BudgetAdherenceProvider,
    InMemoryProfileRepository,
    InMemoryTransactionStore,
    ProfileRepository,
    ResponseUpdate,
    SQLAlchemyProfileRepository,
    StaticBudgetAdherence,
    TransactionStore,
)
from .behavior import BehavioralEngine, EvaluationOutcome, get_behavioral_engine

__all__ = [
    "BudgetAdherence",
    "BudgetAdherenceProvider",
    "InMemoryProfileRepository",
    "InMemoryTransactionStore",
    "ProfileRepository",
    "ResponseUpdate",
    "SQLAlchemyProfileRepository",
    "StaticBudgetAdherence",
    "TransactionStore",
    "BehavioralEngine",
    "EvaluationOutcome",
    "get_behavioral_engine",
]
