"""
Models package for the Autopilot engine.

Usage:
    from src.models import BehavioralProfile, Transaction, BehaviorType
    from src.models import BehavioralProfileRecord, InterventionRecord
"""

from src.models.base import Base
from src.models.behavior import (
    BEHAVIOR_PRECEDENCE,
    BehavioralProfile,
    BehaviorType,
    ConfidenceSnapshot,
    Intervention,
    InterventionType,
    MomentType,
    RelapseSeverity,
    SeasonalFactors,
    StateTransition,
    StreakBreakEvent,
    StreakBreakReason,
    Transaction,
    Trigger,
    UserResponse,
    UserState,
    WinEvent,
    WinType,
)
from src.models.behavior_records import (
    BehavioralProfileRecord,
    InterventionRecord,
    StreakBreakRecord,
    WinRecord,
)

__all__ = [
    "Base",
    "BEHAVIOR_PRECEDENCE",
    "BehavioralProfile",
    "BehaviorType",
    "ConfidenceSnapshot",
    "Intervention",
    "InterventionType",
    "MomentType",
    "RelapseSeverity",
    "SeasonalFactors",
    "StateTransition",
    "StreakBreakEvent",
    "StreakBreakReason",
    "Transaction",
    "Trigger",
    "UserResponse",
    "UserState",
    "WinEvent",
    "WinType",
    "BehavioralProfileRecord",
    "InterventionRecord",
    "StreakBreakRecord",
    "WinRecord",
]
