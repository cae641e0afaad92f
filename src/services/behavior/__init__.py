"""
Behavioral engine services.

Components (leaf first):
    - detection: Pattern detectors and confidence dynamics
    - moments: Moment classifier (primary and extended moments)
    - state_machine: OBSERVING / FOCUSED / COOLDOWN / WITHDRAWN
    - decision: Intervention gate and intervention type
    - messages: Message catalog, selection and content policy
    - wins: Wins, relapses and streak breaks
    - failure: Penalties for ignored, dismissed and annoyed users
    - engine: Turn orchestration and the async BehavioralEngine

Reference: DESIGN.md Section 2 (System Overview)
"""

from .decision import Decision, decide, make_decision, select_intervention_type
from .detection import (
    DetectionResult,
    confidence_trend,
    detect,
    detect_end_of_month,
    detect_small_recurring,
    detect_stress_spending,
    run_detection,
)
from .engine import (
    BehavioralEngine,
    EvaluationOutcome,
    apply_user_response,
    get_behavioral_engine,
    reset_profile,
    run_scheduled_turn,
    run_transaction_turn,
)
from .failure import (
    FailureAction,
    FailureMode,
    FailureResponse,
    apply_failure_response,
    detect_annoyance,
    handle_failure,
)
from .messages import generate_dynamic_message, select_message, validate_message
from .moments import MomentClassifier, MomentResult, classify_extended, classify_moment
from .state_machine import TransitionResult, evaluate_transition, transition
from .wins import (
    OutcomeAnalysis,
    RelapseResult,
    analyze_outcomes,
    check_streak_break,
    detect_relapse,
    detect_win,
)

__all__ = [
    # Decision
    "Decision",
    "decide",
    "make_decision",
    "select_intervention_type",
    # Detection
    "DetectionResult",
    "confidence_trend",
    "detect",
    "detect_end_of_month",
    "detect_small_recurring",
    "detect_stress_spending",
    "run_detection",
    # Engine
    "BehavioralEngine",
    "EvaluationOutcome",
    "apply_user_response",
    "get_behavioral_engine",
    "reset_profile",
    "run_scheduled_turn",
    "run_transaction_turn",
    # Failure
    "FailureAction",
    "FailureMode",
    "FailureResponse",
    "apply_failure_response",
    "detect_annoyance",
    "handle_failure",
    # Messages
    "generate_dynamic_message",
    "select_message",
    "validate_message",
    # Moments
    "MomentClassifier",
    "MomentResult",
    "classify_extended",
    "classify_moment",
    # State machine
    "TransitionResult",
    "evaluate_transition",
    "transition",
    # Wins
    "OutcomeAnalysis",
    "RelapseResult",
    "analyze_outcomes",
    "check_streak_break",
    "detect_relapse",
    "detect_win",
]
