"""
Behavioral Engine Data Models.

Enums and dataclasses shared by every engine component: the per-user
BehavioralProfile, the read-only Transaction feed, and the events the engine
emits (Intervention, WinEvent, StreakBreakEvent, StateTransition).

The profile round-trips through plain dicts (to_dict / from_dict) so the
repository layer can persist it as a JSON payload. from_dict never raises for
missing or malformed fields; they fall back to safe neutral values.

Reference: DESIGN.md Section 3 (Data Model)
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import StrEnum
from typing import Any

from src.lib.exceptions import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================

class BehaviorType(StrEnum):
    """Spending behaviors the engine can focus on."""

    SMALL_RECURRING = "small_recurring"    # Many small same-category purchases
    STRESS_SPENDING = "stress_spending"    # Comfort purchases at stress hours
    END_OF_MONTH = "end_of_month"          # Late-month spending collapse


# Fixed precedence for argmax ties (first wins).
BEHAVIOR_PRECEDENCE: tuple[BehaviorType, ...] = (
    BehaviorType.SMALL_RECURRING,
    BehaviorType.STRESS_SPENDING,
    BehaviorType.END_OF_MONTH,
)


class UserState(StrEnum):
    """Coarse behavioral state of a user."""

    OBSERVING = "OBSERVING"
    FOCUSED = "FOCUSED"
    COOLDOWN = "COOLDOWN"
    WITHDRAWN = "WITHDRAWN"


class Trigger(StrEnum):
    """What caused a state machine evaluation."""

    INTERVENTION_DELIVERED = "INTERVENTION_DELIVERED"
    POSITIVE_SIGNAL = "POSITIVE_SIGNAL"
    TRANSACTION = "TRANSACTION"
    SCHEDULED = "SCHEDULED"


class InterventionType(StrEnum):
    """Strength of an intervention message."""

    IMMEDIATE_MIRROR = "immediate_mirror"
    PATTERN_REFLECTION = "pattern_reflection"
    REINFORCEMENT = "reinforcement"


class MomentType(StrEnum):
    """Named autopilot moments a single transaction can represent."""

    # Small recurring
    REPEAT_PURCHASE = "REPEAT_PURCHASE"
    HABITUAL_TIME = "HABITUAL_TIME"
    # Stress spending
    LATE_NIGHT_COMFORT = "LATE_NIGHT_COMFORT"
    POST_WORK_RELEASE = "POST_WORK_RELEASE"
    STRESS_CLUSTER = "STRESS_CLUSTER"
    # End of month
    FIRST_BREACH = "FIRST_BREACH"
    COLLAPSE_START = "COLLAPSE_START"
    # Relapse preemption
    RELAPSE_AFTER_IMPROVEMENT = "RELAPSE_AFTER_IMPROVEMENT"
    # Extended (supplementary) moments
    WEEKEND_SPLURGE = "WEEKEND_SPLURGE"
    PAYDAY_SURGE = "PAYDAY_SURGE"
    IMPULSE_CHAIN = "IMPULSE_CHAIN"
    BOREDOM_BROWSE = "BOREDOM_BROWSE"
    CATEGORY_BINGE = "CATEGORY_BINGE"
    BUDGET_NEAR_LIMIT = "BUDGET_NEAR_LIMIT"
    SEASONAL_TRIGGER = "SEASONAL_TRIGGER"


class UserResponse(StrEnum):
    """How a user reacted to a delivered intervention."""

    ACKNOWLEDGED = "acknowledged"
    ENGAGED = "engaged"
    DISMISSED = "dismissed"
    IGNORED = "ignored"


class WinType(StrEnum):
    """Kinds of positive behavior change."""

    PATTERN_BREAK = "pattern_break"
    IMPROVEMENT = "improvement"
    STREAK_MILESTONE = "streak_milestone"
    SILENT_WIN = "silent_win"


class StreakBreakReason(StrEnum):
    """Why a streak ended."""

    BEHAVIOR_RELAPSE = "behavior_relapse"
    INACTIVITY = "inactivity"
    USER_RESET = "user_reset"
    SEVERE_REGRESSION = "severe_regression"
    WITHDRAWAL_TRIGGERED = "withdrawal_triggered"


class RelapseSeverity(StrEnum):
    """Relapse severity buckets by week-over-week increase."""

    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


# =============================================================================
# Datetime helpers
# =============================================================================

def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so comparisons never mix naive and aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _parse_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, str) and value:
        try:
            return ensure_utc(datetime.fromisoformat(value))
        except ValueError:
            return None
    return None


def _parse_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return default


def _as_unit_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return min(1.0, max(0.0, number))


def _as_enum(enum_cls: type[StrEnum], value: Any, default: Any = None) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        return default


# =============================================================================
# Transaction (external, read-only)
# =============================================================================

@dataclass(frozen=True)
class Transaction:
    """A single transaction from the external feed. Negative amount = expense."""

    amount: float
    category: str
    timestamp: datetime
    id: str | None = None
    description: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", ensure_utc(self.timestamp))
        object.__setattr__(self, "category", (self.category or "uncategorized").strip().lower())

    @property
    def is_expense(self) -> bool:
        return self.amount < 0

    @property
    def magnitude(self) -> float:
        return abs(self.amount)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Transaction:
        """
        Build a Transaction from a loosely-typed mapping.

        Raises:
            ValidationError: If amount or timestamp is missing or unparsable.
        """
        try:
            amount = float(data["amount"])
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("Transaction amount is missing or not numeric") from e
        timestamp = _parse_datetime(data.get("timestamp") or data.get("transaction_date"))
        if timestamp is None:
            raise ValidationError("Transaction timestamp is missing or not ISO-8601")
        raw_id = data.get("id")
        return cls(
            amount=amount,
            category=str(data.get("category") or "uncategorized"),
            timestamp=timestamp,
            id=str(raw_id) if raw_id is not None else None,
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "amount": self.amount,
            "category": self.category,
            "timestamp": self.timestamp.isoformat(),
            "description": self.description,
        }


# =============================================================================
# Profile value objects
# =============================================================================

@dataclass(frozen=True)
class ConfidenceSnapshot:
    """Point-in-time copy of the three confidence scores."""

    at: datetime
    small_recurring: float
    stress_spending: float
    end_of_month: float

    def value(self, behavior: BehaviorType) -> float:
        return getattr(self, behavior.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "small_recurring": self.small_recurring,
            "stress_spending": self.stress_spending,
            "end_of_month": self.end_of_month,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConfidenceSnapshot | None:
        at = _parse_datetime(data.get("at"))
        if at is None:
            return None
        return cls(
            at=at,
            small_recurring=_as_unit_float(data.get("small_recurring")),
            stress_spending=_as_unit_float(data.get("stress_spending")),
            end_of_month=_as_unit_float(data.get("end_of_month")),
        )


# Monday-first weekday factors, January-first month factors.
DEFAULT_MONTH_FACTORS: tuple[float, ...] = (
    1.0, 0.95, 1.0, 1.0, 1.0, 1.05, 1.1, 1.1, 1.05, 1.0, 1.15, 1.3,
)
DEFAULT_WEEKDAY_FACTORS: tuple[float, ...] = (0.9, 0.9, 0.95, 1.0, 1.2, 1.25, 1.15)


@dataclass(frozen=True)
class SeasonalFactors:
    """Spending multipliers by month and weekday, used to de-season detector scores."""

    month_factors: tuple[float, ...] = DEFAULT_MONTH_FACTORS
    weekday_factors: tuple[float, ...] = DEFAULT_WEEKDAY_FACTORS
    calibrated_at: datetime | None = None    # None = defaults, never calibrated

    def to_dict(self) -> dict[str, Any]:
        return {
            "month_factors": list(self.month_factors),
            "weekday_factors": list(self.weekday_factors),
            "calibrated_at": _iso(self.calibrated_at),
        }

    @classmethod
    def from_dict(cls, data: Any) -> SeasonalFactors:
        if not isinstance(data, dict):
            return cls()
        months = data.get("month_factors")
        days = data.get("weekday_factors")
        try:
            month_factors = tuple(float(v) for v in months) if months else DEFAULT_MONTH_FACTORS
            weekday_factors = tuple(float(v) for v in days) if days else DEFAULT_WEEKDAY_FACTORS
        except (TypeError, ValueError):
            return cls()
        if len(month_factors) != 12 or len(weekday_factors) != 7:
            return cls()
        return cls(month_factors, weekday_factors, _parse_datetime(data.get("calibrated_at")))


# =============================================================================
# Behavioral Profile
# =============================================================================

def _zero_confidence() -> dict[BehaviorType, float]:
    return {behavior: 0.0 for behavior in BEHAVIOR_PRECEDENCE}


@dataclass
class BehavioralProfile:
    """
    Per-user engine state, read and written once per evaluation turn.

    active_behavior is only set while user_state is FOCUSED or COOLDOWN.
    """

    user_id: str
    user_state: UserState = UserState.OBSERVING
    active_behavior: BehaviorType | None = None
    confidence: dict[BehaviorType, float] = field(default_factory=_zero_confidence)

    # Suppression windows
    cooldown_ends_at: datetime | None = None
    withdrawal_ends_at: datetime | None = None

    # Rolling counters
    interventions_today: int = 0
    interventions_this_week: int = 0
    ignored_interventions: int = 0
    dismissed_count: int = 0
    daily_reset_at: datetime | None = None
    weekly_reset_at: datetime | None = None

    # Streaks and wins
    current_streak: int = 0
    longest_streak: int = 0
    last_win_at: datetime | None = None
    last_streak_date: date | None = None
    celebrated_milestone: int = 0          # Last streak milestone already celebrated

    # Supplied by the budgeting collaborator (1.0 = fully on budget)
    budget_adherence_early_month: float = 1.0
    budget_adherence_current: float = 1.0

    confidence_history: list[ConfidenceSnapshot] = field(default_factory=list)
    seasonal_factors: SeasonalFactors = field(default_factory=SeasonalFactors)

    # Delivery bookkeeping
    interventions_enabled: bool = True
    last_intervention_type: InterventionType | None = None
    last_intervention_at: datetime | None = None
    recent_message_keys: list[str] = field(default_factory=list)
    recent_dismissals: list[datetime] = field(default_factory=list)

    last_evaluated_at: datetime | None = None
    last_activity_at: datetime | None = None
    created_at: datetime | None = None

    # -------------------------------------------------------------------------
    # Confidence accessors
    # -------------------------------------------------------------------------

    def get_confidence(self, behavior: BehaviorType | None) -> float:
        if behavior is None:
            return 0.0
        return self.confidence.get(behavior, 0.0)

    def set_confidence(self, behavior: BehaviorType, value: float) -> None:
        self.confidence[behavior] = _as_unit_float(value)

    def strongest_behavior(self) -> tuple[BehaviorType, float]:
        """Argmax over confidences; ties resolve by BEHAVIOR_PRECEDENCE."""
        best = BEHAVIOR_PRECEDENCE[0]
        best_value = self.get_confidence(best)
        for behavior in BEHAVIOR_PRECEDENCE[1:]:
            value = self.get_confidence(behavior)
            if value > best_value:
                best, best_value = behavior, value
        return best, best_value

    @property
    def active_confidence(self) -> float:
        return self.get_confidence(self.active_behavior)

    def copy(self) -> BehavioralProfile:
        return copy.deepcopy(self)

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "user_state": self.user_state.value,
            "active_behavior": self.active_behavior.value if self.active_behavior else None,
            "confidence": {b.value: self.get_confidence(b) for b in BEHAVIOR_PRECEDENCE},
            "cooldown_ends_at": _iso(self.cooldown_ends_at),
            "withdrawal_ends_at": _iso(self.withdrawal_ends_at),
            "interventions_today": self.interventions_today,
            "interventions_this_week": self.interventions_this_week,
            "ignored_interventions": self.ignored_interventions,
            "dismissed_count": self.dismissed_count,
            "daily_reset_at": _iso(self.daily_reset_at),
            "weekly_reset_at": _iso(self.weekly_reset_at),
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_win_at": _iso(self.last_win_at),
            "last_streak_date": _iso(self.last_streak_date),
            "celebrated_milestone": self.celebrated_milestone,
            "budget_adherence_early_month": self.budget_adherence_early_month,
            "budget_adherence_current": self.budget_adherence_current,
            "confidence_history": [s.to_dict() for s in self.confidence_history],
            "seasonal_factors": self.seasonal_factors.to_dict(),
            "interventions_enabled": self.interventions_enabled,
            "last_intervention_type": (
                self.last_intervention_type.value if self.last_intervention_type else None
            ),
            "last_intervention_at": _iso(self.last_intervention_at),
            "recent_message_keys": list(self.recent_message_keys),
            "recent_dismissals": [d.isoformat() for d in self.recent_dismissals],
            "last_evaluated_at": _iso(self.last_evaluated_at),
            "last_activity_at": _iso(self.last_activity_at),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, user_id: str | None = None) -> BehavioralProfile:
        """
        Rebuild a profile from a stored payload.

        Unknown or malformed fields fall back to neutral defaults. The
        active_behavior invariant is re-established: it is dropped when the
        state does not allow one.
        """
        data = data if isinstance(data, dict) else {}
        resolved_user_id = str(data.get("user_id") or user_id or "")
        if not resolved_user_id:
            raise ValidationError("Profile payload has no user_id")

        raw_confidence = data.get("confidence")
        confidence = _zero_confidence()
        if isinstance(raw_confidence, dict):
            for behavior in BEHAVIOR_PRECEDENCE:
                confidence[behavior] = _as_unit_float(raw_confidence.get(behavior.value))

        state = _as_enum(UserState, data.get("user_state"), UserState.OBSERVING)
        active = _as_enum(BehaviorType, data.get("active_behavior"))
        if state not in (UserState.FOCUSED, UserState.COOLDOWN):
            active = None
        elif active is None:
            logger.warning(
                "Profile %s in %s without active behavior, resetting to OBSERVING",
                resolved_user_id, state,
            )
            state = UserState.OBSERVING

        history_raw = data.get("confidence_history")
        history = []
        if isinstance(history_raw, list):
            for item in history_raw:
                snapshot = ConfidenceSnapshot.from_dict(item) if isinstance(item, dict) else None
                if snapshot is not None:
                    history.append(snapshot)

        keys_raw = data.get("recent_message_keys")
        dismissals_raw = data.get("recent_dismissals")

        return cls(
            user_id=resolved_user_id,
            user_state=state,
            active_behavior=active,
            confidence=confidence,
            cooldown_ends_at=_parse_datetime(data.get("cooldown_ends_at")),
            withdrawal_ends_at=_parse_datetime(data.get("withdrawal_ends_at")),
            interventions_today=_as_int(data.get("interventions_today")),
            interventions_this_week=_as_int(data.get("interventions_this_week")),
            ignored_interventions=_as_int(data.get("ignored_interventions")),
            dismissed_count=_as_int(data.get("dismissed_count")),
            daily_reset_at=_parse_datetime(data.get("daily_reset_at")),
            weekly_reset_at=_parse_datetime(data.get("weekly_reset_at")),
            current_streak=_as_int(data.get("current_streak")),
            longest_streak=_as_int(data.get("longest_streak")),
            last_win_at=_parse_datetime(data.get("last_win_at")),
            last_streak_date=_parse_date(data.get("last_streak_date")),
            celebrated_milestone=_as_int(data.get("celebrated_milestone")),
            budget_adherence_early_month=_as_unit_float(
                data.get("budget_adherence_early_month"), 1.0
            ),
            budget_adherence_current=_as_unit_float(data.get("budget_adherence_current"), 1.0),
            confidence_history=history,
            seasonal_factors=SeasonalFactors.from_dict(data.get("seasonal_factors")),
            interventions_enabled=bool(data.get("interventions_enabled", True)),
            last_intervention_type=_as_enum(InterventionType, data.get("last_intervention_type")),
            last_intervention_at=_parse_datetime(data.get("last_intervention_at")),
            recent_message_keys=[str(k) for k in keys_raw] if isinstance(keys_raw, list) else [],
            recent_dismissals=[
                d for d in (_parse_datetime(v) for v in dismissals_raw) if d is not None
            ] if isinstance(dismissals_raw, list) else [],
            last_evaluated_at=_parse_datetime(data.get("last_evaluated_at")),
            last_activity_at=_parse_datetime(data.get("last_activity_at")),
            created_at=_parse_datetime(data.get("created_at")),
        )


# =============================================================================
# Engine output events
# =============================================================================

@dataclass
class Intervention:
    """A reflective message the engine decided to surface."""

    user_id: str
    behavior: BehaviorType
    intervention_type: InterventionType
    message_key: str
    message: str
    delivered_at: datetime
    moment_type: MomentType | None = None
    transaction_id: str | None = None
    response: UserResponse | None = None       # Attached later by the UI layer
    responded_at: datetime | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "behavior": self.behavior.value,
            "intervention_type": self.intervention_type.value,
            "message_key": self.message_key,
            "message": self.message,
            "moment_type": self.moment_type.value if self.moment_type else None,
            "transaction_id": self.transaction_id,
            "delivered_at": self.delivered_at.isoformat(),
            "response": self.response.value if self.response else None,
            "responded_at": _iso(self.responded_at),
        }


@dataclass
class WinEvent:
    """A detected positive behavior change."""

    win_type: WinType
    behavior: BehaviorType
    occurred_at: datetime
    message: str = ""
    celebrate: bool = True
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "win_type": self.win_type.value,
            "behavior": self.behavior.value,
            "occurred_at": self.occurred_at.isoformat(),
            "message": self.message,
            "celebrate": self.celebrate,
            "metadata": dict(self.metadata),
        }


@dataclass
class StreakBreakEvent:
    """The end of a streak, with the reason it ended."""

    reason: StreakBreakReason
    streak_length: int
    broken_at: datetime
    behavior: BehaviorType | None = None
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason.value,
            "streak_length": self.streak_length,
            "broken_at": self.broken_at.isoformat(),
            "behavior": self.behavior.value if self.behavior else None,
            "message": self.message,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class StateTransition:
    """One recorded state machine move."""

    from_state: UserState
    to_state: UserState
    reason: str
    trigger: Trigger | None                # None for failure-handler and reset moves
    at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "reason": self.reason,
            "trigger": self.trigger.value if self.trigger else None,
            "at": self.at.isoformat(),
        }
