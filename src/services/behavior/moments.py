"""
Moment Classifier for the Behavioral Engine.

Labels a single new transaction with the "autopilot moment" it represents
for the user's active behavior, or declares it not a moment:
- small_recurring: REPEAT_PURCHASE, HABITUAL_TIME
- stress_spending: LATE_NIGHT_COMFORT, POST_WORK_RELEASE, STRESS_CLUSTER
- end_of_month: FIRST_BREACH, COLLAPSE_START

A moderate or severe relapse preempts the behavior-specific classifiers.
Extended checks (weekend splurge, payday surge, impulse chain, boredom
browse, category binge, budget near limit, seasonal trigger) are independent
supplementary signals, not part of the primary dispatch.

Every classifier is pure: "now" is the transaction's own timestamp.

Reference: DESIGN.md Section 4.2 (Moment Classifier)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig, is_comfort_category
from src.models.behavior import (
    BehavioralProfile,
    BehaviorType,
    MomentType,
    RelapseSeverity,
    Transaction,
)
from src.services.behavior.detection import (
    is_holiday_period,
    is_late_night,
    is_post_work,
    is_small_expense,
    normalize_history,
)
from src.services.behavior.wins import detect_relapse

# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class MomentResult:
    """Classification of one transaction."""

    is_moment: bool
    moment_type: MomentType | None
    confidence: float                      # 0-1
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)


def not_a_moment(reason: str) -> MomentResult:
    return MomentResult(is_moment=False, moment_type=None, confidence=0.0, reason=reason)


def _moment(moment_type: MomentType, confidence: float, reason: str, **metadata: Any) -> MomentResult:
    return MomentResult(True, moment_type, confidence, reason, metadata)


def _prior(transaction: Transaction, recent: Iterable[Any] | None) -> list[Transaction]:
    """History strictly before the transaction, excluding the transaction itself."""
    return [
        t for t in normalize_history(recent, transaction.timestamp)
        if t != transaction
        and not (transaction.id is not None and t.id == transaction.id)
        and t.timestamp <= transaction.timestamp
    ]


# =============================================================================
# Primary classifier
# =============================================================================

class MomentClassifier:
    """
    Classifies single transactions against the active behavior.

    Usage:
        classifier = MomentClassifier(config)
        result = classifier.classify(transaction, profile, recent_transactions)
    """

    # Confidence per moment
    RELAPSE_SEVERE_CONFIDENCE = 0.95
    RELAPSE_MODERATE_CONFIDENCE = 0.85
    HABITUAL_TIME_CONFIDENCE = 0.9
    REPEAT_PURCHASE_CONFIDENCE = 0.75
    STRESS_CLUSTER_CONFIDENCE = 0.95
    LATE_NIGHT_CONFIDENCE = 0.85
    POST_WORK_CONFIDENCE = 0.80
    FIRST_BREACH_CONFIDENCE = 0.90
    COLLAPSE_START_CONFIDENCE = 0.85

    # Small recurring
    MIN_SAME_CATEGORY = 2                  # Prior small purchases in the category
    MIN_SAME_HOUR = 2                      # Of those, within +-1h of this hour
    HABIT_HOUR_TOLERANCE = 1

    # End of month adherence cutoffs
    EARLY_ADHERENCE_MIN = 0.8
    BREACH_ADHERENCE_MAX = 0.7
    COLLAPSE_ADHERENCE_MAX = 0.5

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    def classify(
        self,
        transaction: Transaction,
        profile: BehavioralProfile,
        recent: Iterable[Any] | None,
    ) -> MomentResult:
        """
        Classify one transaction for the profile's active behavior.

        Args:
            transaction: The new transaction (its timestamp is "now")
            profile: Current profile (read-only)
            recent: Recent transaction history (may include the transaction)

        Returns:
            MomentResult; not a moment when no behavior is active
        """
        behavior = profile.active_behavior
        if behavior is None:
            return not_a_moment("no_active_behavior")

        relapse = detect_relapse(profile, behavior, recent, transaction.timestamp, self.config)
        if relapse.severity == RelapseSeverity.SEVERE:
            return _moment(
                MomentType.RELAPSE_AFTER_IMPROVEMENT, self.RELAPSE_SEVERE_CONFIDENCE,
                "severe_relapse", increasePercent=relapse.increase_percent,
            )
        if relapse.severity == RelapseSeverity.MODERATE:
            return _moment(
                MomentType.RELAPSE_AFTER_IMPROVEMENT, self.RELAPSE_MODERATE_CONFIDENCE,
                "moderate_relapse", increasePercent=relapse.increase_percent,
            )

        match behavior:
            case BehaviorType.SMALL_RECURRING:
                return self.classify_small_recurring(transaction, recent)
            case BehaviorType.STRESS_SPENDING:
                return self.classify_stress_spending(transaction, recent)
            case BehaviorType.END_OF_MONTH:
                return self.classify_end_of_month(transaction, profile)

    # -------------------------------------------------------------------------
    # Behavior-specific classifiers
    # -------------------------------------------------------------------------

    def classify_small_recurring(
        self,
        transaction: Transaction,
        recent: Iterable[Any] | None,
    ) -> MomentResult:
        if not is_small_expense(transaction, self.config):
            return not_a_moment("amount_too_large" if transaction.is_expense else "not_an_expense")

        same_category = [
            t for t in _prior(transaction, recent)
            if t.category == transaction.category and is_small_expense(t, self.config)
        ]
        if len(same_category) < self.MIN_SAME_CATEGORY:
            return not_a_moment("not_repeated")

        hour = transaction.timestamp.hour
        same_hour = [
            t for t in same_category
            if _hour_distance(t.timestamp.hour, hour) <= self.HABIT_HOUR_TOLERANCE
        ]
        if len(same_hour) >= self.MIN_SAME_HOUR:
            return _moment(
                MomentType.HABITUAL_TIME, self.HABITUAL_TIME_CONFIDENCE,
                "same_category_same_hour", sameHourCount=len(same_hour),
            )
        return _moment(
            MomentType.REPEAT_PURCHASE, self.REPEAT_PURCHASE_CONFIDENCE,
            "same_category_repeat", categoryCount=len(same_category),
        )

    def classify_stress_spending(
        self,
        transaction: Transaction,
        recent: Iterable[Any] | None,
    ) -> MomentResult:
        if not transaction.is_expense or not is_comfort_category(transaction.category):
            return not_a_moment("not_comfort_category")

        hour = transaction.timestamp.hour
        late_night = is_late_night(hour, self.config)
        if not late_night and not is_post_work(hour, self.config):
            return not_a_moment("outside_stress_hours")

        window_start = transaction.timestamp - timedelta(hours=self.config.stress_cluster_window_hours)
        clustered = [
            t for t in _prior(transaction, recent)
            if t.timestamp >= window_start and t.is_expense and is_comfort_category(t.category)
        ]
        if clustered:
            return _moment(
                MomentType.STRESS_CLUSTER, self.STRESS_CLUSTER_CONFIDENCE,
                "comfort_cluster", clusterSize=len(clustered) + 1,
            )
        if late_night:
            return _moment(MomentType.LATE_NIGHT_COMFORT, self.LATE_NIGHT_CONFIDENCE, "late_night")
        return _moment(MomentType.POST_WORK_RELEASE, self.POST_WORK_CONFIDENCE, "post_work")

    def classify_end_of_month(
        self,
        transaction: Transaction,
        profile: BehavioralProfile,
    ) -> MomentResult:
        if transaction.timestamp.day < self.config.end_of_month_start_day:
            return not_a_moment("not_end_of_month")

        early = profile.budget_adherence_early_month
        current = profile.budget_adherence_current
        if early >= self.EARLY_ADHERENCE_MIN and current < self.BREACH_ADHERENCE_MAX:
            return _moment(
                MomentType.FIRST_BREACH, self.FIRST_BREACH_CONFIDENCE,
                "adherence_dropped", earlyAdherence=early, currentAdherence=current,
            )
        if current < self.COLLAPSE_ADHERENCE_MAX:
            return _moment(
                MomentType.COLLAPSE_START, self.COLLAPSE_START_CONFIDENCE,
                "adherence_collapsed", currentAdherence=current,
            )
        return not_a_moment("adherence_holding")


def _hour_distance(a: int, b: int) -> int:
    """Distance between two hours on a 24h clock (23 and 0 are 1 apart)."""
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def classify_moment(
    transaction: Transaction,
    profile: BehavioralProfile,
    recent: Iterable[Any] | None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> MomentResult:
    """Functional entry point for MomentClassifier.classify."""
    return MomentClassifier(config).classify(transaction, profile, recent)


# =============================================================================
# Extended (supplementary) classifiers
# =============================================================================

WEEKEND_MIN_WEEKDAY = 5
WEEKEND_MIN_WEEKEND = 2
WEEKEND_RATIO = 1.5
IMPULSE_WINDOW = timedelta(minutes=30)
IMPULSE_MIN_PRIOR = 2
BOREDOM_HOURS = (range(10, 17), range(20, 23))
BOREDOM_MAX_AMOUNT = 20.0
BOREDOM_WINDOW = timedelta(hours=2)
BINGE_WINDOW = timedelta(hours=1)
BINGE_MIN_PRIOR = 2
PAYDAY_MIN_INCOME = 500.0
PAYDAY_WINDOW = timedelta(days=3)
PAYDAY_MIN_EXPENSES = 3
BUDGET_NEAR_LIMIT_ADHERENCE = 0.85
SEASONAL_MIN_AMOUNT = 50.0


def check_weekend_splurge(transaction: Transaction, recent: Iterable[Any] | None) -> MomentResult:
    """Weekend expense when weekend purchases run well above the weekday average."""
    if not transaction.is_expense or transaction.timestamp.weekday() < 5:
        return not_a_moment("not_weekend_expense")

    expenses = [t for t in _prior(transaction, recent) if t.is_expense] + [transaction]
    weekday = [t.magnitude for t in expenses if t.timestamp.weekday() < 5]
    weekend = [t.magnitude for t in expenses if t.timestamp.weekday() >= 5]
    if len(weekday) < WEEKEND_MIN_WEEKDAY or len(weekend) < WEEKEND_MIN_WEEKEND:
        return not_a_moment("insufficient_data")

    weekday_avg = sum(weekday) / len(weekday)
    weekend_avg = sum(weekend) / len(weekend)
    if weekday_avg > 0 and weekend_avg > weekday_avg * WEEKEND_RATIO:
        return _moment(
            MomentType.WEEKEND_SPLURGE, 0.80, "weekend_above_weekday",
            ratio=round(weekend_avg / weekday_avg, 2),
        )
    return not_a_moment("weekend_in_line")


def check_payday_surge(transaction: Transaction, recent: Iterable[Any] | None) -> MomentResult:
    """Several expenses shortly after a large income deposit."""
    if not transaction.is_expense:
        return not_a_moment("not_an_expense")

    prior = _prior(transaction, recent)
    window_start = transaction.timestamp - PAYDAY_WINDOW
    paydays = [
        t for t in prior
        if t.amount >= PAYDAY_MIN_INCOME and t.timestamp >= window_start
    ]
    if not paydays:
        return not_a_moment("no_recent_income")

    payday = paydays[-1]
    since = [t for t in prior if t.is_expense and t.timestamp >= payday.timestamp]
    if len(since) + 1 >= PAYDAY_MIN_EXPENSES:
        return _moment(
            MomentType.PAYDAY_SURGE, 0.80, "spending_after_income",
            expensesSinceIncome=len(since) + 1,
        )
    return not_a_moment("few_expenses_since_income")


def check_impulse_chain(transaction: Transaction, recent: Iterable[Any] | None) -> MomentResult:
    """Rapid succession of expenses within half an hour."""
    if not transaction.is_expense:
        return not_a_moment("not_an_expense")
    window_start = transaction.timestamp - IMPULSE_WINDOW
    chain = [t for t in _prior(transaction, recent) if t.is_expense and t.timestamp >= window_start]
    if len(chain) >= IMPULSE_MIN_PRIOR:
        return _moment(MomentType.IMPULSE_CHAIN, 0.90, "rapid_succession", chainLength=len(chain) + 1)
    return not_a_moment("no_chain")


def check_boredom_browse(transaction: Transaction, recent: Iterable[Any] | None) -> MomentResult:
    """Small purchases across categories during idle hours."""
    if not transaction.is_expense or transaction.magnitude >= BOREDOM_MAX_AMOUNT:
        return not_a_moment("not_small_expense")
    hour = transaction.timestamp.hour
    if not any(hour in hours for hours in BOREDOM_HOURS):
        return not_a_moment("outside_idle_hours")

    window_start = transaction.timestamp - BOREDOM_WINDOW
    browsing = [
        t for t in _prior(transaction, recent)
        if t.is_expense and t.magnitude < BOREDOM_MAX_AMOUNT and t.timestamp >= window_start
    ]
    categories = {t.category for t in browsing} | {transaction.category}
    if len(browsing) >= 2 and len(categories) >= 2:
        return _moment(
            MomentType.BOREDOM_BROWSE, 0.75, "scattered_small_purchases",
            categories=len(categories),
        )
    return not_a_moment("no_browsing_pattern")


def check_category_binge(transaction: Transaction, recent: Iterable[Any] | None) -> MomentResult:
    """Several purchases in the same category within an hour."""
    if not transaction.is_expense:
        return not_a_moment("not_an_expense")
    window_start = transaction.timestamp - BINGE_WINDOW
    same = [
        t for t in _prior(transaction, recent)
        if t.is_expense and t.category == transaction.category and t.timestamp >= window_start
    ]
    if len(same) >= BINGE_MIN_PRIOR:
        return _moment(
            MomentType.CATEGORY_BINGE, 0.85, "same_category_burst",
            category=transaction.category, count=len(same) + 1,
        )
    return not_a_moment("no_binge")


def check_budget_near_limit(transaction: Transaction, profile: BehavioralProfile) -> MomentResult:
    """Expense while current budget adherence is slipping but not yet breached."""
    if not transaction.is_expense:
        return not_a_moment("not_an_expense")
    current = profile.budget_adherence_current
    if MomentClassifier.BREACH_ADHERENCE_MAX <= current < BUDGET_NEAR_LIMIT_ADHERENCE:
        return _moment(
            MomentType.BUDGET_NEAR_LIMIT, 0.70, "adherence_near_limit", currentAdherence=current,
        )
    return not_a_moment("budget_not_near_limit")


def check_seasonal_trigger(transaction: Transaction) -> MomentResult:
    """Larger expense during the holiday period."""
    if not transaction.is_expense or transaction.magnitude < SEASONAL_MIN_AMOUNT:
        return not_a_moment("not_seasonal")
    if is_holiday_period(transaction.timestamp):
        return _moment(MomentType.SEASONAL_TRIGGER, 0.70, "holiday_period")
    return not_a_moment("not_seasonal")


def classify_extended(
    transaction: Transaction,
    profile: BehavioralProfile,
    recent: Iterable[Any] | None,
) -> list[MomentResult]:
    """Run every extended check and return the ones that matched."""
    results = [
        check_weekend_splurge(transaction, recent),
        check_payday_surge(transaction, recent),
        check_impulse_chain(transaction, recent),
        check_boredom_browse(transaction, recent),
        check_category_binge(transaction, recent),
        check_budget_near_limit(transaction, profile),
        check_seasonal_trigger(transaction),
    ]
    return [r for r in results if r.is_moment]
