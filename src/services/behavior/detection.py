"""
Pattern Detectors for the Behavioral Engine.

Three pure detectors turn a transaction history into a confidence score per
behavior type:
- Small recurring: many small expenses, dominated by one category
- Stress spending: comfort-category purchases at late night / after work
- End of month: late-month spending spikes repeated across months

Scores are smoothed against the previous confidence, decay daily when the
evidence disappears, are de-seasoned by month/weekday factors, and never
exceed the confidence ceiling. Empty or malformed history is "no evidence",
never an error.

Also home to the history helpers shared by the other components (stress
windows, behavior matching) and the confidence history bookkeeping.

Reference: DESIGN.md Section 4.1 (Pattern Detectors)
"""

from __future__ import annotations

import calendar
import logging
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig, is_comfort_category
from src.models.behavior import (
    BEHAVIOR_PRECEDENCE,
    BehavioralProfile,
    BehaviorType,
    ConfidenceSnapshot,
    SeasonalFactors,
    Transaction,
    ensure_utc,
)

logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class DetectionResult:
    """Outcome of one detector run."""

    behavior: BehaviorType
    confidence: float                      # Smoothed/decayed, clamped to the ceiling
    raw_score: float                       # Instantaneous evidence score (0 if none)
    detected: bool                         # False = decay path was taken
    reason: str
    metadata: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# History helpers
# =============================================================================

def normalize_history(history: Iterable[Any] | None, now: datetime | None = None) -> list[Transaction]:
    """
    Return the usable, chronologically ordered part of a history.

    Non-Transaction items are dropped. When `now` is given, transactions
    after it are ignored so evaluations are reproducible.
    """
    if history is None or isinstance(history, (str, bytes, dict)):
        return []
    try:
        items = [t for t in history if isinstance(t, Transaction)]
    except TypeError:
        return []
    if now is not None:
        cutoff = ensure_utc(now)
        items = [t for t in items if t.timestamp <= cutoff]
    return sorted(items, key=lambda t: t.timestamp)


def is_late_night(hour: int, config: EngineConfig = DEFAULT_CONFIG) -> bool:
    return hour >= config.stress_late_night_start or hour <= config.stress_late_night_end


def is_post_work(hour: int, config: EngineConfig = DEFAULT_CONFIG) -> bool:
    return config.stress_post_work_start <= hour <= config.stress_post_work_end


def is_stress_hour(hour: int, config: EngineConfig = DEFAULT_CONFIG) -> bool:
    return is_late_night(hour, config) or is_post_work(hour, config)


def is_small_expense(transaction: Transaction, config: EngineConfig = DEFAULT_CONFIG) -> bool:
    return transaction.is_expense and transaction.magnitude <= config.small_transaction_max


def matches_behavior(
    transaction: Transaction,
    behavior: BehaviorType,
    config: EngineConfig = DEFAULT_CONFIG,
) -> bool:
    """Whether an expense counts toward a behavior's weekly tallies."""
    if not transaction.is_expense:
        return False
    match behavior:
        case BehaviorType.SMALL_RECURRING:
            return transaction.magnitude <= config.small_transaction_max
        case BehaviorType.STRESS_SPENDING:
            return (
                is_stress_hour(transaction.timestamp.hour, config)
                and is_comfort_category(transaction.category)
            )
        case BehaviorType.END_OF_MONTH:
            return transaction.timestamp.day >= config.end_of_month_start_day


# =============================================================================
# Confidence dynamics
# =============================================================================

def clamp_confidence(value: float, config: EngineConfig = DEFAULT_CONFIG) -> float:
    """Keep a score inside [0, ceiling]; NaN becomes 0."""
    if value != value:
        return 0.0
    return max(0.0, min(config.confidence_ceiling, value))


def smooth_confidence(previous: float, raw: float, config: EngineConfig = DEFAULT_CONFIG) -> float:
    """Exponential smoothing toward the new evidence; a zero previous takes raw as-is."""
    if previous <= 0:
        return clamp_confidence(raw, config)
    weight = config.confidence_smoothing
    return clamp_confidence(previous * weight + raw * (1 - weight), config)


def decay_confidence(
    previous: float,
    elapsed_days: float,
    config: EngineConfig = DEFAULT_CONFIG,
) -> float:
    """Daily exponential decay toward 0 while there is no supporting evidence."""
    if previous <= 0:
        return 0.0
    elapsed = max(0.0, elapsed_days)
    return clamp_confidence(previous * (1 - config.confidence_decay_daily) ** elapsed, config)


def _finish(
    behavior: BehaviorType,
    raw: float,
    previous: float,
    elapsed_days: float,
    seasonal_factor: float,
    reason: str,
    metadata: dict[str, Any],
    config: EngineConfig,
) -> DetectionResult:
    if raw <= 0:
        return DetectionResult(
            behavior=behavior,
            confidence=decay_confidence(previous, elapsed_days, config),
            raw_score=0.0,
            detected=False,
            reason=reason,
            metadata=metadata,
        )
    adjusted = raw / seasonal_factor if seasonal_factor > 0 else raw
    metadata["seasonal_factor"] = round(seasonal_factor, 4)
    return DetectionResult(
        behavior=behavior,
        confidence=smooth_confidence(previous, adjusted, config),
        raw_score=raw,
        detected=True,
        reason=reason,
        metadata=metadata,
    )


# =============================================================================
# Small recurring
# =============================================================================

def detect_small_recurring(
    history: Iterable[Any] | None,
    now: datetime,
    previous: float = 0.0,
    elapsed_days: float = 1.0,
    config: EngineConfig = DEFAULT_CONFIG,
    seasonal_factor: float = 1.0,
) -> DetectionResult:
    """
    Detect many small same-category expenses within the trailing window.

    Needs at least `small_recurring_min_count` small expenses and
    `small_recurring_category_min` of them in the dominant category.
    """
    behavior = BehaviorType.SMALL_RECURRING
    now = ensure_utc(now)
    window_start = now - timedelta(days=config.small_recurring_days)
    small = [
        t for t in normalize_history(history, now)
        if t.timestamp >= window_start and is_small_expense(t, config)
    ]

    if len(small) < config.small_recurring_min_count:
        return _finish(behavior, 0.0, previous, elapsed_days, seasonal_factor,
                       "insufficient_data", {"count": len(small)}, config)

    categories = Counter(t.category for t in small)
    top_category, top_count = categories.most_common(1)[0]
    if top_count < config.small_recurring_category_min:
        return _finish(behavior, 0.0, previous, elapsed_days, seasonal_factor,
                       "no_dominant_category", {"count": len(small)}, config)

    total = sum(t.magnitude for t in small)
    peak_hour_count = max(Counter(t.timestamp.hour for t in small).values())

    frequency_score = min(1.0, (len(small) - 3) / 7)
    amount_score = min(1.0, total / 100)
    habituality_score = min(1.0, peak_hour_count / 3)
    raw = 0.4 * frequency_score + 0.3 * amount_score + 0.3 * habituality_score

    return _finish(behavior, raw, previous, elapsed_days, seasonal_factor, "pattern_found", {
        "count": len(small),
        "top_category": top_category,
        "top_category_count": top_count,
        "total_amount": round(total, 2),
        "peak_hour_count": peak_hour_count,
    }, config)


# =============================================================================
# Stress spending
# =============================================================================

def detect_stress_spending(
    history: Iterable[Any] | None,
    now: datetime,
    previous: float = 0.0,
    elapsed_days: float = 1.0,
    config: EngineConfig = DEFAULT_CONFIG,
    seasonal_factor: float = 1.0,
) -> DetectionResult:
    """
    Detect comfort purchases in the late-night and post-work windows.

    Late-night signals weigh 0.9, post-work 0.7. Signals no more than
    `stress_cluster_window_hours` apart count as a cluster.
    """
    behavior = BehaviorType.STRESS_SPENDING
    now = ensure_utc(now)
    window_start = now - timedelta(days=config.stress_lookback_days)

    signals: list[tuple[Transaction, float]] = []
    for t in normalize_history(history, now):
        if t.timestamp < window_start or not t.is_expense or not is_comfort_category(t.category):
            continue
        hour = t.timestamp.hour
        if is_late_night(hour, config):
            signals.append((t, 0.9))
        elif is_post_work(hour, config):
            signals.append((t, 0.7))

    if len(signals) < config.stress_min_occurrences:
        return _finish(behavior, 0.0, previous, elapsed_days, seasonal_factor,
                       "insufficient_data", {"signals": len(signals)}, config)

    cluster_gap = timedelta(hours=config.stress_cluster_window_hours)
    clusters = sum(
        1 for (a, _), (b, _) in zip(signals, signals[1:])
        if b.timestamp - a.timestamp <= cluster_gap
    )
    avg_strength = sum(strength for _, strength in signals) / len(signals)

    raw = (
        0.35 * min(1.0, len(signals) / 8)
        + 0.30 * min(1.0, clusters / 3)
        + 0.35 * avg_strength
    )
    return _finish(behavior, raw, previous, elapsed_days, seasonal_factor, "pattern_found", {
        "signals": len(signals),
        "clusters": clusters,
        "avg_strength": round(avg_strength, 3),
    }, config)


# =============================================================================
# End of month
# =============================================================================

def _month_spike_ratios(
    history: list[Transaction],
    now: datetime,
    config: EngineConfig,
) -> list[tuple[float, float]]:
    """(late/early daily-rate ratio, late total) per month with an observed late period."""
    split_day = config.end_of_month_start_day - 1
    early: dict[tuple[int, int], float] = defaultdict(float)
    late: dict[tuple[int, int], float] = defaultdict(float)
    for t in history:
        if not t.is_expense:
            continue
        key = (t.timestamp.year, t.timestamp.month)
        if t.timestamp.day <= split_day:
            early[key] += t.magnitude
        else:
            late[key] += t.magnitude

    ratios = []
    for key in sorted(set(early) | set(late)):
        year, month = key
        days_in_month = calendar.monthrange(year, month)[1]
        if (year, month) == (now.year, now.month):
            late_days = now.day - split_day
        else:
            late_days = days_in_month - split_day
        early_total = early.get(key, 0.0)
        if late_days <= 0 or early_total <= 0:
            continue
        early_rate = early_total / split_day
        late_rate = late.get(key, 0.0) / late_days
        ratios.append((late_rate / early_rate, late.get(key, 0.0)))
    return ratios


def detect_end_of_month(
    history: Iterable[Any] | None,
    now: datetime,
    previous: float = 0.0,
    elapsed_days: float = 1.0,
    config: EngineConfig = DEFAULT_CONFIG,
    seasonal_factor: float = 1.0,
) -> DetectionResult:
    """
    Detect a repeated late-month spending spike.

    Each month's daily expense rate after day 20 is compared with its rate
    over days 1-20. At least `end_of_month_min_months` months must spike by
    `end_of_month_spike_ratio` or more.
    """
    behavior = BehaviorType.END_OF_MONTH
    now = ensure_utc(now)
    ratios = _month_spike_ratios(normalize_history(history, now), now, config)
    spikes = [(r, total) for r, total in ratios if r >= config.end_of_month_spike_ratio]

    if len(ratios) < config.end_of_month_min_months or len(spikes) < config.end_of_month_min_months:
        return _finish(behavior, 0.0, previous, elapsed_days, seasonal_factor, "insufficient_data", {
            "months_evaluated": len(ratios),
            "spiking_months": len(spikes),
        }, config)

    avg_ratio = sum(r for r, _ in spikes) / len(spikes)
    avg_late_total = sum(total for _, total in spikes) / len(spikes)
    raw = (
        0.5 * min(1.0, (avg_ratio - 1) / 2)
        + 0.3 * min(1.0, len(spikes) / len(ratios))
        + 0.2 * min(1.0, avg_late_total / 500)
    )
    return _finish(behavior, raw, previous, elapsed_days, seasonal_factor, "pattern_found", {
        "months_evaluated": len(ratios),
        "spiking_months": len(spikes),
        "avg_spike_ratio": round(avg_ratio, 3),
    }, config)


# =============================================================================
# Dispatch
# =============================================================================

def detect(
    behavior: BehaviorType,
    history: Iterable[Any] | None,
    now: datetime,
    previous: float = 0.0,
    elapsed_days: float = 1.0,
    config: EngineConfig = DEFAULT_CONFIG,
    seasonal_factor: float = 1.0,
) -> DetectionResult:
    """Run the detector for one behavior type."""
    match behavior:
        case BehaviorType.SMALL_RECURRING:
            detector = detect_small_recurring
        case BehaviorType.STRESS_SPENDING:
            detector = detect_stress_spending
        case BehaviorType.END_OF_MONTH:
            detector = detect_end_of_month
    return detector(history, now, previous, elapsed_days, config, seasonal_factor)


def elapsed_days_since(last: datetime | None, now: datetime) -> float:
    """Days since the last evaluation (1 day when there was none)."""
    if last is None:
        return 1.0
    return max(0.0, (ensure_utc(now) - ensure_utc(last)) / _DAY)


def run_detection(
    profile: BehavioralProfile,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> dict[BehaviorType, DetectionResult]:
    """Run all three detectors against a profile's previous confidences."""
    now = ensure_utc(now)
    items = normalize_history(history, now)
    elapsed = elapsed_days_since(profile.last_evaluated_at, now)
    factor = seasonal_factor(profile.seasonal_factors, now, config)
    return {
        behavior: detect(
            behavior, items, now,
            previous=profile.get_confidence(behavior),
            elapsed_days=elapsed,
            config=config,
            seasonal_factor=factor,
        )
        for behavior in BEHAVIOR_PRECEDENCE
    }


# =============================================================================
# Seasonal factors
# =============================================================================

def is_holiday_period(now: datetime) -> bool:
    """Nov 15 through Jan 5."""
    return (
        (now.month == 11 and now.day >= 15)
        or now.month == 12
        or (now.month == 1 and now.day <= 5)
    )


def seasonal_factor(
    factors: SeasonalFactors,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> float:
    """Combined month x weekday x holiday multiplier for `now`."""
    month_factor = factors.month_factors[now.month - 1]
    weekday_factor = factors.weekday_factors[now.weekday()]
    holiday = config.seasonal_holiday_boost if is_holiday_period(now) else 1.0
    return month_factor * weekday_factor * holiday


def should_recalibrate(
    factors: SeasonalFactors,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> bool:
    if factors.calibrated_at is None:
        return True
    return ensure_utc(now) - factors.calibrated_at >= timedelta(days=config.seasonal_calibration_days)


def calibrate_seasonal_factors(
    history: Iterable[Any] | None,
    existing: SeasonalFactors,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> SeasonalFactors:
    """
    Derive month and weekday factors from average expense size.

    With fewer than `seasonal_min_transactions` transactions the existing
    factors are returned unchanged. Periods without data keep their existing
    factor; month factors are clamped to [0.7, 1.5], weekday to [0.8, 1.4].
    """
    items = normalize_history(history, now)
    if len(items) < config.seasonal_min_transactions:
        return existing

    by_month: dict[int, list[float]] = defaultdict(list)
    by_weekday: dict[int, list[float]] = defaultdict(list)
    for t in items:
        if not t.is_expense:
            continue
        by_month[t.timestamp.month - 1].append(t.magnitude)
        by_weekday[t.timestamp.weekday()].append(t.magnitude)

    if not by_month:
        return existing

    month_avg = {m: sum(v) / len(v) for m, v in by_month.items()}
    weekday_avg = {d: sum(v) / len(v) for d, v in by_weekday.items()}
    overall_month = sum(month_avg.values()) / len(month_avg)
    overall_weekday = sum(weekday_avg.values()) / len(weekday_avg)

    month_factors = tuple(
        max(0.7, min(1.5, month_avg[m] / overall_month)) if m in month_avg and overall_month > 0
        else existing.month_factors[m]
        for m in range(12)
    )
    weekday_factors = tuple(
        max(0.8, min(1.4, weekday_avg[d] / overall_weekday)) if d in weekday_avg and overall_weekday > 0
        else existing.weekday_factors[d]
        for d in range(7)
    )
    logger.debug("Seasonal factors recalibrated from %d transactions", len(items))
    return replace(
        existing,
        month_factors=month_factors,
        weekday_factors=weekday_factors,
        calibrated_at=ensure_utc(now),
    )


# =============================================================================
# Confidence history
# =============================================================================

def record_confidence_snapshot(
    profile: BehavioralProfile,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> bool:
    """
    Append the current confidences to the profile's bounded history.

    At most one entry per `confidence_history_min_gap_hours`; the oldest
    entries are dropped beyond `confidence_history_max`.

    Returns:
        True if a snapshot was recorded
    """
    now = ensure_utc(now)
    history = profile.confidence_history
    min_gap = timedelta(hours=config.confidence_history_min_gap_hours)
    if history and now - history[-1].at < min_gap:
        return False

    history.append(ConfidenceSnapshot(
        at=now,
        small_recurring=profile.get_confidence(BehaviorType.SMALL_RECURRING),
        stress_spending=profile.get_confidence(BehaviorType.STRESS_SPENDING),
        end_of_month=profile.get_confidence(BehaviorType.END_OF_MONTH),
    ))
    overflow = len(history) - config.confidence_history_max
    if overflow > 0:
        del history[:overflow]
    return True


def confidence_trend(
    history: list[ConfidenceSnapshot],
    behavior: BehaviorType,
    window: int = 5,
    tolerance: float = 0.05,
) -> str:
    """Classify the recent trajectory of one confidence as rising/falling/stable."""
    recent = history[-window:]
    if len(recent) < 2:
        return "stable"
    delta = recent[-1].value(behavior) - recent[0].value(behavior)
    if delta > tolerance:
        return "rising"
    if delta < -tolerance:
        return "falling"
    return "stable"
