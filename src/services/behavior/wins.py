"""
Win / Relapse / Streak Analyzer for the Behavioral Engine.

Compares behavior-matching transaction counts in the trailing 7 days against
the 7 days before that:
- Pattern break: >= 50% fewer (celebrated), 30-50% fewer (silent win)
- Improvement: same comparison over all expenses, >= 30% / 10-30%
- Streak milestone: current_streak hits 7, 14, 30, 60 or 90
- Relapse: >= 30% / 50% / 100% more within 30 days of the last win
- Streak break: relapse, inactivity, withdrawal or an explicit reset

Relapse is evaluated first and suppresses win detection in the same turn.

Minimum samples: every reduction check needs a prior-week count of at least
`win_min_prior_count`; every relapse needs at least that many matches this
week, whatever the prior week held.

Reference: DESIGN.md Section 4.6 (Win / Relapse / Streak Analyzer)
"""

from __future__ import annotations

import logging
import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig
from src.models.behavior import (
    BehavioralProfile,
    BehaviorType,
    RelapseSeverity,
    StreakBreakEvent,
    StreakBreakReason,
    Transaction,
    UserState,
    WinEvent,
    WinType,
    ensure_utc,
)
from src.services.behavior.detection import matches_behavior, normalize_history
from src.services.behavior.messages import (
    select_relapse_message,
    select_streak_break_message,
    select_win_message,
)

logger = logging.getLogger(__name__)

_WEEK = timedelta(days=7)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class WeeklyCounts:
    """Matching transaction counts for the trailing week and the week before."""

    this_week: int
    last_week: int


@dataclass
class RelapseResult:
    """Outcome of relapse detection."""

    is_relapse: bool = False
    severity: RelapseSeverity | None = None
    increase_percent: int = 0
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def breaks_streak(self) -> bool:
        return self.severity in (RelapseSeverity.MODERATE, RelapseSeverity.SEVERE)


@dataclass
class OutcomeAnalysis:
    """Everything the analyzer found in one evaluation turn."""

    relapse: RelapseResult
    win: WinEvent | None = None
    streak_break: StreakBreakEvent | None = None


# =============================================================================
# Counting
# =============================================================================

def count_weekly(
    history: Iterable[Any] | None,
    now: datetime,
    predicate,
) -> WeeklyCounts:
    """Count expenses matching `predicate` in [now-7d, now] and [now-14d, now-7d)."""
    now = ensure_utc(now)
    this_start = now - _WEEK
    last_start = now - 2 * _WEEK
    this_week = last_week = 0
    for t in normalize_history(history, now):
        if not t.is_expense or t.timestamp < last_start or not predicate(t):
            continue
        if t.timestamp >= this_start:
            this_week += 1
        else:
            last_week += 1
    return WeeklyCounts(this_week=this_week, last_week=last_week)


def behavior_counts(
    history: Iterable[Any] | None,
    behavior: BehaviorType,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> WeeklyCounts:
    return count_weekly(history, now, lambda t: matches_behavior(t, behavior, config))


def reduction_percent(counts: WeeklyCounts) -> int:
    """Week-over-week reduction in whole percent (0 when last week was empty)."""
    if counts.last_week <= 0:
        return 0
    return round((counts.last_week - counts.this_week) / counts.last_week * 100)


def increase_percent(counts: WeeklyCounts, config: EngineConfig = DEFAULT_CONFIG) -> int:
    """
    Week-over-week increase in whole percent.

    An empty prior week counts as a 100% increase once this week reaches
    `win_min_prior_count`.
    """
    if counts.last_week > 0:
        return round((counts.this_week - counts.last_week) / counts.last_week * 100)
    if counts.this_week >= config.win_min_prior_count:
        return 100
    return 0


# =============================================================================
# Wins
# =============================================================================

def check_pattern_break(
    behavior: BehaviorType,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> WinEvent | None:
    """Fewer behavior-matching expenses than the prior week."""
    counts = behavior_counts(history, behavior, now, config)
    return _reduction_win(
        counts, behavior, now, WinType.PATTERN_BREAK,
        config.win_pattern_break_threshold, config.win_improvement_threshold, config, rng,
    )


def check_improvement(
    behavior: BehaviorType,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> WinEvent | None:
    """Fewer expenses overall than the prior week (lower celebration bar)."""
    counts = count_weekly(history, now, lambda t: True)
    return _reduction_win(
        counts, behavior, now, WinType.IMPROVEMENT,
        config.win_improvement_threshold, config.win_silent_threshold, config, rng,
    )


def _reduction_win(
    counts: WeeklyCounts,
    behavior: BehaviorType,
    now: datetime,
    win_type: WinType,
    celebrate_at: float,
    silent_at: float,
    config: EngineConfig,
    rng: random.Random | None,
) -> WinEvent | None:
    if counts.last_week < config.win_min_prior_count:
        return None

    reduction = (counts.last_week - counts.this_week) / counts.last_week
    metadata = {
        "previousCount": counts.last_week,
        "currentCount": counts.this_week,
        "reductionPercent": reduction_percent(counts),
        "source": win_type.value,
    }
    if reduction >= celebrate_at:
        return WinEvent(
            win_type=win_type,
            behavior=behavior,
            occurred_at=ensure_utc(now),
            message=select_win_message(win_type, rng=rng),
            celebrate=True,
            metadata=metadata,
        )
    if reduction >= silent_at:
        return WinEvent(
            win_type=WinType.SILENT_WIN,
            behavior=behavior,
            occurred_at=ensure_utc(now),
            message="",
            celebrate=False,
            metadata=metadata,
        )
    return None


def check_streak_milestone(
    profile: BehavioralProfile,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> WinEvent | None:
    """current_streak exactly on a milestone that has not been celebrated yet."""
    streak = profile.current_streak
    if streak not in config.win_streak_milestones or profile.active_behavior is None:
        return None
    if profile.celebrated_milestone == streak:
        return None
    return WinEvent(
        win_type=WinType.STREAK_MILESTONE,
        behavior=profile.active_behavior,
        occurred_at=ensure_utc(now),
        message=select_win_message(WinType.STREAK_MILESTONE, streak, rng),
        celebrate=True,
        metadata={"streakDays": streak},
    )


def detect_win(
    profile: BehavioralProfile,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> WinEvent | None:
    """
    First applicable win: pattern break, then streak milestone, then improvement.

    Reduction wins are spaced at least `win_min_gap_hours` apart; a pending
    streak milestone is not held back by that gap.
    """
    behavior = profile.active_behavior
    if behavior is None:
        return None

    now = ensure_utc(now)
    gap_open = (
        profile.last_win_at is None
        or now - profile.last_win_at >= timedelta(hours=config.win_min_gap_hours)
    )

    if gap_open:
        pattern_break = check_pattern_break(behavior, history, now, config, rng)
        if pattern_break is not None:
            return pattern_break

    milestone = check_streak_milestone(profile, now, config, rng)
    if milestone is not None:
        return milestone

    if gap_open:
        return check_improvement(behavior, history, now, config, rng)
    return None


# =============================================================================
# Relapse
# =============================================================================

def detect_relapse(
    profile: BehavioralProfile,
    behavior: BehaviorType | None,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> RelapseResult:
    """More behavior-matching expenses than the prior week, shortly after a win."""
    if behavior is None or profile.last_win_at is None:
        return RelapseResult()

    now = ensure_utc(now)
    since_win = now - profile.last_win_at
    if since_win < timedelta(0) or since_win > timedelta(days=config.relapse_window_days):
        return RelapseResult()

    counts = behavior_counts(history, behavior, now, config)
    if counts.this_week < config.win_min_prior_count:
        return RelapseResult()

    increase = increase_percent(counts, config)
    if increase >= config.relapse_severe_percent:
        severity = RelapseSeverity.SEVERE
    elif increase >= config.relapse_moderate_percent:
        severity = RelapseSeverity.MODERATE
    elif increase >= config.relapse_mild_percent:
        severity = RelapseSeverity.MILD
    else:
        return RelapseResult(increase_percent=increase)

    return RelapseResult(
        is_relapse=True,
        severity=severity,
        increase_percent=increase,
        message=select_relapse_message(behavior, severity, rng),
        metadata={
            "previousCount": counts.last_week,
            "currentCount": counts.this_week,
            "increasePercent": increase,
            "daysSinceWin": since_win.days,
        },
    )


# =============================================================================
# Streak break
# =============================================================================

def _streak_break(
    profile: BehavioralProfile,
    reason: StreakBreakReason,
    now: datetime,
    metadata: dict[str, Any],
    rng: random.Random | None,
) -> StreakBreakEvent:
    return StreakBreakEvent(
        reason=reason,
        streak_length=profile.current_streak,
        broken_at=ensure_utc(now),
        behavior=profile.active_behavior,
        message=select_streak_break_message(reason, profile.current_streak, rng),
        metadata=metadata,
    )


def last_matching_transaction(
    history: Iterable[Any] | None,
    behavior: BehaviorType,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Transaction | None:
    matching = [t for t in normalize_history(history, now) if matches_behavior(t, behavior, config)]
    return matching[-1] if matching else None


def check_streak_break(
    profile: BehavioralProfile,
    history: Iterable[Any] | None,
    now: datetime,
    relapse: RelapseResult | None = None,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> StreakBreakEvent | None:
    """
    Decide whether the current streak ends this turn.

    Checked in order: severe relapse, moderate relapse, inactivity of the
    active behavior, withdrawal. A profile without a streak never breaks.
    """
    if profile.current_streak <= 0:
        return None

    now = ensure_utc(now)
    if relapse is not None and relapse.is_relapse:
        details = {"increasePercent": relapse.increase_percent, "severity": str(relapse.severity)}
        if relapse.severity == RelapseSeverity.SEVERE:
            return _streak_break(profile, StreakBreakReason.SEVERE_REGRESSION, now, details, rng)
        if relapse.severity == RelapseSeverity.MODERATE:
            return _streak_break(profile, StreakBreakReason.BEHAVIOR_RELAPSE, now, details, rng)

    if profile.active_behavior is not None:
        last = last_matching_transaction(history, profile.active_behavior, now, config)
        if last is not None:
            days_since = (now - last.timestamp).days
            if days_since >= config.streak_break_inactivity_days:
                return _streak_break(profile, StreakBreakReason.INACTIVITY, now, {
                    "daysSinceLastBehavior": days_since,
                    "threshold": config.streak_break_inactivity_days,
                }, rng)

    if profile.user_state == UserState.WITHDRAWN:
        return _streak_break(profile, StreakBreakReason.WITHDRAWAL_TRIGGERED, now, {
            "ignoredCount": profile.ignored_interventions,
            "dismissedCount": profile.dismissed_count,
        }, rng)

    return None


def user_reset_break(
    profile: BehavioralProfile,
    now: datetime,
    rng: random.Random | None = None,
) -> StreakBreakEvent | None:
    """Streak break for an explicit profile reset (None without a streak)."""
    if profile.current_streak <= 0:
        return None
    return _streak_break(profile, StreakBreakReason.USER_RESET, now, {}, rng)


def apply_streak_break(profile: BehavioralProfile, event: StreakBreakEvent) -> None:
    """Zero the streak. Confidences and active_behavior are left alone."""
    profile.current_streak = 0
    profile.celebrated_milestone = 0
    logger.info(
        "Streak broken for %s: %s after %d days",
        profile.user_id, event.reason, event.streak_length,
    )


def apply_win(profile: BehavioralProfile, win: WinEvent) -> None:
    """Record a win on the profile."""
    profile.last_win_at = win.occurred_at
    if win.win_type == WinType.STREAK_MILESTONE:
        profile.celebrated_milestone = profile.current_streak


# =============================================================================
# Combined analysis
# =============================================================================

def analyze_outcomes(
    profile: BehavioralProfile,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> OutcomeAnalysis:
    """
    Relapse first, then streak break, then wins.

    Any relapse (including mild) suppresses win detection for the turn.
    """
    relapse = detect_relapse(profile, profile.active_behavior, history, now, config, rng)
    streak_break = check_streak_break(profile, history, now, relapse, config, rng)

    win = None
    if not relapse.is_relapse:
        subject = profile
        if streak_break is not None:
            subject = profile.copy()
            subject.current_streak = 0
        win = detect_win(subject, history, now, config, rng)

    return OutcomeAnalysis(relapse=relapse, win=win, streak_break=streak_break)
