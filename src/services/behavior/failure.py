"""
Failure Handler for the Behavioral Engine.

Turns negative user signals into profile penalties:
- USER_IGNORED: extend cooldown 24h; withdraw 7 days at the 2nd ignore
- USER_DISMISSED: extend cooldown 48h; withdraw 7 days at the 3rd dismissal
- USER_ANNOYED: withdraw 14 days immediately, bypassing the counters
- USER_CHURNING: full reset (the only path that zeroes confidence)
- CONFIDENCE_DROPPED: 24h cooldown, no state change

Policy and mutation are separate: handle_failure() describes the action,
calculate_profile_updates() turns it into concrete field values, and
apply_failure_response() writes them onto a profile.

Reference: DESIGN.md Section 4.7 (Failure Handler)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig
from src.models.behavior import (
    BEHAVIOR_PRECEDENCE,
    BehavioralProfile,
    UserResponse,
    UserState,
    ensure_utc,
)

logger = logging.getLogger(__name__)


class FailureMode(StrEnum):
    """Negative signals the handler reacts to."""

    USER_IGNORED = "USER_IGNORED"
    USER_DISMISSED = "USER_DISMISSED"
    USER_ANNOYED = "USER_ANNOYED"
    USER_CHURNING = "USER_CHURNING"
    CONFIDENCE_DROPPED = "CONFIDENCE_DROPPED"


class FailureAction(StrEnum):
    """Penalty applied to the profile."""

    EXTEND_COOLDOWN = "extend_cooldown"
    WITHDRAW = "withdraw"
    RESET = "reset"
    REDUCE_FREQUENCY = "reduce_frequency"


@dataclass(frozen=True)
class FailureResponse:
    """Description of what to do about a failure signal."""

    mode: FailureMode
    action: FailureAction
    reason: str
    duration_hours: float | None = None


@dataclass(frozen=True)
class AnnoyanceSignal:
    """Result of annoyance detection."""

    is_annoyed: bool
    trigger: str | None = None             # "rapid_dismiss" or "settings_change"


# =============================================================================
# Policy
# =============================================================================

def handle_failure(
    mode: FailureMode,
    profile: BehavioralProfile,
    config: EngineConfig = DEFAULT_CONFIG,
) -> FailureResponse:
    """
    Decide the penalty for a failure signal.

    Counter-based modes count the incoming event, so the profile counters are
    read as "before this event".
    """
    match mode:
        case FailureMode.USER_IGNORED:
            count = profile.ignored_interventions + 1
            if count >= config.ignored_threshold:
                return FailureResponse(
                    mode, FailureAction.WITHDRAW,
                    f"Ignored {count} interventions",
                    config.withdrawal_days * 24,
                )
            return FailureResponse(
                mode, FailureAction.EXTEND_COOLDOWN,
                f"Ignored {count} intervention(s), backing off",
                config.ignored_cooldown_hours,
            )
        case FailureMode.USER_DISMISSED:
            count = profile.dismissed_count + 1
            if count >= config.dismissed_threshold:
                return FailureResponse(
                    mode, FailureAction.WITHDRAW,
                    f"Dismissed {count} interventions",
                    config.withdrawal_days * 24,
                )
            return FailureResponse(
                mode, FailureAction.EXTEND_COOLDOWN,
                f"Dismissed {count} intervention(s), backing off",
                config.extended_cooldown_hours,
            )
        case FailureMode.USER_ANNOYED:
            return FailureResponse(
                mode, FailureAction.WITHDRAW,
                "User annoyed, extended withdrawal",
                config.annoyance_withdrawal_days * 24,
            )
        case FailureMode.USER_CHURNING:
            return FailureResponse(mode, FailureAction.RESET, "User inactive, full reset")
        case FailureMode.CONFIDENCE_DROPPED:
            return FailureResponse(
                mode, FailureAction.REDUCE_FREQUENCY,
                "Confidence dropped, reducing frequency",
                config.confidence_drop_cooldown_hours,
            )


def failure_mode_for_response(response: UserResponse) -> FailureMode | None:
    """Map a UI response to a failure mode (None for positive responses)."""
    match response:
        case UserResponse.IGNORED:
            return FailureMode.USER_IGNORED
        case UserResponse.DISMISSED:
            return FailureMode.USER_DISMISSED
        case UserResponse.ACKNOWLEDGED | UserResponse.ENGAGED:
            return None


def detect_annoyance(
    profile: BehavioralProfile,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> AnnoyanceSignal:
    """Rapid dismissals within the annoyance window, or interventions switched off."""
    now = ensure_utc(now)
    window_start = now - timedelta(hours=config.annoyance_window_hours)
    recent = [d for d in profile.recent_dismissals if window_start <= d <= now]
    if len(recent) >= config.annoyance_dismissals:
        return AnnoyanceSignal(True, "rapid_dismiss")
    if not profile.interventions_enabled:
        return AnnoyanceSignal(True, "settings_change")
    return AnnoyanceSignal(False)


def is_churning(
    profile: BehavioralProfile,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> bool:
    """No activity for `inactive_days_for_reset` days."""
    if profile.last_activity_at is None:
        return False
    return ensure_utc(now) - profile.last_activity_at >= timedelta(days=config.inactive_days_for_reset)


# =============================================================================
# Mutation
# =============================================================================

def _later(current: datetime | None, candidate: datetime) -> datetime:
    """Cooldowns only ever move forward."""
    if current is None or candidate > current:
        return candidate
    return current


def calculate_profile_updates(
    profile: BehavioralProfile,
    response: FailureResponse,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> dict[str, Any]:
    """
    Concrete field values for a FailureResponse, without touching the profile.

    Returns:
        Mapping of BehavioralProfile attribute name -> new value
    """
    now = ensure_utc(now)
    updates: dict[str, Any] = {}

    if response.mode == FailureMode.USER_IGNORED:
        updates["ignored_interventions"] = profile.ignored_interventions + 1
    elif response.mode == FailureMode.USER_DISMISSED:
        window_start = now - timedelta(hours=config.annoyance_window_hours)
        updates["dismissed_count"] = profile.dismissed_count + 1
        updates["recent_dismissals"] = [
            d for d in profile.recent_dismissals if d >= window_start
        ] + [now]

    duration = timedelta(hours=response.duration_hours or 0)
    match response.action:
        case FailureAction.EXTEND_COOLDOWN | FailureAction.REDUCE_FREQUENCY:
            updates["cooldown_ends_at"] = _later(profile.cooldown_ends_at, now + duration)
        case FailureAction.WITHDRAW:
            updates["user_state"] = UserState.WITHDRAWN
            updates["active_behavior"] = None
            updates["withdrawal_ends_at"] = _later(profile.withdrawal_ends_at, now + duration)
        case FailureAction.RESET:
            updates.update({
                "user_state": UserState.OBSERVING,
                "active_behavior": None,
                "confidence": {behavior: 0.0 for behavior in BEHAVIOR_PRECEDENCE},
                "ignored_interventions": 0,
                "dismissed_count": 0,
                "interventions_today": 0,
                "interventions_this_week": 0,
                "recent_dismissals": [],
                "cooldown_ends_at": None,
                "withdrawal_ends_at": None,
            })
    return updates


def apply_failure_response(
    profile: BehavioralProfile,
    response: FailureResponse,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> dict[str, Any]:
    """Write calculate_profile_updates() onto the profile and return the updates."""
    updates = calculate_profile_updates(profile, response, now, config)
    for name, value in updates.items():
        setattr(profile, name, value)
    logger.info(
        "Failure handled for %s: %s -> %s (%s)",
        profile.user_id, response.mode, response.action, response.reason,
    )
    return updates
