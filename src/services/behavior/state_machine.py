"""
Behavioral State Machine.

Four coarse states per user:

    OBSERVING --(confidence >= 0.75)--> FOCUSED
    FOCUSED --(intervention delivered)--> COOLDOWN --(expired)--> FOCUSED | OBSERVING
    FOCUSED --(2 ignored / 3 dismissed)--> WITHDRAWN --(expired / positive signal)--> OBSERVING
    FOCUSED --(confidence < 0.50)--> OBSERVING

The transition table is a list of rules whose conditions are mutually
exclusive within a state, so every (state, trigger, profile) combination
matches exactly one rule. Evaluation is pure; apply_transition performs the
side effects on a profile and returns the recorded StateTransition.

Reference: DESIGN.md Section 4.3 (State Machine)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig
from src.lib.exceptions import StateError
from src.models.behavior import (
    BehavioralProfile,
    BehaviorType,
    StateTransition,
    Trigger,
    UserState,
    ensure_utc,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Rule table
# =============================================================================

@dataclass(frozen=True)
class TransitionContext:
    """Inputs a rule condition can look at."""

    profile: BehavioralProfile
    trigger: Trigger
    now: datetime
    config: EngineConfig

    @property
    def disengaged(self) -> bool:
        return (
            self.profile.ignored_interventions >= self.config.ignored_threshold
            or self.profile.dismissed_count >= self.config.dismissed_threshold
        )

    @property
    def cooldown_active(self) -> bool:
        ends = self.profile.cooldown_ends_at
        return ends is not None and self.now < ends

    @property
    def withdrawal_active(self) -> bool:
        ends = self.profile.withdrawal_ends_at
        return ends is not None and self.now < ends

    @property
    def strongest(self) -> tuple[BehaviorType, float]:
        return self.profile.strongest_behavior()


@dataclass(frozen=True)
class TransitionRule:
    """One row of the transition table. to_state None = stay put."""

    name: str
    from_state: UserState
    to_state: UserState | None
    condition: Callable[[TransitionContext], bool]
    reason: Callable[[TransitionContext], str]


def _activation(ctx: TransitionContext) -> float:
    return ctx.config.activation_threshold


TRANSITION_RULES: tuple[TransitionRule, ...] = (
    # OBSERVING
    TransitionRule(
        "observing_activate", UserState.OBSERVING, UserState.FOCUSED,
        lambda c: c.strongest[1] >= _activation(c),
        lambda c: f"Confidence {c.strongest[1]:.2f} for {c.strongest[0]} reached activation",
    ),
    TransitionRule(
        "observing_hold", UserState.OBSERVING, None,
        lambda c: c.strongest[1] < _activation(c),
        lambda c: f"Confidence too low ({c.strongest[1]:.2f})",
    ),
    # FOCUSED
    TransitionRule(
        "focused_withdraw", UserState.FOCUSED, UserState.WITHDRAWN,
        lambda c: c.disengaged,
        lambda c: (
            f"User disengaged ({c.profile.ignored_interventions} ignored, "
            f"{c.profile.dismissed_count} dismissed)"
        ),
    ),
    TransitionRule(
        "focused_cooldown", UserState.FOCUSED, UserState.COOLDOWN,
        lambda c: not c.disengaged and c.trigger == Trigger.INTERVENTION_DELIVERED,
        lambda c: "Intervention delivered",
    ),
    TransitionRule(
        "focused_deactivate", UserState.FOCUSED, UserState.OBSERVING,
        lambda c: (
            not c.disengaged
            and c.trigger != Trigger.INTERVENTION_DELIVERED
            and c.profile.active_confidence < c.config.deactivation_threshold
        ),
        lambda c: f"Active confidence dropped to {c.profile.active_confidence:.2f}",
    ),
    TransitionRule(
        "focused_hold", UserState.FOCUSED, None,
        lambda c: (
            not c.disengaged
            and c.trigger != Trigger.INTERVENTION_DELIVERED
            and c.profile.active_confidence >= c.config.deactivation_threshold
        ),
        lambda c: "Still focused",
    ),
    # COOLDOWN
    TransitionRule(
        "cooldown_hold", UserState.COOLDOWN, None,
        lambda c: c.cooldown_active,
        lambda c: "Cooldown still active",
    ),
    TransitionRule(
        "cooldown_resume", UserState.COOLDOWN, UserState.FOCUSED,
        lambda c: not c.cooldown_active and c.profile.active_confidence >= _activation(c),
        lambda c: "Cooldown ended, pattern still strong",
    ),
    TransitionRule(
        "cooldown_release", UserState.COOLDOWN, UserState.OBSERVING,
        lambda c: not c.cooldown_active and c.profile.active_confidence < _activation(c),
        lambda c: "Cooldown ended, pattern weakened",
    ),
    # WITHDRAWN
    TransitionRule(
        "withdrawn_positive", UserState.WITHDRAWN, UserState.OBSERVING,
        lambda c: c.trigger == Trigger.POSITIVE_SIGNAL,
        lambda c: "Positive signal, early exit from withdrawal",
    ),
    TransitionRule(
        "withdrawn_expired", UserState.WITHDRAWN, UserState.OBSERVING,
        lambda c: c.trigger != Trigger.POSITIVE_SIGNAL and not c.withdrawal_active,
        lambda c: "Withdrawal period ended",
    ),
    TransitionRule(
        "withdrawn_hold", UserState.WITHDRAWN, None,
        lambda c: c.trigger != Trigger.POSITIVE_SIGNAL and c.withdrawal_active,
        lambda c: "Withdrawal still active",
    ),
)


def matching_rules(ctx: TransitionContext) -> list[TransitionRule]:
    """All rules for the current state whose condition holds."""
    return [
        rule for rule in TRANSITION_RULES
        if rule.from_state == ctx.profile.user_state and rule.condition(ctx)
    ]


# =============================================================================
# Evaluation
# =============================================================================

@dataclass(frozen=True)
class TransitionResult:
    """Pure evaluation of the state machine for one trigger."""

    rule: str
    from_state: UserState
    to_state: UserState
    reason: str
    active_behavior: BehaviorType | None    # After the transition

    @property
    def changed(self) -> bool:
        return self.from_state != self.to_state


def evaluate_transition(
    profile: BehavioralProfile,
    trigger: Trigger,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> TransitionResult:
    """
    Find the applicable transition without touching the profile.

    Raises:
        StateError: If the rule table does not cover the input (a table defect)
    """
    ctx = TransitionContext(profile, trigger, ensure_utc(now), config)
    rules = matching_rules(ctx)
    if not rules:
        raise StateError(
            f"No transition rule for {profile.user_state} on {trigger}",
            details={"user_id": profile.user_id},
        )

    rule = rules[0]
    to_state = rule.to_state or profile.user_state
    match to_state:
        case UserState.FOCUSED:
            active = profile.active_behavior or ctx.strongest[0]
        case UserState.COOLDOWN:
            active = profile.active_behavior
        case UserState.OBSERVING | UserState.WITHDRAWN:
            active = None

    return TransitionResult(
        rule=rule.name,
        from_state=profile.user_state,
        to_state=to_state,
        reason=rule.reason(ctx),
        active_behavior=active,
    )


def apply_transition(
    profile: BehavioralProfile,
    result: TransitionResult,
    trigger: Trigger,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> StateTransition | None:
    """
    Apply a TransitionResult's side effects to the profile.

    Returns:
        The recorded StateTransition, or None when the state did not change
    """
    if not result.changed:
        return None

    now = ensure_utc(now)
    previous = profile.user_state
    profile.user_state = result.to_state
    profile.active_behavior = result.active_behavior

    match result.to_state:
        case UserState.COOLDOWN:
            profile.cooldown_ends_at = now + timedelta(hours=config.cooldown_hours)
        case UserState.WITHDRAWN:
            profile.withdrawal_ends_at = now + timedelta(days=config.withdrawal_days)
        case UserState.OBSERVING if previous == UserState.WITHDRAWN:
            profile.withdrawal_ends_at = None
            profile.ignored_interventions = 0
            profile.dismissed_count = 0
        case _:
            pass

    transition = StateTransition(
        from_state=previous,
        to_state=result.to_state,
        reason=result.reason,
        trigger=trigger,
        at=now,
    )
    logger.info(
        "State transition for %s: %s -> %s (%s)",
        profile.user_id, previous, result.to_state, result.reason,
    )
    return transition


def transition(
    profile: BehavioralProfile,
    trigger: Trigger,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> StateTransition | None:
    """Evaluate and apply in one step."""
    result = evaluate_transition(profile, trigger, now, config)
    return apply_transition(profile, result, trigger, now, config)
