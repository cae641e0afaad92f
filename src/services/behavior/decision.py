"""
Decision Engine for the Behavioral Engine.

decide() is the pure gate: it answers "may an intervention be shown right
now?" from the profile alone. make_decision() composes that gate with the
weekly limit, the moment requirement and the choice of intervention strength
for one logical turn.

Gates in order (first failure wins):
1. Interventions disabled by the user
2. State is COOLDOWN or WITHDRAWN
3. Daily limit reached
4. Unexpired cooldown
5. No active behavior
6. Active confidence below the decision bar (0.60)

Reference: DESIGN.md Section 4.4 (Decision Engine)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig
from src.models.behavior import (
    BehavioralProfile,
    BehaviorType,
    InterventionType,
    MomentType,
    UserState,
    ensure_utc,
)
from src.services.behavior.moments import MomentResult

# Moments that warrant the stronger reflection message (alternating with mirrors).
REFLECTION_MOMENTS: frozenset[MomentType] = frozenset({
    MomentType.REPEAT_PURCHASE,
    MomentType.HABITUAL_TIME,
    MomentType.STRESS_CLUSTER,
    MomentType.COLLAPSE_START,
})


@dataclass(frozen=True)
class Decision:
    """Whether to intervene, and if so with what."""

    should_intervene: bool
    reason: str
    behavior: BehaviorType | None = None
    intervention_type: InterventionType | None = None
    moment_type: MomentType | None = None


def _blocked(reason: str) -> Decision:
    return Decision(should_intervene=False, reason=reason)


def decide(
    profile: BehavioralProfile,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Decision:
    """
    Gate an intervention on the profile alone.

    Does not pick a message or move state.
    """
    now = ensure_utc(now)
    if not profile.interventions_enabled:
        return _blocked("interventions_disabled")
    if profile.user_state in (UserState.COOLDOWN, UserState.WITHDRAWN):
        return _blocked(f"state_{profile.user_state.value.lower()}")
    if profile.interventions_today >= config.max_interventions_per_day:
        return _blocked("daily_limit_reached")
    if profile.cooldown_ends_at is not None and now < profile.cooldown_ends_at:
        return _blocked("cooldown_active")
    if profile.active_behavior is None:
        return _blocked("no_active_behavior")
    if profile.active_confidence < config.decision_min_confidence:
        return _blocked("confidence_below_threshold")
    return Decision(should_intervene=True, reason="eligible", behavior=profile.active_behavior)


def select_intervention_type(
    moment: MomentResult,
    last_type: InterventionType | None,
) -> InterventionType:
    """
    Relapse -> reinforcement; pattern moments alternate reflection and mirror;
    everything else is an immediate mirror.
    """
    if moment.moment_type == MomentType.RELAPSE_AFTER_IMPROVEMENT:
        return InterventionType.REINFORCEMENT
    if moment.moment_type in REFLECTION_MOMENTS:
        if last_type == InterventionType.PATTERN_REFLECTION:
            return InterventionType.IMMEDIATE_MIRROR
        return InterventionType.PATTERN_REFLECTION
    return InterventionType.IMMEDIATE_MIRROR


def make_decision(
    profile: BehavioralProfile,
    moment: MomentResult,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Decision:
    """Full turn decision: profile gate, weekly limit, moment, intervention strength."""
    gate = decide(profile, now, config)
    if not gate.should_intervene:
        return gate
    if profile.interventions_this_week >= config.max_interventions_per_week:
        return _blocked("weekly_limit_reached")
    if not moment.is_moment:
        return _blocked(f"not_a_moment:{moment.reason}")

    return Decision(
        should_intervene=True,
        reason=moment.reason,
        behavior=profile.active_behavior,
        intervention_type=select_intervention_type(moment, profile.last_intervention_type),
        moment_type=moment.moment_type,
    )
