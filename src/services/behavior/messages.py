"""
Message Selector for the Behavioral Engine.

Static catalog of short observational mirrors ("Same place.", "Late night.")
keyed by behavior, intervention type and moment, plus the selection policy:
- Filter by (behavior, intervention type); nothing configured -> None
- Narrow to messages tagged for the moment, falling back to the full pool
- Skip the caller's recently delivered keys, falling back when exhausted
- Uniform random choice using the caller's Random instance

The recency window is owned by the caller (stored on the profile) and passed
in; the selector keeps no state of its own.

Content policy for every intervention message: at most 12 words, at most 2
sentences, no advice or motivational language.

Reference: DESIGN.md Section 4.5 (Message Selector)
"""

from __future__ import annotations

import calendar
import random
import re
from dataclasses import dataclass, field
from datetime import datetime

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig
from src.lib.exceptions import MessageCatalogError
from src.models.behavior import (
    BehaviorType,
    InterventionType,
    MomentType,
    RelapseSeverity,
    StreakBreakReason,
    WinType,
)

_SR = BehaviorType.SMALL_RECURRING
_SS = BehaviorType.STRESS_SPENDING
_EOM = BehaviorType.END_OF_MONTH
_IM = InterventionType.IMMEDIATE_MIRROR
_PR = InterventionType.PATTERN_REFLECTION
_RF = InterventionType.REINFORCEMENT
M = MomentType


# =============================================================================
# Catalog
# =============================================================================

@dataclass(frozen=True)
class InterventionMessage:
    """One catalog entry."""

    key: str
    behavior: BehaviorType
    intervention_type: InterventionType
    template: str
    moment_types: frozenset[MomentType] = field(default_factory=frozenset)


def _msg(key: str, behavior: BehaviorType, kind: InterventionType, template: str,
         *moments: MomentType) -> InterventionMessage:
    return InterventionMessage(key, behavior, kind, template, frozenset(moments))


INTERVENTION_MESSAGES: tuple[InterventionMessage, ...] = (
    # Small recurring - immediate mirror
    _msg("sr_im_01", _SR, _IM, "Same place.", M.REPEAT_PURCHASE),
    _msg("sr_im_02", _SR, _IM, "The usual.", M.REPEAT_PURCHASE, M.HABITUAL_TIME),
    _msg("sr_im_03", _SR, _IM, "Third time this week.", M.REPEAT_PURCHASE),
    _msg("sr_im_04", _SR, _IM, "Morning ritual.", M.HABITUAL_TIME),
    _msg("sr_im_05", _SR, _IM, "Same time again.", M.HABITUAL_TIME),
    _msg("sr_im_06", _SR, _IM, "Here again."),
    _msg("sr_im_07", _SR, _IM, "This one knows you."),
    _msg("sr_im_08", _SR, _IM, "Familiar."),
    # Small recurring - pattern reflection
    _msg("sr_pr_01", _SR, _PR, "Four this week. Same category.", M.REPEAT_PURCHASE),
    _msg("sr_pr_02", _SR, _PR, "Every morning. Same spot.", M.HABITUAL_TIME),
    _msg("sr_pr_03", _SR, _PR, "Small amounts. They add up."),
    _msg("sr_pr_04", _SR, _PR, "A pattern. You know this one."),
    _msg("sr_pr_05", _SR, _PR, "Same ritual. Different day.", M.HABITUAL_TIME),
    _msg("sr_pr_06", _SR, _PR, "The habit runs deep."),
    # Small recurring - reinforcement
    _msg("sr_rf_01", _SR, _RF, "Skipped it today."),
    _msg("sr_rf_02", _SR, _RF, "The pattern broke."),
    _msg("sr_rf_03", _SR, _RF, "Different today."),
    _msg("sr_rf_04", _SR, _RF, "Not this time."),
    _msg("sr_rf_05", _SR, _RF, "Morning passed. Nothing."),
    # Stress spending - immediate mirror
    _msg("ss_im_01", _SS, _IM, "Late night.", M.LATE_NIGHT_COMFORT),
    _msg("ss_im_02", _SS, _IM, "After hours.", M.LATE_NIGHT_COMFORT, M.POST_WORK_RELEASE),
    _msg("ss_im_03", _SS, _IM, "End of day.", M.POST_WORK_RELEASE),
    _msg("ss_im_04", _SS, _IM, "Comfort purchase.", M.LATE_NIGHT_COMFORT, M.POST_WORK_RELEASE),
    _msg("ss_im_05", _SS, _IM, "Second one tonight.", M.STRESS_CLUSTER),
    _msg("ss_im_06", _SS, _IM, "The night shift.", M.LATE_NIGHT_COMFORT),
    _msg("ss_im_07", _SS, _IM, "Decompressing.", M.POST_WORK_RELEASE),
    _msg("ss_im_08", _SS, _IM, "Release valve."),
    # Stress spending - pattern reflection
    _msg("ss_pr_01", _SS, _PR, "Three nights this week. Same pattern.", M.LATE_NIGHT_COMFORT),
    _msg("ss_pr_02", _SS, _PR, "After work again. A habit forming.", M.POST_WORK_RELEASE),
    _msg("ss_pr_03", _SS, _PR, "Stress shows in spending."),
    _msg("ss_pr_04", _SS, _PR, "Comfort categories. Late hours."),
    _msg("ss_pr_05", _SS, _PR, "The pattern repeats at night.", M.LATE_NIGHT_COMFORT),
    _msg("ss_pr_06", _SS, _PR, "Two in an hour. Cluster.", M.STRESS_CLUSTER),
    # Stress spending - reinforcement
    _msg("ss_rf_01", _SS, _RF, "No late-night orders."),
    _msg("ss_rf_02", _SS, _RF, "Quiet night."),
    _msg("ss_rf_03", _SS, _RF, "Different response tonight."),
    _msg("ss_rf_04", _SS, _RF, "The urge passed."),
    _msg("ss_rf_05", _SS, _RF, "Stress. No spending."),
    # End of month - immediate mirror
    _msg("eom_im_01", _EOM, _IM, "Day 24.", M.FIRST_BREACH, M.COLLAPSE_START),
    _msg("eom_im_02", _EOM, _IM, "Last week of month.", M.FIRST_BREACH, M.COLLAPSE_START),
    _msg("eom_im_03", _EOM, _IM, "End of month territory."),
    _msg("eom_im_04", _EOM, _IM, "The final stretch."),
    _msg("eom_im_05", _EOM, _IM, "Familiar timing."),
    _msg("eom_im_06", _EOM, _IM, "The pattern knows the calendar."),
    # End of month - pattern reflection
    _msg("eom_pr_01", _EOM, _PR, "Started strong. Slipping now.", M.FIRST_BREACH),
    _msg("eom_pr_02", _EOM, _PR, "Same as last month. Same days.", M.COLLAPSE_START),
    _msg("eom_pr_03", _EOM, _PR, "The pattern repeats."),
    _msg("eom_pr_04", _EOM, _PR, "Budget held. Then didn't.", M.FIRST_BREACH),
    _msg("eom_pr_05", _EOM, _PR, "Twenty days in. Letting go.", M.COLLAPSE_START),
    _msg("eom_pr_06", _EOM, _PR, "History repeating."),
    # End of month - reinforcement
    _msg("eom_rf_01", _EOM, _RF, "Day 25. Still holding."),
    _msg("eom_rf_02", _EOM, _RF, "Different this month."),
    _msg("eom_rf_03", _EOM, _RF, "The pattern broke."),
    _msg("eom_rf_04", _EOM, _RF, "End of month. Still here."),
    _msg("eom_rf_05", _EOM, _RF, "Past the usual breaking point."),
)

# Only eligible when the classified moment matches their tag.
EXTENDED_MOMENT_MESSAGES: tuple[InterventionMessage, ...] = (
    _msg("ws_im_01", _SR, _IM, "Weekend mode.", M.WEEKEND_SPLURGE),
    _msg("ws_im_02", _SR, _IM, "Saturday spending.", M.WEEKEND_SPLURGE),
    _msg("ws_pr_01", _SR, _PR, "Weekends hit different.", M.WEEKEND_SPLURGE),
    _msg("ps_im_01", _SR, _IM, "Fresh funds.", M.PAYDAY_SURGE),
    _msg("ps_im_02", _SR, _IM, "Payday energy.", M.PAYDAY_SURGE),
    _msg("ps_pr_01", _SR, _PR, "Money came. Money going.", M.PAYDAY_SURGE),
    _msg("ic_im_01", _SS, _IM, "Another one.", M.IMPULSE_CHAIN),
    _msg("ic_im_02", _SS, _IM, "Quick succession.", M.IMPULSE_CHAIN),
    _msg("ic_pr_01", _SS, _PR, "Three in thirty minutes.", M.IMPULSE_CHAIN),
    _msg("bb_im_01", _SR, _IM, "Passing time.", M.BOREDOM_BROWSE),
    _msg("bb_im_02", _SR, _IM, "Idle hands.", M.BOREDOM_BROWSE),
    _msg("bb_pr_01", _SR, _PR, "Browsing became buying.", M.BOREDOM_BROWSE),
    _msg("cb_im_01", _SR, _IM, "Same category again.", M.CATEGORY_BINGE),
    _msg("cb_im_02", _SR, _IM, "On a theme.", M.CATEGORY_BINGE),
    _msg("cb_pr_01", _SR, _PR, "Deep in one category.", M.CATEGORY_BINGE),
    _msg("bnl_im_01", _EOM, _IM, "Getting close.", M.BUDGET_NEAR_LIMIT),
    _msg("bnl_im_02", _EOM, _IM, "Near the edge.", M.BUDGET_NEAR_LIMIT),
    _msg("bnl_pr_01", _EOM, _PR, "Budget watching closely.", M.BUDGET_NEAR_LIMIT),
    _msg("st_im_01", _SR, _IM, "Tis the season.", M.SEASONAL_TRIGGER),
    _msg("st_im_02", _SR, _IM, "Holiday mode.", M.SEASONAL_TRIGGER),
    _msg("st_pr_01", _SR, _PR, "Seasonal spending activated.", M.SEASONAL_TRIGGER),
)

ALL_INTERVENTION_MESSAGES = INTERVENTION_MESSAGES + EXTENDED_MOMENT_MESSAGES

WIN_MESSAGES: dict[str, tuple[str, ...]] = {
    "pattern_break": ("The pattern broke.", "Different today.", "Not this time.", "Skipped."),
    "improvement": ("Different this week.", "Less than before.", "Something shifted."),
    "streak_7": ("Seven days.", "One week."),
    "streak_14": ("Two weeks.", "Fourteen days."),
    "streak_30": ("One month.", "Thirty days."),
    "streak_60": ("Two months.", "Sixty days."),
    "streak_90": ("Three months.", "Ninety days."),
}

RELAPSE_MESSAGES: dict[BehaviorType, dict[RelapseSeverity, tuple[str, ...]]] = {
    _SR: {
        RelapseSeverity.MILD: (
            "A few extra small purchases crept in.",
            "Those little things are adding up again.",
        ),
        RelapseSeverity.MODERATE: (
            "Small purchases are picking up again.",
            "Old habits are trying to return.",
        ),
        RelapseSeverity.SEVERE: ("Lots of small purchases this week.",),
    },
    _SS: {
        RelapseSeverity.MILD: (
            "A bit more comfort spending lately.",
            "Stress might be driving some purchases.",
        ),
        RelapseSeverity.MODERATE: ("Stress spending is creeping back.",),
        RelapseSeverity.SEVERE: ("Stress spending is back in full swing.",),
    },
    _EOM: {
        RelapseSeverity.MILD: (
            "Month-end spending picked up a bit.",
            "End of month splurge starting.",
        ),
        RelapseSeverity.MODERATE: (
            "Month-end pattern returning.",
            "The end-of-month habit is back.",
        ),
        RelapseSeverity.SEVERE: ("Big end-of-month spending this time.",),
    },
}

# {n} is replaced with the streak length.
STREAK_BREAK_MESSAGES: dict[StreakBreakReason, tuple[str, ...]] = {
    StreakBreakReason.BEHAVIOR_RELAPSE: (
        "{n} day streak ended. Patterns returned.",
        "Streak paused. Old habits crept back.",
    ),
    StreakBreakReason.INACTIVITY: (
        "{n} day streak paused due to inactivity.",
        "Streak reset. Been quiet lately.",
    ),
    StreakBreakReason.USER_RESET: ("Profile reset. Fresh start.", "Starting over from zero."),
    StreakBreakReason.SEVERE_REGRESSION: (
        "{n} day streak broken. Significant regression.",
        "Big step back.",
    ),
    StreakBreakReason.WITHDRAWAL_TRIGGERED: (
        "Taking a break from feedback.",
        "Stepping back for now.",
    ),
}

DYNAMIC_MESSAGE_TEMPLATES: dict[tuple[BehaviorType, InterventionType], tuple[str, ...]] = {
    (_SR, _IM): (
        "{category} again.",
        "${amount} at {category}.",
        "{category} number {count} today.",
        "{timeOfDay} ritual.",
    ),
    (_SS, _IM): (
        "{timeOfDay} comfort.",
        "Another one at {hour}.",
        "Number {count} tonight.",
    ),
    (_EOM, _IM): (
        "Day {day}.",
        "{daysLeft} days left.",
        "End of month territory.",
    ),
}


# =============================================================================
# Selection
# =============================================================================

def _choice(pool, rng: random.Random | None):
    return (rng or random).choice(pool)


def candidate_pool(
    behavior: BehaviorType,
    intervention_type: InterventionType,
    moment_type: MomentType | None = None,
    catalog: tuple[InterventionMessage, ...] = ALL_INTERVENTION_MESSAGES,
) -> list[InterventionMessage]:
    """
    Messages eligible for (behavior, type, moment) before recency filtering.

    Untagged-moment narrowing falls back to the whole (behavior, type) pool.
    Extended-moment entries only join the pool when their moment matches.
    """
    core = [
        m for m in catalog
        if m.behavior == behavior
        and m.intervention_type == intervention_type
        and m not in EXTENDED_MOMENT_MESSAGES
    ]
    extended = [
        m for m in catalog
        if m in EXTENDED_MOMENT_MESSAGES
        and m.behavior == behavior
        and m.intervention_type == intervention_type
        and moment_type in m.moment_types
    ]
    if not core and not extended:
        return []
    if moment_type is None:
        return core

    tagged = [m for m in core if moment_type in m.moment_types] + extended
    return tagged or core


def select_message(
    behavior: BehaviorType,
    intervention_type: InterventionType,
    moment_type: MomentType | None,
    recent_keys: list[str] | tuple[str, ...] | None,
    rng: random.Random | None = None,
    catalog: tuple[InterventionMessage, ...] = ALL_INTERVENTION_MESSAGES,
) -> InterventionMessage | None:
    """
    Pick a message for the given behavior and intervention type.

    Returns None only when the (behavior, type) pair has no catalog entry.
    """
    candidates = candidate_pool(behavior, intervention_type, moment_type, catalog)
    if not candidates:
        return None

    recent = set(recent_keys or ())
    unused = [m for m in candidates if m.key not in recent]
    return _choice(unused or candidates, rng)


def require_message(
    behavior: BehaviorType,
    intervention_type: InterventionType,
    moment_type: MomentType | None,
    recent_keys: list[str] | tuple[str, ...] | None,
    rng: random.Random | None = None,
) -> InterventionMessage:
    """select_message that treats an unconfigured pair as a catalog defect."""
    message = select_message(behavior, intervention_type, moment_type, recent_keys, rng)
    if message is None:
        raise MessageCatalogError(
            f"No message configured for {behavior}/{intervention_type}",
            details={"behavior": behavior.value, "intervention_type": intervention_type.value},
        )
    return message


def remember_message_key(
    recent_keys: list[str] | None,
    key: str,
    memory: int = DEFAULT_CONFIG.recent_message_memory,
) -> list[str]:
    """Return the new recency window with `key` appended (oldest dropped first)."""
    if memory <= 0:
        return []
    updated = [k for k in (recent_keys or []) if k != key]
    updated.append(key)
    return updated[-memory:]


# =============================================================================
# Content policy
# =============================================================================

_ADVICE_PATTERN = re.compile(
    r"\b(should|must|try|need to|don't|stop|keep it up|great job|well done|you can)\b|!",
    re.IGNORECASE,
)


def count_sentences(text: str) -> int:
    return len([part for part in re.split(r"[.?!]+", text) if part.strip()])


def validate_message(text: str, config: EngineConfig = DEFAULT_CONFIG) -> list[str]:
    """
    Check a message against the content policy.

    Returns:
        List of violations (empty when the message is acceptable)
    """
    violations = []
    if len(text.split()) > config.message_max_words:
        violations.append(f"more than {config.message_max_words} words")
    if count_sentences(text) > config.message_max_sentences:
        violations.append(f"more than {config.message_max_sentences} sentences")
    if _ADVICE_PATTERN.search(text):
        violations.append("advice or motivational language")
    return violations


# =============================================================================
# Dynamic templates
# =============================================================================

@dataclass
class MessageContext:
    """Runtime values for dynamic template placeholders."""

    amount: float | None = None
    category: str | None = None
    time_of_day: str | None = None
    transaction_count: int | None = None


_PLACEHOLDER = re.compile(r"\$?\{[^}]+\}")


def format_category(category: str) -> str:
    """'food_delivery' -> 'Food Delivery'."""
    return " ".join(word.capitalize() for word in category.replace("_", " ").split())


def days_left_in_month(now: datetime) -> int:
    return calendar.monthrange(now.year, now.month)[1] - now.day


def dynamic_template_key(behavior: BehaviorType, intervention_type: InterventionType, index: int) -> str:
    return f"{behavior.value}_{intervention_type.value}_dyn_{index}"


def generate_dynamic_message(
    behavior: BehaviorType,
    intervention_type: InterventionType,
    context: MessageContext,
    recent_keys: list[str] | None,
    now: datetime,
    rng: random.Random | None = None,
) -> tuple[str, str] | None:
    """
    Fill a dynamic template with runtime values.

    Unresolved placeholders are stripped rather than left in the text.

    Returns:
        (template key, rendered text), or None when no template applies or
        the rendered text is empty
    """
    templates = DYNAMIC_MESSAGE_TEMPLATES.get((behavior, intervention_type))
    if not templates:
        return None

    recent = set(recent_keys or ())
    indexed = list(enumerate(templates))
    available = [
        (i, t) for i, t in indexed
        if dynamic_template_key(behavior, intervention_type, i) not in recent
    ]
    index, text = _choice(available or indexed, rng)

    if context.amount:
        text = text.replace("{amount}", f"{abs(context.amount):.2f}")
    if context.category:
        text = text.replace("{category}", format_category(context.category))
    if context.time_of_day:
        text = text.replace("{timeOfDay}", context.time_of_day)
        text = text.replace("{hour}", context.time_of_day)
    if context.transaction_count:
        text = text.replace("{count}", str(context.transaction_count))
    text = text.replace("{day}", str(now.day))
    text = text.replace("{daysLeft}", str(days_left_in_month(now)))

    text = " ".join(_PLACEHOLDER.sub("", text).split())
    if not any(ch.isalnum() for ch in text):
        return None
    return dynamic_template_key(behavior, intervention_type, index), text


# =============================================================================
# Win / relapse / streak break messages
# =============================================================================

def select_win_message(
    win_type: WinType,
    streak_days: int | None = None,
    rng: random.Random | None = None,
) -> str:
    key = win_type.value
    if win_type == WinType.STREAK_MILESTONE and streak_days:
        key = f"streak_{streak_days}"
    pool = WIN_MESSAGES.get(key)
    if not pool:
        return "Something changed."
    return _choice(pool, rng)


def select_relapse_message(
    behavior: BehaviorType,
    severity: RelapseSeverity,
    rng: random.Random | None = None,
) -> str:
    pool = RELAPSE_MESSAGES.get(behavior, {}).get(severity)
    if not pool:
        return "Old patterns are returning."
    return _choice(pool, rng)


def select_streak_break_message(
    reason: StreakBreakReason,
    streak_length: int,
    rng: random.Random | None = None,
) -> str:
    pool = STREAK_BREAK_MESSAGES.get(reason)
    if not pool:
        return "Streak ended."
    return _choice(pool, rng).replace("{n}", str(streak_length))
