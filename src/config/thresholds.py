"""
Behavioral Engine Threshold Configuration.

Every numeric cutoff, time window and rate limit used by the behavioral
engine lives in one immutable EngineConfig. The config is built once at
startup (optionally with AUTOPILOT_* environment overrides) and passed into
the services; no module reads thresholds from a global.

Usage:
    from src.config.thresholds import DEFAULT_CONFIG, load_config

    config = load_config()  # DEFAULT_CONFIG plus environment overrides

Reference: DESIGN.md Section 4 (Component Design)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields, replace

from src.lib.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# =============================================================================
# Comfort categories (closed set used by stress spending)
# =============================================================================

COMFORT_CATEGORIES: frozenset[str] = frozenset({
    "food_dining",
    "food_delivery",
    "entertainment",
    "shopping",
    "coffee",
    "coffee_drinks",
    "alcohol",
    "fast_food",
    "snacks",
    "streaming",
    "gaming",
    "delivery",
    "takeout",
})


def is_comfort_category(category: str | None) -> bool:
    """Check whether a category id belongs to the comfort set (case-insensitive)."""
    if not category:
        return False
    return category.strip().lower() in COMFORT_CATEGORIES


# =============================================================================
# Engine configuration
# =============================================================================

@dataclass(frozen=True)
class EngineConfig:
    """Immutable thresholds for the behavioral engine."""

    # State machine confidence cutoffs
    activation_threshold: float = 0.75
    intervention_threshold: float = 0.80
    deactivation_threshold: float = 0.50
    decision_min_confidence: float = 0.60

    # Small recurring detector
    small_transaction_max: float = 15.0
    small_recurring_min_count: int = 10
    small_recurring_days: int = 7
    small_recurring_category_min: int = 3

    # Stress spending detector (hours, local clock of the transaction)
    stress_late_night_start: int = 21
    stress_late_night_end: int = 2
    stress_post_work_start: int = 17
    stress_post_work_end: int = 20
    stress_min_occurrences: int = 3
    stress_cluster_window_hours: float = 2.0
    stress_lookback_days: int = 14

    # End of month detector
    end_of_month_start_day: int = 21
    end_of_month_min_months: int = 2
    end_of_month_spike_ratio: float = 1.5

    # Confidence dynamics
    confidence_smoothing: float = 0.7
    confidence_decay_daily: float = 0.02
    confidence_ceiling: float = 0.95
    confidence_history_max: int = 30
    confidence_history_min_gap_hours: float = 4.0

    # Seasonal calibration
    seasonal_calibration_days: int = 90
    seasonal_min_transactions: int = 90
    seasonal_holiday_boost: float = 1.2

    # Wins, relapses and streaks
    win_pattern_break_threshold: float = 0.50
    win_improvement_threshold: float = 0.30
    win_silent_threshold: float = 0.10
    win_min_prior_count: int = 3
    win_min_gap_hours: float = 24.0
    win_streak_milestones: tuple[int, ...] = (7, 14, 30, 60, 90)
    relapse_window_days: int = 30
    relapse_mild_percent: int = 30
    relapse_moderate_percent: int = 50
    relapse_severe_percent: int = 100
    streak_break_inactivity_days: int = 7

    # Limits
    max_interventions_per_day: int = 3
    max_interventions_per_week: int = 5
    cooldown_hours: float = 12.0
    extended_cooldown_hours: float = 48.0
    ignored_cooldown_hours: float = 24.0
    confidence_drop_cooldown_hours: float = 24.0
    ignored_threshold: int = 2
    dismissed_threshold: int = 3
    withdrawal_days: int = 7
    annoyance_withdrawal_days: int = 14
    annoyance_dismissals: int = 3
    annoyance_window_hours: float = 24.0
    inactive_days_for_reset: int = 14

    # Messages
    message_max_words: int = 12
    message_max_sentences: int = 2
    recent_message_memory: int = 5

    def validate(self) -> None:
        """
        Check internal consistency of the thresholds.

        Raises:
            ConfigurationError: If a value is out of range or the ordering of
                related thresholds is broken.
        """
        for name in (
            "activation_threshold",
            "intervention_threshold",
            "deactivation_threshold",
            "decision_min_confidence",
            "confidence_smoothing",
            "confidence_decay_daily",
            "confidence_ceiling",
        ):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1], got {value}")

        if self.deactivation_threshold >= self.activation_threshold:
            raise ConfigurationError(
                "deactivation_threshold must be lower than activation_threshold"
            )
        if self.recent_message_memory < 0:
            raise ConfigurationError("recent_message_memory must not be negative")
        if self.max_interventions_per_day < 0 or self.max_interventions_per_week < 0:
            raise ConfigurationError("intervention limits must not be negative")


DEFAULT_CONFIG = EngineConfig()

_ENV_PREFIX = "AUTOPILOT_"


def load_config(environ: dict[str, str] | None = None) -> EngineConfig:
    """
    Build an EngineConfig from defaults plus AUTOPILOT_* overrides.

    Each field can be overridden with an upper-cased environment variable,
    e.g. AUTOPILOT_COOLDOWN_HOURS=6. Tuple fields take comma separated ints.

    Args:
        environ: Mapping to read from (defaults to os.environ)

    Returns:
        Validated EngineConfig

    Raises:
        ConfigurationError: If an override cannot be parsed or the resulting
            config is inconsistent.
    """
    env = os.environ if environ is None else environ
    overrides: dict[str, object] = {}

    for field in fields(EngineConfig):
        raw = env.get(f"{_ENV_PREFIX}{field.name.upper()}")
        if raw is None:
            continue
        default = getattr(DEFAULT_CONFIG, field.name)
        try:
            if isinstance(default, tuple):
                overrides[field.name] = tuple(int(part) for part in raw.split(",") if part.strip())
            elif isinstance(default, int):
                overrides[field.name] = int(raw)
            else:
                overrides[field.name] = float(raw)
        except ValueError as e:
            raise ConfigurationError(
                f"Invalid value for {_ENV_PREFIX}{field.name.upper()}: {raw!r}"
            ) from e

    config = replace(DEFAULT_CONFIG, **overrides) if overrides else DEFAULT_CONFIG
    config.validate()

    if overrides:
        logger.info("Engine config overrides applied: %s", sorted(overrides))
    return config
