"""
Tests for the behavioral data model (src/models/behavior.py).

Tests cover:
- Transaction normalization and from_dict validation
- BehavioralProfile defaults and confidence accessors
- Argmax tie-breaking by behavior precedence
- to_dict / from_dict with missing, malformed and inconsistent fields
- SeasonalFactors and ConfidenceSnapshot parsing
- Event serialization
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from src.lib.exceptions import ValidationError
from src.models.behavior import (
    BEHAVIOR_PRECEDENCE,
    BehavioralProfile,
    BehaviorType,
    ConfidenceSnapshot,
    Intervention,
    InterventionType,
    SeasonalFactors,
    StateTransition,
    StreakBreakEvent,
    StreakBreakReason,
    Transaction,
    Trigger,
    UserState,
    WinEvent,
    WinType,
)

SR = BehaviorType.SMALL_RECURRING
SS = BehaviorType.STRESS_SPENDING
EOM = BehaviorType.END_OF_MONTH


# =============================================================================
# Transaction
# =============================================================================


class TestTransaction:
    """Transaction value object."""

    def test_naive_timestamp_becomes_utc(self) -> None:
        """Naive timestamps are interpreted as UTC."""
        t = Transaction(-5.0, "coffee", datetime(2024, 3, 1, 9, 0))
        assert t.timestamp.tzinfo == UTC

    def test_category_normalized(self) -> None:
        """Categories are lower-cased and stripped."""
        assert Transaction(-5.0, " Coffee ", datetime(2024, 3, 1)).category == "coffee"

    def test_empty_category(self) -> None:
        """A missing category becomes 'uncategorized'."""
        assert Transaction(-5.0, "", datetime(2024, 3, 1)).category == "uncategorized"

    def test_expense_sign(self) -> None:
        """Negative amounts are expenses; magnitude is absolute."""
        expense = Transaction(-12.5, "coffee", datetime(2024, 3, 1))
        income = Transaction(100.0, "salary", datetime(2024, 3, 1))
        assert expense.is_expense and expense.magnitude == 12.5
        assert not income.is_expense

    def test_from_dict(self) -> None:
        """Loose mappings parse into transactions."""
        t = Transaction.from_dict({
            "id": 42, "amount": "-3.5", "category": "Snacks",
            "timestamp": "2024-03-01T22:15:00+00:00",
        })
        assert t.id == "42"
        assert t.amount == -3.5
        assert t.category == "snacks"
        assert t.timestamp.hour == 22

    @pytest.mark.parametrize("payload", [
        {"category": "coffee", "timestamp": "2024-03-01T10:00:00"},
        {"amount": "lots", "timestamp": "2024-03-01T10:00:00"},
        {"amount": -1.0},
        {"amount": -1.0, "timestamp": "yesterday"},
    ])
    def test_from_dict_rejects_invalid(self, payload: dict) -> None:
        """Missing or unparsable amount/timestamp is a validation error."""
        with pytest.raises(ValidationError):
            Transaction.from_dict(payload)


# =============================================================================
# BehavioralProfile
# =============================================================================


class TestProfileDefaults:
    """Neutral starting state."""

    def test_new_profile(self) -> None:
        """A new profile observes with zero confidence."""
        profile = BehavioralProfile(user_id="u")
        assert profile.user_state == UserState.OBSERVING
        assert profile.active_behavior is None
        assert all(profile.get_confidence(b) == 0.0 for b in BEHAVIOR_PRECEDENCE)
        assert profile.interventions_enabled
        assert profile.budget_adherence_current == 1.0

    def test_active_confidence_without_behavior(self) -> None:
        """No active behavior means zero active confidence."""
        assert BehavioralProfile(user_id="u").active_confidence == 0.0

    def test_set_confidence_clamps(self) -> None:
        """Stored confidences stay within [0, 1]."""
        profile = BehavioralProfile(user_id="u")
        profile.set_confidence(SR, 1.7)
        profile.set_confidence(SS, -0.2)
        assert profile.get_confidence(SR) == 1.0
        assert profile.get_confidence(SS) == 0.0

    def test_copy_is_deep(self) -> None:
        """Mutating a copy leaves the original untouched."""
        profile = BehavioralProfile(user_id="u", recent_message_keys=["sr_im_1"])
        clone = profile.copy()
        clone.recent_message_keys.append("sr_im_2")
        clone.set_confidence(SR, 0.9)
        assert profile.recent_message_keys == ["sr_im_1"]
        assert profile.get_confidence(SR) == 0.0


class TestStrongestBehavior:
    """Argmax with deterministic tie-breaking."""

    def test_clear_winner(self) -> None:
        """The highest confidence wins."""
        profile = BehavioralProfile(user_id="u", confidence={SR: 0.2, SS: 0.8, EOM: 0.5})
        assert profile.strongest_behavior() == (SS, 0.8)

    def test_tie_prefers_small_recurring(self) -> None:
        """small_recurring beats the others on a tie."""
        profile = BehavioralProfile(user_id="u", confidence={SR: 0.8, SS: 0.8, EOM: 0.8})
        assert profile.strongest_behavior()[0] == SR

    def test_tie_prefers_stress_over_end_of_month(self) -> None:
        """stress_spending beats end_of_month on a tie."""
        profile = BehavioralProfile(user_id="u", confidence={SR: 0.1, SS: 0.8, EOM: 0.8})
        assert profile.strongest_behavior()[0] == SS

    def test_all_zero(self) -> None:
        """With no evidence the first behavior is returned at 0."""
        assert BehavioralProfile(user_id="u").strongest_behavior() == (SR, 0.0)


class TestProfileSerialization:
    """to_dict / from_dict."""

    def test_round_trip_preserves_state(self) -> None:
        """A populated profile survives serialization."""
        at = datetime(2024, 3, 1, 10, 0, tzinfo=UTC)
        profile = BehavioralProfile(
            user_id="u",
            user_state=UserState.COOLDOWN,
            active_behavior=SS,
            confidence={SR: 0.1, SS: 0.82, EOM: 0.0},
            cooldown_ends_at=at + timedelta(hours=12),
            current_streak=4,
            last_streak_date=date(2024, 3, 1),
            last_intervention_type=InterventionType.PATTERN_REFLECTION,
            recent_message_keys=["ss_im_1"],
            recent_dismissals=[at],
            confidence_history=[ConfidenceSnapshot(at, 0.1, 0.82, 0.0)],
        )
        restored = BehavioralProfile.from_dict(profile.to_dict())
        assert restored == profile

    def test_empty_payload_uses_user_id_argument(self) -> None:
        """Missing fields fall back to neutral defaults."""
        profile = BehavioralProfile.from_dict({}, user_id="u")
        assert profile.user_id == "u"
        assert profile.user_state == UserState.OBSERVING
        assert profile.budget_adherence_early_month == 1.0

    def test_missing_user_id(self) -> None:
        """A payload without any user id cannot be loaded."""
        with pytest.raises(ValidationError):
            BehavioralProfile.from_dict({"user_state": "FOCUSED"})

    def test_malformed_fields_default(self) -> None:
        """Unknown enum values and junk numbers become defaults."""
        profile = BehavioralProfile.from_dict({
            "user_id": "u",
            "user_state": "SLEEPING",
            "confidence": {"small_recurring": "high", "stress_spending": 2.5},
            "interventions_today": "many",
            "cooldown_ends_at": "not-a-date",
            "recent_message_keys": "sr_im_1",
        })
        assert profile.user_state == UserState.OBSERVING
        assert profile.get_confidence(SR) == 0.0
        assert profile.get_confidence(SS) == 1.0
        assert profile.interventions_today == 0
        assert profile.cooldown_ends_at is None
        assert profile.recent_message_keys == []

    def test_active_behavior_dropped_outside_focus(self) -> None:
        """OBSERVING and WITHDRAWN never carry an active behavior."""
        profile = BehavioralProfile.from_dict({
            "user_id": "u", "user_state": "WITHDRAWN", "active_behavior": "small_recurring",
        })
        assert profile.active_behavior is None

    def test_focused_without_behavior_resets(self) -> None:
        """FOCUSED without an active behavior is repaired to OBSERVING."""
        profile = BehavioralProfile.from_dict({"user_id": "u", "user_state": "FOCUSED"})
        assert profile.user_state == UserState.OBSERVING


class TestSeasonalFactors:
    """SeasonalFactors parsing."""

    def test_defaults(self) -> None:
        """Twelve month factors, seven weekday factors, never calibrated."""
        factors = SeasonalFactors()
        assert len(factors.month_factors) == 12
        assert len(factors.weekday_factors) == 7
        assert factors.calibrated_at is None

    def test_wrong_length_falls_back(self) -> None:
        """A truncated factor list is discarded."""
        assert SeasonalFactors.from_dict({"month_factors": [1.0, 1.1]}) == SeasonalFactors()

    def test_non_numeric_falls_back(self) -> None:
        """Junk factor values are discarded."""
        assert SeasonalFactors.from_dict({"weekday_factors": ["x"] * 7}) == SeasonalFactors()

    def test_snapshot_without_time_is_skipped(self) -> None:
        """A snapshot without a timestamp cannot be restored."""
        assert ConfidenceSnapshot.from_dict({"small_recurring": 0.5}) is None


# =============================================================================
# Events
# =============================================================================


class TestEvents:
    """Event serialization."""

    def test_intervention_ids_unique(self) -> None:
        """Every intervention gets its own id."""
        at = datetime(2024, 3, 1, tzinfo=UTC)
        a = Intervention("u", SR, InterventionType.IMMEDIATE_MIRROR, "k", "Coffee again.", at)
        b = Intervention("u", SR, InterventionType.IMMEDIATE_MIRROR, "k", "Coffee again.", at)
        assert a.id != b.id
        assert a.to_dict()["response"] is None

    def test_win_to_dict(self) -> None:
        """Wins serialize their type and metadata."""
        win = WinEvent(WinType.PATTERN_BREAK, SR, datetime(2024, 3, 1, tzinfo=UTC),
                       "The pattern broke.", metadata={"reductionPercent": 60})
        data = win.to_dict()
        assert data["win_type"] == "pattern_break"
        assert data["metadata"]["reductionPercent"] == 60

    def test_streak_break_to_dict(self) -> None:
        """Streak breaks serialize their reason."""
        event = StreakBreakEvent(StreakBreakReason.INACTIVITY, 9, datetime(2024, 3, 1, tzinfo=UTC))
        assert event.to_dict()["reason"] == "inactivity"
        assert event.to_dict()["behavior"] is None

    def test_transition_without_trigger(self) -> None:
        """Failure-driven moves have no state machine trigger."""
        move = StateTransition(UserState.FOCUSED, UserState.WITHDRAWN, "annoyed", None,
                               datetime(2024, 3, 1, tzinfo=UTC))
        assert move.to_dict()["trigger"] is None

    def test_transition_with_trigger(self) -> None:
        """State machine moves record their trigger."""
        move = StateTransition(UserState.OBSERVING, UserState.FOCUSED, "reason",
                               Trigger.TRANSACTION, datetime(2024, 3, 1, tzinfo=UTC))
        assert move.to_dict()["trigger"] == "TRANSACTION"
