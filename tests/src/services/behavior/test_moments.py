"""
Tests for the moment classifier (src/services/behavior/moments.py).

Tests cover:
- No active behavior
- Small recurring moments (HABITUAL_TIME, REPEAT_PURCHASE)
- Stress moments (STRESS_CLUSTER, LATE_NIGHT_COMFORT, POST_WORK_RELEASE)
- End of month moments (FIRST_BREACH, COLLAPSE_START)
- Relapse preemption
- Extended checks (weekend, payday, impulse, boredom, binge, budget, seasonal)
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from src.models.behavior import BehaviorType, MomentType, UserState
from src.services.behavior.moments import (
    MomentClassifier,
    check_boredom_browse,
    check_budget_near_limit,
    check_category_binge,
    check_impulse_chain,
    check_payday_surge,
    check_seasonal_trigger,
    check_weekend_splurge,
    classify_extended,
    classify_moment,
)

SR = BehaviorType.SMALL_RECURRING
SS = BehaviorType.STRESS_SPENDING
EOM = BehaviorType.END_OF_MONTH


@pytest.fixture
def classifier() -> MomentClassifier:
    return MomentClassifier()


@pytest.fixture
def focused(make_profile):
    """Profile focused on a given behavior."""

    def _make(behavior: BehaviorType, **fields):
        return make_profile(user_state=UserState.FOCUSED, active_behavior=behavior, **fields)

    return _make


# =============================================================================
# Dispatch
# =============================================================================


class TestDispatch:
    """Behavior selection."""

    def test_no_active_behavior(self, classifier, make_profile, make_transaction) -> None:
        """Without an active behavior nothing is a moment."""
        result = classifier.classify(make_transaction(-5.0), make_profile(), [])
        assert not result.is_moment
        assert result.moment_type is None
        assert result.reason == "no_active_behavior"

    def test_functional_entry_point(self, focused, make_transaction) -> None:
        """classify_moment() matches the classifier."""
        assert classify_moment(make_transaction(40.0), focused(SR), []).reason == "not_an_expense"


# =============================================================================
# Small recurring
# =============================================================================


class TestSmallRecurringMoments:
    """REPEAT_PURCHASE and HABITUAL_TIME."""

    def test_habitual_time(self, classifier, focused, make_transaction, now) -> None:
        """Two prior same-category purchases near this hour."""
        prior = [
            make_transaction(-5.0, "coffee", now - timedelta(days=1)),
            make_transaction(-4.0, "coffee", now - timedelta(days=2, minutes=30)),
        ]
        result = classifier.classify(make_transaction(-5.0, "coffee", now), focused(SR), prior)
        assert result.moment_type == MomentType.HABITUAL_TIME
        assert result.confidence == 0.9
        assert result.metadata["sameHourCount"] == 2

    def test_hour_tolerance_wraps_midnight(self, classifier, focused, make_transaction, now) -> None:
        """23:00 and 00:00 are one hour apart."""
        at = now.replace(hour=0)
        prior = [
            make_transaction(-5.0, "snacks", (at - timedelta(days=d)).replace(hour=23))
            for d in (1, 2)
        ]
        result = classifier.classify(make_transaction(-5.0, "snacks", at), focused(SR), prior)
        assert result.moment_type == MomentType.HABITUAL_TIME

    def test_repeat_purchase(self, classifier, focused, make_transaction, now) -> None:
        """Same category at different hours is a repeat purchase."""
        prior = [
            make_transaction(-5.0, "coffee", (now - timedelta(days=d)).replace(hour=8))
            for d in (1, 2)
        ]
        result = classifier.classify(make_transaction(-5.0, "coffee", now), focused(SR), prior)
        assert result.moment_type == MomentType.REPEAT_PURCHASE
        assert result.confidence == 0.75

    def test_not_repeated(self, classifier, focused, make_transaction, now) -> None:
        """A single prior purchase is not enough."""
        prior = [make_transaction(-5.0, "coffee", now - timedelta(days=1))]
        result = classifier.classify(make_transaction(-5.0, "coffee", now), focused(SR), prior)
        assert result.reason == "not_repeated"

    def test_transaction_itself_not_counted(self, classifier, focused, make_transaction, now) -> None:
        """The new transaction inside the history does not count as prior."""
        t = make_transaction(-5.0, "coffee", now)
        prior = [make_transaction(-5.0, "coffee", now - timedelta(days=1)), t]
        assert classifier.classify(t, focused(SR), prior).reason == "not_repeated"

    def test_too_large(self, classifier, focused, make_transaction) -> None:
        """Larger expenses are not small recurring moments."""
        result = classifier.classify(make_transaction(-25.0), focused(SR), [])
        assert result.reason == "amount_too_large"


# =============================================================================
# Stress spending
# =============================================================================


class TestStressMoments:
    """LATE_NIGHT_COMFORT, POST_WORK_RELEASE and STRESS_CLUSTER."""

    def test_late_night(self, classifier, focused, make_transaction, now) -> None:
        """An isolated late-night comfort purchase."""
        t = make_transaction(-15.0, "takeout", now.replace(hour=22))
        result = classifier.classify(t, focused(SS), [])
        assert result.moment_type == MomentType.LATE_NIGHT_COMFORT
        assert result.confidence == 0.85

    def test_post_work(self, classifier, focused, make_transaction, now) -> None:
        """An isolated post-work comfort purchase."""
        t = make_transaction(-15.0, "alcohol", now.replace(hour=18))
        result = classifier.classify(t, focused(SS), [])
        assert result.moment_type == MomentType.POST_WORK_RELEASE
        assert result.confidence == 0.80

    def test_cluster_wins(self, classifier, focused, make_transaction, now) -> None:
        """A comfort purchase within two hours of another is a cluster."""
        at = now.replace(hour=22)
        prior = [make_transaction(-6.0, "snacks", at - timedelta(hours=1))]
        result = classifier.classify(make_transaction(-15.0, "takeout", at), focused(SS), prior)
        assert result.moment_type == MomentType.STRESS_CLUSTER
        assert result.confidence == 0.95
        assert result.metadata["clusterSize"] == 2

    def test_non_comfort(self, classifier, focused, make_transaction, now) -> None:
        """Groceries at night are not stress moments."""
        t = make_transaction(-15.0, "groceries", now.replace(hour=22))
        assert classifier.classify(t, focused(SS), []).reason == "not_comfort_category"

    def test_outside_hours(self, classifier, focused, make_transaction, now) -> None:
        """Comfort purchases at midday are not stress moments."""
        t = make_transaction(-15.0, "takeout", now)
        assert classifier.classify(t, focused(SS), []).reason == "outside_stress_hours"


# =============================================================================
# End of month
# =============================================================================


class TestEndOfMonthMoments:
    """FIRST_BREACH and COLLAPSE_START."""

    LATE = datetime(2024, 3, 25, 12, 0, tzinfo=UTC)

    def test_first_breach(self, classifier, focused, make_transaction) -> None:
        """Good early-month adherence that has dropped below 0.7."""
        profile = focused(EOM, budget_adherence_early_month=0.9, budget_adherence_current=0.6)
        result = classifier.classify(make_transaction(-40.0, at=self.LATE), profile, [])
        assert result.moment_type == MomentType.FIRST_BREACH
        assert result.confidence == 0.90

    def test_collapse_start(self, classifier, focused, make_transaction) -> None:
        """Adherence below 0.5 without a good early month."""
        profile = focused(EOM, budget_adherence_early_month=0.6, budget_adherence_current=0.4)
        result = classifier.classify(make_transaction(-40.0, at=self.LATE), profile, [])
        assert result.moment_type == MomentType.COLLAPSE_START
        assert result.confidence == 0.85

    def test_adherence_holding(self, classifier, focused, make_transaction) -> None:
        """Healthy adherence is no moment."""
        profile = focused(EOM, budget_adherence_early_month=0.9, budget_adherence_current=0.8)
        result = classifier.classify(make_transaction(-40.0, at=self.LATE), profile, [])
        assert result.reason == "adherence_holding"

    def test_before_month_end(self, classifier, focused, make_transaction, now) -> None:
        """Days before the 21st are never end-of-month moments."""
        profile = focused(EOM, budget_adherence_current=0.1)
        assert classifier.classify(make_transaction(-40.0, at=now), profile, []).reason == "not_end_of_month"


# =============================================================================
# Relapse preemption
# =============================================================================


class TestRelapsePreemption:
    """A recent relapse outranks behavior-specific moments."""

    def _history(self, make_transaction, now, last_week: int, this_week: int):
        before = [
            make_transaction(-5.0, "coffee", now - timedelta(days=10, hours=i))
            for i in range(last_week)
        ]
        after = [
            make_transaction(-5.0, "coffee", now - timedelta(days=1, hours=i))
            for i in range(this_week)
        ]
        return before + after

    def test_severe(self, classifier, focused, make_transaction, now) -> None:
        """Doubling within 30 days of a win is a severe relapse."""
        profile = focused(SR, last_win_at=now - timedelta(days=5))
        history = self._history(make_transaction, now, 3, 6)
        result = classifier.classify(make_transaction(-5.0, "coffee", now), profile, history)
        assert result.moment_type == MomentType.RELAPSE_AFTER_IMPROVEMENT
        assert result.confidence == 0.95
        assert result.reason == "severe_relapse"

    def test_moderate(self, classifier, focused, make_transaction, now) -> None:
        """A 50% increase is a moderate relapse."""
        profile = focused(SR, last_win_at=now - timedelta(days=5))
        history = self._history(make_transaction, now, 4, 6)
        result = classifier.classify(make_transaction(-5.0, "coffee", now), profile, history)
        assert result.reason == "moderate_relapse"
        assert result.confidence == 0.85

    def test_mild_does_not_preempt(self, classifier, focused, make_transaction, now) -> None:
        """A mild relapse falls through to the behavior classifier."""
        profile = focused(SR, last_win_at=now - timedelta(days=5))
        history = self._history(make_transaction, now, 3, 4)
        result = classifier.classify(make_transaction(-5.0, "coffee", now), profile, history)
        assert result.moment_type in (MomentType.HABITUAL_TIME, MomentType.REPEAT_PURCHASE)

    def test_no_recent_win(self, classifier, focused, make_transaction, now) -> None:
        """Without a win in the last 30 days there is no relapse."""
        profile = focused(SR, last_win_at=now - timedelta(days=45))
        history = self._history(make_transaction, now, 3, 6)
        result = classifier.classify(make_transaction(-5.0, "coffee", now), profile, history)
        assert result.moment_type != MomentType.RELAPSE_AFTER_IMPROVEMENT


# =============================================================================
# Extended checks
# =============================================================================


class TestWeekendSplurge:
    """check_weekend_splurge()."""

    SATURDAY = datetime(2024, 3, 16, 14, 0, tzinfo=UTC)

    def _weekdays(self, make_transaction):
        return [
            make_transaction(-10.0, "groceries", datetime(2024, 3, d, 12, tzinfo=UTC))
            for d in range(11, 16)
        ]

    def test_splurge(self, make_transaction) -> None:
        """Weekend average well above the weekday average."""
        history = self._weekdays(make_transaction) + [
            make_transaction(-40.0, "shopping", datetime(2024, 3, 10, 14, tzinfo=UTC)),
        ]
        result = check_weekend_splurge(make_transaction(-60.0, "shopping", self.SATURDAY), history)
        assert result.moment_type == MomentType.WEEKEND_SPLURGE
        assert result.metadata["ratio"] == 5.0

    def test_weekday_transaction(self, make_transaction, now) -> None:
        """A Wednesday purchase is not a weekend splurge."""
        assert check_weekend_splurge(make_transaction(-60.0, at=now), []).reason == "not_weekend_expense"

    def test_insufficient_data(self, make_transaction) -> None:
        """At least five weekday and two weekend expenses are needed."""
        result = check_weekend_splurge(make_transaction(-60.0, at=self.SATURDAY), self._weekdays(make_transaction))
        assert result.reason == "insufficient_data"


class TestPaydaySurge:
    """check_payday_surge()."""

    def test_surge(self, make_transaction, now) -> None:
        """Three expenses since a large deposit."""
        history = [
            make_transaction(1500.0, "salary", now - timedelta(days=1)),
            make_transaction(-30.0, "shopping", now - timedelta(hours=20)),
            make_transaction(-25.0, "dining", now - timedelta(hours=5)),
        ]
        result = check_payday_surge(make_transaction(-40.0, "shopping", now), history)
        assert result.moment_type == MomentType.PAYDAY_SURGE
        assert result.metadata["expensesSinceIncome"] == 3

    def test_few_expenses(self, make_transaction, now) -> None:
        """One expense after payday is not a surge."""
        history = [make_transaction(1500.0, "salary", now - timedelta(days=1))]
        assert check_payday_surge(make_transaction(-40.0, at=now), history).reason == "few_expenses_since_income"

    def test_old_income(self, make_transaction, now) -> None:
        """Income older than three days does not count."""
        history = [make_transaction(1500.0, "salary", now - timedelta(days=4))]
        assert check_payday_surge(make_transaction(-40.0, at=now), history).reason == "no_recent_income"

    def test_small_income(self, make_transaction, now) -> None:
        """Deposits under $500 are not paydays."""
        history = [make_transaction(200.0, "refund", now - timedelta(hours=2))]
        assert not check_payday_surge(make_transaction(-40.0, at=now), history).is_moment


class TestImpulseChain:
    """check_impulse_chain()."""

    def test_chain(self, make_transaction, now) -> None:
        """Two expenses in the preceding half hour."""
        history = [
            make_transaction(-12.0, "shopping", now - timedelta(minutes=25)),
            make_transaction(-8.0, "snacks", now - timedelta(minutes=10)),
        ]
        result = check_impulse_chain(make_transaction(-20.0, "shopping", now), history)
        assert result.moment_type == MomentType.IMPULSE_CHAIN
        assert result.confidence == 0.90
        assert result.metadata["chainLength"] == 3

    def test_spread_out(self, make_transaction, now) -> None:
        """Expenses more than 30 minutes apart are no chain."""
        history = [
            make_transaction(-12.0, at=now - timedelta(minutes=45)),
            make_transaction(-8.0, at=now - timedelta(minutes=10)),
        ]
        assert not check_impulse_chain(make_transaction(-20.0, at=now), history).is_moment


class TestBoredomBrowse:
    """check_boredom_browse()."""

    def test_browse(self, make_transaction, now) -> None:
        """Scattered small purchases during idle hours."""
        history = [
            make_transaction(-6.0, "apps", now - timedelta(minutes=90)),
            make_transaction(-4.0, "snacks", now - timedelta(minutes=40)),
        ]
        result = check_boredom_browse(make_transaction(-9.0, "shopping", now), history)
        assert result.moment_type == MomentType.BOREDOM_BROWSE
        assert result.metadata["categories"] == 3

    def test_outside_idle_hours(self, make_transaction, now) -> None:
        """18:00 is not an idle hour."""
        at = now.replace(hour=18)
        assert check_boredom_browse(make_transaction(-9.0, at=at), []).reason == "outside_idle_hours"

    def test_large_purchase(self, make_transaction, now) -> None:
        """Purchases of $20 or more are not browsing."""
        assert check_boredom_browse(make_transaction(-20.0, at=now), []).reason == "not_small_expense"


class TestCategoryBinge:
    """check_category_binge()."""

    def test_binge(self, make_transaction, now) -> None:
        """Three purchases in one category within an hour."""
        history = [
            make_transaction(-15.0, "gaming", now - timedelta(minutes=50)),
            make_transaction(-15.0, "gaming", now - timedelta(minutes=20)),
        ]
        result = check_category_binge(make_transaction(-15.0, "gaming", now), history)
        assert result.moment_type == MomentType.CATEGORY_BINGE
        assert result.confidence == 0.85
        assert result.metadata == {"category": "gaming", "count": 3}

    def test_mixed_categories(self, make_transaction, now) -> None:
        """Different categories are no binge."""
        history = [
            make_transaction(-15.0, "books", now - timedelta(minutes=50)),
            make_transaction(-15.0, "gaming", now - timedelta(minutes=20)),
        ]
        assert not check_category_binge(make_transaction(-15.0, "gaming", now), history).is_moment


class TestBudgetNearLimit:
    """check_budget_near_limit()."""

    @pytest.mark.parametrize("adherence,expected", [
        (0.9, False),
        (0.84, True),
        (0.7, True),
        (0.69, False),
    ])
    def test_band(self, make_profile, make_transaction, adherence: float, expected: bool) -> None:
        """Adherence in [0.7, 0.85) is near the limit."""
        profile = make_profile(budget_adherence_current=adherence)
        assert check_budget_near_limit(make_transaction(-10.0), profile).is_moment is expected


class TestSeasonalTrigger:
    """check_seasonal_trigger()."""

    def test_holiday_purchase(self, make_transaction) -> None:
        """Larger expense during the holidays."""
        t = make_transaction(-80.0, "shopping", datetime(2024, 12, 10, 15, tzinfo=UTC))
        assert check_seasonal_trigger(t).moment_type == MomentType.SEASONAL_TRIGGER

    def test_small_holiday_purchase(self, make_transaction) -> None:
        """Expenses under $50 are ignored."""
        t = make_transaction(-30.0, "shopping", datetime(2024, 12, 10, 15, tzinfo=UTC))
        assert not check_seasonal_trigger(t).is_moment

    def test_outside_holidays(self, make_transaction, now) -> None:
        """March is not a holiday period."""
        assert not check_seasonal_trigger(make_transaction(-80.0, at=now)).is_moment


class TestClassifyExtended:
    """classify_extended()."""

    def test_only_matches_returned(self, make_profile, make_transaction, now) -> None:
        """Several checks can fire for one transaction."""
        history = [
            make_transaction(-15.0, "gaming", now - timedelta(minutes=25)),
            make_transaction(-15.0, "gaming", now - timedelta(minutes=10)),
        ]
        results = classify_extended(make_transaction(-15.0, "gaming", now), make_profile(), history)
        types = {r.moment_type for r in results}
        assert types == {MomentType.IMPULSE_CHAIN, MomentType.CATEGORY_BINGE}
        assert all(r.is_moment for r in results)

    def test_nothing_for_income(self, make_profile, make_transaction, now) -> None:
        """Income triggers no extended moment."""
        assert classify_extended(make_transaction(500.0, "salary", now), make_profile(), []) == []
