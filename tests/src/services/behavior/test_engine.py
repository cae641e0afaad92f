"""
Tests for the engine orchestration (src/services/behavior/engine.py).

Covers:
- Transaction turns: activation, moment, decision, delivery, cooldown
- Dynamic immediate mirrors
- Rolling counters and streak advancement
- Scheduled turns: churn reset, annoyance, streaks
- User responses: ignore/dismiss penalties, rapid dismissal, positive signal
- Profile reset
- BehavioralEngine: persistence, per-user locking and lock cleanup, failed turns write nothing
- One response per intervention, stored with the profile update
- The engine over the async SQL repository
- The global engine singleton
"""

import asyncio
import random
from datetime import date, timedelta

import pytest

from src.config.settings import get_settings
from src.lib.exceptions import ProfileNotFoundError, StateError
from src.models.behavior import (
    BehaviorType,
    InterventionType,
    MomentType,
    StreakBreakReason,
    Trigger,
    UserResponse,
    UserState,
)
from src.services.behavior import engine as engine_module
from src.services.behavior.engine import (
    BehavioralEngine,
    advance_streak,
    apply_user_response,
    get_behavioral_engine,
    reset_profile,
    reset_rolling_counters,
    run_scheduled_turn,
    run_transaction_turn,
)
from src.services.behavior.failure import FailureAction
from src.services.profile_repository import (
    InMemoryProfileRepository,
    InMemoryTransactionStore,
    SQLAlchemyProfileRepository,
    StaticBudgetAdherence,
)

SR = BehaviorType.SMALL_RECURRING

# =============================================================================
# Helper Fixtures
# =============================================================================


@pytest.fixture
def morning(now):
    """08:00 on the evaluation day."""
    return now.replace(hour=8)


@pytest.fixture
def coffee_history(make_transaction, morning):
    """Nine prior small coffees: six at 08:00, three at 15:00."""
    mornings = [
        make_transaction(-5.0, "coffee", morning - timedelta(days=d)) for d in range(1, 7)
    ]
    afternoons = [
        make_transaction(-5.0, "coffee", (morning - timedelta(days=d)).replace(hour=15))
        for d in range(1, 4)
    ]
    return mornings + afternoons


@pytest.fixture
def coffee(make_transaction, morning):
    """Today's 08:00 coffee."""
    return make_transaction(-5.0, "coffee", morning, id="txn-today")


@pytest.fixture
def repository():
    return InMemoryProfileRepository()


@pytest.fixture
def store():
    return InMemoryTransactionStore()


@pytest.fixture
def budget():
    return StaticBudgetAdherence()


@pytest.fixture
def engine(repository, store, budget):
    return BehavioralEngine(
        repository, transactions=store, budget_provider=budget, rng=random.Random(11),
    )


async def _seed(store, user_id, transactions):
    for t in transactions:
        await store.add(user_id, t)


# =============================================================================
# Transaction turn
# =============================================================================


class TestTransactionTurn:
    """run_transaction_turn()."""

    def test_activation_and_delivery(self, make_profile, coffee, coffee_history) -> None:
        """A strong habit activates focus and delivers one reflection."""
        profile = make_profile()
        outcome = run_transaction_turn(profile, coffee, coffee_history, rng=random.Random(1))

        assert profile.get_confidence(SR) == pytest.approx(0.85 / 0.95)
        assert outcome.moment.moment_type == MomentType.HABITUAL_TIME
        assert outcome.decision.intervention_type == InterventionType.PATTERN_REFLECTION

        intervention = outcome.intervention
        assert intervention.behavior == SR
        assert intervention.message_key in ("sr_pr_02", "sr_pr_05")
        assert intervention.transaction_id == "txn-today"
        assert intervention.delivered_at == coffee.timestamp

        assert [(t.from_state, t.to_state) for t in outcome.transitions] == [
            (UserState.OBSERVING, UserState.FOCUSED),
            (UserState.FOCUSED, UserState.COOLDOWN),
        ]
        assert outcome.transitions[1].trigger == Trigger.INTERVENTION_DELIVERED
        assert profile.user_state == UserState.COOLDOWN
        assert profile.interventions_today == 1
        assert profile.interventions_this_week == 1
        assert profile.recent_message_keys == [intervention.message_key]
        assert profile.cooldown_ends_at == coffee.timestamp + timedelta(hours=12)

    def test_changes_reported(self, make_profile, coffee, coffee_history) -> None:
        """The outcome lists the fields the turn changed."""
        outcome = run_transaction_turn(make_profile(), coffee, coffee_history, rng=random.Random(1))
        assert outcome.changes["user_state"] == "COOLDOWN"
        assert "confidence" in outcome.changes
        assert outcome.to_dict()["intervention"]["message_key"] == outcome.intervention.message_key

    def test_cooldown_blocks_second_intervention(self, make_profile, make_transaction, coffee, coffee_history) -> None:
        """At most one intervention per cooldown."""
        profile = make_profile()
        run_transaction_turn(profile, coffee, coffee_history, rng=random.Random(1))
        later = make_transaction(-5.0, "coffee", coffee.timestamp + timedelta(hours=1))
        outcome = run_transaction_turn(profile, later, coffee_history + [coffee], rng=random.Random(1))
        assert outcome.intervention is None
        assert outcome.decision.reason == "state_cooldown"
        assert profile.interventions_today == 1

    def test_dynamic_mirror(self, make_profile, coffee, coffee_history) -> None:
        """Immediate mirrors can be rendered from runtime values."""
        profile = make_profile(last_intervention_type=InterventionType.PATTERN_REFLECTION)
        outcome = run_transaction_turn(
            profile, coffee, coffee_history, rng=random.Random(2), dynamic_messages=True,
        )
        assert outcome.intervention.intervention_type == InterventionType.IMMEDIATE_MIRROR
        assert outcome.intervention.message_key.startswith("small_recurring_immediate_mirror_dyn_")
        assert "{" not in outcome.intervention.message

    def test_no_history(self, make_profile, coffee) -> None:
        """A lone transaction changes nothing but activity bookkeeping."""
        profile = make_profile()
        outcome = run_transaction_turn(profile, coffee, [])
        assert outcome.intervention is None
        assert outcome.decision.reason == "no_active_behavior"
        assert profile.user_state == UserState.OBSERVING
        assert profile.last_activity_at == coffee.timestamp
        assert profile.last_evaluated_at == coffee.timestamp
        assert len(profile.confidence_history) == 1

    def test_disabled_interventions(self, make_profile, coffee, coffee_history) -> None:
        """Detection still runs when interventions are off."""
        profile = make_profile(interventions_enabled=False)
        outcome = run_transaction_turn(profile, coffee, coffee_history)
        assert profile.user_state == UserState.FOCUSED
        assert outcome.intervention is None
        assert outcome.decision.reason == "interventions_disabled"


class TestTurnBuildingBlocks:
    """Rolling counters and streaks."""

    def test_daily_counter_resets(self, make_profile, now) -> None:
        """A new calendar day zeroes the daily counter."""
        profile = make_profile(interventions_today=3, daily_reset_at=now - timedelta(days=1))
        reset_rolling_counters(profile, now)
        assert profile.interventions_today == 0
        assert profile.daily_reset_at == now

    def test_weekly_counter_keeps_within_week(self, make_profile, now) -> None:
        """The weekly counter survives within the same ISO week."""
        profile = make_profile(interventions_this_week=4, weekly_reset_at=now - timedelta(days=1))
        reset_rolling_counters(profile, now)
        assert profile.interventions_this_week == 4

    def test_weekly_counter_resets(self, make_profile, now) -> None:
        """A new ISO week zeroes the weekly counter."""
        profile = make_profile(interventions_this_week=4, weekly_reset_at=now - timedelta(days=7))
        reset_rolling_counters(profile, now)
        assert profile.interventions_this_week == 0

    def test_streak_once_per_day(self, make_profile, now) -> None:
        """Streak days are counted once per calendar day."""
        profile = make_profile(current_streak=2, longest_streak=2)
        assert advance_streak(profile, now)
        assert not advance_streak(profile, now + timedelta(hours=3))
        assert profile.current_streak == 3
        assert profile.longest_streak == 3
        assert profile.last_streak_date == date(2024, 3, 13)


# =============================================================================
# Scheduled turn
# =============================================================================


class TestScheduledTurn:
    """run_scheduled_turn()."""

    def test_churn_resets(self, make_profile, now) -> None:
        """Fourteen quiet days reset the profile completely."""
        profile = make_profile(
            user_state=UserState.FOCUSED,
            active_behavior=SR,
            confidence={SR: 0.9},
            current_streak=5,
            last_activity_at=now - timedelta(days=20),
        )
        outcome = run_scheduled_turn(profile, [], now)
        assert outcome.failure.action == FailureAction.RESET
        assert outcome.streak_break.reason == StreakBreakReason.USER_RESET
        assert profile.user_state == UserState.OBSERVING
        assert profile.get_confidence(SR) == 0.0
        assert profile.current_streak == 0
        assert profile.last_activity_at is None
        assert outcome.transitions[0].trigger is None

    def test_settings_annoyance_withdraws(self, make_profile, now) -> None:
        """Switching interventions off withdraws for two weeks."""
        profile = make_profile(
            user_state=UserState.FOCUSED,
            active_behavior=SR,
            confidence={SR: 0.9},
            interventions_enabled=False,
        )
        outcome = run_scheduled_turn(profile, [], now)
        assert profile.user_state == UserState.WITHDRAWN
        assert profile.withdrawal_ends_at == now + timedelta(days=14)
        assert outcome.intervention is None

    def test_streak_advances(self, make_profile, make_transaction, now) -> None:
        """A focused day without a break extends the streak."""
        profile = make_profile(user_state=UserState.FOCUSED, active_behavior=SR, confidence={SR: 0.9})
        history = [make_transaction(-5.0, at=now - timedelta(days=1))]
        outcome = run_scheduled_turn(profile, history, now)
        assert outcome.streak_break is None
        assert profile.current_streak == 1
        assert profile.user_state == UserState.FOCUSED

    def test_inactivity_breaks_streak(self, make_profile, make_transaction, now) -> None:
        """A week without the behavior ends the streak instead of extending it."""
        profile = make_profile(
            user_state=UserState.FOCUSED, active_behavior=SR, confidence={SR: 0.9}, current_streak=6,
        )
        history = [make_transaction(-5.0, at=now - timedelta(days=9))]
        outcome = run_scheduled_turn(profile, history, now)
        assert outcome.streak_break.reason == StreakBreakReason.INACTIVITY
        assert profile.current_streak == 0

    def test_withdrawal_expires(self, make_profile, now) -> None:
        """An expired withdrawal returns to OBSERVING on the next scheduled turn."""
        profile = make_profile(
            user_state=UserState.WITHDRAWN,
            withdrawal_ends_at=now - timedelta(minutes=1),
            ignored_interventions=2,
        )
        outcome = run_scheduled_turn(profile, [], now)
        assert profile.user_state == UserState.OBSERVING
        assert profile.ignored_interventions == 0
        assert outcome.transitions[-1].trigger == Trigger.SCHEDULED


# =============================================================================
# User responses
# =============================================================================


class TestUserResponse:
    """apply_user_response()."""

    @pytest.fixture
    def focused(self, make_profile):
        def _make(**fields):
            return make_profile(
                user_state=UserState.FOCUSED, active_behavior=SR, confidence={SR: 0.85}, **fields,
            )
        return _make

    def test_first_ignore(self, focused, now) -> None:
        """One ignore backs off without a state change."""
        profile = focused()
        outcome = apply_user_response(profile, UserResponse.IGNORED, now)
        assert outcome.trigger is None
        assert outcome.transitions == []
        assert profile.ignored_interventions == 1
        assert profile.cooldown_ends_at == now + timedelta(hours=24)

    def test_second_ignore_withdraws_and_breaks_streak(self, focused, now) -> None:
        """Withdrawal ends the running streak."""
        profile = focused(ignored_interventions=1, current_streak=3)
        outcome = apply_user_response(profile, UserResponse.IGNORED, now)
        assert profile.user_state == UserState.WITHDRAWN
        assert outcome.transitions[0].to_state == UserState.WITHDRAWN
        assert outcome.transitions[0].trigger is None
        assert outcome.streak_break.reason == StreakBreakReason.WITHDRAWAL_TRIGGERED
        assert profile.current_streak == 0

    def test_rapid_dismissals_escalate(self, focused, now) -> None:
        """A third dismissal within 24 hours is annoyance."""
        profile = focused(recent_dismissals=[now - timedelta(hours=2), now - timedelta(hours=1)])
        outcome = apply_user_response(profile, UserResponse.DISMISSED, now)
        assert profile.user_state == UserState.WITHDRAWN
        assert profile.withdrawal_ends_at == now + timedelta(days=14)
        assert outcome.failure.reason == "User annoyed, extended withdrawal"

    def test_positive_signal_ends_withdrawal(self, make_profile, now) -> None:
        """Engaging during withdrawal returns to OBSERVING early."""
        profile = make_profile(
            user_state=UserState.WITHDRAWN,
            withdrawal_ends_at=now + timedelta(days=5),
            dismissed_count=3,
        )
        outcome = apply_user_response(profile, UserResponse.ENGAGED, now)
        assert outcome.trigger == Trigger.POSITIVE_SIGNAL
        assert profile.user_state == UserState.OBSERVING
        assert profile.dismissed_count == 0
        assert profile.last_activity_at == now

    def test_positive_signal_outside_withdrawal(self, focused, now) -> None:
        """Acknowledging while focused only records activity."""
        profile = focused()
        outcome = apply_user_response(profile, UserResponse.ACKNOWLEDGED, now)
        assert profile.user_state == UserState.FOCUSED
        assert outcome.transitions == []


# =============================================================================
# Reset
# =============================================================================


class TestResetProfile:
    """reset_profile()."""

    def test_reset(self, make_profile, now) -> None:
        """A reset keeps settings and the longest streak."""
        profile = make_profile(
            user_state=UserState.COOLDOWN,
            active_behavior=SR,
            confidence={SR: 0.9},
            current_streak=4,
            longest_streak=10,
            interventions_enabled=False,
            created_at=now - timedelta(days=60),
        )
        outcome = reset_profile(profile, now)
        fresh = outcome.profile
        assert fresh.user_state == UserState.OBSERVING
        assert fresh.get_confidence(SR) == 0.0
        assert fresh.current_streak == 0
        assert fresh.longest_streak == 10
        assert not fresh.interventions_enabled
        assert fresh.created_at == now - timedelta(days=60)
        assert outcome.streak_break.reason == StreakBreakReason.USER_RESET
        assert outcome.transitions[0].from_state == UserState.COOLDOWN

    def test_reset_without_streak(self, make_profile, now) -> None:
        """No streak means no streak break."""
        assert reset_profile(make_profile(), now).streak_break is None


# =============================================================================
# BehavioralEngine
# =============================================================================


@pytest.mark.asyncio
async def test_evaluate_transaction_persists(engine, repository, store, coffee, coffee_history):
    """The finished profile and the intervention are stored."""
    await _seed(store, "user-1", coffee_history)

    outcome = await engine.evaluate_transaction("user-1", coffee)

    stored = await repository.get("user-1")
    assert stored.user_state == UserState.COOLDOWN
    assert stored == outcome.profile
    assert list(repository.interventions) == [outcome.intervention.id]


@pytest.mark.asyncio
async def test_new_user_gets_neutral_profile(engine, repository, coffee):
    """Unknown users start from a neutral profile."""
    outcome = await engine.evaluate_transaction("new-user", coffee)
    stored = await repository.get("new-user")
    assert stored.user_state == UserState.OBSERVING
    assert stored.created_at == coffee.timestamp
    assert outcome.intervention is None


@pytest.mark.asyncio
async def test_failed_turn_writes_nothing(engine, repository, store, coffee, coffee_history, monkeypatch):
    """A turn that raises leaves the stored profile untouched."""
    await _seed(store, "user-1", coffee_history)
    await engine.evaluate_scheduled("user-1", coffee.timestamp - timedelta(hours=1))
    before = await repository.get("user-1")

    def boom(*args, **kwargs):
        raise RuntimeError("classifier failure")

    monkeypatch.setattr(engine_module, "make_decision", boom)
    with pytest.raises(RuntimeError):
        await engine.evaluate_transaction("user-1", coffee)

    assert await repository.get("user-1") == before
    assert repository.interventions == {}


@pytest.mark.asyncio
async def test_same_user_turns_serialize(engine, repository, store, make_transaction, morning, coffee_history):
    """Concurrent turns for one user never both deliver."""
    await _seed(store, "user-1", coffee_history)
    transactions = [
        make_transaction(-5.0, "coffee", morning + timedelta(minutes=i)) for i in range(5)
    ]

    outcomes = await asyncio.gather(*(engine.evaluate_transaction("user-1", t) for t in transactions))

    assert sum(1 for o in outcomes if o.intervention is not None) == 1
    assert len(repository.interventions) == 1
    assert (await repository.get("user-1")).interventions_today == 1


@pytest.mark.asyncio
async def test_user_locks(engine):
    """One lock per user, dropped once nobody holds or awaits it."""
    async with engine._user_lock("a"):
        async with engine._user_lock("b"):
            assert engine._locks["a"] is not engine._locks["b"]
        assert set(engine._locks) == {"a"}
    assert engine._locks == {}


@pytest.mark.asyncio
async def test_user_lock_kept_for_waiters(engine):
    """A waiting task keeps the same lock alive until it is done."""
    entered = []

    async def waiter():
        async with engine._user_lock("a"):
            entered.append(engine._locks["a"])

    async with engine._user_lock("a"):
        held = engine._locks["a"]
        task = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        assert not entered
    await task

    assert entered == [held]
    assert engine._locks == {}
    assert engine._lock_holders == {}


@pytest.mark.asyncio
async def test_locks_released_after_turns(engine, coffee, now):
    """Finished and failed turns leave no locks behind."""
    await engine.evaluate_transaction("user-1", coffee)
    with pytest.raises(ProfileNotFoundError):
        await engine.reset("ghost", now)
    assert engine._locks == {}


@pytest.mark.asyncio
async def test_budget_adherence_refreshed(engine, repository, budget, now):
    """Scheduled turns pull adherence from the budget collaborator."""
    budget.set("user-1", early_month=0.9, current=0.6)
    await engine.evaluate_scheduled("user-1", now)
    stored = await repository.get("user-1")
    assert stored.budget_adherence_early_month == 0.9
    assert stored.budget_adherence_current == 0.6


@pytest.mark.asyncio
async def test_record_response(engine, repository, store, coffee, coffee_history):
    """Responses are attached to the intervention and fed to the profile."""
    await _seed(store, "user-1", coffee_history)
    delivered = await engine.evaluate_transaction("user-1", coffee)
    at = coffee.timestamp + timedelta(minutes=5)

    outcome = await engine.record_response("user-1", delivered.intervention.id, UserResponse.IGNORED, at)

    assert repository.interventions[delivered.intervention.id].response == UserResponse.IGNORED
    assert outcome.profile.ignored_interventions == 1
    assert (await repository.get("user-1")).ignored_interventions == 1


@pytest.mark.asyncio
async def test_repeated_response_rejected(engine, repository, store, coffee, coffee_history):
    """A retried response is a conflict and does not count twice."""
    await _seed(store, "user-1", coffee_history)
    delivered = await engine.evaluate_transaction("user-1", coffee)
    iid = delivered.intervention.id
    at = coffee.timestamp + timedelta(minutes=5)

    await engine.record_response("user-1", iid, UserResponse.IGNORED, at)
    with pytest.raises(StateError):
        await engine.record_response("user-1", iid, UserResponse.IGNORED, at + timedelta(seconds=1))

    stored = await repository.get("user-1")
    assert stored.ignored_interventions == 1
    assert stored.user_state == UserState.COOLDOWN


@pytest.mark.asyncio
async def test_failed_response_turn_leaves_intervention_open(
    engine, repository, store, coffee, coffee_history, monkeypatch,
):
    """The response is only stored together with the profile update."""
    await _seed(store, "user-1", coffee_history)
    delivered = await engine.evaluate_transaction("user-1", coffee)
    iid = delivered.intervention.id
    at = coffee.timestamp + timedelta(minutes=5)

    def boom(*args, **kwargs):
        raise RuntimeError("failure handler crashed")

    monkeypatch.setattr(engine_module, "apply_user_response", boom)
    with pytest.raises(RuntimeError):
        await engine.record_response("user-1", iid, UserResponse.DISMISSED, at)
    assert repository.interventions[iid].response is None

    monkeypatch.undo()
    outcome = await engine.record_response("user-1", iid, UserResponse.DISMISSED, at)
    assert outcome.profile.dismissed_count == 1


@pytest.mark.asyncio
async def test_engine_over_sql_repository(session_factory, store, coffee, coffee_history):
    """A full turn and a response go through the async SQL repository."""
    repository = SQLAlchemyProfileRepository(session_factory)
    engine = BehavioralEngine(repository, transactions=store, rng=random.Random(11))
    await _seed(store, "user-1", coffee_history)

    delivered = await engine.evaluate_transaction("user-1", coffee)
    iid = delivered.intervention.id
    await engine.record_response("user-1", iid, UserResponse.IGNORED, coffee.timestamp + timedelta(minutes=5))

    assert (await repository.get_intervention("user-1", iid)).response == UserResponse.IGNORED
    assert (await engine.get_profile("user-1")).ignored_interventions == 1
    with pytest.raises(StateError):
        await engine.record_response("user-1", iid, UserResponse.IGNORED, coffee.timestamp + timedelta(minutes=6))


@pytest.mark.asyncio
async def test_record_response_unknown(engine, coffee, now):
    """Unknown users and interventions are rejected."""
    with pytest.raises(ProfileNotFoundError):
        await engine.record_response("ghost", "nope", UserResponse.IGNORED, now)

    await engine.evaluate_transaction("user-1", coffee)
    with pytest.raises(ProfileNotFoundError):
        await engine.record_response("user-1", "nope", UserResponse.IGNORED, now)


@pytest.mark.asyncio
async def test_set_interventions_enabled(engine, repository, now):
    """The switch is stored on the profile."""
    profile = await engine.set_interventions_enabled("user-1", False, now)
    assert not profile.interventions_enabled
    assert not (await repository.get("user-1")).interventions_enabled


@pytest.mark.asyncio
async def test_reset_and_get_profile(engine, repository, now):
    """reset() and get_profile() require an existing profile."""
    with pytest.raises(ProfileNotFoundError):
        await engine.get_profile("user-1")
    with pytest.raises(ProfileNotFoundError):
        await engine.reset("user-1", now)

    await engine.evaluate_scheduled("user-1", now)
    outcome = await engine.reset("user-1", now + timedelta(hours=1))
    assert outcome.trigger is None
    assert (await engine.get_profile("user-1")).last_activity_at == now + timedelta(hours=1)


@pytest.mark.asyncio
async def test_engine_singleton(monkeypatch):
    """get_behavioral_engine() builds the engine once."""
    monkeypatch.delenv("AUTOPILOT_DATABASE_URL", raising=False)
    monkeypatch.setattr(engine_module, "_engine", None)
    get_settings.cache_clear()

    first = await get_behavioral_engine()
    second = await get_behavioral_engine()
    get_settings.cache_clear()

    assert first is second
    assert isinstance(first.repository, InMemoryProfileRepository)
    assert first.dynamic_messages
