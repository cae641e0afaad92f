"""
Behavioral Engine Orchestration.

Runs one evaluation turn per trigger:

    transaction  -> detectors -> outcomes -> state machine -> moment
                 -> decision -> message -> INTERVENTION_DELIVERED
    scheduled    -> churn / annoyance -> detectors -> relapse, streak, win
                 -> state machine
    user response -> failure handler -> annoyance -> withdrawal break

The turn functions (run_transaction_turn, run_scheduled_turn,
apply_user_response, reset_profile) are synchronous and mutate only the
profile they are handed. BehavioralEngine wraps them with I/O: it loads a
copy of the stored profile under a per-user asyncio.Lock, runs the turn and
saves the finished profile, so a turn that raises writes nothing.

Reference: DESIGN.md Section 5 (Concurrency & Resource Model)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from src.config.thresholds import DEFAULT_CONFIG, EngineConfig
from src.lib.exceptions import ProfileNotFoundError, StateError
from src.models.behavior import (
    BehavioralProfile,
    Intervention,
    InterventionType,
    StateTransition,
    StreakBreakEvent,
    Transaction,
    Trigger,
    UserResponse,
    UserState,
    WinEvent,
    ensure_utc,
)
from src.services.behavior.decision import Decision, make_decision
from src.services.behavior.detection import (
    DetectionResult,
    calibrate_seasonal_factors,
    normalize_history,
    record_confidence_snapshot,
    run_detection,
    should_recalibrate,
)
from src.services.behavior.failure import (
    FailureMode,
    FailureResponse,
    apply_failure_response,
    detect_annoyance,
    failure_mode_for_response,
    handle_failure,
    is_churning,
)
from src.services.behavior.messages import (
    MessageContext,
    generate_dynamic_message,
    remember_message_key,
    select_message,
)
from src.services.behavior.moments import MomentClassifier, MomentResult, classify_extended
from src.services.behavior.state_machine import apply_transition, evaluate_transition
from src.services.behavior.wins import (
    RelapseResult,
    analyze_outcomes,
    apply_streak_break,
    apply_win,
    check_streak_break,
    detect_relapse,
    detect_win,
    user_reset_break,
)
from src.services.profile_repository import (
    BudgetAdherenceProvider,
    ProfileRepository,
    ResponseUpdate,
    TransactionStore,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Outcome
# =============================================================================

def _plain(value: Any) -> dict[str, Any] | None:
    """asdict() with enum members flattened to their values."""
    if value is None:
        return None
    return {
        k: (v.value if isinstance(v, Enum) else v)
        for k, v in asdict(value).items()
    }


@dataclass
class EvaluationOutcome:
    """Everything one turn produced, plus the updated profile."""

    user_id: str
    trigger: Trigger | None                # None for responses and resets
    profile: BehavioralProfile
    changes: dict[str, Any] = field(default_factory=dict)     # field -> new value
    intervention: Intervention | None = None
    win: WinEvent | None = None
    streak_break: StreakBreakEvent | None = None
    transitions: list[StateTransition] = field(default_factory=list)
    moment: MomentResult | None = None
    supplementary_moments: list[MomentResult] = field(default_factory=list)
    decision: Decision | None = None
    failure: FailureResponse | None = None
    relapse: RelapseResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "trigger": self.trigger.value if self.trigger else None,
            "profile": self.profile.to_dict(),
            "changes": dict(self.changes),
            "intervention": self.intervention.to_dict() if self.intervention else None,
            "win": self.win.to_dict() if self.win else None,
            "streak_break": self.streak_break.to_dict() if self.streak_break else None,
            "transitions": [t.to_dict() for t in self.transitions],
            "moment": _plain(self.moment),
            "supplementary_moments": [_plain(m) for m in self.supplementary_moments],
            "decision": _plain(self.decision),
            "failure": _plain(self.failure),
            "relapse": _plain(self.relapse),
        }


def diff_profiles(before: dict[str, Any], after: dict[str, Any]) -> dict[str, Any]:
    """Serialized fields whose value changed, mapped to the new value."""
    return {key: value for key, value in after.items() if before.get(key) != value}


# =============================================================================
# Turn building blocks
# =============================================================================

def reset_rolling_counters(profile: BehavioralProfile, now: datetime) -> None:
    """Zero the daily counter on a new calendar day and the weekly one on a new ISO week."""
    now = ensure_utc(now)
    if profile.daily_reset_at is None or profile.daily_reset_at.date() != now.date():
        profile.interventions_today = 0
        profile.daily_reset_at = now
    if (
        profile.weekly_reset_at is None
        or profile.weekly_reset_at.isocalendar()[:2] != now.isocalendar()[:2]
    ):
        profile.interventions_this_week = 0
        profile.weekly_reset_at = now


def refresh_confidences(
    profile: BehavioralProfile,
    history: list[Transaction],
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
) -> dict:
    """Recalibrate seasonal factors when due, then rerun all detectors."""
    if should_recalibrate(profile.seasonal_factors, now, config):
        profile.seasonal_factors = calibrate_seasonal_factors(
            history, profile.seasonal_factors, now, config
        )
    results: dict[Any, DetectionResult] = run_detection(profile, history, now, config)
    for behavior, result in results.items():
        profile.set_confidence(behavior, result.confidence)
    return results


def advance_streak(profile: BehavioralProfile, now: datetime) -> bool:
    """Count today toward the streak, at most once per calendar day."""
    today = ensure_utc(now).date()
    if profile.last_streak_date == today:
        return False
    profile.current_streak += 1
    profile.longest_streak = max(profile.longest_streak, profile.current_streak)
    profile.last_streak_date = today
    return True


def _step(
    profile: BehavioralProfile,
    trigger: Trigger,
    now: datetime,
    config: EngineConfig,
    outcome: EvaluationOutcome,
) -> None:
    """Run the state machine once; a confidence drop also cools the user off."""
    result = evaluate_transition(profile, trigger, now, config)
    recorded = apply_transition(profile, result, trigger, now, config)
    if recorded is not None:
        outcome.transitions.append(recorded)
    if result.rule == "focused_deactivate":
        failure = handle_failure(FailureMode.CONFIDENCE_DROPPED, profile, config)
        apply_failure_response(profile, failure, now, config)
        outcome.failure = failure


def _apply_failure(
    profile: BehavioralProfile,
    mode: FailureMode,
    now: datetime,
    config: EngineConfig,
    outcome: EvaluationOutcome,
) -> FailureResponse:
    previous = profile.user_state
    failure = handle_failure(mode, profile, config)
    apply_failure_response(profile, failure, now, config)
    outcome.failure = failure
    if profile.user_state != previous:
        outcome.transitions.append(StateTransition(
            from_state=previous,
            to_state=profile.user_state,
            reason=failure.reason,
            trigger=None,
            at=ensure_utc(now),
        ))
    return failure


def _finish(
    profile: BehavioralProfile,
    before: dict[str, Any],
    now: datetime,
    config: EngineConfig,
    outcome: EvaluationOutcome,
) -> EvaluationOutcome:
    record_confidence_snapshot(profile, now, config)
    profile.last_evaluated_at = now
    outcome.changes = diff_profiles(before, profile.to_dict())
    return outcome


def _time_of_day(moment: datetime) -> str:
    return moment.strftime("%H:%M")


def _build_message(
    profile: BehavioralProfile,
    decision: Decision,
    transaction: Transaction,
    history: list[Transaction],
    dynamic_messages: bool,
    rng: random.Random | None,
) -> tuple[str, str] | None:
    """(key, text) for the decided intervention, or None if nothing is configured."""
    if dynamic_messages and decision.intervention_type == InterventionType.IMMEDIATE_MIRROR:
        same_day = [
            t for t in history
            if t.is_expense
            and t.category == transaction.category
            and t.timestamp.date() == transaction.timestamp.date()
        ]
        context = MessageContext(
            amount=transaction.magnitude,
            category=transaction.category,
            time_of_day=_time_of_day(transaction.timestamp),
            transaction_count=len(same_day) or None,
        )
        rendered = generate_dynamic_message(
            decision.behavior, decision.intervention_type, context,
            profile.recent_message_keys, transaction.timestamp, rng,
        )
        if rendered is not None:
            return rendered

    message = select_message(
        decision.behavior, decision.intervention_type, decision.moment_type,
        profile.recent_message_keys, rng,
    )
    if message is None:
        return None
    return message.key, message.template


def _deliver(
    profile: BehavioralProfile,
    decision: Decision,
    transaction: Transaction,
    history: list[Transaction],
    now: datetime,
    config: EngineConfig,
    rng: random.Random | None,
    dynamic_messages: bool,
    outcome: EvaluationOutcome,
) -> Intervention | None:
    built = _build_message(profile, decision, transaction, history, dynamic_messages, rng)
    if built is None:
        logger.warning(
            "intervention_suppressed_no_message",
            user_id=profile.user_id,
            behavior=decision.behavior,
            intervention_type=decision.intervention_type,
        )
        return None

    key, text = built
    intervention = Intervention(
        user_id=profile.user_id,
        behavior=decision.behavior,
        intervention_type=decision.intervention_type,
        message_key=key,
        message=text,
        delivered_at=now,
        moment_type=decision.moment_type,
        transaction_id=transaction.id,
    )
    profile.interventions_today += 1
    profile.interventions_this_week += 1
    profile.last_intervention_type = decision.intervention_type
    profile.last_intervention_at = now
    profile.recent_message_keys = remember_message_key(
        profile.recent_message_keys, key, config.recent_message_memory
    )
    _step(profile, Trigger.INTERVENTION_DELIVERED, now, config, outcome)
    return intervention


# =============================================================================
# Turns
# =============================================================================

def run_transaction_turn(
    profile: BehavioralProfile,
    transaction: Transaction,
    history: Iterable[Any] | None,
    now: datetime | None = None,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
    dynamic_messages: bool = False,
) -> EvaluationOutcome:
    """
    Evaluate a newly observed transaction.

    Args:
        profile: Working copy of the profile (mutated in place)
        transaction: The new transaction; appended to history if missing
        history: Recent transactions for the user
        now: Evaluation time (defaults to the transaction timestamp)

    Returns:
        EvaluationOutcome with at most one intervention
    """
    now = ensure_utc(now or transaction.timestamp)
    before = profile.to_dict()
    outcome = EvaluationOutcome(profile.user_id, Trigger.TRANSACTION, profile)

    items = list(history or [])
    if transaction not in items:
        items.append(transaction)
    items = normalize_history(items, now)

    reset_rolling_counters(profile, now)
    profile.last_activity_at = now
    refresh_confidences(profile, items, now, config)

    analysis = analyze_outcomes(profile, items, now, config, rng)
    outcome.relapse = analysis.relapse
    if analysis.streak_break is not None:
        apply_streak_break(profile, analysis.streak_break)
        outcome.streak_break = analysis.streak_break
    if analysis.win is not None:
        apply_win(profile, analysis.win)
        outcome.win = analysis.win

    _step(profile, Trigger.TRANSACTION, now, config, outcome)

    outcome.moment = MomentClassifier(config).classify(transaction, profile, items)
    outcome.supplementary_moments = classify_extended(transaction, profile, items)
    outcome.decision = make_decision(profile, outcome.moment, now, config)
    if outcome.decision.should_intervene:
        outcome.intervention = _deliver(
            profile, outcome.decision, transaction, items, now, config, rng,
            dynamic_messages, outcome,
        )

    return _finish(profile, before, now, config, outcome)


def run_scheduled_turn(
    profile: BehavioralProfile,
    history: Iterable[Any] | None,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> EvaluationOutcome:
    """
    Periodic evaluation: churn, annoyance, confidence refresh, streak and wins.

    Never produces an intervention.
    """
    now = ensure_utc(now)
    before = profile.to_dict()
    outcome = EvaluationOutcome(profile.user_id, Trigger.SCHEDULED, profile)
    items = normalize_history(history, now)

    reset_rolling_counters(profile, now)

    if is_churning(profile, now, config):
        event = user_reset_break(profile, now, rng)
        if event is not None:
            apply_streak_break(profile, event)
            outcome.streak_break = event
        _apply_failure(profile, FailureMode.USER_CHURNING, now, config, outcome)
        profile.last_activity_at = None
        return _finish(profile, before, now, config, outcome)

    if profile.user_state != UserState.WITHDRAWN and detect_annoyance(profile, now, config).is_annoyed:
        _apply_failure(profile, FailureMode.USER_ANNOYED, now, config, outcome)

    refresh_confidences(profile, items, now, config)

    relapse = detect_relapse(profile, profile.active_behavior, items, now, config, rng)
    outcome.relapse = relapse
    streak_break = check_streak_break(profile, items, now, relapse, config, rng)
    if streak_break is not None:
        apply_streak_break(profile, streak_break)
        outcome.streak_break = streak_break
    elif profile.active_behavior is not None:
        advance_streak(profile, now)

    if not relapse.is_relapse:
        win = detect_win(profile, items, now, config, rng)
        if win is not None:
            apply_win(profile, win)
            outcome.win = win

    _step(profile, Trigger.SCHEDULED, now, config, outcome)
    return _finish(profile, before, now, config, outcome)


def apply_user_response(
    profile: BehavioralProfile,
    response: UserResponse,
    now: datetime,
    config: EngineConfig = DEFAULT_CONFIG,
    rng: random.Random | None = None,
) -> EvaluationOutcome:
    """
    Fold a UI response to an intervention into the profile.

    Ignored and dismissed responses go through the failure handler; rapid
    dismissals escalate to USER_ANNOYED. Acknowledged and engaged responses
    count as a positive signal, which ends a withdrawal early.
    """
    now = ensure_utc(now)
    before = profile.to_dict()
    mode = failure_mode_for_response(response)
    outcome = EvaluationOutcome(
        profile.user_id,
        None if mode is not None else Trigger.POSITIVE_SIGNAL,
        profile,
    )

    if mode is not None:
        _apply_failure(profile, mode, now, config, outcome)
        annoyance = detect_annoyance(profile, now, config)
        if annoyance.trigger == "rapid_dismiss":
            _apply_failure(profile, FailureMode.USER_ANNOYED, now, config, outcome)
        if profile.user_state == UserState.WITHDRAWN:
            event = check_streak_break(profile, None, now, None, config, rng)
            if event is not None:
                apply_streak_break(profile, event)
                outcome.streak_break = event
    else:
        profile.last_activity_at = now
        if profile.user_state == UserState.WITHDRAWN:
            _step(profile, Trigger.POSITIVE_SIGNAL, now, config, outcome)

    outcome.changes = diff_profiles(before, profile.to_dict())
    return outcome


def reset_profile(
    profile: BehavioralProfile,
    now: datetime,
    rng: random.Random | None = None,
) -> EvaluationOutcome:
    """
    Start a user over from a neutral profile.

    Keeps the user's settings, creation time and longest streak; emits a
    user_reset streak break when a streak was running.
    """
    now = ensure_utc(now)
    before = profile.to_dict()
    event = user_reset_break(profile, now, rng)
    fresh = BehavioralProfile(
        user_id=profile.user_id,
        longest_streak=profile.longest_streak,
        interventions_enabled=profile.interventions_enabled,
        created_at=profile.created_at or now,
        last_activity_at=now,
    )
    outcome = EvaluationOutcome(profile.user_id, None, fresh, streak_break=event)
    if profile.user_state != fresh.user_state:
        outcome.transitions.append(StateTransition(
            from_state=profile.user_state,
            to_state=fresh.user_state,
            reason="Profile reset",
            trigger=None,
            at=now,
        ))
    outcome.changes = diff_profiles(before, fresh.to_dict())
    return outcome


# =============================================================================
# Service
# =============================================================================

class BehavioralEngine:
    """
    Async front door to the behavioral engine.

    Every operation for one user runs under that user's lock, so turns for
    the same user never interleave. Different users proceed concurrently.

    Usage:
        engine = BehavioralEngine(InMemoryProfileRepository(), transactions=store)
        outcome = await engine.evaluate_transaction("user-1", transaction)
    """

    def __init__(
        self,
        repository: ProfileRepository,
        transactions: TransactionStore | None = None,
        budget_provider: BudgetAdherenceProvider | None = None,
        config: EngineConfig = DEFAULT_CONFIG,
        rng: random.Random | None = None,
        history_days: int = 92,
        dynamic_messages: bool = False,
    ) -> None:
        self.repository = repository
        self.transactions = transactions
        self.budget_provider = budget_provider
        self.config = config
        self.rng = rng
        self.history_days = history_days
        self.dynamic_messages = dynamic_messages
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_holders: dict[str, int] = {}

    @asynccontextmanager
    async def _user_lock(self, user_id: str) -> AsyncIterator[None]:
        """Hold the user's lock; it is dropped once no task holds or awaits it."""
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._lock_holders[user_id] = self._lock_holders.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_holders[user_id] -= 1
            if not self._lock_holders[user_id]:
                del self._lock_holders[user_id]
                del self._locks[user_id]

    async def _load(self, user_id: str, now: datetime, create: bool = True) -> BehavioralProfile:
        profile = await self.repository.get(user_id)
        if profile is None:
            if not create:
                raise ProfileNotFoundError(
                    f"No behavioral profile for {user_id}", details={"user_id": user_id}
                )
            return BehavioralProfile(user_id=user_id, created_at=now)
        return profile.copy()

    async def _history(self, user_id: str, now: datetime) -> list[Transaction]:
        if self.transactions is None:
            return []
        since = now - timedelta(days=self.history_days)
        return await self.transactions.get_transactions(user_id, since, now)

    async def _refresh_adherence(self, profile: BehavioralProfile, now: datetime) -> None:
        if self.budget_provider is None:
            return
        adherence = await self.budget_provider.get_adherence(profile.user_id, now)
        if adherence is not None:
            profile.budget_adherence_early_month = adherence.early_month
            profile.budget_adherence_current = adherence.current

    async def _persist(self, outcome: EvaluationOutcome, response: ResponseUpdate | None = None) -> None:
        await self.repository.save_outcome(
            outcome.profile,
            intervention=outcome.intervention,
            win=outcome.win,
            streak_break=outcome.streak_break,
            response=response,
        )

        logger.info(
            "evaluation_completed",
            user_id=outcome.user_id,
            trigger=outcome.trigger,
            state=outcome.profile.user_state,
            active_behavior=outcome.profile.active_behavior,
            intervened=outcome.intervention is not None,
            win=outcome.win.win_type if outcome.win else None,
            streak_break=outcome.streak_break.reason if outcome.streak_break else None,
            changed_fields=sorted(outcome.changes),
        )

    async def evaluate_transaction(
        self,
        user_id: str,
        transaction: Transaction,
        now: datetime | None = None,
    ) -> EvaluationOutcome:
        """Run a transaction turn and persist the result."""
        now = ensure_utc(now or transaction.timestamp)
        async with self._user_lock(user_id):
            profile = await self._load(user_id, now)
            history = await self._history(user_id, now)
            await self._refresh_adherence(profile, now)
            outcome = run_transaction_turn(
                profile, transaction, history, now, self.config, self.rng, self.dynamic_messages
            )
            await self._persist(outcome)
        return outcome

    async def evaluate_scheduled(self, user_id: str, now: datetime | None = None) -> EvaluationOutcome:
        """Run a scheduled turn and persist the result."""
        now = ensure_utc(now or datetime.now(UTC))
        async with self._user_lock(user_id):
            profile = await self._load(user_id, now)
            history = await self._history(user_id, now)
            await self._refresh_adherence(profile, now)
            outcome = run_scheduled_turn(profile, history, now, self.config, self.rng)
            await self._persist(outcome)
        return outcome

    async def record_response(
        self,
        user_id: str,
        intervention_id: str,
        response: UserResponse,
        now: datetime | None = None,
    ) -> EvaluationOutcome:
        """
        Attach a UI response to a delivered intervention and update the profile.

        Each intervention takes one response. The response and the profile
        update are stored together.

        Raises:
            ProfileNotFoundError: Unknown user or intervention
            StateError: The intervention already has a response
        """
        now = ensure_utc(now or datetime.now(UTC))
        async with self._user_lock(user_id):
            profile = await self._load(user_id, now, create=False)
            intervention = await self.repository.get_intervention(user_id, intervention_id)
            if intervention is None:
                raise ProfileNotFoundError(
                    f"Intervention {intervention_id} not found",
                    details={"intervention_id": intervention_id},
                )
            if intervention.response is not None:
                raise StateError(
                    f"Intervention {intervention_id} already has a response",
                    details={"intervention_id": intervention_id, "response": str(intervention.response)},
                )
            outcome = apply_user_response(profile, response, now, self.config, self.rng)
            await self._persist(outcome, ResponseUpdate(intervention_id, response, now))
        return outcome

    async def set_interventions_enabled(
        self,
        user_id: str,
        enabled: bool,
        now: datetime | None = None,
    ) -> BehavioralProfile:
        """User-facing on/off switch. Turning it off is read as annoyance on the next scheduled turn."""
        now = ensure_utc(now or datetime.now(UTC))
        async with self._user_lock(user_id):
            profile = await self._load(user_id, now)
            profile.interventions_enabled = enabled
            profile.last_activity_at = now
            await self.repository.upsert(profile)
        logger.info("interventions_toggled", user_id=user_id, enabled=enabled)
        return profile

    async def reset(self, user_id: str, now: datetime | None = None) -> EvaluationOutcome:
        """
        Explicit profile reset.

        Raises:
            ProfileNotFoundError: Unknown user
        """
        now = ensure_utc(now or datetime.now(UTC))
        async with self._user_lock(user_id):
            profile = await self._load(user_id, now, create=False)
            outcome = reset_profile(profile, now, self.rng)
            await self._persist(outcome)
        return outcome

    async def get_profile(self, user_id: str) -> BehavioralProfile:
        """
        Raises:
            ProfileNotFoundError: Unknown user
        """
        profile = await self.repository.get(user_id)
        if profile is None:
            raise ProfileNotFoundError(
                f"No behavioral profile for {user_id}", details={"user_id": user_id}
            )
        return profile


# =============================================================================
# Singleton
# =============================================================================

_engine: BehavioralEngine | None = None
_engine_lock = asyncio.Lock()


def build_engine() -> BehavioralEngine:
    """Wire an engine from settings and AUTOPILOT_* threshold overrides."""
    from src.config.settings import get_settings
    from src.config.thresholds import load_config
    from src.services.profile_repository import (
        InMemoryProfileRepository,
        InMemoryTransactionStore,
        SQLAlchemyProfileRepository,
        StaticBudgetAdherence,
    )

    settings = get_settings()
    if settings.database_url:
        repository: ProfileRepository = SQLAlchemyProfileRepository.from_url(settings.database_url)
    else:
        repository = InMemoryProfileRepository()

    return BehavioralEngine(
        repository,
        transactions=InMemoryTransactionStore(),
        budget_provider=StaticBudgetAdherence(),
        config=load_config(),
        dynamic_messages=True,
    )


async def get_behavioral_engine() -> BehavioralEngine:
    """Get the global engine singleton."""
    global _engine
    if _engine is None:
        async with _engine_lock:
            if _engine is None:
                _engine = build_engine()
    return _engine
