"""
Profile Repository and Collaborator Contracts.

The behavioral engine performs no I/O of its own. These Protocols describe
the collaborators it is wired to, with two implementations of each storage
contract:
- In-memory (tests, single-process deployments)
- SQLAlchemy over AsyncSession (behavioral_profiles + event log tables)

Profiles are stored as serialized payloads so a caller never shares a live
object with the store: a failed evaluation turn leaves the stored profile
untouched.

Every turn is written through `save_outcome()`: the profile, its events and
an intervention response land together or not at all.

Reference: DESIGN.md Section 6 (External Interfaces)
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.lib.exceptions import ProfileNotFoundError, RepositoryError, StateError
from src.models.base import Base
from src.models.behavior import (
    BehavioralProfile,
    BehaviorType,
    Intervention,
    InterventionType,
    MomentType,
    StreakBreakEvent,
    Transaction,
    UserResponse,
    WinEvent,
    ensure_utc,
)
from src.models.behavior_records import (
    BehavioralProfileRecord,
    InterventionRecord,
    StreakBreakRecord,
    WinRecord,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Collaborator contracts
# =============================================================================

@dataclass(frozen=True)
class BudgetAdherence:
    """Adherence ratios from the budgeting collaborator (1.0 = on budget)."""

    early_month: float
    current: float


@dataclass(frozen=True)
class ResponseUpdate:
    """A UI response to attach to a delivered intervention."""

    intervention_id: str
    response: UserResponse
    responded_at: datetime


class BudgetAdherenceProvider(Protocol):
    async def get_adherence(self, user_id: str, now: datetime) -> BudgetAdherence | None: ...


class TransactionStore(Protocol):
    async def get_transactions(
        self, user_id: str, since: datetime, until: datetime
    ) -> list[Transaction]: ...


class ProfileRepository(Protocol):
    async def get(self, user_id: str) -> BehavioralProfile | None: ...

    async def get_intervention(self, user_id: str, intervention_id: str) -> Intervention | None: ...

    async def upsert(self, profile: BehavioralProfile) -> None: ...

    async def save_outcome(
        self,
        profile: BehavioralProfile,
        intervention: Intervention | None = None,
        win: WinEvent | None = None,
        streak_break: StreakBreakEvent | None = None,
        response: ResponseUpdate | None = None,
    ) -> None: ...


def check_answerable(target: Any, user_id: str, intervention_id: str) -> None:
    """
    Raise unless `target` is this user's intervention and still unanswered.

    Raises:
        ProfileNotFoundError: Unknown intervention or another user's
        StateError: A response was already recorded
    """
    if target is None or target.user_id != user_id:
        raise ProfileNotFoundError(
            f"Intervention {intervention_id} not found",
            details={"intervention_id": intervention_id},
        )
    if target.response is not None:
        raise StateError(
            f"Intervention {intervention_id} already has a response",
            details={"intervention_id": intervention_id, "response": str(target.response)},
        )


# =============================================================================
# In-memory implementations
# =============================================================================

class InMemoryTransactionStore:
    """Chronologically ordered transactions per user."""

    def __init__(self) -> None:
        self._transactions: dict[str, list[Transaction]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def add(self, user_id: str, transaction: Transaction) -> None:
        async with self._lock:
            items = self._transactions[user_id]
            items.append(transaction)
            items.sort(key=lambda t: t.timestamp)

    async def get_transactions(
        self, user_id: str, since: datetime, until: datetime
    ) -> list[Transaction]:
        since, until = ensure_utc(since), ensure_utc(until)
        async with self._lock:
            return [t for t in self._transactions.get(user_id, []) if since <= t.timestamp <= until]


class StaticBudgetAdherence:
    """Fixed adherence per user, set by the caller."""

    def __init__(self) -> None:
        self._values: dict[str, BudgetAdherence] = {}

    def set(self, user_id: str, early_month: float, current: float) -> None:
        self._values[user_id] = BudgetAdherence(early_month, current)

    async def get_adherence(self, user_id: str, now: datetime) -> BudgetAdherence | None:
        return self._values.get(user_id)


class InMemoryProfileRepository:
    """Dict-backed repository. Stores payloads and copies, never live objects."""

    def __init__(self) -> None:
        self._profiles: dict[str, dict] = {}
        self.interventions: dict[str, Intervention] = {}
        self.wins: list[tuple[str, WinEvent]] = []
        self.streak_breaks: list[tuple[str, StreakBreakEvent]] = []

    async def get(self, user_id: str) -> BehavioralProfile | None:
        payload = self._profiles.get(user_id)
        if payload is None:
            return None
        return BehavioralProfile.from_dict(payload, user_id)

    async def get_intervention(self, user_id: str, intervention_id: str) -> Intervention | None:
        intervention = self.interventions.get(intervention_id)
        if intervention is None or intervention.user_id != user_id:
            return None
        return replace(intervention)

    async def upsert(self, profile: BehavioralProfile) -> None:
        await self.save_outcome(profile)

    async def save_outcome(
        self,
        profile: BehavioralProfile,
        intervention: Intervention | None = None,
        win: WinEvent | None = None,
        streak_break: StreakBreakEvent | None = None,
        response: ResponseUpdate | None = None,
    ) -> None:
        # Validate everything before the first write.
        answered = None
        if response is not None:
            target = self.interventions.get(response.intervention_id)
            check_answerable(target, profile.user_id, response.intervention_id)
            answered = replace(
                target, response=response.response, responded_at=response.responded_at,
            )
        if intervention is not None and intervention.id in self.interventions:
            raise RepositoryError(
                f"Intervention {intervention.id} already stored",
                details={"intervention_id": intervention.id},
            )

        self._profiles[profile.user_id] = profile.to_dict()
        if answered is not None:
            self.interventions[answered.id] = answered
        if intervention is not None:
            self.interventions[intervention.id] = replace(intervention)
        if win is not None:
            self.wins.append((profile.user_id, win))
        if streak_break is not None:
            self.streak_breaks.append((profile.user_id, streak_break))


# =============================================================================
# SQLAlchemy implementation
# =============================================================================

def _intervention_from_record(record: InterventionRecord) -> Intervention:
    return Intervention(
        id=record.id,
        user_id=record.user_id,
        behavior=BehaviorType(record.behavior),
        intervention_type=InterventionType(record.intervention_type),
        message_key=record.message_key,
        message=record.message,
        delivered_at=ensure_utc(record.delivered_at),
        moment_type=MomentType(record.moment_type) if record.moment_type else None,
        transaction_id=record.transaction_id,
        response=UserResponse(record.response) if record.response else None,
        responded_at=ensure_utc(record.responded_at) if record.responded_at else None,
    )


class SQLAlchemyProfileRepository:
    """
    Repository backed by the behavioral_* tables.

    Usage:
        repo = SQLAlchemyProfileRepository.from_url("sqlite+aiosqlite:///autopilot.db")
        profile = await repo.get("user-1")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        db_engine: AsyncEngine | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._db_engine = db_engine
        self._schema_ready = db_engine is None

    @classmethod
    def from_url(cls, database_url: str) -> SQLAlchemyProfileRepository:
        """Repository over a new async engine; tables are created on first use."""
        db_engine = create_async_engine(database_url, pool_pre_ping=True)
        return cls(async_sessionmaker(db_engine, expire_on_commit=False), db_engine)

    async def _ensure_schema(self) -> None:
        if self._schema_ready:
            return
        async with self._db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._schema_ready = True

    async def get(self, user_id: str) -> BehavioralProfile | None:
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                record = await session.get(BehavioralProfileRecord, user_id)
                if record is None:
                    return None
                return BehavioralProfile.from_dict(record.profile_data, user_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load profile {user_id}") from e

    async def get_intervention(self, user_id: str, intervention_id: str) -> Intervention | None:
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                record = await session.get(InterventionRecord, intervention_id)
                if record is None or record.user_id != user_id:
                    return None
                return _intervention_from_record(record)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load intervention {intervention_id}") from e

    async def upsert(self, profile: BehavioralProfile) -> None:
        await self.save_outcome(profile)

    async def save_outcome(
        self,
        profile: BehavioralProfile,
        intervention: Intervention | None = None,
        win: WinEvent | None = None,
        streak_break: StreakBreakEvent | None = None,
        response: ResponseUpdate | None = None,
    ) -> None:
        """Write the profile and its events in one transaction."""
        try:
            await self._ensure_schema()
            async with self._session_factory() as session:
                if response is not None:
                    target = await session.get(InterventionRecord, response.intervention_id)
                    check_answerable(target, profile.user_id, response.intervention_id)
                    target.response = response.response.value
                    target.responded_at = response.responded_at

                await self._merge_profile(session, profile)
                if intervention is not None:
                    session.add(InterventionRecord(
                        id=intervention.id,
                        user_id=intervention.user_id,
                        behavior=intervention.behavior.value,
                        intervention_type=intervention.intervention_type.value,
                        message_key=intervention.message_key,
                        message=intervention.message,
                        moment_type=intervention.moment_type.value if intervention.moment_type else None,
                        transaction_id=intervention.transaction_id,
                        delivered_at=intervention.delivered_at,
                    ))
                if win is not None:
                    session.add(WinRecord(
                        user_id=profile.user_id,
                        win_type=win.win_type.value,
                        behavior=win.behavior.value,
                        message=win.message,
                        celebrate=win.celebrate,
                        reduction_percent=win.metadata.get("reductionPercent"),
                        metadata_json=json.dumps(win.metadata, sort_keys=True),
                        occurred_at=win.occurred_at,
                    ))
                if streak_break is not None:
                    session.add(StreakBreakRecord(
                        user_id=profile.user_id,
                        reason=streak_break.reason.value,
                        streak_length=streak_break.streak_length,
                        behavior=streak_break.behavior.value if streak_break.behavior else None,
                        message=streak_break.message,
                        metadata_json=json.dumps(streak_break.metadata, sort_keys=True),
                        broken_at=streak_break.broken_at,
                    ))
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Outcome write for %s rolled back: %s", profile.user_id, e)
            raise RepositoryError(f"Failed to save outcome for {profile.user_id}") from e

    @staticmethod
    async def _merge_profile(session: AsyncSession, profile: BehavioralProfile) -> None:
        record = await session.get(BehavioralProfileRecord, profile.user_id)
        if record is None:
            record = BehavioralProfileRecord(user_id=profile.user_id, version=0)
            session.add(record)
        record.profile_data = profile.to_dict()
        record.user_state = profile.user_state.value
        record.active_behavior = profile.active_behavior.value if profile.active_behavior else None
        record.current_streak = profile.current_streak
        record.version = (record.version or 0) + 1
