"""
Behavioral Engine Persistence Models.

SQLAlchemy tables backing the profile repository and the event logs the
surrounding application reads (interventions, wins, streak breaks).

The profile is stored as a JSON payload (BehavioralProfile.to_dict) plus a few
denormalized columns for querying. `version` is bumped on every write so a
concurrent writer working from a stale read can be detected.

Reference: DESIGN.md Section 6 (External Interfaces)
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text

from src.models.base import Base

# =============================================================================
# Profile Model
# =============================================================================

class BehavioralProfileRecord(Base):
    """One row per user holding the serialized BehavioralProfile."""

    __tablename__ = "behavioral_profiles"

    user_id = Column(String(64), primary_key=True)

    # Serialized BehavioralProfile.to_dict()
    payload = Column(Text, nullable=False, default="{}")

    # Denormalized for dashboards and scheduled sweeps
    user_state = Column(String(16), nullable=False, default="OBSERVING")
    active_behavior = Column(String(32), nullable=True)
    current_streak = Column(Integer, nullable=False, default=0)

    # Optimistic concurrency counter
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_behavioral_profile_state", "user_state"),
    )

    @property
    def profile_data(self) -> dict[str, Any]:
        """Decoded payload; an unreadable payload yields an empty dict."""
        try:
            data = json.loads(str(self.payload or "{}"))
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    @profile_data.setter
    def profile_data(self, value: dict[str, Any]) -> None:
        self.payload = json.dumps(value, sort_keys=True)


# =============================================================================
# Event Logs
# =============================================================================

class InterventionRecord(Base):
    """Delivered intervention plus the user's later response."""

    __tablename__ = "behavioral_interventions"

    id = Column(String(32), primary_key=True)
    user_id = Column(String(64), nullable=False, index=True)
    behavior = Column(String(32), nullable=False)
    intervention_type = Column(String(32), nullable=False)
    message_key = Column(String(64), nullable=False)
    message = Column(String(200), nullable=False)
    moment_type = Column(String(40), nullable=True)
    transaction_id = Column(String(64), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=False)
    response = Column(String(16), nullable=True)  # acknowledged/engaged/dismissed/ignored
    responded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_intervention_user_delivered", "user_id", "delivered_at"),
    )


class WinRecord(Base):
    """Detected win (celebrated or silent)."""

    __tablename__ = "behavioral_wins"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    win_type = Column(String(32), nullable=False)
    behavior = Column(String(32), nullable=False)
    message = Column(String(200), nullable=False, default="")
    celebrate = Column(Boolean, nullable=False, default=True)
    reduction_percent = Column(Float, nullable=True)
    metadata_json = Column("metadata", Text, nullable=True)
    occurred_at = Column(DateTime(timezone=True), nullable=False)


class StreakBreakRecord(Base):
    """Streak break with its reason and length."""

    __tablename__ = "behavioral_streak_breaks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    reason = Column(String(32), nullable=False)
    streak_length = Column(Integer, nullable=False, default=0)
    behavior = Column(String(32), nullable=True)
    message = Column(String(200), nullable=False, default="")
    metadata_json = Column("metadata", Text, nullable=True)
    broken_at = Column(DateTime(timezone=True), nullable=False)
