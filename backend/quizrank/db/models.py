"""ORM models backing the attempt store."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin, utcnow

JSONType = JSON

_ID = String(36)
_SCOPE_ID = String(128)


class TestAttemptModel(Base):
    __tablename__ = "test_attempts"
    __table_args__ = (
        Index(
            "ix_test_attempts_period_order",
            "period",
            "combined_score",
            "time_taken_seconds",
            "finished_at",
        ),
        Index("ix_test_attempts_period_school", "period", "school_id", "combined_score"),
        Index("ix_test_attempts_period_group", "period", "group_id", "combined_score"),
        Index("ix_test_attempts_period_union", "period", "union_id", "combined_score"),
        Index("ix_test_attempts_period_upazila", "period", "upazila_id", "combined_score"),
        Index("ix_test_attempts_period_district", "period", "district_id", "combined_score"),
        Index("ix_test_attempts_period_division", "period", "division_id", "combined_score"),
        Index("ix_test_attempts_user_period", "user_id", "period"),
    )
    # pytest would otherwise try to collect this class
    __test__ = False

    id: Mapped[str] = mapped_column(_ID, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    test_id: Mapped[Optional[str]] = mapped_column(String(128))
    display_name: Mapped[Optional[str]] = mapped_column(String(256))
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    score: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    total_questions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_taken_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    remaining_time_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    combined_score: Mapped[float] = mapped_column(Float, nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    school_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    union_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    upazila_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    district_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    division_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    group_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    user_answers: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class UserProfileModel(TimestampMixin, Base):
    """Read model of the enrollment profile; written by the profile service."""

    __tablename__ = "user_profiles"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(256))
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    school_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    union_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    upazila_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    district_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    division_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    groups: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)


class UserRankSummaryModel(Base):
    __tablename__ = "user_rank_summaries"

    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(256))
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    score: Mapped[Optional[float]] = mapped_column(Float)
    total_questions: Mapped[Optional[int]] = mapped_column(Integer)
    combined_score: Mapped[Optional[float]] = mapped_column(Float)
    period: Mapped[Optional[str]] = mapped_column(String(16))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class LeaderboardMemberModel(Base):
    """One user's row in a persisted scope/period summary board."""

    __tablename__ = "leaderboard_members"
    __table_args__ = (Index("ix_leaderboard_members_board_rank", "board_id", "rank"),)

    board_id: Mapped[str] = mapped_column(String(192), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    rank: Mapped[Optional[int]] = mapped_column(Integer)
    display_name: Mapped[Optional[str]] = mapped_column(String(256))
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    attempt_id: Mapped[Optional[str]] = mapped_column(_ID)
    score: Mapped[Optional[float]] = mapped_column(Float)
    total_questions: Mapped[Optional[int]] = mapped_column(Integer)
    combined_score: Mapped[Optional[float]] = mapped_column(Float)
    time_taken_seconds: Mapped[Optional[float]] = mapped_column(Float)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    school_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    union_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    upazila_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    district_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    division_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    group_id: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class ReconciliationJobModel(Base):
    """A derived summary write that failed and still needs a re-aggregation."""

    __tablename__ = "reconciliation_jobs"
    __table_args__ = (Index("ix_reconciliation_jobs_pending", "resolved_at", "created_at"),)

    id: Mapped[str] = mapped_column(_ID, primary_key=True, default=lambda: str(uuid.uuid4()))
    target: Mapped[str] = mapped_column(String(16), nullable=False)
    board_id: Mapped[Optional[str]] = mapped_column(String(192))
    scope: Mapped[Optional[str]] = mapped_column(String(16))
    scope_value: Mapped[Optional[str]] = mapped_column(_SCOPE_ID)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    attempt_id: Mapped[Optional[str]] = mapped_column(_ID)
    error: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


__all__ = [
    "LeaderboardMemberModel",
    "ReconciliationJobModel",
    "TestAttemptModel",
    "UserProfileModel",
    "UserRankSummaryModel",
]
