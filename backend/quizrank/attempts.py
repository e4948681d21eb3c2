"""Attempt and leaderboard entry models plus the derived score fields."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

SECONDS_PER_MINUTE = 60


def elapsed_seconds(started_at: datetime, finished_at: datetime) -> int:
    """Whole seconds between start and finish, never negative."""
    return max(0, round((_aware(finished_at) - _aware(started_at)).total_seconds()))


def remaining_seconds(duration_seconds: int, elapsed: int) -> int:
    return max(0, int(duration_seconds) - int(elapsed))


def combined_score(score: float, remaining: int) -> float:
    """Raw score plus unused time in minutes."""
    return float(score) + remaining / SECONDS_PER_MINUTE


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ScopeIdentifiers(BaseModel):
    school_id: Optional[str] = None
    union_id: Optional[str] = None
    upazila_id: Optional[str] = None
    district_id: Optional[str] = None
    division_id: Optional[str] = None
    group_id: Optional[str] = None


class Attempt(ScopeIdentifiers):
    """One completed test submission as stored. Never edited after insert."""

    attempt_id: str
    user_id: str
    test_id: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    score: float = 0
    total_questions: int = 0
    time_taken_seconds: Optional[float] = None
    remaining_time_seconds: int = Field(default=0, ge=0)
    combined_score: float = 0.0
    period: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    user_answers: Dict[str, Any] = Field(default_factory=dict)

    def scope_field(self, field: str) -> Optional[str]:
        return getattr(self, field, None)


class AttemptInput(BaseModel):
    """Raw submission handed to the write path by the quiz player."""

    user_id: Optional[str] = None
    test_id: Optional[str] = None
    score: float = 0
    total_questions: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    test_duration_seconds: Optional[int] = Field(default=None, ge=0)
    combined_score: Optional[float] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    group_id: Optional[str] = None
    school_id: Optional[str] = None
    union_id: Optional[str] = None
    upazila_id: Optional[str] = None
    district_id: Optional[str] = None
    division_id: Optional[str] = None
    user_answers: Dict[str, Any] = Field(default_factory=dict)


class LeaderboardEntry(BaseModel):
    rank: int
    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    attempt_id: Optional[str] = None
    test_id: Optional[str] = None
    score: float = 0
    total_questions: int = 0
    combined_score: float
    time_taken_seconds: Optional[float] = None
    remaining_time_seconds: int = 0
    finished_at: Optional[datetime] = None
    period: Optional[str] = None
    school_id: Optional[str] = None
    group_id: Optional[str] = None

    @property
    def sort_time(self) -> float:
        return self.time_taken_seconds if self.time_taken_seconds is not None else math.inf


__all__ = [
    "Attempt",
    "AttemptInput",
    "LeaderboardEntry",
    "ScopeIdentifiers",
    "combined_score",
    "elapsed_seconds",
    "remaining_seconds",
]
