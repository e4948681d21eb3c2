"""In-memory stand-ins for the attempt store and profile directory."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence, Set

from quizrank.attempt_store import (
    AttemptCursor,
    AttemptPage,
    DisplayDetails,
    OnChange,
    OnError,
    ScopeFilter,
    attempt_matches,
)
from quizrank.attempts import Attempt, LeaderboardEntry
from quizrank.config import Settings
from quizrank.errors import StoreError
from quizrank.profiles import UserProfile

PERIOD = "2025-JulAug"
NOW = datetime(2025, 7, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock() -> datetime:
    return NOW


def make_settings(**updates: object) -> Settings:
    base = Settings().model_copy(update={"cache_dir": None, "period_timezone": "UTC"})
    return base.model_copy(update=updates)


def make_attempt(
    user_id: str,
    combined: float,
    *,
    time_taken: float = 60.0,
    finished: Optional[datetime] = None,
    attempt_id: Optional[str] = None,
    period: str = PERIOD,
    display_name: Optional[str] = None,
    **scope_ids: str,
) -> Attempt:
    return Attempt(
        attempt_id=attempt_id or f"{user_id}-{combined}-{time_taken}",
        user_id=user_id,
        display_name=display_name if display_name is not None else user_id.title(),
        score=int(combined),
        total_questions=10,
        time_taken_seconds=time_taken,
        combined_score=combined,
        period=period,
        finished_at=finished or NOW - timedelta(minutes=5),
        created_at=finished or NOW - timedelta(minutes=5),
        **scope_ids,
    )


def _store_order(attempt: Attempt) -> tuple:
    finished = attempt.finished_at.timestamp() if attempt.finished_at else 0.0
    return (-attempt.combined_score, attempt.time_taken_seconds or 0.0, -finished, attempt.attempt_id)


@dataclass
class FakeSubscription:
    period: str
    scope_filter: Optional[ScopeFilter]
    on_change: OnChange
    on_error: Optional[OnError]
    active: bool = True

    def cancel(self) -> None:
        self.active = False


class FakeAttemptStore:
    """Keeps attempts in a list and records every call it receives.

    ``failing`` names operations that raise :class:`StoreError`: ``query``,
    ``insert``, ``summary``, ``list``, ``write_board``, ``read_board`` or a
    specific board id. ``gate`` makes queries wait until it is set.
    """

    def __init__(self, attempts: Sequence[Attempt] = ()) -> None:
        self.attempts: List[Attempt] = list(attempts)
        self.queries: List[tuple] = []
        self.summaries: Dict[str, Dict[str, object]] = {}
        self.board_members: Dict[str, Dict[str, Dict[str, object]]] = {}
        self.boards: Dict[str, List[LeaderboardEntry]] = {}
        self.subscriptions: List[FakeSubscription] = []
        self.failing: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self._ids = 0

    async def query_attempts(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        cursor: Optional[AttemptCursor],
        page_size: int,
    ) -> AttemptPage:
        self.queries.append((period, scope_filter, cursor, page_size))
        if self.gate is not None:
            await self.gate.wait()
        if "query" in self.failing:
            raise StoreError("backend unavailable")
        rows = sorted(
            (attempt for attempt in self.attempts if attempt_matches(attempt, period, scope_filter)),
            key=_store_order,
        )
        if cursor is not None:
            ids = [row.attempt_id for row in rows]
            rows = rows[ids.index(cursor.attempt_id) + 1 :]
        page = rows[:page_size]
        return AttemptPage(attempts=page, next_cursor=AttemptCursor.after(page[-1]) if page else None)

    def subscribe_attempts(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        on_change: OnChange,
        on_error: Optional[OnError] = None,
    ):
        subscription = FakeSubscription(period, scope_filter, on_change, on_error)
        self.subscriptions.append(subscription)
        return subscription.cancel

    def push(self, attempts: Sequence[Attempt]) -> None:
        for subscription in self.subscriptions:
            if subscription.active:
                subscription.on_change(list(attempts))

    def push_error(self, exc: StoreError) -> None:
        for subscription in self.subscriptions:
            if subscription.active and subscription.on_error is not None:
                subscription.on_error(exc)

    async def insert_attempt(self, attempt: Attempt) -> str:
        if "insert" in self.failing:
            raise StoreError("insert failed", operation="write")
        self._ids += 1
        attempt_id = attempt.attempt_id or f"attempt-{self._ids}"
        self.attempts.append(attempt.model_copy(update={"attempt_id": attempt_id}))
        return attempt_id

    async def merge_user_summary(self, user_id: str, fields: Dict[str, object]) -> None:
        if "summary" in self.failing:
            raise StoreError("summary write failed", operation="write")
        self.summaries.setdefault(user_id, {}).update(fields)

    async def merge_board_member(self, board_id: str, period: str, user_id: str, fields: Dict[str, object]) -> None:
        if board_id in self.failing:
            raise StoreError(f"board {board_id} write failed", operation="write")
        self.board_members.setdefault(board_id, {}).setdefault(user_id, {"period": period}).update(fields)

    async def list_attempts(self, period: str, scope_filter: Optional[ScopeFilter]) -> List[Attempt]:
        if "list" in self.failing:
            raise StoreError("scan failed")
        return sorted(
            (attempt for attempt in self.attempts if attempt_matches(attempt, period, scope_filter)),
            key=_store_order,
        )

    async def write_board(self, board_id: str, period: str, entries: Sequence[LeaderboardEntry]) -> None:
        if "write_board" in self.failing:
            raise StoreError("board rewrite failed", operation="write")
        self.boards[board_id] = list(entries)

    async def read_board(self, board_id: str) -> List[LeaderboardEntry]:
        if "read_board" in self.failing:
            raise StoreError("board read failed")
        return list(self.boards.get(board_id, []))


class FakeProfileDirectory:
    def __init__(self, profiles: Sequence[UserProfile] = ()) -> None:
        self.profiles: Dict[str, UserProfile] = {profile.user_id: profile for profile in profiles}
        self.lookups: List[List[str]] = []
        self.failing = False

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        if self.failing:
            raise StoreError("profile lookup failed", operation="profile")
        return self.profiles.get(user_id)

    async def display_details(self, user_ids: Sequence[str]) -> Dict[str, DisplayDetails]:
        self.lookups.append(list(user_ids))
        if self.failing:
            raise StoreError("profile lookup failed", operation="profile")
        return {
            user_id: DisplayDetails(
                display_name=self.profiles[user_id].display_name or "Unknown",
                avatar_url=self.profiles[user_id].avatar_url,
            )
            for user_id in user_ids
            if user_id in self.profiles
        }
