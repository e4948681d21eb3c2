"""Narrow interface to the persistent attempt store.

Everything above this module talks to storage only through
:class:`AttemptStore`; the SQLAlchemy implementation lives in
``quizrank.repositories.attempts``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, NamedTuple, Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from .attempts import Attempt, LeaderboardEntry
from .errors import StoreError
from .profiles import GLOBAL_SCOPE, GROUP_SCOPE, SCOPE_FIELDS, UserProfile


class ScopeFilter(NamedTuple):
    field: str
    value: str


class AttemptCursor(BaseModel):
    """Position of the last raw row of a page, in store sort order."""

    combined_score: float
    time_taken_seconds: Optional[float] = None
    finished_at: Optional[datetime] = None
    attempt_id: str

    @classmethod
    def after(cls, attempt: Attempt) -> "AttemptCursor":
        return cls(
            combined_score=attempt.combined_score,
            time_taken_seconds=attempt.time_taken_seconds,
            finished_at=attempt.finished_at,
            attempt_id=attempt.attempt_id,
        )


class AttemptPage(BaseModel):
    attempts: List[Attempt] = Field(default_factory=list)
    next_cursor: Optional[AttemptCursor] = None


class DisplayDetails(BaseModel):
    display_name: str = "Unknown"
    avatar_url: Optional[str] = None


OnChange = Callable[[List[Attempt]], None]
OnError = Callable[[StoreError], None]
Unsubscribe = Callable[[], None]


class AttemptStore(Protocol):
    """Operations the leaderboard engine needs from the backing store.

    Implementations raise :class:`StoreError` for every backend failure.
    Queries order by ``combined_score desc, time_taken asc, finished_at desc``
    with the attempt id as the final key.
    """

    async def query_attempts(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        cursor: Optional[AttemptCursor],
        page_size: int,
    ) -> AttemptPage:  # pragma: no cover - protocol definition
        ...

    def subscribe_attempts(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        on_change: OnChange,
        on_error: Optional[OnError] = None,
    ) -> Unsubscribe:  # pragma: no cover - protocol definition
        ...

    async def insert_attempt(self, attempt: Attempt) -> str:  # pragma: no cover - protocol definition
        ...

    async def merge_user_summary(self, user_id: str, fields: Dict[str, object]) -> None:  # pragma: no cover
        ...

    async def merge_board_member(
        self, board_id: str, period: str, user_id: str, fields: Dict[str, object]
    ) -> None:  # pragma: no cover - protocol definition
        ...

    async def list_attempts(
        self, period: str, scope_filter: Optional[ScopeFilter]
    ) -> List[Attempt]:  # pragma: no cover - protocol definition
        ...

    async def write_board(
        self, board_id: str, period: str, entries: Sequence[LeaderboardEntry]
    ) -> None:  # pragma: no cover - protocol definition
        ...

    async def read_board(self, board_id: str) -> List[LeaderboardEntry]:  # pragma: no cover
        ...


class ProfileDirectory(Protocol):
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:  # pragma: no cover
        ...

    async def display_details(self, user_ids: Sequence[str]) -> Dict[str, DisplayDetails]:  # pragma: no cover
        ...


def scope_filter_for(scope: str, value: Optional[str]) -> Optional[ScopeFilter]:
    field = SCOPE_FIELDS.get(scope)
    if field is None or value is None:
        return None
    return ScopeFilter(field, value)


def board_id_for(scope: str, period: str, value: Optional[str] = None) -> str:
    """Summary record id for a scope/period, e.g. ``global_all_2025-JulAug``."""
    if scope == GLOBAL_SCOPE or value is None:
        return f"global_all_{period}"
    if scope == GROUP_SCOPE:
        return f"{value}_{period}"
    return f"{scope}_{value}_{period}"


def attempt_matches(attempt: Attempt, period: str, scope_filter: Optional[ScopeFilter]) -> bool:
    if attempt.period != period:
        return False
    if scope_filter is None:
        return True
    return attempt.scope_field(scope_filter.field) == scope_filter.value


__all__ = [
    "AttemptCursor",
    "AttemptPage",
    "AttemptStore",
    "DisplayDetails",
    "OnChange",
    "OnError",
    "ProfileDirectory",
    "ScopeFilter",
    "Unsubscribe",
    "attempt_matches",
    "board_id_for",
    "scope_filter_for",
]
