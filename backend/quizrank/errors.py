"""Error taxonomy shared by the write path, store adapters and orchestrator."""

from __future__ import annotations

from typing import Optional


class LeaderboardError(Exception):
    """Base class for leaderboard engine failures."""


class ValidationError(LeaderboardError):
    """Write-path input is missing identity or timestamps.

    Raised before any store call is issued.
    """

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class StoreError(LeaderboardError):
    """A query, write or subscription against the backing store failed."""

    def __init__(self, message: str, *, operation: str = "query") -> None:
        super().__init__(message)
        self.operation = operation


class ScopeUnavailableError(LeaderboardError):
    """The profile lacks the identifier needed to build the requested scope."""

    def __init__(self, scope: str, reason: str = "Scope not available") -> None:
        super().__init__(f"{reason}: {scope}")
        self.scope = scope
        self.reason = reason


__all__ = [
    "LeaderboardError",
    "ScopeUnavailableError",
    "StoreError",
    "ValidationError",
]
