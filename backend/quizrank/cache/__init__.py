"""Leaderboard caches shared across orchestrator sessions."""

from .kv_store import CacheFullError, InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore
from .leaderboard_cache import DEFAULT_TTL, SESSION_TTL, CacheRecord, LeaderboardCache

__all__ = [
    "CacheFullError",
    "CacheRecord",
    "DEFAULT_TTL",
    "InMemoryKeyValueStore",
    "JsonFileKeyValueStore",
    "KeyValueStore",
    "LeaderboardCache",
    "SESSION_TTL",
]
