"""Client-side leaderboard cache with TTL and an off-peak refresh window."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Callable, List, Optional, Sequence

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..attempts import LeaderboardEntry
from ..config import Settings
from .kv_store import InMemoryKeyValueStore, JsonFileKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)
SESSION_TTL = timedelta(minutes=30)
# US Central standard time, used when the configured zone is unknown
_FALLBACK_OFF_PEAK_TZ = timezone(timedelta(hours=-6), "UTC-06:00")


class CacheRecord(BaseModel):
    key: str
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    last_updated: datetime
    has_more: bool = False


def _resolve_zone(name: str) -> tzinfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown off-peak time zone %r; using fixed UTC-06:00", name)
        return _FALLBACK_OFF_PEAK_TZ


class LeaderboardCache:
    """Owns every staleness decision for cached leaderboards.

    A record older than its TTL is still served, except during the off-peak
    window where it counts as missing so the caller refetches. Cache writes
    never raise: caching is an optimisation only.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        *,
        ttl: timedelta = DEFAULT_TTL,
        prefix: str = "quizrank_leaderboard_",
        off_peak_timezone: str = "America/Chicago",
        off_peak_start_hour: int = 0,
        off_peak_end_hour: int = 6,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store: KeyValueStore = store if store is not None else InMemoryKeyValueStore()
        self._ttl = ttl
        self._prefix = prefix
        self._off_peak_tz = _resolve_zone(off_peak_timezone)
        self._off_peak_start = off_peak_start_hour
        self._off_peak_end = off_peak_end_hour
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Optional[KeyValueStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "LeaderboardCache":
        if store is None and settings.cache_dir:
            store = JsonFileKeyValueStore(settings.cache_dir)
        return cls(
            store,
            ttl=timedelta(seconds=settings.cache_ttl_seconds),
            prefix=settings.cache_key_prefix,
            off_peak_timezone=settings.off_peak_timezone,
            off_peak_start_hour=settings.off_peak_start_hour,
            off_peak_end_hour=settings.off_peak_end_hour,
            clock=clock,
        )

    def key(self, scope: str, owner_id: str, period: str, scope_value: Optional[str] = None) -> str:
        if scope_value:
            return f"{self._prefix}{owner_id}_{scope}_{scope_value}_{period}"
        return f"{self._prefix}{owner_id}_{scope}_{period}"

    def in_off_peak(self, now: Optional[datetime] = None) -> bool:
        local = (now or self._clock()).astimezone(self._off_peak_tz)
        start, end = self._off_peak_start, self._off_peak_end
        if start <= end:
            return start <= local.hour < end
        return local.hour >= start or local.hour < end

    def is_fresh(self, record: CacheRecord, ttl: Optional[timedelta] = None, now: Optional[datetime] = None) -> bool:
        current = now or self._clock()
        last_updated = record.last_updated
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        return current - last_updated <= (ttl if ttl is not None else self._ttl)

    def get(self, key: str, ttl: Optional[timedelta] = None) -> Optional[CacheRecord]:
        try:
            raw = self._store.get(key)
        except OSError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return None
        if not raw:
            return None
        try:
            record = CacheRecord.model_validate_json(raw)
        except PydanticValidationError as exc:
            logger.warning("Discarding unreadable cache record %s: %s", key, exc.error_count())
            return None

        now = self._clock()
        if self.is_fresh(record, ttl, now):
            return record
        if self.in_off_peak(now):
            logger.debug("Stale cache record %s ignored during off-peak window", key)
            return None
        return record

    def put(self, key: str, entries: Sequence[LeaderboardEntry], has_more: bool) -> None:
        record = CacheRecord(key=key, entries=list(entries), last_updated=self._clock(), has_more=has_more)
        try:
            self._store.set(key, record.model_dump_json())
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to cache leaderboard %s: %s", key, exc)

    def invalidate(self, key: str) -> None:
        try:
            self._store.delete(key)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to evict cache record %s: %s", key, exc)


__all__ = ["CacheRecord", "DEFAULT_TTL", "LeaderboardCache", "SESSION_TTL"]
