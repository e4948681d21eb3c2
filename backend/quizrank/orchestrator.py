"""Per-session coordinator for leaderboard fetches across scopes.

One orchestrator serves one viewer and one period. It owns the state of every
(scope, scope value) key the viewer has asked for, decides between the cache,
a one-shot store query and a live subscription, and pushes every result
through the ranking engine before anything is exposed.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import partial
from time import monotonic, perf_counter
from typing import Callable, Dict, List, Optional, Sequence, Set

from zoneinfo import ZoneInfo

from .attempt_store import (
    AttemptCursor,
    AttemptStore,
    ProfileDirectory,
    Unsubscribe,
    board_id_for,
    scope_filter_for,
)
from .attempts import Attempt, LeaderboardEntry
from .cache import LeaderboardCache
from .config import Settings, get_settings
from .errors import ScopeUnavailableError, StoreError
from .periods import current_period
from .profiles import GLOBAL_SCOPE, GROUP_SCOPE, UserProfile, available_scopes, scope_value
from .ranking import rank, rank_entries
from .telemetry import (
    LEADERBOARD_FETCH_FAILED,
    LEADERBOARD_FETCHED,
    LIVE_SNAPSHOT_APPLIED,
    emit_event,
)

logger = logging.getLogger(__name__)

UNKNOWN_DISPLAY_NAME = "Unknown"


class ScopeStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERRORED = "errored"
    LIVE = "live"
    UNAVAILABLE = "unavailable"


@dataclass
class ScopeState:
    scope: str
    scope_value: Optional[str] = None
    status: ScopeStatus = ScopeStatus.IDLE
    entries: List[LeaderboardEntry] = field(default_factory=list)
    has_more: bool = False
    cursor: Optional[AttemptCursor] = None
    raw_attempts: List[Attempt] = field(default_factory=list)
    error: Optional[str] = None
    from_cache: bool = False
    last_updated: Optional[datetime] = None
    version: int = 0

    @property
    def message(self) -> Optional[str]:
        """Text a consumer shows instead of rows, if any."""
        if self.status in (ScopeStatus.ERRORED, ScopeStatus.UNAVAILABLE):
            return "Unable to load leaderboard"
        if self.status in (ScopeStatus.READY, ScopeStatus.LIVE) and not self.entries:
            return "No data yet"
        return None


def state_key(scope: str, value: Optional[str] = None) -> str:
    if scope == GROUP_SCOPE and value:
        return f"{GROUP_SCOPE}:{value}"
    return scope


class FetchTracker:
    """Bounded memory of recent first-page fetches and unavailable warnings.

    A first-page fetch for a key that already succeeded within
    ``throttle_seconds`` is skipped; a warning for a key is logged once until
    the key falls out of the tracker or is reset.
    """

    def __init__(
        self,
        max_keys: int = 256,
        throttle_seconds: float = 5.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if max_keys < 1:
            raise ValueError("FetchTracker needs room for at least one key.")
        self._max_keys = max_keys
        self._throttle = throttle_seconds
        self._clock = clock
        self._fetches: "OrderedDict[str, float]" = OrderedDict()
        self._warnings: "OrderedDict[str, float]" = OrderedDict()

    def recently_fetched(self, key: str) -> bool:
        last = self._fetches.get(key)
        return last is not None and self._clock() - last < self._throttle

    def record_fetch(self, key: str) -> None:
        self._remember(self._fetches, key)

    def should_warn(self, key: str) -> bool:
        if key in self._warnings:
            self._warnings.move_to_end(key)
            return False
        self._remember(self._warnings, key)
        return True

    def reset(self, key: str) -> None:
        self._fetches.pop(key, None)
        self._warnings.pop(key, None)

    def __len__(self) -> int:
        return len(self._fetches) + len(self._warnings)

    def _remember(self, table: "OrderedDict[str, float]", key: str) -> None:
        table[key] = self._clock()
        table.move_to_end(key)
        while len(table) > self._max_keys:
            table.popitem(last=False)


StateListener = Callable[[str, ScopeState], None]


class ScopeFetchOrchestrator:
    def __init__(
        self,
        store: AttemptStore,
        profile: Optional[UserProfile],
        *,
        cache: Optional[LeaderboardCache] = None,
        directory: Optional[ProfileDirectory] = None,
        tracker: Optional[FetchTracker] = None,
        settings: Optional[Settings] = None,
        period: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._profile = profile
        self._cache = cache or LeaderboardCache.from_settings(settings, clock=clock)
        self._directory = directory
        self._tracker = tracker or FetchTracker(
            max_keys=settings.fetch_tracker_size,
            throttle_seconds=settings.fetch_throttle_seconds,
        )
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._period_tz = ZoneInfo(settings.period_timezone)
        self._page_size = settings.page_size
        self._batch_size = settings.profile_batch_size
        self._group_ttl = timedelta(seconds=settings.session_cache_ttl_seconds)
        self._live_max_seconds = settings.live_subscription_max_seconds

        self.period = period or current_period(self._clock, self._period_tz)
        self.owner_id = profile.user_id if profile else "anonymous"

        self._states: Dict[str, ScopeState] = {}
        self._subscriptions: Dict[str, Unsubscribe] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._listeners: List[StateListener] = []
        self._tasks: Set["asyncio.Task[None]"] = set()

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def profile(self) -> Optional[UserProfile]:
        return self._profile

    @property
    def states(self) -> Dict[str, ScopeState]:
        return dict(self._states)

    def state(self, scope: str, scope_value: Optional[str] = None) -> ScopeState:
        key = state_key(scope, scope_value)
        return self._states.get(key) or ScopeState(scope=scope, scope_value=scope_value)

    def resolve_value(self, scope: str, requested: Optional[str] = None) -> Optional[str]:
        """Resolve the filter value the orchestrator would use for ``scope``."""
        return scope_value(self._profile, scope, requested)

    def add_listener(self, listener: StateListener) -> Unsubscribe:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def available_scopes(self) -> Set[str]:
        return available_scopes(self._profile)

    def is_current_period(self) -> bool:
        return self.period == current_period(self._clock, self._period_tz)

    @property
    def live_keys(self) -> List[str]:
        return list(self._subscriptions)

    # ------------------------------------------------------------------
    # One-shot fetches
    # ------------------------------------------------------------------

    async def load_page(self, scope: str, append: bool = False, scope_value: Optional[str] = None) -> None:
        """Fetch the first page (or the next one with ``append``) into state.

        Never raises for store or precondition failures; they land in the
        scope's state instead.
        """
        await self._load(scope, scope_value, append=append, force=False)

    async def load_more(self, scope: str, scope_value: Optional[str] = None) -> None:
        await self._load(scope, scope_value, append=True, force=False)

    async def refresh(self, scope: str, scope_value: Optional[str] = None) -> None:
        """Drop the cached copy of a scope and fetch its first page again."""
        try:
            value = self.resolve_value(scope, scope_value)
        except ScopeUnavailableError as exc:
            self._mark_unavailable(scope, scope_value, exc)
            return
        key = state_key(scope, value)
        self._cache.invalidate(self._cache_key(scope, value))
        self._tracker.reset(key)
        await self._load(scope, value, append=False, force=True)

    async def _load(self, scope: str, requested: Optional[str], *, append: bool, force: bool) -> None:
        try:
            value = self.resolve_value(scope, requested)
        except ScopeUnavailableError as exc:
            self._mark_unavailable(scope, requested, exc)
            return

        key = state_key(scope, value)
        state = self._ensure_state(scope, value)
        if state.status is ScopeStatus.LOADING:
            logger.debug("Ignoring load for %s while a fetch is in flight", key)
            return
        if key in self._subscriptions:
            logger.debug("Ignoring one-shot load for live key %s", key)
            return

        if append:
            if not state.has_more:
                return
            if state.cursor is None:
                # rows served from cache carry no cursor, start over from the store
                append, force = False, True

        if not append and not force:
            if state.status is ScopeStatus.READY and self._tracker.recently_fetched(key):
                logger.debug("Throttled repeated fetch for %s", key)
                return
            if self._serve_from_cache(state, key):
                return

        if not self.is_current_period():
            await self._load_snapshot(state, key)
            return

        await self._fetch_page(state, key, append)

    async def _fetch_page(self, state: ScopeState, key: str, append: bool) -> None:
        state.status = ScopeStatus.LOADING
        self._notify(key, state)
        started = perf_counter()
        cursor = state.cursor if append else None
        scope_filter = scope_filter_for(state.scope, state.scope_value)
        try:
            page = await self._store.query_attempts(self.period, scope_filter, cursor, self._page_size)
        except StoreError as exc:
            self._mark_errored(state, key, exc)
            return

        raw = state.raw_attempts + list(page.attempts) if append else list(page.attempts)
        entries = await self._hydrate(rank(raw))
        has_more = len(page.attempts) == self._page_size

        state.status = ScopeStatus.READY
        state.entries = entries
        state.raw_attempts = raw
        state.cursor = page.next_cursor
        state.has_more = has_more
        state.error = None
        state.from_cache = False
        state.last_updated = self._clock()
        state.version += 1
        self._tracker.record_fetch(key)
        self._cache.put(self._cache_key(state.scope, state.scope_value), entries, has_more)
        emit_event(
            LEADERBOARD_FETCHED,
            scope=state.scope,
            scope_value=state.scope_value,
            period=self.period,
            append=append,
            rows=len(page.attempts),
            entries=len(entries),
            duration_ms=round((perf_counter() - started) * 1000, 2),
        )
        self._notify(key, state)

    async def _load_snapshot(self, state: ScopeState, key: str) -> None:
        """Historical periods come only from the persisted summary board."""
        if state.scope not in (GLOBAL_SCOPE, GROUP_SCOPE):
            self._mark_unavailable(
                state.scope,
                state.scope_value,
                ScopeUnavailableError(state.scope, "No snapshot kept for past periods"),
            )
            return
        state.status = ScopeStatus.LOADING
        self._notify(key, state)
        try:
            entries = await self._store.read_board(board_id_for(state.scope, self.period, state.scope_value))
        except StoreError as exc:
            self._mark_errored(state, key, exc)
            return
        entries = await self._hydrate(rank_entries(entries))
        state.status = ScopeStatus.READY
        state.entries = entries
        state.raw_attempts = []
        state.cursor = None
        state.has_more = False
        state.error = None
        state.from_cache = False
        state.last_updated = self._clock()
        state.version += 1
        self._tracker.record_fetch(key)
        self._cache.put(self._cache_key(state.scope, state.scope_value), entries, False)
        self._notify(key, state)

    def _serve_from_cache(self, state: ScopeState, key: str) -> bool:
        ttl = self._group_ttl if state.scope == GROUP_SCOPE else None
        record = self._cache.get(self._cache_key(state.scope, state.scope_value), ttl=ttl)
        if record is None:
            return False
        state.status = ScopeStatus.READY
        state.entries = list(record.entries)
        state.raw_attempts = []
        state.cursor = None
        state.has_more = record.has_more
        state.error = None
        state.from_cache = True
        state.last_updated = record.last_updated
        state.version += 1
        self._tracker.record_fetch(key)
        logger.debug("Served %s from cache (updated %s)", key, record.last_updated.isoformat())
        self._notify(key, state)
        return True

    # ------------------------------------------------------------------
    # Live subscriptions
    # ------------------------------------------------------------------

    def listen(self, group_id: str) -> Unsubscribe:
        return self.listen_scope(GROUP_SCOPE, group_id)

    def listen_scope(self, scope: str, value: Optional[str] = None) -> Unsubscribe:
        """Attach a live subscription for one (scope, value); repeats are no-ops.

        Returns a callable that stops the subscription.
        """
        try:
            resolved = self.resolve_value(scope, value)
        except ScopeUnavailableError as exc:
            self._mark_unavailable(scope, value, exc)
            return lambda: None
        if not self.is_current_period():
            self._mark_unavailable(
                scope, resolved, ScopeUnavailableError(scope, "Live updates only cover the current period")
            )
            return lambda: None

        key = state_key(scope, resolved)
        stop = partial(self._stop_key, key)
        if key in self._subscriptions:
            return stop

        state = self._ensure_state(scope, resolved)
        state.status = ScopeStatus.LIVE
        state.error = None
        self._subscriptions[key] = self._store.subscribe_attempts(
            self.period,
            scope_filter_for(scope, resolved),
            partial(self._apply_snapshot, key),
            partial(self._apply_live_error, key),
        )
        self._schedule_expiry(key)
        logger.info("Live leaderboard attached for %s in %s", key, self.period)
        self._notify(key, state)
        return stop

    def stop_listening(self, group_id: str) -> None:
        self._stop_key(state_key(GROUP_SCOPE, group_id))

    def stop_listening_scope(self, scope: str, value: Optional[str] = None) -> None:
        self._stop_key(state_key(scope, value))

    def close(self) -> None:
        for key in list(self._subscriptions):
            self._stop_key(key)
        for task in list(self._tasks):
            task.cancel()
        self._listeners.clear()

    def _apply_snapshot(self, key: str, attempts: Sequence[Attempt]) -> None:
        state = self._states.get(key)
        if state is None or key not in self._subscriptions:
            return
        entries = rank(attempts)
        state.status = ScopeStatus.LIVE
        state.entries = entries
        state.raw_attempts = list(attempts)
        state.cursor = None
        state.has_more = False
        state.error = None
        state.from_cache = False
        state.last_updated = self._clock()
        state.version += 1
        self._cache.put(self._cache_key(state.scope, state.scope_value), entries, False)
        emit_event(
            LIVE_SNAPSHOT_APPLIED,
            scope=state.scope,
            scope_value=state.scope_value,
            period=self.period,
            entries=len(entries),
        )
        self._notify(key, state)
        if any(not entry.display_name for entry in entries):
            self._schedule_hydration(key, state.version)

    def _apply_live_error(self, key: str, exc: StoreError) -> None:
        state = self._states.get(key)
        if state is None or key not in self._subscriptions:
            return
        logger.warning("Live leaderboard error for %s: %s", key, exc)
        state.status = ScopeStatus.ERRORED
        state.error = str(exc)
        emit_event(LEADERBOARD_FETCH_FAILED, scope=state.scope, period=self.period, live=True, error=str(exc))
        self._notify(key, state)

    def _schedule_hydration(self, key: str, version: int) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self._hydrate_live(key, version))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _hydrate_live(self, key: str, version: int) -> None:
        state = self._states.get(key)
        if state is None:
            return
        entries = await self._hydrate(state.entries)
        # a newer snapshot replaced these entries while names were loading
        if state.version != version or key not in self._subscriptions:
            return
        state.entries = entries
        self._notify(key, state)

    def _schedule_expiry(self, key: str) -> None:
        if self._live_max_seconds <= 0:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timers[key] = loop.call_later(self._live_max_seconds, self._expire, key)

    def _expire(self, key: str) -> None:
        if key not in self._subscriptions:
            return
        logger.info("Live leaderboard for %s reached its time limit", key)
        self._timers.pop(key, None)
        unsubscribe = self._subscriptions.pop(key)
        unsubscribe()
        state = self._states.get(key)
        if state is not None:
            state.status = ScopeStatus.READY
            self._notify(key, state)

    def _stop_key(self, key: str) -> None:
        unsubscribe = self._subscriptions.pop(key, None)
        if unsubscribe is not None:
            unsubscribe()
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._states.pop(key, None)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _hydrate(self, entries: List[LeaderboardEntry]) -> List[LeaderboardEntry]:
        missing: List[str] = []
        for entry in entries:
            if not entry.display_name and entry.user_id not in missing:
                missing.append(entry.user_id)
        if not missing:
            return entries

        names: Dict[str, str] = {}
        avatars: Dict[str, Optional[str]] = {}
        if self._directory is not None:
            for start in range(0, len(missing), self._batch_size):
                batch = missing[start : start + self._batch_size]
                try:
                    details = await self._directory.display_details(batch)
                except StoreError as exc:
                    logger.warning("Display name lookup failed for %d users: %s", len(batch), exc)
                    continue
                for user_id, detail in details.items():
                    names[user_id] = detail.display_name
                    avatars[user_id] = detail.avatar_url

        hydrated: List[LeaderboardEntry] = []
        for entry in entries:
            if entry.display_name:
                hydrated.append(entry)
                continue
            hydrated.append(
                entry.model_copy(
                    update={
                        "display_name": names.get(entry.user_id) or UNKNOWN_DISPLAY_NAME,
                        "avatar_url": entry.avatar_url or avatars.get(entry.user_id),
                    }
                )
            )
        return hydrated

    def _ensure_state(self, scope: str, value: Optional[str]) -> ScopeState:
        key = state_key(scope, value)
        state = self._states.get(key)
        if state is None:
            state = ScopeState(scope=scope, scope_value=value)
            self._states[key] = state
        return state

    def _cache_key(self, scope: str, value: Optional[str]) -> str:
        return self._cache.key(scope, self.owner_id, self.period, value if scope == GROUP_SCOPE else None)

    def _mark_unavailable(self, scope: str, value: Optional[str], exc: ScopeUnavailableError) -> None:
        key = state_key(scope, value)
        if self._tracker.should_warn(key):
            logger.warning("Leaderboard scope %s unavailable for %s: %s", key, self.owner_id, exc.reason)
        state = self._ensure_state(scope, value)
        state.status = ScopeStatus.UNAVAILABLE
        state.entries = []
        state.raw_attempts = []
        state.cursor = None
        state.has_more = False
        state.error = exc.reason
        self._notify(key, state)

    def _mark_errored(self, state: ScopeState, key: str, exc: StoreError) -> None:
        logger.warning("Leaderboard fetch failed for %s in %s: %s", key, self.period, exc)
        state.status = ScopeStatus.ERRORED
        state.entries = []
        state.raw_attempts = []
        state.cursor = None
        state.has_more = False
        state.error = str(exc)
        state.from_cache = False
        state.version += 1
        emit_event(LEADERBOARD_FETCH_FAILED, scope=state.scope, period=self.period, live=False, error=str(exc))
        self._notify(key, state)

    def _notify(self, key: str, state: ScopeState) -> None:
        for listener in list(self._listeners):
            try:
                listener(key, state)
            except Exception:  # noqa: BLE001
                logger.exception("Leaderboard state listener failed for %s", key)


__all__ = [
    "FetchTracker",
    "ScopeFetchOrchestrator",
    "ScopeState",
    "ScopeStatus",
    "UNKNOWN_DISPLAY_NAME",
    "state_key",
]
