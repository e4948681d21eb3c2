"""SQLAlchemy implementation of the attempt store.

Blocking session work runs in worker threads through ``asyncio.to_thread`` so
the orchestrator's event loop never waits on the database. Live subscriptions
are an in-process change feed: every insert that goes through this store
re-delivers the full filtered snapshot to matching subscribers.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, List, Optional, Sequence, Set, TypeVar

from sqlalchemy import and_, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..attempt_store import (
    AttemptCursor,
    AttemptPage,
    OnChange,
    OnError,
    ScopeFilter,
    Unsubscribe,
    attempt_matches,
)
from ..attempts import Attempt, LeaderboardEntry
from ..db.models import LeaderboardMemberModel, TestAttemptModel, UserRankSummaryModel
from ..db.session import session_scope
from ..errors import StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

FILTERABLE_FIELDS = frozenset(
    {"school_id", "union_id", "upazila_id", "district_id", "division_id", "group_id", "user_id"}
)

_ORDERING = (
    TestAttemptModel.combined_score.desc(),
    TestAttemptModel.time_taken_seconds.asc(),
    TestAttemptModel.finished_at.desc(),
    TestAttemptModel.id.asc(),
)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class _Subscription:
    period: str
    scope_filter: Optional[ScopeFilter]
    on_change: OnChange
    on_error: Optional[OnError]
    loop: asyncio.AbstractEventLoop
    active: bool = True
    # sequence of the latest snapshot query started and of the latest one delivered
    issued: int = 0
    delivered: int = 0


class SqlAttemptStore:
    """Attempt store over the ``test_attempts`` and summary tables."""

    def __init__(self, session_factory: Callable[..., ContextManager[Session]] = session_scope) -> None:
        self._session_scope = session_factory
        self._subscriptions: Dict[int, _Subscription] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._pending: Set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query_attempts(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        cursor: Optional[AttemptCursor],
        page_size: int,
    ) -> AttemptPage:
        return await self._run("query", self._query_page, period, scope_filter, cursor, page_size)

    async def list_attempts(self, period: str, scope_filter: Optional[ScopeFilter]) -> List[Attempt]:
        return await self._run("query", self._list, period, scope_filter)

    async def read_board(self, board_id: str) -> List[LeaderboardEntry]:
        return await self._run("query", self._read_board, board_id)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_attempt(self, attempt: Attempt) -> str:
        attempt_id = await self._run("write", self._insert, attempt)
        stored = attempt.model_copy(update={"attempt_id": attempt_id})
        await self._publish(stored)
        return attempt_id

    async def merge_user_summary(self, user_id: str, fields: Dict[str, Any]) -> None:
        await self._run("write", self._merge, UserRankSummaryModel, {"user_id": user_id}, fields)

    async def merge_board_member(self, board_id: str, period: str, user_id: str, fields: Dict[str, Any]) -> None:
        keys = {"board_id": board_id, "user_id": user_id}
        await self._run("write", self._merge, LeaderboardMemberModel, keys, {"period": period, **fields})

    async def write_board(self, board_id: str, period: str, entries: Sequence[LeaderboardEntry]) -> None:
        await self._run("write", self._replace_board, board_id, period, list(entries))

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_attempts(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        on_change: OnChange,
        on_error: Optional[OnError] = None,
    ) -> Unsubscribe:
        """Attach a change listener; must be called from a running event loop.

        The current snapshot is delivered right away, then again after every
        matching insert.
        """
        _check_filter(scope_filter)
        loop = asyncio.get_running_loop()
        subscription = _Subscription(period, scope_filter, on_change, on_error, loop)
        with self._lock:
            subscription_id = next(self._ids)
            self._subscriptions[subscription_id] = subscription

        task = loop.create_task(self._deliver(subscription))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

        def unsubscribe() -> None:
            subscription.active = False
            with self._lock:
                self._subscriptions.pop(subscription_id, None)

        return unsubscribe

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    async def _publish(self, attempt: Attempt) -> None:
        with self._lock:
            targets = [
                sub
                for sub in self._subscriptions.values()
                if attempt_matches(attempt, sub.period, sub.scope_filter)
            ]
        for subscription in targets:
            await self._deliver(subscription)

    async def _deliver(self, subscription: _Subscription) -> None:
        if not subscription.active:
            return
        with self._lock:
            subscription.issued += 1
            sequence = subscription.issued
        try:
            attempts = await self.list_attempts(subscription.period, subscription.scope_filter)
        except StoreError as exc:
            if subscription.on_error is not None:
                self._dispatch(subscription, sequence, subscription.on_error, exc)
            else:
                logger.warning("Live snapshot failed for %s: %s", subscription.period, exc)
            return
        self._dispatch(subscription, sequence, subscription.on_change, attempts)

    def _dispatch(
        self,
        subscription: _Subscription,
        sequence: int,
        callback: Callable[[Any], None],
        payload: Any,
    ) -> None:
        def invoke() -> None:
            if not subscription.active:
                return
            with self._lock:
                if sequence <= subscription.delivered:
                    logger.debug("Dropping out-of-order snapshot %d for %s", sequence, subscription.period)
                    return
                subscription.delivered = sequence
            try:
                callback(payload)
            except Exception:  # noqa: BLE001
                logger.exception("Attempt subscriber callback failed")

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is subscription.loop:
            invoke()
        elif not subscription.loop.is_closed():
            subscription.loop.call_soon_threadsafe(invoke)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _run(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except SQLAlchemyError as exc:
            logger.warning("Attempt store %s failed: %s", operation, exc)
            raise StoreError(str(exc), operation=operation) from exc

    def _filtered(self, period: str, scope_filter: Optional[ScopeFilter]):  # type: ignore[no-untyped-def]
        _check_filter(scope_filter)
        stmt = select(TestAttemptModel).where(TestAttemptModel.period == period)
        if scope_filter is not None:
            stmt = stmt.where(getattr(TestAttemptModel, scope_filter.field) == scope_filter.value)
        return stmt

    def _query_page(
        self,
        period: str,
        scope_filter: Optional[ScopeFilter],
        cursor: Optional[AttemptCursor],
        page_size: int,
    ) -> AttemptPage:
        stmt = self._filtered(period, scope_filter)
        if cursor is not None:
            stmt = stmt.where(_after_cursor(cursor))
        stmt = stmt.order_by(*_ORDERING).limit(page_size)
        with self._session_scope(commit=False) as session:
            rows = session.execute(stmt).scalars().all()
            attempts = [_to_domain(row) for row in rows]
        next_cursor = AttemptCursor.after(attempts[-1]) if attempts else None
        return AttemptPage(attempts=attempts, next_cursor=next_cursor)

    def _list(self, period: str, scope_filter: Optional[ScopeFilter]) -> List[Attempt]:
        stmt = self._filtered(period, scope_filter).order_by(*_ORDERING)
        with self._session_scope(commit=False) as session:
            return [_to_domain(row) for row in session.execute(stmt).scalars().all()]

    def _insert(self, attempt: Attempt) -> str:
        attempt_id = attempt.attempt_id or str(uuid.uuid4())
        model = TestAttemptModel(
            id=attempt_id,
            user_id=attempt.user_id,
            test_id=attempt.test_id,
            display_name=attempt.display_name,
            avatar_url=attempt.avatar_url,
            score=attempt.score,
            total_questions=attempt.total_questions,
            time_taken_seconds=attempt.time_taken_seconds or 0,
            remaining_time_seconds=attempt.remaining_time_seconds,
            combined_score=attempt.combined_score,
            period=attempt.period,
            school_id=attempt.school_id,
            union_id=attempt.union_id,
            upazila_id=attempt.upazila_id,
            district_id=attempt.district_id,
            division_id=attempt.division_id,
            group_id=attempt.group_id,
            started_at=_utc(attempt.started_at),
            finished_at=_utc(attempt.finished_at),
            created_at=_utc(attempt.created_at) or datetime.now(timezone.utc),
            user_answers=dict(attempt.user_answers),
        )
        with self._session_scope() as session:
            session.add(model)
            session.flush()
        logger.info("Stored attempt %s for %s in %s", attempt_id, attempt.user_id, attempt.period)
        return attempt_id

    def _merge(self, model_cls: type, keys: Dict[str, str], fields: Dict[str, Any]) -> None:
        unknown = [name for name in fields if not hasattr(model_cls, name)]
        if unknown:
            raise ValueError(f"Unknown summary fields for {model_cls.__tablename__}: {unknown}")
        with self._session_scope() as session:
            model = session.get(model_cls, tuple(keys.values()) if len(keys) > 1 else next(iter(keys.values())))
            if model is None:
                model = model_cls(**keys)
                session.add(model)
            for name, value in fields.items():
                setattr(model, name, _utc(value) if isinstance(value, datetime) else value)
            model.updated_at = datetime.now(timezone.utc)

    def _replace_board(self, board_id: str, period: str, entries: List[LeaderboardEntry]) -> None:
        now = datetime.now(timezone.utc)
        with self._session_scope() as session:
            session.execute(delete(LeaderboardMemberModel).where(LeaderboardMemberModel.board_id == board_id))
            for entry in entries:
                session.add(
                    LeaderboardMemberModel(
                        board_id=board_id,
                        user_id=entry.user_id,
                        period=period,
                        rank=entry.rank,
                        display_name=entry.display_name,
                        avatar_url=entry.avatar_url,
                        attempt_id=entry.attempt_id,
                        score=entry.score,
                        total_questions=entry.total_questions,
                        combined_score=entry.combined_score,
                        time_taken_seconds=entry.time_taken_seconds,
                        finished_at=_utc(entry.finished_at),
                        school_id=entry.school_id,
                        group_id=entry.group_id,
                        updated_at=now,
                    )
                )
        logger.info("Rewrote board %s with %d members", board_id, len(entries))

    def _read_board(self, board_id: str) -> List[LeaderboardEntry]:
        stmt = (
            select(LeaderboardMemberModel)
            .where(LeaderboardMemberModel.board_id == board_id)
            .order_by(
                LeaderboardMemberModel.rank.asc().nulls_last(),
                LeaderboardMemberModel.combined_score.desc(),
                LeaderboardMemberModel.user_id.asc(),
            )
        )
        with self._session_scope(commit=False) as session:
            rows = session.execute(stmt).scalars().all()
            return [
                LeaderboardEntry(
                    rank=row.rank or index,
                    user_id=row.user_id,
                    display_name=row.display_name,
                    avatar_url=row.avatar_url,
                    attempt_id=row.attempt_id,
                    score=row.score or 0,
                    total_questions=row.total_questions or 0,
                    combined_score=row.combined_score or 0.0,
                    time_taken_seconds=row.time_taken_seconds,
                    finished_at=_utc(row.finished_at),
                    period=row.period,
                    school_id=row.school_id,
                    group_id=row.group_id,
                )
                for index, row in enumerate(rows, start=1)
            ]


def _check_filter(scope_filter: Optional[ScopeFilter]) -> None:
    if scope_filter is not None and scope_filter.field not in FILTERABLE_FIELDS:
        raise ValueError(f"Unsupported attempt filter field: {scope_filter.field}")


def _after_cursor(cursor: AttemptCursor):  # type: ignore[no-untyped-def]
    model = TestAttemptModel
    score = cursor.combined_score
    taken = cursor.time_taken_seconds or 0
    finished = _utc(cursor.finished_at) or _EPOCH
    return or_(
        model.combined_score < score,
        and_(model.combined_score == score, model.time_taken_seconds > taken),
        and_(model.combined_score == score, model.time_taken_seconds == taken, model.finished_at < finished),
        and_(
            model.combined_score == score,
            model.time_taken_seconds == taken,
            model.finished_at == finished,
            model.id > cursor.attempt_id,
        ),
    )


def _to_domain(row: TestAttemptModel) -> Attempt:
    return Attempt(
        attempt_id=row.id,
        user_id=row.user_id,
        test_id=row.test_id,
        display_name=row.display_name,
        avatar_url=row.avatar_url,
        score=row.score,
        total_questions=row.total_questions,
        time_taken_seconds=row.time_taken_seconds,
        remaining_time_seconds=row.remaining_time_seconds,
        combined_score=row.combined_score,
        period=row.period,
        school_id=row.school_id,
        union_id=row.union_id,
        upazila_id=row.upazila_id,
        district_id=row.district_id,
        division_id=row.division_id,
        group_id=row.group_id,
        started_at=_utc(row.started_at),
        finished_at=_utc(row.finished_at),
        created_at=_utc(row.created_at),
        user_answers=dict(row.user_answers or {}),
    )


__all__ = ["FILTERABLE_FIELDS", "SqlAttemptStore"]
