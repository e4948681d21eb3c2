"""Re-aggregation of summary boards from raw attempts.

Fan-out writes can fail independently of the attempt insert, so summary
boards drift. These jobs rebuild them from the raw rows, which stay the
source of truth.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, ContextManager, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .attempt_store import AttemptStore, ScopeFilter, board_id_for, scope_filter_for
from .attempts import LeaderboardEntry
from .db.session import session_scope
from .errors import StoreError
from .ranking import rank
from .repositories.reconciliation import (
    BOARD_TARGET,
    USER_SUMMARY_TARGET,
    ReconciliationJob,
    reconciliation_jobs,
)
from .telemetry import BOARD_REAGGREGATED, RECONCILIATION_RUN, emit_event, timed_event
from .write_path import summary_fields

logger = logging.getLogger(__name__)


async def reaggregate_board(
    store: AttemptStore,
    scope: str,
    period: str,
    scope_value: Optional[str] = None,
) -> List[LeaderboardEntry]:
    """Rank every raw attempt of a scope/period and rewrite its board."""
    attempts = await store.list_attempts(period, scope_filter_for(scope, scope_value))
    entries = rank(attempts)
    board_id = board_id_for(scope, period, scope_value)
    await store.write_board(board_id, period, entries)
    emit_event(
        BOARD_REAGGREGATED,
        board_id=board_id,
        scope=scope,
        scope_value=scope_value,
        period=period,
        attempts=len(attempts),
        entries=len(entries),
    )
    return entries


async def reaggregate_user_summary(store: AttemptStore, user_id: str, period: str) -> Optional[LeaderboardEntry]:
    """Rewrite a user's summary from their best attempt of the period."""
    attempts = await store.list_attempts(period, ScopeFilter("user_id", user_id))
    entries = rank(attempts)
    if not entries:
        return None
    best = entries[0]
    await store.merge_user_summary(user_id, summary_fields(best))
    return best


class ReconcileReport(BaseModel):
    jobs: int = 0
    boards_rebuilt: int = 0
    summaries_rebuilt: int = 0
    resolved: int = 0
    failures: Dict[str, str] = Field(default_factory=dict)


async def reconcile_pending(
    store: AttemptStore,
    *,
    limit: int = 100,
    session_factory: Callable[..., ContextManager[Session]] = session_scope,
) -> ReconcileReport:
    """Replay queued failed summary writes as full re-aggregations.

    Jobs pointing at the same board or user summary are collapsed into one
    rebuild. Jobs whose rebuild fails stay pending.
    """

    def _pending() -> List[ReconciliationJob]:
        with session_factory(commit=False) as session:
            return reconciliation_jobs.pending(session, limit=limit)

    jobs = await asyncio.to_thread(_pending)
    report = ReconcileReport(jobs=len(jobs))
    if not jobs:
        return report

    boards: Dict[Tuple[str, Optional[str], str], List[str]] = {}
    summaries: Dict[Tuple[str, str], List[str]] = {}
    for job in jobs:
        if job.id is None:
            continue
        if job.target == BOARD_TARGET and job.scope:
            boards.setdefault((job.scope, job.scope_value, job.period), []).append(job.id)
        elif job.target == USER_SUMMARY_TARGET:
            summaries.setdefault((job.user_id, job.period), []).append(job.id)
        else:
            logger.warning("Skipping reconciliation job %s with unknown target %s", job.id, job.target)

    resolved: Set[str] = set()
    with timed_event(RECONCILIATION_RUN, jobs=len(jobs)) as run:
        for (scope, scope_value, period), job_ids in boards.items():
            try:
                await reaggregate_board(store, scope, period, scope_value)
            except StoreError as exc:
                report.failures[board_id_for(scope, period, scope_value)] = str(exc)
                continue
            report.boards_rebuilt += 1
            resolved.update(job_ids)

        for (user_id, period), job_ids in summaries.items():
            try:
                await reaggregate_user_summary(store, user_id, period)
            except StoreError as exc:
                report.failures[f"user:{user_id}:{period}"] = str(exc)
                continue
            report.summaries_rebuilt += 1
            resolved.update(job_ids)
        run.update(boards=report.boards_rebuilt, summaries=report.summaries_rebuilt, failures=len(report.failures))

    def _resolve() -> int:
        with session_factory() as session:
            return reconciliation_jobs.resolve(session, sorted(resolved))

    report.resolved = await asyncio.to_thread(_resolve)
    logger.info(
        "Reconciled %d jobs: %d boards, %d summaries, %d failures",
        report.jobs,
        report.boards_rebuilt,
        report.summaries_rebuilt,
        len(report.failures),
    )
    return report


__all__ = [
    "ReconcileReport",
    "reaggregate_board",
    "reaggregate_user_summary",
    "reconcile_pending",
]
