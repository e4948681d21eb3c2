"""Queue of derived summary writes that still need a repair pass."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.models import ReconciliationJobModel

USER_SUMMARY_TARGET = "user_summary"
BOARD_TARGET = "board"


class ReconciliationJob(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[str] = None
    target: str
    user_id: str
    period: str
    board_id: Optional[str] = None
    scope: Optional[str] = None
    scope_value: Optional[str] = None
    attempt_id: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class ReconciliationJobRepository:
    def enqueue(self, session: Session, job: ReconciliationJob) -> ReconciliationJob:
        model = ReconciliationJobModel(
            target=job.target,
            user_id=job.user_id,
            period=job.period,
            board_id=job.board_id,
            scope=job.scope,
            scope_value=job.scope_value,
            attempt_id=job.attempt_id,
            error=job.error,
        )
        session.add(model)
        session.flush()
        return ReconciliationJob.model_validate(model)

    def pending(self, session: Session, limit: int = 100) -> List[ReconciliationJob]:
        stmt = (
            select(ReconciliationJobModel)
            .where(ReconciliationJobModel.resolved_at.is_(None))
            .order_by(ReconciliationJobModel.created_at.asc())
            .limit(limit)
        )
        return [ReconciliationJob.model_validate(model) for model in session.execute(stmt).scalars()]

    def resolve(self, session: Session, job_ids: Sequence[str]) -> int:
        if not job_ids:
            return 0
        result = session.execute(
            update(ReconciliationJobModel)
            .where(ReconciliationJobModel.id.in_(list(job_ids)))
            .values(resolved_at=datetime.now(timezone.utc))
        )
        return int(result.rowcount or 0)


reconciliation_jobs = ReconciliationJobRepository()

__all__ = [
    "BOARD_TARGET",
    "ReconciliationJob",
    "ReconciliationJobRepository",
    "USER_SUMMARY_TARGET",
    "reconciliation_jobs",
]
