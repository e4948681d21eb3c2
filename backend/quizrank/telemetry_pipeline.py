"""Telemetry listener that queues failed summary writes for reconciliation."""

from __future__ import annotations

import logging
from typing import Set

from .db.session import session_scope
from .repositories.reconciliation import ReconciliationJob, reconciliation_jobs
from .telemetry import SUMMARY_WRITE_FAILED, TelemetryEvent, register_listener

logger = logging.getLogger(__name__)

_MONITORED_EVENTS: Set[str] = {SUMMARY_WRITE_FAILED}


def _persist_event(event: TelemetryEvent) -> None:
    if event.name not in _MONITORED_EVENTS:
        return
    payload = event.payload
    user_id = payload.get("user_id")
    period = payload.get("period")
    if not isinstance(user_id, str) or not user_id.strip() or not isinstance(period, str):
        return
    job = ReconciliationJob(
        target=str(payload.get("target") or ""),
        user_id=user_id,
        period=period,
        board_id=payload.get("board_id"),
        scope=payload.get("scope"),
        scope_value=payload.get("scope_value"),
        attempt_id=payload.get("attempt_id"),
        error=payload.get("error"),
    )
    try:
        with session_scope() as session:
            reconciliation_jobs.enqueue(session, job)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to queue reconciliation for user_id=%s period=%s", user_id, period)


register_listener(_persist_event)

__all__ = ["_MONITORED_EVENTS"]
