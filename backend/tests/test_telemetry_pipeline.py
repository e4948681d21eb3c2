from __future__ import annotations

import importlib

import pytest
from sqlalchemy import select

from quizrank.config import get_settings
from quizrank.db import models  # noqa: F401
from quizrank.db.base import Base
from quizrank.db.models import ReconciliationJobModel
from quizrank.db.session import dispose_engine, get_engine, session_scope
from quizrank.repositories.reconciliation import BOARD_TARGET, USER_SUMMARY_TARGET
from quizrank.telemetry import SUMMARY_WRITE_FAILED, clear_listeners, emit_event


@pytest.fixture(autouse=True)
def _database(tmp_path, monkeypatch):
    monkeypatch.setenv("QUIZRANK_DATABASE_URL", f"sqlite:///{tmp_path / 'telemetry.db'}")
    get_settings.cache_clear()
    dispose_engine()
    Base.metadata.create_all(get_engine())
    clear_listeners()
    importlib.reload(importlib.import_module("quizrank.telemetry_pipeline"))
    yield
    clear_listeners()
    dispose_engine()
    get_settings.cache_clear()


def _jobs():
    with session_scope(commit=False) as session:
        return session.execute(select(ReconciliationJobModel).order_by(ReconciliationJobModel.target)).scalars().all()


def test_failed_summary_writes_are_queued() -> None:
    emit_event(
        SUMMARY_WRITE_FAILED,
        target=BOARD_TARGET,
        board_id="global_all_2025-JulAug",
        scope="global",
        scope_value=None,
        user_id="student-1",
        period="2025-JulAug",
        attempt_id="attempt-1",
        error="database is locked",
    )
    emit_event(
        SUMMARY_WRITE_FAILED,
        target=USER_SUMMARY_TARGET,
        user_id="student-1",
        period="2025-JulAug",
        attempt_id="attempt-1",
        error="database is locked",
    )

    board_job, summary_job = _jobs()
    assert board_job.target == BOARD_TARGET
    assert board_job.board_id == "global_all_2025-JulAug"
    assert board_job.scope == "global"
    assert board_job.error == "database is locked"
    assert board_job.resolved_at is None
    assert summary_job.target == USER_SUMMARY_TARGET
    assert summary_job.board_id is None


def test_other_events_and_incomplete_payloads_are_ignored() -> None:
    emit_event("attempt_recorded", user_id="student-1", period="2025-JulAug")
    emit_event(SUMMARY_WRITE_FAILED, target=BOARD_TARGET, user_id="", period="2025-JulAug")
    emit_event(SUMMARY_WRITE_FAILED, target=BOARD_TARGET, user_id="student-1")

    assert _jobs() == []
