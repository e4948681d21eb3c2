from __future__ import annotations

import asyncio
from typing import List

import pytest

from quizrank.config import get_settings
from quizrank.db.session import create_schema, dispose_engine, session_scope
from quizrank.repair import reaggregate_board, reaggregate_user_summary, reconcile_pending
from quizrank.repositories.reconciliation import (
    BOARD_TARGET,
    USER_SUMMARY_TARGET,
    ReconciliationJob,
    reconciliation_jobs,
)
from quizrank.telemetry import (
    BOARD_REAGGREGATED,
    RECONCILIATION_RUN,
    TelemetryEvent,
    register_listener,
    unregister_listener,
)

from fakes import PERIOD, FakeAttemptStore, make_attempt

GROUP = "grp-333333333"


@pytest.fixture
def store() -> FakeAttemptStore:
    return FakeAttemptStore(
        [
            make_attempt("u1", 6.0, attempt_id="u1-first"),
            make_attempt("u1", 9.0, attempt_id="u1-best", group_id=GROUP),
            make_attempt("u2", 7.5, attempt_id="u2-only"),
            make_attempt("u3", 4.0, attempt_id="u3-group", group_id=GROUP),
            make_attempt("u4", 30.0, attempt_id="u4-old", period="2025-MayJun"),
        ]
    )


@pytest.fixture
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("QUIZRANK_DATABASE_URL", f"sqlite:///{tmp_path / 'repair.db'}")
    get_settings.cache_clear()
    dispose_engine()
    create_schema()
    yield
    dispose_engine()
    get_settings.cache_clear()


def test_reaggregate_global_board_rebuilds_from_raw_attempts(store: FakeAttemptStore) -> None:
    events: List[TelemetryEvent] = []
    register_listener(events.append)
    try:
        entries = asyncio.run(reaggregate_board(store, "global", PERIOD))
    finally:
        unregister_listener(events.append)

    assert [(entry.user_id, entry.attempt_id, entry.rank) for entry in entries] == [
        ("u1", "u1-best", 1),
        ("u2", "u2-only", 2),
        ("u3", "u3-group", 3),
    ]
    assert store.boards["global_all_2025-JulAug"] == entries
    [event] = [event for event in events if event.name == BOARD_REAGGREGATED]
    assert event.payload["attempts"] == 4
    assert event.payload["entries"] == 3


def test_reaggregate_group_board_uses_group_rows_only(store: FakeAttemptStore) -> None:
    entries = asyncio.run(reaggregate_board(store, "group", PERIOD, GROUP))

    assert [entry.user_id for entry in entries] == ["u1", "u3"]
    assert f"{GROUP}_{PERIOD}" in store.boards


def test_reaggregate_user_summary_writes_best_attempt(store: FakeAttemptStore) -> None:
    best = asyncio.run(reaggregate_user_summary(store, "u1", PERIOD))

    assert best is not None and best.attempt_id == "u1-best"
    assert store.summaries["u1"]["combined_score"] == 9.0
    assert store.summaries["u1"]["period"] == PERIOD
    assert asyncio.run(reaggregate_user_summary(store, "nobody", PERIOD)) is None
    assert "nobody" not in store.summaries


def _enqueue(*jobs: ReconciliationJob) -> None:
    with session_scope() as session:
        for job in jobs:
            reconciliation_jobs.enqueue(session, job)


def test_reconcile_collapses_jobs_and_keeps_failures_pending(store: FakeAttemptStore, database) -> None:
    board_job = dict(target=BOARD_TARGET, period=PERIOD, board_id="global_all_2025-JulAug", scope="global")
    _enqueue(
        ReconciliationJob(user_id="u1", attempt_id="u1-best", **board_job),
        ReconciliationJob(user_id="u2", attempt_id="u2-only", **board_job),
        ReconciliationJob(target=USER_SUMMARY_TARGET, user_id="u1", period=PERIOD),
    )
    store.failing.add("summary")

    events: List[TelemetryEvent] = []
    register_listener(events.append)
    try:
        report = asyncio.run(reconcile_pending(store))
    finally:
        unregister_listener(events.append)

    assert report.jobs == 3
    assert report.boards_rebuilt == 1
    assert report.summaries_rebuilt == 0
    assert report.resolved == 2
    assert list(report.failures) == [f"user:u1:{PERIOD}"]
    assert [entry.user_id for entry in store.boards["global_all_2025-JulAug"]] == ["u1", "u2", "u3"]
    [run] = [event for event in events if event.name == RECONCILIATION_RUN]
    assert run.payload["boards"] == 1
    assert run.payload["failures"] == 1
    assert run.payload["duration_ms"] >= 0

    with session_scope(commit=False) as session:
        [remaining] = reconciliation_jobs.pending(session)
    assert remaining.target == USER_SUMMARY_TARGET

    store.failing.clear()
    retry = asyncio.run(reconcile_pending(store))
    assert retry.summaries_rebuilt == 1
    assert retry.resolved == 1
    assert store.summaries["u1"]["combined_score"] == 9.0


def test_reconcile_with_empty_queue(store: FakeAttemptStore, database) -> None:
    report = asyncio.run(reconcile_pending(store))
    assert report.jobs == 0
    assert report.resolved == 0
    assert store.boards == {}
