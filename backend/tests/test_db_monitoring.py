from __future__ import annotations

from sqlalchemy import create_engine, text

from quizrank.db import monitoring


def test_instrument_engine_emits_slow_query_events(monkeypatch) -> None:
    emitted: list[tuple[str, dict[str, object]]] = []

    def record(event_name: str, **payload: object) -> None:
        emitted.append((event_name, payload))

    monkeypatch.setattr(monitoring, "_SLOW_QUERY_MS", 0)
    monkeypatch.setattr(monitoring, "emit_event", record)

    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        monitoring.instrument_engine(engine)
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        assert emitted, "Expected a slow query event when the threshold is zero."
        assert {name for name, _ in emitted} == {"store_slow_query"}
        assert any(payload["statement"] == "SELECT 1" for _, payload in emitted)

        snapshot = monitoring.get_pool_snapshot(engine)
        assert snapshot["connects"] >= 1
        assert snapshot["statements"] >= 1
        assert snapshot["slow_statements"] == snapshot["statements"]
    finally:
        engine.dispose()


def test_snapshot_for_uninstrumented_engine_is_zeroed() -> None:
    engine = create_engine("sqlite:///:memory:", future=True)
    try:
        snapshot = monitoring.get_pool_snapshot(engine)
    finally:
        engine.dispose()
    assert snapshot["statements"] == 0
    assert snapshot["average_statement_ms"] == 0.0
