"""Statement timing and pool counters for the attempt store engine.

Leaderboard reads are dominated by a handful of ordered range queries, so the
interesting signal is how long those take, not just how many connections exist.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from typing import Dict

from sqlalchemy import event
from sqlalchemy.engine import Engine

from ..telemetry import emit_event


_SLOW_QUERY_MS = float(os.getenv("QUIZRANK_SLOW_QUERY_MS", "250"))


@dataclass
class EngineStats:
    connects: int = 0
    statements: int = 0
    slow_statements: int = 0
    total_statement_ms: float = 0.0


_STATS_BY_ENGINE: Dict[int, EngineStats] = {}


def instrument_engine(engine: Engine) -> None:
    """Count statements and emit ``store_slow_query`` for slow ones."""
    key = id(engine)
    if key in _STATS_BY_ENGINE:
        return
    stats = EngineStats()
    _STATS_BY_ENGINE[key] = stats

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[no-untyped-def]
        stats.connects += 1

    @event.listens_for(engine, "before_cursor_execute")
    def _before(conn, cursor, statement, parameters, context, executemany) -> None:  # type: ignore[no-untyped-def]
        conn.info.setdefault("quizrank_started", []).append(time.perf_counter())

    @event.listens_for(engine, "after_cursor_execute")
    def _after(conn, cursor, statement, parameters, context, executemany) -> None:  # type: ignore[no-untyped-def]
        started = conn.info.get("quizrank_started")
        if not started:
            return
        elapsed_ms = (time.perf_counter() - started.pop()) * 1000
        stats.statements += 1
        stats.total_statement_ms += elapsed_ms
        if elapsed_ms >= _SLOW_QUERY_MS:
            stats.slow_statements += 1
            emit_event(
                "store_slow_query",
                duration_ms=round(elapsed_ms, 2),
                statement=statement.split("\n", 1)[0][:160],
            )


def get_pool_snapshot(engine: Engine) -> Dict[str, object]:
    stats = _STATS_BY_ENGINE.get(id(engine)) or EngineStats()
    average = stats.total_statement_ms / stats.statements if stats.statements else 0.0
    return {
        "status": _safe_pool_status(engine),
        "connects": stats.connects,
        "statements": stats.statements,
        "slow_statements": stats.slow_statements,
        "average_statement_ms": round(average, 2),
    }


def _safe_pool_status(engine: Engine) -> str:
    try:
        return engine.pool.status()  # type: ignore[no-untyped-call]
    except Exception as exc:  # pragma: no cover - pool implementations without status()
        return f"unavailable: {exc}"


__all__ = ["EngineStats", "get_pool_snapshot", "instrument_engine"]
