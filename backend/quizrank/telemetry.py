"""Structured telemetry events for leaderboard reads, writes and repairs."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from time import perf_counter
from typing import Any, Callable, Dict, Generator, List

logger = logging.getLogger("quizrank.telemetry")

SUMMARY_WRITE_FAILED = "summary_write_failed"
ATTEMPT_RECORDED = "attempt_recorded"
LEADERBOARD_FETCHED = "leaderboard_fetched"
LEADERBOARD_FETCH_FAILED = "leaderboard_fetch_failed"
LIVE_SNAPSHOT_APPLIED = "leaderboard_live_snapshot"
BOARD_REAGGREGATED = "leaderboard_reaggregated"
RECONCILIATION_RUN = "reconciliation_run"


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]


_listeners: List[Callable[[TelemetryEvent], None]] = []
_lock = RLock()


def register_listener(listener: Callable[[TelemetryEvent], None]) -> None:
    """Register an in-process listener (used by the pipeline and in tests)."""
    with _lock:
        _listeners.append(listener)


def unregister_listener(listener: Callable[[TelemetryEvent], None]) -> None:
    with _lock:
        if listener in _listeners:
            _listeners.remove(listener)


def clear_listeners() -> None:
    with _lock:
        _listeners.clear()


def emit_event(name: str, **fields: Any) -> None:
    """Fan a structured event out to listeners, then log it as one JSON line.

    Listener failures are logged and never reach the emitting code path.
    """
    event = TelemetryEvent(name=name, payload=_sanitize(fields))

    with _lock:
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    logger.info("TELEMETRY %s", json.dumps({"event": name, **event.payload}, default=_json_default))


@contextmanager
def timed_event(name: str, **fields: Any) -> Generator[Dict[str, Any], None, None]:
    """Emit ``name`` with a ``duration_ms`` field once the block finishes.

    The yielded dict may be updated inside the block to attach result fields.
    """
    extra: Dict[str, Any] = dict(fields)
    started = perf_counter()
    try:
        yield extra
    finally:
        extra["duration_ms"] = round((perf_counter() - started) * 1000, 2)
        emit_event(name, **extra)


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in fields.items()
    }


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


__all__ = [
    "ATTEMPT_RECORDED",
    "BOARD_REAGGREGATED",
    "LEADERBOARD_FETCHED",
    "LEADERBOARD_FETCH_FAILED",
    "LIVE_SNAPSHOT_APPLIED",
    "RECONCILIATION_RUN",
    "SUMMARY_WRITE_FAILED",
    "TelemetryEvent",
    "clear_listeners",
    "emit_event",
    "register_listener",
    "timed_event",
    "unregister_listener",
]
