"""Rebuild summary boards from raw attempts.

Without arguments, replays the pending reconciliation queue. With ``--scope``
and ``--period``, rebuilds that one board regardless of the queue.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from quizrank.errors import StoreError
from quizrank.logging_config import configure_logging
from quizrank.periods import is_period_label
from quizrank.profiles import SCOPES
from quizrank.repair import reaggregate_board, reconcile_pending
from quizrank.repositories.attempts import SqlAttemptStore

LOGGER = logging.getLogger("quizrank.reconcile")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Repair leaderboard summaries from raw attempts.")
    parser.add_argument("--scope", choices=SCOPES)
    parser.add_argument("--period", help="Period label such as 2025-JulAug.")
    parser.add_argument("--scope-value", default=None)
    parser.add_argument("--limit", type=int, default=100, help="Queued jobs to replay per run.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> dict:
    store = SqlAttemptStore()
    if args.scope:
        entries = await reaggregate_board(store, args.scope, args.period, args.scope_value)
        return {"scope": args.scope, "period": args.period, "scope_value": args.scope_value, "entries": len(entries)}
    report = await reconcile_pending(store, limit=args.limit)
    return report.model_dump()


def main(argv: Optional[List[str]] = None) -> int:
    configure_logging()
    args = parse_args(argv)
    if args.scope and not (args.period and is_period_label(args.period)):
        LOGGER.error("--scope needs a valid --period label")
        return 2
    try:
        payload = asyncio.run(_run(args))
    except StoreError as exc:
        LOGGER.error("Reconciliation failed: %s", exc)
        return 1
    print(json.dumps(payload))
    return 0 if not payload.get("failures") else 1


if __name__ == "__main__":
    sys.exit(main())
