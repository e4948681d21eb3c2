"""Attempt submission: persist the raw attempt, then fan out summary writes.

The raw attempt is the source of truth. The per-user summary and the global
and group board rows are derived data written best-effort afterwards; a
failed derived write is reported through telemetry (which queues it for
reconciliation) and never undoes the attempt.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from zoneinfo import ZoneInfo

from .attempt_store import AttemptStore, ProfileDirectory, board_id_for
from .attempts import (
    Attempt,
    AttemptInput,
    LeaderboardEntry,
    combined_score,
    elapsed_seconds,
    remaining_seconds,
)
from .config import Settings, get_settings
from .errors import StoreError, ValidationError
from .periods import period_of
from .profiles import GLOBAL_SCOPE, GROUP_SCOPE, UserProfile, group_id_rejection
from .repositories.reconciliation import BOARD_TARGET, USER_SUMMARY_TARGET
from .telemetry import ATTEMPT_RECORDED, SUMMARY_WRITE_FAILED, emit_event

logger = logging.getLogger(__name__)

ANONYMOUS_DISPLAY_NAME = "Anonymous"

_SCOPE_ID_FIELDS = ("school_id", "union_id", "upazila_id", "district_id", "division_id")


def validate_attempt_input(payload: AttemptInput) -> Tuple[str, datetime, datetime]:
    """Return the identity and timestamps the write path cannot do without."""
    user_id = (payload.user_id or "").strip()
    if not user_id:
        raise ValidationError("Attempt is missing a user id.", field="user_id")
    if payload.started_at is None:
        raise ValidationError("Attempt is missing its start time.", field="started_at")
    if payload.finished_at is None:
        raise ValidationError("Attempt is missing its finish time.", field="finished_at")
    if payload.combined_score is not None and math.isnan(payload.combined_score):
        raise ValidationError("Combined score must be a number.", field="combined_score")
    return user_id, payload.started_at, payload.finished_at


def summary_fields(attempt: Union[Attempt, LeaderboardEntry]) -> Dict[str, Any]:
    return {
        "display_name": attempt.display_name,
        "avatar_url": attempt.avatar_url,
        "score": attempt.score,
        "total_questions": attempt.total_questions,
        "combined_score": attempt.combined_score,
        "period": attempt.period,
    }


def board_member_fields(attempt: Attempt) -> Dict[str, Any]:
    return {
        "display_name": attempt.display_name,
        "avatar_url": attempt.avatar_url,
        "attempt_id": attempt.attempt_id,
        "score": attempt.score,
        "total_questions": attempt.total_questions,
        "combined_score": attempt.combined_score,
        "time_taken_seconds": attempt.time_taken_seconds,
        "finished_at": attempt.finished_at,
        "school_id": attempt.school_id,
        "group_id": attempt.group_id,
    }


class AttemptRecorder:
    def __init__(
        self,
        store: AttemptStore,
        directory: Optional[ProfileDirectory] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._directory = directory
        self._default_duration = settings.default_test_duration_seconds
        self._period_tz = ZoneInfo(settings.period_timezone)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def record_attempt(self, payload: AttemptInput) -> str:
        """Persist one submission and return its attempt id.

        Raises :class:`ValidationError` before touching the store, and
        :class:`StoreError` only when the raw attempt itself cannot be saved.
        """
        attempt = await self.build_attempt(payload)
        attempt_id = await self._store.insert_attempt(attempt)
        stored = attempt.model_copy(update={"attempt_id": attempt_id})
        failed = await self.fan_out(stored)
        emit_event(
            ATTEMPT_RECORDED,
            attempt_id=attempt_id,
            user_id=stored.user_id,
            period=stored.period,
            combined_score=stored.combined_score,
            failed_writes=failed,
        )
        return attempt_id

    async def build_attempt(self, payload: AttemptInput) -> Attempt:
        user_id, started_at, finished_at = validate_attempt_input(payload)
        profile = await self._profile(user_id)

        duration = payload.test_duration_seconds
        if duration is None:
            duration = self._default_duration
        elapsed = elapsed_seconds(started_at, finished_at)
        remaining = remaining_seconds(duration, elapsed)
        combined = payload.combined_score if payload.combined_score is not None else combined_score(payload.score, remaining)

        scope_ids: Dict[str, Optional[str]] = {}
        for field in _SCOPE_ID_FIELDS:
            scope_ids[field] = getattr(payload, field) or (getattr(profile, field) if profile else None)

        group_id = payload.group_id
        if group_id is not None:
            reason = group_id_rejection(group_id, school_id=scope_ids["school_id"])
            if reason is not None:
                logger.debug("Dropping group id on attempt for %s (%s)", user_id, reason)
                group_id = None

        display_name = payload.display_name or (profile.display_name if profile else None) or ANONYMOUS_DISPLAY_NAME
        avatar_url = payload.avatar_url or (profile.avatar_url if profile else None)

        return Attempt(
            attempt_id="",
            user_id=user_id,
            test_id=payload.test_id,
            display_name=display_name,
            avatar_url=avatar_url,
            score=payload.score,
            total_questions=payload.total_questions,
            time_taken_seconds=float(elapsed),
            remaining_time_seconds=remaining,
            combined_score=combined,
            period=period_of(finished_at, self._period_tz),
            group_id=group_id,
            started_at=started_at,
            finished_at=finished_at,
            created_at=self._clock(),
            user_answers=dict(payload.user_answers),
            **scope_ids,
        )

    async def fan_out(self, attempt: Attempt) -> int:
        """Write the derived summaries for a stored attempt; return the failure count."""
        writes: List[Tuple[Dict[str, Any], Callable[[], Awaitable[None]]]] = [
            (
                {"target": USER_SUMMARY_TARGET},
                lambda: self._store.merge_user_summary(attempt.user_id, summary_fields(attempt)),
            ),
        ]
        if attempt.group_id:
            group_board = board_id_for(GROUP_SCOPE, attempt.period or "", attempt.group_id)
            writes.append(
                (
                    {"target": BOARD_TARGET, "board_id": group_board, "scope": GROUP_SCOPE, "scope_value": attempt.group_id},
                    lambda: self._store.merge_board_member(
                        group_board, attempt.period or "", attempt.user_id, board_member_fields(attempt)
                    ),
                )
            )
        global_board = board_id_for(GLOBAL_SCOPE, attempt.period or "")
        writes.append(
            (
                {"target": BOARD_TARGET, "board_id": global_board, "scope": GLOBAL_SCOPE, "scope_value": None},
                lambda: self._store.merge_board_member(
                    global_board, attempt.period or "", attempt.user_id, board_member_fields(attempt)
                ),
            )
        )

        failed = 0
        for job, write in writes:
            try:
                await write()
            except StoreError as exc:
                failed += 1
                logger.warning(
                    "Derived %s write failed for attempt %s: %s",
                    job.get("board_id") or job["target"],
                    attempt.attempt_id,
                    exc,
                )
                emit_event(
                    SUMMARY_WRITE_FAILED,
                    user_id=attempt.user_id,
                    period=attempt.period,
                    attempt_id=attempt.attempt_id,
                    error=str(exc),
                    **job,
                )
        return failed

    async def _profile(self, user_id: str) -> Optional[UserProfile]:
        if self._directory is None:
            return None
        try:
            return await self._directory.get_profile(user_id)
        except StoreError as exc:
            logger.warning("Profile lookup failed while recording attempt for %s: %s", user_id, exc)
            return None


__all__ = [
    "ANONYMOUS_DISPLAY_NAME",
    "AttemptRecorder",
    "board_member_fields",
    "summary_fields",
    "validate_attempt_input",
]
