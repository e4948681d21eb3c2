"""Deduplication and ranking of raw attempts.

Every read path, live or one-shot, goes through :func:`rank`; the store is
never trusted to have pre-ranked or deduplicated anything.
"""

from __future__ import annotations

import logging
import math
from datetime import timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from .attempts import Attempt, LeaderboardEntry

logger = logging.getLogger(__name__)

SCORE_EPSILON = 0.001
TIME_EPSILON_SECONDS = 0.5

RankInput = Union[Attempt, Mapping[str, Any]]

# camelCase keys written by the first generation of clients
_LEGACY_KEYS = {
    "id": "attempt_id",
    "userId": "user_id",
    "testId": "test_id",
    "displayName": "display_name",
    "photoURL": "avatar_url",
    "avatarUrl": "avatar_url",
    "totalQuestions": "total_questions",
    "timeTaken": "time_taken_seconds",
    "remainingTime": "remaining_time_seconds",
    "combinedScore": "combined_score",
    "twoMonthPeriod": "period",
    "startedAt": "started_at",
    "finishedAt": "finished_at",
    "createdAt": "created_at",
    "timestamp": "created_at",
    "schoolId": "school_id",
    "unionId": "union_id",
    "upazilaId": "upazila_id",
    "districtId": "district_id",
    "divisionId": "division_id",
    "groupId": "group_id",
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)


def _normalize_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in record.items():
        target = _LEGACY_KEYS.get(key, key)
        if value is None and target in normalized:
            continue
        normalized[target] = value
    if normalized.get("combined_score") is None:
        normalized["combined_score"] = normalized.get("score")
    return normalized


def is_valid_attempt(record: RankInput) -> bool:
    """Minimum shape an attempt needs to take part in ranking."""
    if isinstance(record, Attempt):
        user_id, score = record.user_id, record.combined_score
        has_timestamp = record.finished_at is not None or record.created_at is not None
    else:
        fields = _normalize_record(record)
        user_id, score = fields.get("user_id"), fields.get("combined_score")
        has_timestamp = bool(fields.get("finished_at") or fields.get("created_at"))
    return bool(user_id) and _is_number(score) and has_timestamp


def _coerce(record: RankInput) -> Optional[Attempt]:
    if not is_valid_attempt(record):
        return None
    if isinstance(record, Attempt):
        return record
    fields = _normalize_record(record)
    fields.setdefault("attempt_id", "")
    try:
        return Attempt.model_validate(fields)
    except PydanticValidationError:
        logger.debug("Dropping unparseable attempt record for user %s", fields.get("user_id"))
        return None


Rankable = Union[Attempt, LeaderboardEntry]
R = TypeVar("R", Attempt, LeaderboardEntry)
TieKey = Tuple[int, int]


def _time(item: Rankable) -> float:
    value = item.time_taken_seconds
    return float(value) if value is not None else math.inf


def _recency_ms(item: Rankable) -> float:
    moment = item.finished_at or getattr(item, "created_at", None)
    if moment is None:
        return 0.0
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp() * 1000


def same_score(left: float, right: float) -> bool:
    return abs(left - right) <= SCORE_EPSILON


def same_time(left: float, right: float) -> bool:
    if math.isinf(left) or math.isinf(right):
        return left == right
    return abs(left - right) <= TIME_EPSILON_SECONDS


def _tie_classes(values: Iterable[float], same: Callable[[float, float], bool], descending: bool) -> Dict[float, int]:
    """Number the distinct values in order; a value within epsilon of its neighbour shares its class.

    Classes depend only on the set of values, so they are transitive and
    independent of input order.
    """
    classes: Dict[float, int] = {}
    current = 0
    previous: Optional[float] = None
    for value in sorted(set(values), reverse=descending):
        if previous is not None and not same(value, previous):
            current += 1
        classes[value] = current
        previous = value
    return classes


def _cascade(items: Sequence[R], tiebreak: Callable[[R], str]) -> List[Tuple[TieKey, R]]:
    """Sort by score class desc, time class asc, recency desc, then ``tiebreak``."""
    score_class = _tie_classes((item.combined_score for item in items), same_score, descending=True)
    time_class = _tie_classes((_time(item) for item in items), same_time, descending=False)
    keyed = [((score_class[item.combined_score], time_class[_time(item)]), item) for item in items]
    keyed.sort(key=lambda pair: (pair[0], -_recency_ms(pair[1]), tiebreak(pair[1])))
    return keyed


def _competition_ranks(keyed: Sequence[Tuple[TieKey, R]]) -> List[int]:
    ranks: List[int] = []
    for index, (tie_key, _item) in enumerate(keyed):
        if index > 0 and tie_key == keyed[index - 1][0]:
            ranks.append(ranks[-1])
        else:
            ranks.append(index + 1)
    return ranks


def best_attempts(records: Iterable[RankInput]) -> List[Attempt]:
    """One winning attempt per user, in board order."""
    by_user: Dict[str, List[Attempt]] = {}
    for record in records:
        attempt = _coerce(record)
        if attempt is None:
            continue
        by_user.setdefault(attempt.user_id, []).append(attempt)

    winners = [_cascade(group, lambda item: item.attempt_id)[0][1] for group in by_user.values()]
    return [attempt for _key, attempt in _cascade(winners, lambda item: item.user_id)]


def _to_entry(attempt: Attempt, rank: int) -> LeaderboardEntry:
    return LeaderboardEntry(
        rank=rank,
        user_id=attempt.user_id,
        display_name=attempt.display_name,
        avatar_url=attempt.avatar_url,
        attempt_id=attempt.attempt_id or None,
        test_id=attempt.test_id,
        score=attempt.score,
        total_questions=attempt.total_questions,
        combined_score=attempt.combined_score,
        time_taken_seconds=attempt.time_taken_seconds,
        remaining_time_seconds=attempt.remaining_time_seconds,
        finished_at=attempt.finished_at or attempt.created_at,
        period=attempt.period,
        school_id=attempt.school_id,
        group_id=attempt.group_id,
    )


def rank(records: Iterable[RankInput]) -> List[LeaderboardEntry]:
    """Deduplicate per user and assign competition ranks (1, 1, 3, ...)."""
    keyed = _cascade(best_attempts(records), lambda item: item.user_id)
    return [_to_entry(attempt, position) for (_key, attempt), position in zip(keyed, _competition_ranks(keyed))]


def rank_entries(entries: Iterable[LeaderboardEntry]) -> List[LeaderboardEntry]:
    """Re-rank stored board members with the same cascade; stored ranks are ignored."""
    keyed = _cascade(list(entries), lambda item: item.user_id)
    return [
        entry.model_copy(update={"rank": position})
        for (_key, entry), position in zip(keyed, _competition_ranks(keyed))
    ]


class DuplicateReport(BaseModel):
    total_entries: int = 0
    entries_without_user_id: int = 0
    entries_without_score: int = 0
    entries_without_timestamp: int = 0
    users_with_multiple_entries: int = 0
    average_entries_per_user: float = 0.0
    duplicates: Dict[str, int] = Field(default_factory=dict)


def analyze_duplicates(records: Iterable[RankInput]) -> DuplicateReport:
    """Count the record defects that make raw rows collapse or vanish in :func:`rank`."""
    report = DuplicateReport()
    per_user: Dict[str, int] = {}
    for record in records:
        report.total_entries += 1
        if isinstance(record, Attempt):
            fields: Dict[str, Any] = record.model_dump()
        else:
            fields = _normalize_record(record)
        user_id = fields.get("user_id")
        if not user_id:
            report.entries_without_user_id += 1
            continue
        if not _is_number(fields.get("combined_score")):
            report.entries_without_score += 1
        if not (fields.get("finished_at") or fields.get("created_at")):
            report.entries_without_timestamp += 1
        per_user[user_id] = per_user.get(user_id, 0) + 1

    report.duplicates = {user_id: count for user_id, count in per_user.items() if count > 1}
    report.users_with_multiple_entries = len(report.duplicates)
    if per_user:
        report.average_entries_per_user = sum(per_user.values()) / len(per_user)
    return report


__all__ = [
    "DuplicateReport",
    "SCORE_EPSILON",
    "TIME_EPSILON_SECONDS",
    "analyze_duplicates",
    "best_attempts",
    "is_valid_attempt",
    "rank",
    "rank_entries",
    "same_score",
    "same_time",
]
