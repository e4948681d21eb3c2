from __future__ import annotations

import itertools
import random
from datetime import datetime, timedelta, timezone

import pytest

from quizrank.attempts import combined_score
from quizrank.ranking import analyze_duplicates, best_attempts, is_valid_attempt, rank, rank_entries

from fakes import NOW, make_attempt


def test_best_attempt_per_user_wins() -> None:
    first = make_attempt("amina", combined_score(7, 50 * 60), attempt_id="a1")
    second = make_attempt("amina", combined_score(9, 40 * 60), attempt_id="a2")

    entries = rank([first, second])

    assert len(entries) == 1
    assert entries[0].attempt_id == "a2"
    assert entries[0].combined_score == pytest.approx(9.67, abs=0.01)
    assert entries[0].rank == 1


def test_exact_ties_share_rank_and_next_entry_takes_ordinal() -> None:
    entries = rank(
        [
            make_attempt("u1", 10.0),
            make_attempt("u2", 10.0),
            make_attempt("u3", 8.0),
        ]
    )
    assert [entry.rank for entry in entries] == [1, 1, 3]
    assert [entry.user_id for entry in entries[:2]] == ["u1", "u2"]


def test_near_ties_within_epsilons_share_rank() -> None:
    entries = rank(
        [
            make_attempt("u1", 10.0004, time_taken=60.0),
            make_attempt("u2", 10.0, time_taken=60.4),
            make_attempt("u3", 10.0, time_taken=75.0),
        ]
    )
    assert [entry.rank for entry in entries] == [1, 1, 3]


def test_faster_time_breaks_score_tie() -> None:
    entries = rank([make_attempt("slow", 9.0, time_taken=300), make_attempt("fast", 9.0, time_taken=120)])
    assert [entry.user_id for entry in entries] == ["fast", "slow"]
    assert [entry.rank for entry in entries] == [1, 2]


def test_later_finish_breaks_full_tie_within_user() -> None:
    older = make_attempt("u1", 9.0, attempt_id="old", finished=NOW - timedelta(days=2))
    newer = make_attempt("u1", 9.0, attempt_id="new", finished=NOW - timedelta(hours=1))
    assert best_attempts([older, newer])[0].attempt_id == "new"


def test_rank_is_independent_of_input_order() -> None:
    attempts = [
        make_attempt(f"user-{index % 7}", float(index % 5) + index / 100, time_taken=30 + index, attempt_id=f"a{index}")
        for index in range(40)
    ]
    expected = rank(attempts)
    shuffler = random.Random(7)
    for _ in range(10):
        shuffled = list(attempts)
        shuffler.shuffle(shuffled)
        assert rank(shuffled) == expected


def test_epsilon_chains_rank_the_same_in_every_order() -> None:
    attempts = [
        make_attempt("a", 10.0, time_taken=50),
        make_attempt("b", 10.0008, time_taken=100),
        make_attempt("c", 10.0016, time_taken=200),
    ]

    boards = {tuple((entry.user_id, entry.rank) for entry in rank(order)) for order in itertools.permutations(attempts)}

    assert boards == {(("a", 1), ("b", 2), ("c", 3))}


def test_time_chains_share_one_rank() -> None:
    attempts = [
        make_attempt("u1", 9.0, time_taken=60.0),
        make_attempt("u2", 9.0, time_taken=60.4),
        make_attempt("u3", 9.0, time_taken=60.8),
        make_attempt("u4", 8.0, time_taken=10.0),
    ]

    for order in itertools.permutations(attempts):
        assert [(entry.user_id, entry.rank) for entry in rank(order)] == [
            ("u1", 1),
            ("u2", 1),
            ("u3", 1),
            ("u4", 4),
        ]


def test_winner_within_epsilon_chain_is_order_independent() -> None:
    attempts = [
        make_attempt("u1", 10.0, time_taken=50, attempt_id="first"),
        make_attempt("u1", 10.0008, time_taken=100, attempt_id="second"),
        make_attempt("u1", 10.0016, time_taken=200, attempt_id="third"),
    ]
    winners = {best_attempts(order)[0].attempt_id for order in itertools.permutations(attempts)}
    assert winners == {"first"}


def test_rank_entries_recomputes_stored_ranks() -> None:
    stored = rank(
        [
            make_attempt("slow", 9.0, time_taken=300),
            make_attempt("t2", 10.0),
            make_attempt("fast", 9.0, time_taken=100),
            make_attempt("t1", 10.0),
        ]
    )
    scrambled = [entry.model_copy(update={"rank": 7}) for entry in reversed(stored)]

    entries = rank_entries(scrambled)

    assert [(entry.user_id, entry.rank) for entry in entries] == [("t1", 1), ("t2", 1), ("fast", 3), ("slow", 4)]


def test_rank_output_has_one_entry_per_user_in_cascade_order() -> None:
    attempts = [
        make_attempt("u1", 12.5, time_taken=200, attempt_id="x1"),
        make_attempt("u1", 11.0, time_taken=100, attempt_id="x2"),
        make_attempt("u2", 12.5, time_taken=150, attempt_id="x3"),
        make_attempt("u3", 3.0, time_taken=10, attempt_id="x4"),
    ]
    entries = rank(attempts)
    assert [entry.user_id for entry in entries] == ["u2", "u1", "u3"]
    assert len({entry.user_id for entry in entries}) == len(entries)
    for left, right in zip(entries, entries[1:]):
        assert left.combined_score >= right.combined_score - 0.001


def test_invalid_records_are_dropped_silently() -> None:
    finished = datetime(2025, 7, 1, tzinfo=timezone.utc)
    records = [
        {"userId": "legacy", "score": 6, "timeTaken": 90, "finishedAt": finished},
        {"user_id": "", "combined_score": 50, "finished_at": finished},
        {"user_id": "nan", "combined_score": float("nan"), "finished_at": finished},
        {"user_id": "text", "combined_score": "9", "finished_at": finished},
        {"user_id": "no-time", "combined_score": 9},
        make_attempt("typed", 5.0),
    ]
    entries = rank(records)
    assert [entry.user_id for entry in entries] == ["legacy", "typed"]
    assert entries[0].combined_score == 6


def test_empty_input_ranks_to_empty_list() -> None:
    assert rank([]) == []
    assert rank([{"user_id": None}]) == []


def test_is_valid_attempt_checks_minimum_shape() -> None:
    assert is_valid_attempt({"user_id": "u", "score": 3, "createdAt": NOW})
    assert not is_valid_attempt({"user_id": "u", "score": True, "createdAt": NOW})


def test_analyze_duplicates_reports_defects() -> None:
    records = [
        make_attempt("u1", 5.0, attempt_id="1"),
        make_attempt("u1", 6.0, attempt_id="2"),
        make_attempt("u2", 6.0, attempt_id="3"),
        {"combined_score": 4, "finished_at": NOW},
        {"user_id": "u3"},
    ]
    report = analyze_duplicates(records)
    assert report.total_entries == 5
    assert report.entries_without_user_id == 1
    assert report.entries_without_score == 1
    assert report.entries_without_timestamp == 1
    assert report.users_with_multiple_entries == 1
    assert report.duplicates == {"u1": 2}
    assert report.average_entries_per_user == pytest.approx(4 / 3)
