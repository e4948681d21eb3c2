from __future__ import annotations

from datetime import datetime, timezone

import pytest
from zoneinfo import ZoneInfo

from quizrank.periods import PERIOD_BUCKETS, current_period, is_period_label, period_of


@pytest.mark.parametrize(
    ("month", "bucket"),
    [
        (1, "JanFeb"),
        (2, "JanFeb"),
        (3, "MarApr"),
        (4, "MarApr"),
        (5, "MayJun"),
        (6, "MayJun"),
        (7, "JulAug"),
        (8, "JulAug"),
        (9, "SepOct"),
        (10, "SepOct"),
        (11, "NovDec"),
        (12, "NovDec"),
    ],
)
def test_every_month_maps_to_its_two_month_bucket(month: int, bucket: str) -> None:
    assert period_of(datetime(2025, month, 10, tzinfo=timezone.utc)) == f"2025-{bucket}"


def test_bucket_boundaries() -> None:
    assert period_of(datetime(2025, 2, 28, 23, 59, 59, tzinfo=timezone.utc)) == "2025-JanFeb"
    assert period_of(datetime(2025, 3, 1, tzinfo=timezone.utc)) == "2025-MarApr"
    assert period_of(datetime(2024, 12, 31, 23, 59, tzinfo=timezone.utc)) == "2024-NovDec"
    assert period_of(datetime(2025, 1, 1, tzinfo=timezone.utc)) == "2025-JanFeb"


def test_epoch_milliseconds_are_accepted() -> None:
    assert period_of(1735689600000) == "2025-JanFeb"


def test_naive_datetimes_are_read_as_utc() -> None:
    naive = datetime(2025, 2, 28, 23, 30)
    assert period_of(naive) == "2025-JanFeb"
    assert period_of(naive, ZoneInfo("Asia/Dhaka")) == "2025-MarApr"


def test_period_of_is_idempotent() -> None:
    moment = datetime(2025, 7, 4, 8, tzinfo=timezone.utc)
    assert period_of(moment) == period_of(moment)
    assert all(is_period_label(f"2025-{bucket}") for bucket in PERIOD_BUCKETS)


def test_current_period_uses_clock() -> None:
    assert current_period(lambda: datetime(2024, 11, 3, tzinfo=timezone.utc)) == "2024-NovDec"


@pytest.mark.parametrize("label", ["2025-JulSep", "25-JulAug", "", "2025_JulAug", "2025-julaug"])
def test_is_period_label_rejects_malformed_labels(label: str) -> None:
    assert not is_period_label(label)
