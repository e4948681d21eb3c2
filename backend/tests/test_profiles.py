from __future__ import annotations

import pytest

from quizrank.errors import ScopeUnavailableError
from quizrank.profiles import (
    SCOPES,
    UserProfile,
    available_scopes,
    group_id_rejection,
    is_valid_group_id,
    scope_value,
)

GROUP = "grp-123456789"


def _full_profile(**overrides: object) -> UserProfile:
    fields = {
        "user_id": "student-1",
        "school_id": "school-0001",
        "union_id": "union-7",
        "upazila_id": "upazila-3",
        "district_id": "district-9",
        "division_id": "division-2",
        "groups": [GROUP],
    }
    fields.update(overrides)
    return UserProfile(**fields)


def test_global_is_always_available() -> None:
    assert available_scopes(None) == {"global"}
    assert available_scopes(UserProfile(user_id="u1")) == {"global"}


def test_full_profile_unlocks_every_scope() -> None:
    assert available_scopes(_full_profile()) == set(SCOPES)


def test_blank_identifiers_do_not_unlock_scopes() -> None:
    profile = UserProfile(user_id="u1", school_id="   ", district_id="", groups=None)
    assert profile.school_id is None
    assert profile.groups == []
    assert available_scopes(profile) == {"global"}


def test_placeholder_groups_do_not_unlock_group_scope() -> None:
    profile = _full_profile(groups=["undefined", "null", "abc", f" {GROUP}", "{groupId}"])
    assert "group" not in available_scopes(profile)
    assert profile.valid_groups() == []


def test_group_matching_school_id_is_rejected() -> None:
    profile = _full_profile(school_id="school-12345", groups=["school-12345"])
    assert "group" not in available_scopes(profile)
    assert group_id_rejection("school-12345", school_id="school-12345") == "school_id"


@pytest.mark.parametrize(
    ("value", "reason"),
    [
        ("", "empty"),
        ("   ", "empty"),
        ("undefined", "placeholder"),
        ("N/A", "placeholder"),
        ("default", "placeholder"),
        ("{groupId}", "template"),
        ("${group}", "template"),
        ("grp 123456789", "whitespace"),
        ("abc", "too_short"),
        ("grp.12345678!", "malformed"),
        (None, "not_a_string"),
        (42, "not_a_string"),
        (GROUP, None),
    ],
)
def test_group_id_rejection_table(value: object, reason: str) -> None:
    assert group_id_rejection(value) == reason
    assert is_valid_group_id(value) is (reason is None)


def test_valid_groups_keeps_order_and_drops_repeats() -> None:
    other = "grp-987654321"
    profile = _full_profile(groups=[other, "null", GROUP, other])
    assert profile.valid_groups() == [other, GROUP]


def test_scope_value_resolves_identifiers() -> None:
    profile = _full_profile()
    assert scope_value(profile, "global") is None
    assert scope_value(profile, "school") == "school-0001"
    assert scope_value(profile, "division") == "division-2"
    assert scope_value(profile, "group") == GROUP
    assert scope_value(profile, "group", GROUP) == GROUP


def test_scope_value_raises_when_profile_cannot_back_scope() -> None:
    profile = UserProfile(user_id="u1", groups=[])
    with pytest.raises(ScopeUnavailableError) as excinfo:
        scope_value(profile, "group")
    assert excinfo.value.scope == "group"
    with pytest.raises(ScopeUnavailableError):
        scope_value(profile, "school")
    with pytest.raises(ScopeUnavailableError):
        scope_value(_full_profile(), "group", "grp-000000000")
    with pytest.raises(ScopeUnavailableError, match="Unknown scope"):
        scope_value(profile, "planet")
