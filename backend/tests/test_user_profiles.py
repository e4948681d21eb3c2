from __future__ import annotations

import asyncio

import pytest

from quizrank.config import get_settings
from quizrank.db.session import create_schema, dispose_engine, get_engine, session_scope
from quizrank.db.base import Base
from quizrank.errors import StoreError
from quizrank.profiles import UserProfile
from quizrank.repositories.user_profiles import SqlProfileDirectory, user_profiles


@pytest.fixture(autouse=True)
def _database(tmp_path, monkeypatch):
    monkeypatch.setenv("QUIZRANK_DATABASE_URL", f"sqlite:///{tmp_path / 'profiles.db'}")
    get_settings.cache_clear()
    dispose_engine()
    create_schema()
    yield
    dispose_engine()
    get_settings.cache_clear()


def _save(profile: UserProfile) -> UserProfile:
    with session_scope() as session:
        return user_profiles.upsert(session, profile)


def test_upsert_round_trips_scope_identifiers() -> None:
    _save(UserProfile(user_id=" student-1 ", school_id="school-0001", groups=["grp-333333333", "null"]))
    updated = _save(UserProfile(user_id="student-1", display_name="Nadia", school_id="school-0001", union_id="u-7"))

    assert updated.union_id == "u-7"
    with session_scope(commit=False) as session:
        stored = user_profiles.get(session, "student-1")
    assert stored is not None
    assert stored.display_name == "Nadia"
    assert stored.groups == []


def test_delete_removes_profile() -> None:
    _save(UserProfile(user_id="student-1"))
    with session_scope() as session:
        assert user_profiles.delete(session, "student-1") is True
        assert user_profiles.delete(session, "student-1") is False
    with session_scope(commit=False) as session:
        assert user_profiles.get(session, "student-1") is None


def test_blank_user_id_is_rejected() -> None:
    with pytest.raises(ValueError):
        _save(UserProfile(user_id="   "))


def test_directory_looks_up_profiles_and_display_details() -> None:
    _save(UserProfile(user_id="student-1", display_name="Nadia", avatar_url="https://cdn.example/n.png"))
    _save(UserProfile(user_id="student-2"))
    directory = SqlProfileDirectory()

    profile = asyncio.run(directory.get_profile("student-1"))
    details = asyncio.run(directory.display_details(["student-1", "student-2", "ghost", ""]))

    assert profile is not None and profile.display_name == "Nadia"
    assert asyncio.run(directory.get_profile("ghost")) is None
    assert details["student-1"].avatar_url == "https://cdn.example/n.png"
    assert details["student-2"].display_name == "Unknown"
    assert "ghost" not in details


def test_directory_failures_surface_as_store_error() -> None:
    Base.metadata.drop_all(get_engine())
    with pytest.raises(StoreError) as excinfo:
        asyncio.run(SqlProfileDirectory().get_profile("student-1"))
    assert excinfo.value.operation == "profile"
