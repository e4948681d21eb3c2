"""Database-backed user profile repository and profile directory."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, ContextManager, Dict, Iterable, Optional, Sequence

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..attempt_store import DisplayDetails
from ..db.models import UserProfileModel
from ..db.session import session_scope
from ..errors import StoreError
from ..profiles import UserProfile

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = (
    "display_name",
    "avatar_url",
    "school_id",
    "union_id",
    "upazila_id",
    "district_id",
    "division_id",
)


def _normalize_user_id(user_id: str) -> str:
    normalized = (user_id or "").strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


class UserProfileRepository:
    """Read model of enrollment profiles; scope identifiers are stored verbatim."""

    def get(self, session: Session, user_id: str) -> Optional[UserProfile]:
        model = session.get(UserProfileModel, _normalize_user_id(user_id))
        if model is None:
            return None
        return self._to_domain(model)

    def upsert(self, session: Session, profile: UserProfile) -> UserProfile:
        user_id = _normalize_user_id(profile.user_id)
        model = session.get(UserProfileModel, user_id)
        if model is None:
            model = UserProfileModel(user_id=user_id)
            session.add(model)
        for field in _PROFILE_FIELDS:
            setattr(model, field, getattr(profile, field))
        model.groups = list(profile.groups)
        session.flush()
        return self._to_domain(model)

    def delete(self, session: Session, user_id: str) -> bool:
        result = session.execute(delete(UserProfileModel).where(UserProfileModel.user_id == _normalize_user_id(user_id)))
        return bool(result.rowcount)

    def display_details(self, session: Session, user_ids: Iterable[str]) -> Dict[str, DisplayDetails]:
        wanted = sorted({user_id for user_id in user_ids if user_id})
        if not wanted:
            return {}
        stmt = select(UserProfileModel).where(UserProfileModel.user_id.in_(wanted))
        found: Dict[str, DisplayDetails] = {}
        for model in session.execute(stmt).scalars():
            found[model.user_id] = DisplayDetails(
                display_name=model.display_name or "Unknown",
                avatar_url=model.avatar_url,
            )
        return found

    @staticmethod
    def _to_domain(model: UserProfileModel) -> UserProfile:
        return UserProfile(
            user_id=model.user_id,
            display_name=model.display_name,
            avatar_url=model.avatar_url,
            school_id=model.school_id,
            union_id=model.union_id,
            upazila_id=model.upazila_id,
            district_id=model.district_id,
            division_id=model.division_id,
            groups=list(model.groups or []),
        )


user_profiles = UserProfileRepository()


class SqlProfileDirectory:
    """Async facade over :class:`UserProfileRepository` for the orchestrator."""

    def __init__(
        self,
        repository: UserProfileRepository = user_profiles,
        session_factory: Callable[..., ContextManager[Session]] = session_scope,
    ) -> None:
        self._repository = repository
        self._session_scope = session_factory

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        def _load() -> Optional[UserProfile]:
            with self._session_scope(commit=False) as session:
                return self._repository.get(session, user_id)

        return await self._run(_load)

    async def display_details(self, user_ids: Sequence[str]) -> Dict[str, DisplayDetails]:
        def _load() -> Dict[str, DisplayDetails]:
            with self._session_scope(commit=False) as session:
                return self._repository.display_details(session, user_ids)

        return await self._run(_load)

    async def _run(self, func):  # type: ignore[no-untyped-def]
        try:
            return await asyncio.to_thread(func)
        except SQLAlchemyError as exc:
            logger.warning("Profile lookup failed: %s", exc)
            raise StoreError(str(exc), operation="profile") from exc


__all__ = ["SqlProfileDirectory", "UserProfileRepository", "user_profiles"]
