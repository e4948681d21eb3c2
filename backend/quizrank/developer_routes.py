"""Developer utilities for duplicate diagnostics and summary repair."""

from __future__ import annotations

import asyncio
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from .attempt_store import AttemptStore, scope_filter_for
from .config import get_settings
from .db.session import session_scope
from .errors import StoreError
from .leaderboard_routes import get_attempt_store
from .periods import is_period_label
from .profiles import SCOPES, UserProfile
from .ranking import DuplicateReport, analyze_duplicates
from .repair import ReconcileReport, reaggregate_board, reconcile_pending
from .repositories.user_profiles import user_profiles
from .telemetry import emit_event


def require_debug_endpoints() -> None:
    if not get_settings().debug_endpoints:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")


router = APIRouter(
    prefix="/api/developer",
    tags=["developer"],
    dependencies=[Depends(require_debug_endpoints)],
)


class ReaggregateRequest(BaseModel):
    scope: str = Field(..., min_length=1)
    period: str = Field(..., min_length=1)
    scope_value: Optional[str] = None


class ReaggregateResponse(BaseModel):
    scope: str
    period: str
    scope_value: Optional[str] = None
    entries: int


def _check_target(scope: str, period: str, scope_value: Optional[str]) -> None:
    if scope not in SCOPES:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Unknown scope: {scope}")
    if not is_period_label(period):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=f"Invalid period label: {period}")
    if scope != "global" and not scope_value:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Scope {scope} needs a scope value.",
        )


@router.get("/leaderboard/{scope}/duplicates", response_model=DuplicateReport)
async def developer_duplicates(
    scope: str,
    period: str = Query(...),
    scope_value: Optional[str] = Query(default=None),
    store: AttemptStore = Depends(get_attempt_store),
) -> DuplicateReport:
    _check_target(scope, period, scope_value)
    try:
        attempts = await store.list_attempts(period, scope_filter_for(scope, scope_value))
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return analyze_duplicates(attempts)


@router.post("/leaderboard/reaggregate", response_model=ReaggregateResponse)
async def developer_reaggregate(
    payload: ReaggregateRequest,
    store: AttemptStore = Depends(get_attempt_store),
) -> ReaggregateResponse:
    _check_target(payload.scope, payload.period, payload.scope_value)
    try:
        entries = await reaggregate_board(store, payload.scope, payload.period, payload.scope_value)
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    emit_event("developer_reaggregate", scope=payload.scope, period=payload.period, entries=len(entries))
    return ReaggregateResponse(
        scope=payload.scope,
        period=payload.period,
        scope_value=payload.scope_value,
        entries=len(entries),
    )


@router.post("/reconcile", response_model=ReconcileReport)
async def developer_reconcile(
    limit: int = Query(default=100, ge=1, le=1000),
    store: AttemptStore = Depends(get_attempt_store),
) -> ReconcileReport:
    return await reconcile_pending(store, limit=limit)


@router.put("/profiles", response_model=UserProfile)
async def developer_upsert_profile(profile: UserProfile) -> UserProfile:
    """Seed a profile read model for local testing."""

    def _save() -> UserProfile:
        with session_scope() as session:
            return user_profiles.upsert(session, profile)

    try:
        return await asyncio.to_thread(_save)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc


@router.get("/profiles", response_model=List[str])
async def developer_profile_groups(user_id: str = Query(..., min_length=1)) -> List[str]:
    """Valid group ids of a stored profile, after placeholder filtering."""

    def _load() -> Optional[UserProfile]:
        with session_scope(commit=False) as session:
            return user_profiles.get(session, user_id)

    profile = await asyncio.to_thread(_load)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return profile.valid_groups()


__all__ = ["require_debug_endpoints", "router"]
