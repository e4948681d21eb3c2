"""Leaderboard and attempt submission endpoints."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime
from functools import lru_cache
from threading import Lock
from typing import Callable, List, Literal, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field
from zoneinfo import ZoneInfo

from .attempt_store import AttemptStore, ProfileDirectory
from .attempts import AttemptInput, LeaderboardEntry
from .cache import LeaderboardCache
from .config import get_settings
from .errors import ScopeUnavailableError, StoreError, ValidationError
from .orchestrator import ScopeFetchOrchestrator, ScopeState, ScopeStatus, state_key
from .periods import current_period, is_period_label
from .profiles import GROUP_SCOPE, SCOPES, UserProfile, available_scopes
from .repositories.attempts import SqlAttemptStore
from .repositories.user_profiles import SqlProfileDirectory
from .write_path import AttemptRecorder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["leaderboard"])


class ScopeBoardPayload(BaseModel):
    key: str
    scope: str
    scope_value: Optional[str] = None
    status: ScopeStatus
    entries: List[LeaderboardEntry] = Field(default_factory=list)
    has_more: bool = False
    error: Optional[str] = None
    message: Optional[str] = None
    from_cache: bool = False
    last_updated: Optional[datetime] = None

    @classmethod
    def from_state(cls, state: ScopeState) -> "ScopeBoardPayload":
        return cls(
            key=state_key(state.scope, state.scope_value),
            scope=state.scope,
            scope_value=state.scope_value,
            status=state.status,
            entries=list(state.entries),
            has_more=state.has_more,
            error=state.error,
            message=state.message,
            from_cache=state.from_cache,
            last_updated=state.last_updated,
        )


class LeaderboardResponse(BaseModel):
    scope: str
    period: str
    mode: str
    boards: List[ScopeBoardPayload] = Field(default_factory=list)


class ScopesResponse(BaseModel):
    user_id: str
    period: str
    scopes: List[str]
    groups: List[str] = Field(default_factory=list)


class LoadMoreRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    period: Optional[str] = None
    group_id: Optional[str] = None


class AttemptRecordedResponse(BaseModel):
    attempt_id: str


class OrchestratorRegistry:
    """Bounded LRU of per-(viewer, period) orchestrators.

    Keeping one orchestrator per viewer preserves paging state between the
    first page and later ``/more`` calls.
    """

    def __init__(
        self,
        factory: Callable[[UserProfile, str], ScopeFetchOrchestrator],
        max_sessions: int = 512,
    ) -> None:
        self._factory = factory
        self._max_sessions = max_sessions
        self._sessions: "OrderedDict[Tuple[str, str], ScopeFetchOrchestrator]" = OrderedDict()
        self._lock = Lock()

    def get(self, profile: UserProfile, period: str) -> ScopeFetchOrchestrator:
        key = (profile.user_id, period)
        evicted: List[ScopeFetchOrchestrator] = []
        with self._lock:
            orchestrator = self._sessions.get(key)
            if orchestrator is not None and orchestrator.profile != profile:
                evicted.append(self._sessions.pop(key))
                orchestrator = None
            if orchestrator is None:
                orchestrator = self._factory(profile, period)
                self._sessions[key] = orchestrator
            self._sessions.move_to_end(key)
            while len(self._sessions) > self._max_sessions:
                _, oldest = self._sessions.popitem(last=False)
                evicted.append(oldest)
        for stale in evicted:
            stale.close()
        return orchestrator

    def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for orchestrator in sessions:
            orchestrator.close()

    def __len__(self) -> int:
        return len(self._sessions)


@lru_cache
def get_attempt_store() -> AttemptStore:
    return SqlAttemptStore()


@lru_cache
def get_profile_directory() -> ProfileDirectory:
    return SqlProfileDirectory()


@lru_cache
def get_leaderboard_cache() -> LeaderboardCache:
    return LeaderboardCache.from_settings(get_settings())


def build_orchestrator(profile: UserProfile, period: str) -> ScopeFetchOrchestrator:
    return ScopeFetchOrchestrator(
        get_attempt_store(),
        profile,
        cache=get_leaderboard_cache(),
        directory=get_profile_directory(),
        settings=get_settings(),
        period=period,
    )


@lru_cache
def get_registry() -> OrchestratorRegistry:
    return OrchestratorRegistry(build_orchestrator, max_sessions=get_settings().session_registry_size)


def get_recorder() -> AttemptRecorder:
    return AttemptRecorder(get_attempt_store(), get_profile_directory(), settings=get_settings())


def _require_scope(scope: str) -> str:
    if scope not in SCOPES:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown leaderboard scope: {scope}")
    return scope


def _resolve_period(period: Optional[str]) -> str:
    if period is None:
        return current_period(tz=ZoneInfo(get_settings().period_timezone))
    if not is_period_label(period):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid period label: {period}",
        )
    return period


async def _load_profile(directory: ProfileDirectory, user_id: str) -> UserProfile:
    normalized = user_id.strip()
    if not normalized:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="User id cannot be empty.")
    try:
        profile = await directory.get_profile(normalized)
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return profile or UserProfile(user_id=normalized)


def _group_targets(orchestrator: ScopeFetchOrchestrator, scope: str, group_ids: List[str]) -> List[Optional[str]]:
    if scope != GROUP_SCOPE:
        return [None]
    if group_ids:
        return list(dict.fromkeys(group_ids))
    try:
        return [orchestrator.resolve_value(GROUP_SCOPE)]
    except ScopeUnavailableError:
        return [None]


@router.get("/leaderboard/scopes", response_model=ScopesResponse)
async def leaderboard_scopes(
    user_id: str = Query(..., min_length=1),
    directory: ProfileDirectory = Depends(get_profile_directory),
) -> ScopesResponse:
    profile = await _load_profile(directory, user_id)
    available = available_scopes(profile)
    return ScopesResponse(
        user_id=profile.user_id,
        period=_resolve_period(None),
        scopes=[scope for scope in SCOPES if scope in available],
        groups=profile.valid_groups(),
    )


@router.get("/leaderboard/{scope}", response_model=LeaderboardResponse)
async def leaderboard(
    scope: str,
    user_id: str = Query(..., min_length=1),
    period: Optional[str] = Query(default=None),
    mode: Literal["cached", "live"] = Query(default="cached"),
    group_id: Optional[List[str]] = Query(default=None),
    directory: ProfileDirectory = Depends(get_profile_directory),
    registry: OrchestratorRegistry = Depends(get_registry),
) -> LeaderboardResponse:
    """One-shot leaderboard read.

    ``cached`` may answer from the leaderboard cache; ``live`` always reads
    the store. Store failures come back as ``errored`` boards, not HTTP errors.
    """
    _require_scope(scope)
    resolved_period = _resolve_period(period)
    profile = await _load_profile(directory, user_id)
    orchestrator = registry.get(profile, resolved_period)

    boards: List[ScopeBoardPayload] = []
    for value in _group_targets(orchestrator, scope, group_id or []):
        if mode == "live":
            await orchestrator.refresh(scope, value)
        else:
            await orchestrator.load_page(scope, scope_value=value)
        boards.append(ScopeBoardPayload.from_state(orchestrator.state(scope, value)))

    if boards and all(board.status is ScopeStatus.UNAVAILABLE for board in boards):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=boards[0].error or "Scope not available")
    return LeaderboardResponse(scope=scope, period=resolved_period, mode=mode, boards=boards)


@router.post("/leaderboard/{scope}/more", response_model=ScopeBoardPayload)
async def leaderboard_more(
    scope: str,
    payload: LoadMoreRequest,
    directory: ProfileDirectory = Depends(get_profile_directory),
    registry: OrchestratorRegistry = Depends(get_registry),
) -> ScopeBoardPayload:
    _require_scope(scope)
    resolved_period = _resolve_period(payload.period)
    profile = await _load_profile(directory, payload.user_id)
    orchestrator = registry.get(profile, resolved_period)
    value = _group_targets(orchestrator, scope, [payload.group_id] if payload.group_id else [])[0]

    state = orchestrator.state(scope, value)
    if state.status is ScopeStatus.IDLE:
        await orchestrator.load_page(scope, scope_value=value)
    else:
        await orchestrator.load_more(scope, scope_value=value)
    board = ScopeBoardPayload.from_state(orchestrator.state(scope, value))
    if board.status is ScopeStatus.UNAVAILABLE:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=board.error or "Scope not available")
    return board


@router.websocket("/leaderboard/{scope}/live")
async def leaderboard_live(
    websocket: WebSocket,
    scope: str,
    user_id: str = Query(..., min_length=1),
    group_id: Optional[str] = Query(default=None),
) -> None:
    """Stream ranked snapshots for one scope until the client disconnects."""
    await websocket.accept()
    if scope not in SCOPES:
        await websocket.close(code=1008, reason=f"Unknown leaderboard scope: {scope}")
        return
    try:
        profile = await _load_profile(get_profile_directory(), user_id)
    except HTTPException as exc:
        await websocket.close(code=1011, reason=str(exc.detail))
        return

    orchestrator = build_orchestrator(profile, _resolve_period(None))
    updates: "asyncio.Queue[ScopeBoardPayload]" = asyncio.Queue()
    orchestrator.add_listener(lambda _key, state: updates.put_nowait(ScopeBoardPayload.from_state(state)))
    orchestrator.listen_scope(scope, group_id)

    first = await updates.get()
    await websocket.send_json(first.model_dump(mode="json"))
    if first.status is ScopeStatus.UNAVAILABLE:
        orchestrator.close()
        await websocket.close(code=1008, reason=first.error or "Scope not available")
        return

    async def _forward() -> None:
        while True:
            board = await updates.get()
            await websocket.send_json(board.model_dump(mode="json"))

    sender = asyncio.create_task(_forward())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Live leaderboard client for %s disconnected", user_id)
    finally:
        sender.cancel()
        orchestrator.close()


@router.post("/attempts", response_model=AttemptRecordedResponse, status_code=status.HTTP_201_CREATED)
async def record_attempt(
    payload: AttemptInput,
    recorder: AttemptRecorder = Depends(get_recorder),
) -> AttemptRecordedResponse:
    try:
        attempt_id = await recorder.record_attempt(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": str(exc), "field": exc.field},
        ) from exc
    except StoreError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return AttemptRecordedResponse(attempt_id=attempt_id)


__all__ = [
    "OrchestratorRegistry",
    "ScopeBoardPayload",
    "build_orchestrator",
    "get_attempt_store",
    "get_leaderboard_cache",
    "get_profile_directory",
    "get_recorder",
    "get_registry",
    "router",
]
