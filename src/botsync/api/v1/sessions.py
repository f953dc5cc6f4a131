"""Session endpoints: creation, bot hand-over, lookup, termination, archive.

Bot dispatch happens elsewhere; POST /sessions/{id}/bot is how the
dispatcher hands a freshly created vendor bot over to this service.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from src.botsync.api.deps import get_state_store, get_termination_coordinator
from src.botsync.lifecycle.errors import SessionNotFoundError
from src.botsync.lifecycle.schemas import Bot, Recording, Session, TerminationResult

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


# ── Request/Response Schemas ─────────────────────────────────────────────────


class SessionCreateRequest(BaseModel):
    title: str = ""


class BotRegisterRequest(BaseModel):
    bot_id: str = Field(min_length=1)


class SessionResponse(BaseModel):
    """Session with its bot and stored recordings."""

    session: Session
    bot: Bot | None = None
    recordings: list[Recording] = Field(default_factory=list)


def _not_found(session_id: uuid.UUID) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"Session not found: {session_id}",
    )


# ── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", response_model=Session, status_code=status.HTTP_201_CREATED)
async def create_session(body: SessionCreateRequest, request: Request) -> Session:
    """Create a session in the created state."""
    store = get_state_store(request)
    session = await store.repository.create_session(title=body.title)
    logger.info("session.created", session_id=str(session.id))
    return session


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: uuid.UUID, request: Request) -> SessionResponse:
    store = get_state_store(request)
    try:
        session = await store.get_session(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)

    bot = await store.repository.get_bot(session.bot_id) if session.bot_id else None
    recordings = await store.repository.list_recordings(session_id)
    return SessionResponse(session=session, bot=bot, recordings=recordings)


@router.post("/{session_id}/bot", response_model=Bot, status_code=status.HTTP_201_CREATED)
async def register_bot(
    session_id: uuid.UUID, body: BotRegisterRequest, request: Request
) -> Bot:
    """Hand a dispatched bot over to the lifecycle engine."""
    store = get_state_store(request)
    try:
        session = await store.get_session(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)

    if session.bot_id and session.bot_id != body.bot_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session already has bot {session.bot_id}",
        )

    bot = await store.repository.register_bot(
        session_id, body.bot_id, datetime.now(timezone.utc)
    )
    logger.info("session.bot_registered", session_id=str(session_id), bot_id=body.bot_id)
    return bot


@router.post("/{session_id}/end", response_model=TerminationResult)
async def end_session(session_id: uuid.UUID, request: Request) -> TerminationResult:
    """End a session: stop the bot, close the session, request the summary.

    Safe to call repeatedly; a retry of a completed-but-unfinalized session
    only re-attempts the summary.
    """
    coordinator = get_termination_coordinator(request)
    try:
        return await coordinator.end_session(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)


@router.post("/{session_id}/archive", response_model=Session)
async def archive_session(session_id: uuid.UUID, request: Request) -> Session:
    """Soft-archive a session. Archived sessions are skipped by sweeps."""
    store = get_state_store(request)
    try:
        await store.get_session(session_id)
    except SessionNotFoundError:
        raise _not_found(session_id)

    await store.repository.archive_session(session_id, datetime.now(timezone.utc))
    return await store.get_session(session_id)
