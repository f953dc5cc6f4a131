"""Shared fixtures for lifecycle tests.

Provides:
- InMemoryLifecycleRepository: dict-backed test double for LifecycleRepository
  with the same compare-and-set and on-conflict semantics
- Fixtures for the repository, state store, usage calculator, a mocked bot
  provider and the recording resolver
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock

import pytest

from src.botsync.lifecycle.billing import UsageCalculator
from src.botsync.lifecycle.recordings import RecordingResolver
from src.botsync.lifecycle.schemas import (
    Bot,
    BotStatus,
    Recording,
    Session,
    SessionStatus,
    TransitionSource,
    WebhookEvent,
)
from src.botsync.lifecycle.store import BotStateStore

_TERMINAL_BOT = (BotStatus.COMPLETED, BotStatus.FAILED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── In-Memory Repository ────────────────────────────────────────────────────


class InMemoryLifecycleRepository:
    """In-memory test double for LifecycleRepository.

    ``before_bot_cas`` / ``before_session_cas`` run right before a
    compare-and-set is evaluated, letting tests simulate a concurrent writer.
    """

    def __init__(self) -> None:
        self.sessions: dict[uuid.UUID, Session] = {}
        self.bots: dict[str, Bot] = {}
        self.events: dict[str, WebhookEvent] = {}
        self.recordings: dict[tuple[uuid.UUID, str, str], Recording] = {}
        self.usage: dict[tuple[uuid.UUID, datetime], int] = {}
        self.before_bot_cas: Callable[[str], None] | None = None
        self.before_session_cas: Callable[[uuid.UUID], None] | None = None
        self.bot_cas_calls = 0

    # ── Seeding helpers ─────────────────────────────────────────────────

    def seed_session(self, **overrides: Any) -> Session:
        now = _now()
        data: dict[str, Any] = {"created_at": now, "updated_at": now}
        data.update(overrides)
        session = Session(**data)
        self.sessions[session.id] = session
        return session

    def seed_bot(self, session_id: uuid.UUID, bot_id: str, **overrides: Any) -> Bot:
        now = _now()
        data: dict[str, Any] = {
            "bot_id": bot_id,
            "session_id": session_id,
            "last_status_change_at": now,
            "created_at": now,
        }
        data.update(overrides)
        bot = Bot(**data)
        self.bots[bot_id] = bot
        session = self.sessions.get(session_id)
        if session is not None:
            self.sessions[session_id] = session.model_copy(update={"bot_id": bot_id})
        return bot

    # ── Sessions ─────────────────────────────────────────────────────────

    async def create_session(self, title: str = "") -> Session:
        return self.seed_session(title=title)

    async def get_session(self, session_id: uuid.UUID) -> Session | None:
        return self.sessions.get(session_id)

    async def compare_and_set_session_status(
        self,
        session_id: uuid.UUID,
        expected: SessionStatus,
        new: SessionStatus,
        values: dict[str, Any] | None = None,
    ) -> bool:
        if self.before_session_cas is not None:
            hook, self.before_session_cas = self.before_session_cas, None
            hook(session_id)
        session = self.sessions.get(session_id)
        if session is None or session.status != expected:
            return False
        update = {"status": new, "updated_at": _now(), **(values or {})}
        self.sessions[session_id] = session.model_copy(update=update)
        return True

    async def mark_session_finalized(self, session_id: uuid.UUID, finalized_at: datetime) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.finalized_at is not None:
            return False
        self.sessions[session_id] = session.model_copy(update={"finalized_at": finalized_at})
        return True

    async def set_recording_started_at(self, session_id: uuid.UUID, started_at: datetime) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.recording_started_at is not None:
            return False
        self.sessions[session_id] = session.model_copy(
            update={"recording_started_at": started_at, "updated_at": _now()}
        )
        return True

    async def finalize_session_billing(
        self,
        session_id: uuid.UUID,
        duration_seconds: int,
        billable_minutes: int,
        amount: Decimal,
        finalized_at: datetime,
    ) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.billing_finalized_at is not None:
            return False
        self.sessions[session_id] = session.model_copy(
            update={
                "recording_duration_seconds": duration_seconds,
                "billable_minutes": billable_minutes,
                "billable_amount": amount,
                "billing_finalized_at": finalized_at,
            }
        )
        return True

    async def archive_session(self, session_id: uuid.UUID, archived_at: datetime) -> bool:
        session = self.sessions.get(session_id)
        if session is None or session.archived_at is not None:
            return False
        self.sessions[session_id] = session.model_copy(update={"archived_at": archived_at})
        return True

    async def find_unfinalized_sessions(self, ended_before: datetime, limit: int) -> list[Session]:
        results = [
            s
            for s in self.sessions.values()
            if s.status.is_terminal
            and s.finalized_at is None
            and s.archived_at is None
            and s.recording_ended_at is not None
            and s.recording_ended_at < ended_before
        ]
        return sorted(results, key=lambda s: s.recording_ended_at)[:limit]

    async def find_sessions_missing_recordings(self, limit: int) -> list[Session]:
        with_recordings = {key[0] for key in self.recordings}
        results = [
            s
            for s in self.sessions.values()
            if s.bot_id in self.bots
            and self.bots[s.bot_id].status == BotStatus.COMPLETED
            and s.archived_at is None
            and s.id not in with_recordings
        ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)[:limit]

    # ── Bots ─────────────────────────────────────────────────────────────

    async def register_bot(self, session_id: uuid.UUID, bot_id: str, registered_at: datetime) -> Bot:
        if session_id not in self.sessions:
            raise ValueError(f"Session not found: id={session_id}")
        if bot_id not in self.bots:
            self.bots[bot_id] = Bot(
                bot_id=bot_id,
                session_id=session_id,
                last_status_change_at=registered_at,
                created_at=registered_at,
            )
        self.sessions[session_id] = self.sessions[session_id].model_copy(update={"bot_id": bot_id})
        return self.bots[bot_id]

    async def get_bot(self, bot_id: str) -> Bot | None:
        return self.bots.get(bot_id)

    async def compare_and_set_bot_status(
        self,
        bot_id: str,
        expected: BotStatus,
        new: BotStatus,
        changed_at: datetime,
        source: TransitionSource,
        vendor_status: str | None = None,
    ) -> bool:
        self.bot_cas_calls += 1
        if self.before_bot_cas is not None:
            self.before_bot_cas(bot_id)
        bot = self.bots.get(bot_id)
        if bot is None or bot.status != expected:
            return False
        update: dict[str, Any] = {
            "status": new,
            "last_status_change_at": changed_at,
            "last_transition_source": source,
        }
        if vendor_status is not None:
            update["vendor_status"] = vendor_status
        self.bots[bot_id] = bot.model_copy(update=update)
        return True

    async def touch_reconciled(
        self, bot_id: str, reconciled_at: datetime, vendor_status: str | None = None
    ) -> None:
        bot = self.bots[bot_id]
        update: dict[str, Any] = {"last_reconciled_at": reconciled_at}
        if vendor_status is not None:
            update["vendor_status"] = vendor_status
        self.bots[bot_id] = bot.model_copy(update=update)

    async def mark_recordings_resolved(self, bot_id: str, resolved_at: datetime) -> None:
        bot = self.bots[bot_id]
        self.bots[bot_id] = bot.model_copy(update={"recordings_resolved_at": resolved_at})

    async def find_stale_bots(self, older_than: datetime, limit: int) -> list[Bot]:
        def last_seen(bot: Bot) -> datetime:
            return max(bot.last_status_change_at, bot.last_reconciled_at or bot.last_status_change_at)

        results = [
            b
            for b in self.bots.values()
            if b.status not in _TERMINAL_BOT
            and self.sessions[b.session_id].archived_at is None
            and last_seen(b) < older_than
        ]
        return sorted(results, key=last_seen)[:limit]

    async def find_unresolved_recording_bots(self, limit: int) -> list[Bot]:
        results = [
            b
            for b in self.bots.values()
            if b.status == BotStatus.COMPLETED
            and b.recordings_resolved_at is None
            and self.sessions[b.session_id].archived_at is None
        ]
        return sorted(results, key=lambda b: b.last_status_change_at)[:limit]

    async def find_unsettled_terminal_bots(self, changed_before: datetime, limit: int) -> list[Bot]:
        def unsettled(session: Session) -> bool:
            return not session.status.is_terminal or session.billing_finalized_at is None

        results = [
            b
            for b in self.bots.values()
            if b.status in _TERMINAL_BOT
            and b.last_status_change_at < changed_before
            and self.sessions[b.session_id].bot_id == b.bot_id
            and self.sessions[b.session_id].archived_at is None
            and unsettled(self.sessions[b.session_id])
        ]
        return sorted(results, key=lambda b: b.last_status_change_at)[:limit]

    # ── Webhook Events ───────────────────────────────────────────────────

    async def record_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        if event.event_id not in self.events:
            self.events[event.event_id] = event.model_copy(update={"processed": False})
        return self.events[event.event_id]

    async def mark_webhook_event_processed(self, event_id: str, processed_at: datetime) -> None:
        event = self.events[event_id]
        self.events[event_id] = event.model_copy(
            update={"processed": True, "processed_at": processed_at}
        )

    # ── Recordings ───────────────────────────────────────────────────────

    async def upsert_recording(self, recording: Recording) -> Recording:
        key = (recording.session_id, recording.bot_id, recording.recording_id)
        existing = self.recordings.get(key)
        if existing is None:
            stored = recording.model_copy(update={"created_at": _now()})
        else:
            stored = existing.model_copy(
                update={
                    "retrieval_url": recording.retrieval_url,
                    "recording_status": recording.recording_status,
                    "expires_at": recording.expires_at,
                    "duration_seconds": recording.duration_seconds,
                    "updated_at": _now(),
                }
            )
        self.recordings[key] = stored
        return stored

    async def list_recordings(self, session_id: uuid.UUID) -> list[Recording]:
        return [r for key, r in self.recordings.items() if key[0] == session_id]

    # ── Usage ────────────────────────────────────────────────────────────

    async def insert_usage_minute(
        self, session_id: uuid.UUID, minute_timestamp: datetime, seconds_recorded: int
    ) -> bool:
        key = (session_id, minute_timestamp)
        if key in self.usage:
            return False
        self.usage[key] = seconds_recorded
        return True

    async def usage_totals(self, session_id: uuid.UUID) -> tuple[int, int]:
        rows = [seconds for (sid, _), seconds in self.usage.items() if sid == session_id]
        return len(rows), sum(rows)


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryLifecycleRepository:
    return InMemoryLifecycleRepository()


@pytest.fixture
def store(repo) -> BotStateStore:
    return BotStateStore(repo)


@pytest.fixture
def billing(repo) -> UsageCalculator:
    return UsageCalculator(repo, rate_per_minute=Decimal("0.10"))


@pytest.fixture
def provider() -> AsyncMock:
    """Mock BotProvider; tests set return values or side effects per call."""
    mock = AsyncMock()
    mock.get_bot_status = AsyncMock()
    mock.stop_bot = AsyncMock(return_value=None)
    mock.list_recordings = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def resolver(repo, provider) -> RecordingResolver:
    return RecordingResolver(repo, provider, vendor_timeout=1.0)
