"""Lifecycle repository -- async persistence for sessions, bots and artifacts.

Provides LifecycleRepository with the session_factory callable pattern.
Status columns are only ever changed through compare-and-set primitives
(``UPDATE ... WHERE status = :expected``) so concurrent webhook, poller and
termination paths can race safely without holding locks across I/O.
Idempotent inserts use ``INSERT ... ON CONFLICT DO NOTHING``.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from src.botsync.lifecycle.models import (
    BotModel,
    RecordingModel,
    SessionModel,
    UsageRecordModel,
    WebhookEventModel,
)
from src.botsync.lifecycle.schemas import (
    Bot,
    BotStatus,
    Recording,
    Session,
    SessionStatus,
    TransitionSource,
    WebhookEvent,
)

_TERMINAL_BOT_STATUSES = (BotStatus.COMPLETED.value, BotStatus.FAILED.value)
_TERMINAL_SESSION_STATUSES = (SessionStatus.COMPLETED.value, SessionStatus.FAILED.value)


# ── Serialization Helpers ───────────────────────────────────────────────────


def _model_to_session(model: SessionModel) -> Session:
    """Convert SessionModel to Session schema."""
    return Session(
        id=model.id,
        title=model.title or "",
        status=SessionStatus(model.status),
        bot_id=model.bot_id,
        recording_started_at=model.recording_started_at,
        recording_ended_at=model.recording_ended_at,
        recording_duration_seconds=model.recording_duration_seconds,
        billable_minutes=model.billable_minutes,
        billable_amount=model.billable_amount,
        billing_finalized_at=model.billing_finalized_at,
        finalized_at=model.finalized_at,
        error_message=model.error_message,
        archived_at=model.archived_at,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


def _model_to_bot(model: BotModel) -> Bot:
    """Convert BotModel to Bot schema."""
    return Bot(
        bot_id=model.bot_id,
        session_id=model.session_id,
        status=BotStatus(model.status),
        vendor_status=model.vendor_status,
        last_status_change_at=model.last_status_change_at,
        last_reconciled_at=model.last_reconciled_at,
        last_transition_source=(
            TransitionSource(model.last_transition_source)
            if model.last_transition_source
            else None
        ),
        recordings_resolved_at=model.recordings_resolved_at,
        created_at=model.created_at,
    )


def _model_to_event(model: WebhookEventModel) -> WebhookEvent:
    """Convert WebhookEventModel to WebhookEvent schema."""
    return WebhookEvent(
        event_id=model.event_id,
        bot_id=model.bot_id,
        event_type=model.event_type,
        reported_status=model.reported_status,
        received_at=model.received_at,
        processed=model.processed,
        processed_at=model.processed_at,
        payload=model.payload or {},
    )


def _model_to_recording(model: RecordingModel) -> Recording:
    """Convert RecordingModel to Recording schema."""
    return Recording(
        id=model.id,
        session_id=model.session_id,
        bot_id=model.bot_id,
        recording_id=model.recording_id,
        retrieval_url=model.retrieval_url,
        recording_status=model.recording_status,
        expires_at=model.expires_at,
        duration_seconds=model.duration_seconds,
        created_at=model.created_at,
        updated_at=model.updated_at or model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class LifecycleRepository:
    """Async persistence for the bot lifecycle tables.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Sessions ─────────────────────────────────────────────────────────

    async def create_session(self, title: str = "") -> Session:
        """Create a new session in the created state."""
        async for session in self._session_factory():
            model = SessionModel(title=title, status=SessionStatus.CREATED.value)
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_session(model)

    async def get_session(self, session_id: uuid.UUID) -> Session | None:
        """Get a session by ID.

        Returns:
            Session if found, None otherwise.
        """
        async for session in self._session_factory():
            result = await session.execute(
                select(SessionModel).where(SessionModel.id == session_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_session(model)

    async def compare_and_set_session_status(
        self,
        session_id: uuid.UUID,
        expected: SessionStatus,
        new: SessionStatus,
        values: dict[str, Any] | None = None,
    ) -> bool:
        """Move a session from ``expected`` to ``new`` if nobody else has.

        Args:
            session_id: Session UUID.
            expected: Status the caller observed.
            new: Status to write.
            values: Extra columns written in the same statement.

        Returns:
            True if this call won the compare-and-set.
        """
        async for session in self._session_factory():
            stmt = (
                update(SessionModel)
                .where(
                    SessionModel.id == session_id,
                    SessionModel.status == expected.value,
                )
                .values(
                    status=new.value,
                    updated_at=datetime.now(timezone.utc),
                    **(values or {}),
                )
            )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def mark_session_finalized(
        self, session_id: uuid.UUID, finalized_at: datetime
    ) -> bool:
        """Set finalized_at once. Returns False if it was already set."""
        async for session in self._session_factory():
            result = await session.execute(
                update(SessionModel)
                .where(
                    SessionModel.id == session_id,
                    SessionModel.finalized_at.is_(None),
                )
                .values(finalized_at=finalized_at, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount == 1

    async def set_recording_started_at(
        self, session_id: uuid.UUID, started_at: datetime
    ) -> bool:
        """Set recording_started_at unless a start is already known.

        Independent of the status compare-and-set: a bot can start
        recording after its session has been moved past active.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(SessionModel)
                .where(
                    SessionModel.id == session_id,
                    SessionModel.recording_started_at.is_(None),
                )
                .values(recording_started_at=started_at, updated_at=datetime.now(timezone.utc))
            )
            await session.commit()
            return result.rowcount == 1

    async def finalize_session_billing(
        self,
        session_id: uuid.UUID,
        duration_seconds: int,
        billable_minutes: int,
        amount: Decimal,
        finalized_at: datetime,
    ) -> bool:
        """Persist billing figures unless they were already finalized.

        Returns:
            True if this call wrote the figures.
        """
        async for session in self._session_factory():
            result = await session.execute(
                update(SessionModel)
                .where(
                    SessionModel.id == session_id,
                    SessionModel.billing_finalized_at.is_(None),
                )
                .values(
                    recording_duration_seconds=duration_seconds,
                    billable_minutes=billable_minutes,
                    billable_amount=amount,
                    billing_finalized_at=finalized_at,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def archive_session(self, session_id: uuid.UUID, archived_at: datetime) -> bool:
        """Soft-archive a session. Returns False if missing or already archived."""
        async for session in self._session_factory():
            result = await session.execute(
                update(SessionModel)
                .where(
                    SessionModel.id == session_id,
                    SessionModel.archived_at.is_(None),
                )
                .values(archived_at=archived_at)
            )
            await session.commit()
            return result.rowcount == 1

    async def find_unfinalized_sessions(
        self, ended_before: datetime, limit: int
    ) -> list[Session]:
        """Terminal sessions whose summary never completed, oldest first."""
        async for session in self._session_factory():
            stmt = (
                select(SessionModel)
                .where(
                    SessionModel.status.in_(_TERMINAL_SESSION_STATUSES),
                    SessionModel.finalized_at.is_(None),
                    SessionModel.archived_at.is_(None),
                    SessionModel.recording_ended_at < ended_before,
                )
                .order_by(SessionModel.recording_ended_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_session(m) for m in result.scalars().all()]

    async def find_sessions_missing_recordings(self, limit: int) -> list[Session]:
        """Sessions with a completed bot but no stored recording."""
        async for session in self._session_factory():
            has_recording = exists().where(RecordingModel.session_id == SessionModel.id)
            stmt = (
                select(SessionModel)
                .join(BotModel, BotModel.bot_id == SessionModel.bot_id)
                .where(
                    BotModel.status == BotStatus.COMPLETED.value,
                    SessionModel.archived_at.is_(None),
                    ~has_recording,
                )
                .order_by(SessionModel.created_at.desc())
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_session(m) for m in result.scalars().all()]

    # ── Bots ─────────────────────────────────────────────────────────────

    async def register_bot(
        self, session_id: uuid.UUID, bot_id: str, registered_at: datetime
    ) -> Bot:
        """Take ownership of a dispatched bot.

        Inserts the bot in the pending state (no-op if already known) and
        links it to its session.

        Raises:
            ValueError: If the session does not exist.
        """
        async for session in self._session_factory():
            found = await session.execute(
                select(SessionModel.id).where(SessionModel.id == session_id)
            )
            if found.scalar_one_or_none() is None:
                raise ValueError(f"Session not found: id={session_id}")

            await session.execute(
                insert(BotModel)
                .values(
                    bot_id=bot_id,
                    session_id=session_id,
                    status=BotStatus.PENDING.value,
                    last_status_change_at=registered_at,
                    created_at=registered_at,
                )
                .on_conflict_do_nothing(index_elements=["bot_id"])
            )
            await session.execute(
                update(SessionModel)
                .where(SessionModel.id == session_id)
                .values(bot_id=bot_id, updated_at=registered_at)
            )
            await session.commit()

            result = await session.execute(
                select(BotModel).where(BotModel.bot_id == bot_id)
            )
            return _model_to_bot(result.scalar_one())

    async def get_bot(self, bot_id: str) -> Bot | None:
        """Get a bot by vendor bot ID."""
        async for session in self._session_factory():
            result = await session.execute(
                select(BotModel).where(BotModel.bot_id == bot_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return _model_to_bot(model)

    async def compare_and_set_bot_status(
        self,
        bot_id: str,
        expected: BotStatus,
        new: BotStatus,
        changed_at: datetime,
        source: TransitionSource,
        vendor_status: str | None = None,
    ) -> bool:
        """Move a bot from ``expected`` to ``new`` if nobody else has.

        Returns:
            True if this call won the compare-and-set.
        """
        values: dict[str, Any] = {
            "status": new.value,
            "last_status_change_at": changed_at,
            "last_transition_source": source.value,
        }
        if vendor_status is not None:
            values["vendor_status"] = vendor_status

        async for session in self._session_factory():
            result = await session.execute(
                update(BotModel)
                .where(
                    BotModel.bot_id == bot_id,
                    BotModel.status == expected.value,
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def touch_reconciled(
        self, bot_id: str, reconciled_at: datetime, vendor_status: str | None = None
    ) -> None:
        """Record that a poll confirmed the bot's current state."""
        values: dict[str, Any] = {"last_reconciled_at": reconciled_at}
        if vendor_status is not None:
            values["vendor_status"] = vendor_status
        async for session in self._session_factory():
            await session.execute(
                update(BotModel).where(BotModel.bot_id == bot_id).values(**values)
            )
            await session.commit()

    async def mark_recordings_resolved(self, bot_id: str, resolved_at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(BotModel)
                .where(BotModel.bot_id == bot_id)
                .values(recordings_resolved_at=resolved_at)
            )
            await session.commit()

    async def find_stale_bots(self, older_than: datetime, limit: int) -> list[Bot]:
        """Non-terminal bots with no status change or reconciliation since ``older_than``.

        Bots of archived sessions are skipped. Oldest first.
        """
        last_seen = func.greatest(
            BotModel.last_status_change_at,
            func.coalesce(BotModel.last_reconciled_at, BotModel.last_status_change_at),
        )
        async for session in self._session_factory():
            stmt = (
                select(BotModel)
                .join(SessionModel, SessionModel.id == BotModel.session_id)
                .where(
                    BotModel.status.notin_(_TERMINAL_BOT_STATUSES),
                    SessionModel.archived_at.is_(None),
                    last_seen < older_than,
                )
                .order_by(last_seen)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_bot(m) for m in result.scalars().all()]

    async def find_unresolved_recording_bots(self, limit: int) -> list[Bot]:
        """Completed bots whose recordings were not yet resolved."""
        async for session in self._session_factory():
            stmt = (
                select(BotModel)
                .join(SessionModel, SessionModel.id == BotModel.session_id)
                .where(
                    BotModel.status == BotStatus.COMPLETED.value,
                    BotModel.recordings_resolved_at.is_(None),
                    SessionModel.archived_at.is_(None),
                )
                .order_by(BotModel.last_status_change_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_bot(m) for m in result.scalars().all()]

    async def find_unsettled_terminal_bots(self, changed_before: datetime, limit: int) -> list[Bot]:
        """Terminal bots whose session is still open or unbilled.

        Covers a session write or billing step that failed after the bot
        itself was moved. Only the session's current bot counts.
        """
        async for session in self._session_factory():
            stmt = (
                select(BotModel)
                .join(SessionModel, SessionModel.id == BotModel.session_id)
                .where(
                    BotModel.status.in_(_TERMINAL_BOT_STATUSES),
                    BotModel.last_status_change_at < changed_before,
                    SessionModel.bot_id == BotModel.bot_id,
                    SessionModel.archived_at.is_(None),
                    or_(
                        SessionModel.status.notin_(_TERMINAL_SESSION_STATUSES),
                        SessionModel.billing_finalized_at.is_(None),
                    ),
                )
                .order_by(BotModel.last_status_change_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return [_model_to_bot(m) for m in result.scalars().all()]

    # ── Webhook Events ───────────────────────────────────────────────────

    async def record_webhook_event(self, event: WebhookEvent) -> WebhookEvent:
        """Insert a webhook event if its event_id is new.

        Returns:
            The stored event -- the existing row when event_id was seen before.
        """
        async for session in self._session_factory():
            await session.execute(
                insert(WebhookEventModel)
                .values(
                    event_id=event.event_id,
                    bot_id=event.bot_id,
                    event_type=event.event_type,
                    reported_status=event.reported_status,
                    received_at=event.received_at,
                    processed=False,
                    payload=event.payload,
                )
                .on_conflict_do_nothing(index_elements=["event_id"])
            )
            await session.commit()
            result = await session.execute(
                select(WebhookEventModel).where(
                    WebhookEventModel.event_id == event.event_id
                )
            )
            return _model_to_event(result.scalar_one())

    async def mark_webhook_event_processed(
        self, event_id: str, processed_at: datetime
    ) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(WebhookEventModel)
                .where(WebhookEventModel.event_id == event_id)
                .values(processed=True, processed_at=processed_at)
            )
            await session.commit()

    # ── Recordings ───────────────────────────────────────────────────────

    async def upsert_recording(self, recording: Recording) -> Recording:
        """Insert or refresh a recording keyed by (session_id, bot_id, recording_id)."""
        now = datetime.now(timezone.utc)
        async for session in self._session_factory():
            stmt = insert(RecordingModel).values(
                session_id=recording.session_id,
                bot_id=recording.bot_id,
                recording_id=recording.recording_id,
                retrieval_url=recording.retrieval_url,
                recording_status=recording.recording_status,
                expires_at=recording.expires_at,
                duration_seconds=recording.duration_seconds,
                created_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                constraint="uq_bot_recordings_session_bot_recording",
                set_={
                    "retrieval_url": stmt.excluded.retrieval_url,
                    "recording_status": stmt.excluded.recording_status,
                    "expires_at": stmt.excluded.expires_at,
                    "duration_seconds": stmt.excluded.duration_seconds,
                    "updated_at": now,
                },
            ).returning(RecordingModel)
            result = await session.execute(stmt)
            model = result.scalar_one()
            await session.commit()
            return _model_to_recording(model)

    async def list_recordings(self, session_id: uuid.UUID) -> list[Recording]:
        async for session in self._session_factory():
            result = await session.execute(
                select(RecordingModel)
                .where(RecordingModel.session_id == session_id)
                .order_by(RecordingModel.created_at)
            )
            return [_model_to_recording(m) for m in result.scalars().all()]

    # ── Usage ────────────────────────────────────────────────────────────

    async def insert_usage_minute(
        self, session_id: uuid.UUID, minute_timestamp: datetime, seconds_recorded: int
    ) -> bool:
        """Insert one per-minute usage row.

        Returns:
            False if a row for this (session, minute) already existed.
        """
        async for session in self._session_factory():
            result = await session.execute(
                insert(UsageRecordModel)
                .values(
                    session_id=session_id,
                    minute_timestamp=minute_timestamp,
                    seconds_recorded=seconds_recorded,
                )
                .on_conflict_do_nothing(constraint="uq_usage_records_session_minute")
            )
            await session.commit()
            return result.rowcount == 1

    async def usage_totals(self, session_id: uuid.UUID) -> tuple[int, int]:
        """Return (minute rows, total seconds) recorded for a session."""
        async for session in self._session_factory():
            result = await session.execute(
                select(
                    func.count(UsageRecordModel.id),
                    func.coalesce(func.sum(UsageRecordModel.seconds_recorded), 0),
                ).where(UsageRecordModel.session_id == session_id)
            )
            minutes, seconds = result.one()
            return int(minutes), int(seconds)
