"""Lifecycle persistence models.

Five SQLAlchemy models on the shared declarative Base:
- SessionModel: Recording session and its billing/finalization markers
- BotModel: Local state for one external meeting bot
- WebhookEventModel: Inbound webhooks keyed by event id for dedup
- RecordingModel: Resolved recording artifacts
- UsageRecordModel: Per-minute usage, unique per (session, minute)

Sessions are never deleted; archived_at marks soft archive. No foreign key
constraints (application-level referential integrity via the repository).
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSON, UUID
from sqlalchemy.orm import Mapped, mapped_column

from src.botsync.core.database import Base


class SessionModel(Base):
    """Recording session driven by at most one bot.

    Invariant maintained by the state store: recording_ended_at is set
    iff status is completed or failed.
    """

    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_status", "status"),
        CheckConstraint(
            "(recording_ended_at IS NOT NULL) = (status IN ('completed', 'failed'))",
            name="ended_iff_terminal",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    title: Mapped[str] = mapped_column(String(500), default="", server_default=text("''"))
    status: Mapped[str] = mapped_column(
        String(50),
        default="created",
        server_default=text("'created'"),
    )
    bot_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    recording_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    recording_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billable_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    billable_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    billing_finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    finalized_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class BotModel(Base):
    """Local state of an external meeting bot, keyed by the vendor bot id."""

    __tablename__ = "bots"
    __table_args__ = (
        Index("ix_bots_status_last_change", "status", "last_status_change_at"),
        Index("ix_bots_session_id", "session_id"),
    )

    bot_id: Mapped[str] = mapped_column(String(200), primary_key=True)
    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(50),
        default="pending",
        server_default=text("'pending'"),
    )
    vendor_status: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_status_change_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    last_reconciled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_transition_source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    recordings_resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class WebhookEventModel(Base):
    """Inbound webhook. event_id is unique so replays are detected."""

    __tablename__ = "webhook_events"

    event_id: Mapped[str] = mapped_column(String(300), primary_key=True)
    bot_id: Mapped[str] = mapped_column(String(200), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    reported_status: Mapped[str] = mapped_column(String(100), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    processed: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=text("false"),
    )
    processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payload: Mapped[dict] = mapped_column(
        JSON, default=dict, server_default=text("'{}'::json")
    )


class RecordingModel(Base):
    """Recording artifact. retrieval_url is only stored once resolved."""

    __tablename__ = "bot_recordings"
    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "bot_id",
            "recording_id",
            name="uq_bot_recordings_session_bot_recording",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    bot_id: Mapped[str] = mapped_column(String(200), nullable=False)
    recording_id: Mapped[str] = mapped_column(String(200), nullable=False)
    retrieval_url: Mapped[str] = mapped_column(Text, nullable=False)
    recording_status: Mapped[str] = mapped_column(
        String(50),
        default="done",
        server_default=text("'done'"),
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        onupdate=func.now(),
        nullable=True,
    )


class UsageRecordModel(Base):
    """One row per recorded minute of a session."""

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint(
            "session_id",
            "minute_timestamp",
            name="uq_usage_records_session_minute",
        ),
        CheckConstraint(
            "seconds_recorded BETWEEN 0 AND 60",
            name="seconds_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=text("gen_random_uuid()"),
    )
    session_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    minute_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    seconds_recorded: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
