"""Pydantic v2 schemas for the bot lifecycle domain.

Defines the data contracts for sessions, bots, webhook events, recordings
and usage, plus the result types returned by the lifecycle services
(transition results, sweep results, billing figures, termination results).
All lifecycle modules import from here.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Enums ────────────────────────────────────────────────────────────────────


class BotStatus(str, Enum):
    """Internal bot lifecycle status. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BotStatus.COMPLETED, BotStatus.FAILED)


class SessionStatus(str, Enum):
    """Lifecycle status of a recording session.

    STOPPING is the transient state held while a termination request is in
    flight. COMPLETED and FAILED are terminal.
    """

    CREATED = "created"
    ACTIVE = "active"
    STOPPING = "stopping"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


class TransitionSource(str, Enum):
    """Which path proposed a status change."""

    WEBHOOK = "webhook"
    POLLER = "poller"
    TERMINATION = "termination"


class TransitionReason(str, Enum):
    """Outcome reason attached to every proposed transition."""

    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    UNCHANGED = "unchanged"
    BACKWARD = "backward"
    UNMAPPED_STATUS = "unmapped_status"
    CONFLICT = "conflict"


class RecordingResolutionStatus(str, Enum):
    RESOLVED = "resolved"
    PENDING = "pending"
    NOT_FOUND = "not_found"


# ── Entities ─────────────────────────────────────────────────────────────────


class Session(BaseModel):
    """A recording session driven by at most one bot."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    title: str = ""
    status: SessionStatus = SessionStatus.CREATED
    bot_id: str | None = None
    recording_started_at: datetime | None = None
    recording_ended_at: datetime | None = None
    recording_duration_seconds: int | None = None
    billable_minutes: int | None = None
    billable_amount: Decimal | None = None
    billing_finalized_at: datetime | None = None
    finalized_at: datetime | None = None
    error_message: str | None = None
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class Bot(BaseModel):
    """Local view of an external meeting bot."""

    bot_id: str
    session_id: uuid.UUID
    status: BotStatus = BotStatus.PENDING
    vendor_status: str | None = None
    last_status_change_at: datetime
    last_reconciled_at: datetime | None = None
    last_transition_source: TransitionSource | None = None
    recordings_resolved_at: datetime | None = None
    created_at: datetime


class WebhookEvent(BaseModel):
    """An inbound webhook as recorded for idempotent processing."""

    event_id: str
    bot_id: str
    event_type: str
    reported_status: str
    received_at: datetime
    processed: bool = False
    processed_at: datetime | None = None
    payload: dict = Field(default_factory=dict)


class Recording(BaseModel):
    """A resolved recording artifact for a session's bot."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    session_id: uuid.UUID
    bot_id: str
    recording_id: str
    retrieval_url: str
    recording_status: str = "done"
    expires_at: datetime | None = None
    duration_seconds: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ── Service Results ──────────────────────────────────────────────────────────


class TransitionResult(BaseModel):
    """Outcome of BotStateStore.apply_transition."""

    applied: bool
    reason: TransitionReason
    previous: BotStatus | None = None
    current: BotStatus | None = None
    bot: Bot | None = None
    session: Session | None = None


class SessionTransitionResult(BaseModel):
    """Outcome of BotStateStore.apply_session_transition."""

    applied: bool
    reason: TransitionReason
    previous: SessionStatus
    current: SessionStatus
    session: Session


class WebhookOutcome(BaseModel):
    """Result of handling one inbound webhook.

    schedule_recording_for is set when the caller should resolve recordings
    for a bot out of band (after responding to the vendor).
    """

    status_code: int
    outcome: str
    event_id: str | None = None
    detail: str | None = None
    transition: TransitionResult | None = None
    schedule_recording_for: str | None = None


class SweepResult(BaseModel):
    """Counters for one reconciliation sweep."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bots_checked: int = 0
    bots_updated: int = 0
    orphans_fixed: int = 0
    errors: int = 0
    recordings_resolved: int = 0
    sessions_settled: int = 0
    skipped: bool = False


class RecordingResolution(BaseModel):
    """Outcome of RecordingResolver.resolve_recording."""

    status: RecordingResolutionStatus
    bot_id: str
    recordings: list[Recording] = Field(default_factory=list)


class RecordingSyncItem(BaseModel):
    session_id: uuid.UUID
    bot_id: str | None = None
    status: str
    error: str | None = None


class RecordingSyncResult(BaseModel):
    """Summary of a batch recording sync."""

    processed: int = 0
    updated: int = 0
    failed: int = 0
    errors: list[str] = Field(default_factory=list)
    items: list[RecordingSyncItem] = Field(default_factory=list)


class BillingFigures(BaseModel):
    """Finalized billable figures for a session."""

    session_id: uuid.UUID
    duration_seconds: int
    billable_minutes: int
    amount: Decimal
    finalized_at: datetime | None = None


class UsageAck(BaseModel):
    """Acknowledgement for a per-minute usage record."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    accepted: bool
    total_minutes: int


class TerminationResult(BaseModel):
    """Outcome of SessionTerminationCoordinator.end_session."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    bot_stopped: bool
    summary_generated: bool
    redirect_target: str
    already_finalized: bool = False
