"""Create bot lifecycle tables.

Revision ID: 001_bot_lifecycle
Revises:
Create Date: 2026-10-19

Creates the five lifecycle tables:
- sessions: Recording sessions with billing and finalization markers
- bots: Local state for external meeting bots
- webhook_events: Inbound webhooks keyed by event id for dedup
- bot_recordings: Resolved recording artifacts
- usage_records: Per-minute usage, unique per (session, minute)

No foreign key constraints (application-level referential integrity via
repository).
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

# revision identifiers, used by Alembic.
revision: str = "001_bot_lifecycle"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── sessions table ───────────────────────────────────────────────────

    op.create_table(
        "sessions",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("title", sa.String(500), server_default=sa.text("''"), nullable=False),
        sa.Column(
            "status",
            sa.String(50),
            server_default=sa.text("'created'"),
            nullable=False,
        ),
        sa.Column("bot_id", sa.String(200), nullable=True),
        sa.Column("recording_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recording_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("billable_minutes", sa.Integer(), nullable=True),
        sa.Column("billable_amount", sa.Numeric(10, 2), nullable=True),
        sa.Column("billing_finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "(recording_ended_at IS NOT NULL) = (status IN ('completed', 'failed'))",
            name="ck_sessions_ended_iff_terminal",
        ),
    )
    op.create_index("ix_sessions_status", "sessions", ["status"])

    # ── bots table ───────────────────────────────────────────────────────

    op.create_table(
        "bots",
        sa.Column("bot_id", sa.String(200), primary_key=True),
        sa.Column("session_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "status",
            sa.String(50),
            server_default=sa.text("'pending'"),
            nullable=False,
        ),
        sa.Column("vendor_status", sa.String(100), nullable=True),
        sa.Column(
            "last_status_change_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("last_reconciled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_transition_source", sa.String(50), nullable=True),
        sa.Column("recordings_resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "ix_bots_status_last_change", "bots", ["status", "last_status_change_at"]
    )
    op.create_index("ix_bots_session_id", "bots", ["session_id"])

    # ── webhook_events table ─────────────────────────────────────────────

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(300), primary_key=True),
        sa.Column("bot_id", sa.String(200), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("reported_status", sa.String(100), nullable=False),
        sa.Column(
            "received_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "processed",
            sa.Boolean(),
            server_default=sa.text("false"),
            nullable=False,
        ),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "payload",
            sa.JSON(),
            server_default=sa.text("'{}'::json"),
            nullable=False,
        ),
    )

    # ── bot_recordings table ─────────────────────────────────────────────

    op.create_table(
        "bot_recordings",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("session_id", UUID(as_uuid=True), nullable=False),
        sa.Column("bot_id", sa.String(200), nullable=False),
        sa.Column("recording_id", sa.String(200), nullable=False),
        sa.Column("retrieval_url", sa.Text(), nullable=False),
        sa.Column(
            "recording_status",
            sa.String(50),
            server_default=sa.text("'done'"),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "session_id",
            "bot_id",
            "recording_id",
            name="uq_bot_recordings_session_bot_recording",
        ),
    )

    # ── usage_records table ──────────────────────────────────────────────

    op.create_table(
        "usage_records",
        sa.Column(
            "id",
            UUID(as_uuid=True),
            primary_key=True,
            server_default=sa.text("gen_random_uuid()"),
        ),
        sa.Column("session_id", UUID(as_uuid=True), nullable=False),
        sa.Column("minute_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seconds_recorded", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "session_id",
            "minute_timestamp",
            name="uq_usage_records_session_minute",
        ),
        sa.CheckConstraint(
            "seconds_recorded BETWEEN 0 AND 60",
            name="ck_usage_records_seconds_range",
        ),
    )


def downgrade() -> None:
    op.drop_table("usage_records")
    op.drop_table("bot_recordings")
    op.drop_table("webhook_events")
    op.drop_index("ix_bots_session_id", table_name="bots")
    op.drop_index("ix_bots_status_last_change", table_name="bots")
    op.drop_table("bots")
    op.drop_index("ix_sessions_status", table_name="sessions")
    op.drop_table("sessions")
