"""Tests for WebhookIngressHandler: auth, parsing, dedup, ordering and billing."""

from __future__ import annotations

import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from src.botsync.core.security import compute_webhook_signature
from src.botsync.lifecycle.ingress import WebhookIngressHandler, parse_webhook
from src.botsync.lifecycle.errors import WebhookPayloadError
from src.botsync.lifecycle.schemas import BotStatus, SessionStatus, WebhookEvent

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


def _event(code: str, event_id: str, bot_id: str = "bot-1", at: datetime | None = None) -> bytes:
    return json.dumps(
        {
            "event": f"bot.{code}",
            "event_id": event_id,
            "data": {
                "bot": {"id": bot_id, "metadata": {}},
                "data": {
                    "code": code,
                    "sub_code": None,
                    "updated_at": (at or T0).isoformat(),
                },
            },
        }
    ).encode()


@pytest.fixture
def handler(store, billing):
    return WebhookIngressHandler(store, billing)


@pytest.fixture
def session(repo):
    session = repo.seed_session(title="Customer call")
    repo.seed_bot(session.id, "bot-1")
    return session


# ── Parsing ─────────────────────────────────────────────────────────────────


class TestParseWebhook:
    def test_nested_payload(self):
        parsed = parse_webhook(_event("in_call_recording", "evt-1"), {})

        assert parsed.event_id == "evt-1"
        assert parsed.bot_id == "bot-1"
        assert parsed.status_code == "in_call_recording"
        assert parsed.observed_at == T0

    def test_flat_payload(self):
        body = json.dumps(
            {"event_id": "evt-2", "bot_id": "bot-9", "status": "done", "timestamp": T0.isoformat()}
        ).encode()

        parsed = parse_webhook(body, {})

        assert parsed.bot_id == "bot-9"
        assert parsed.event_type == "bot.done"

    def test_missing_event_id_is_derived_deterministically(self):
        body = json.dumps({"bot_id": "bot-9", "status": "done", "timestamp": T0.isoformat()}).encode()

        first = parse_webhook(body, {})
        second = parse_webhook(body, {})

        assert first.event_id == second.event_id
        assert len(first.event_id) == 64

    def test_webhook_id_header_used_as_event_id(self):
        body = json.dumps({"bot_id": "bot-9", "status": "done"}).encode()
        assert parse_webhook(body, {"webhook-id": "msg_123"}).event_id == "msg_123"

    def test_non_bot_events_are_ignored(self):
        body = json.dumps({"event": "transcript.done", "data": {}}).encode()
        assert parse_webhook(body, {}) is None

    def test_invalid_json_raises(self):
        with pytest.raises(WebhookPayloadError):
            parse_webhook(b"{not json", {})

    def test_missing_bot_id_raises(self):
        with pytest.raises(WebhookPayloadError):
            parse_webhook(json.dumps({"event": "bot.done", "data": {}}).encode(), {})


# ── Handling ────────────────────────────────────────────────────────────────


class TestHandleWebhook:
    @pytest.mark.asyncio
    async def test_active_event_activates_session(self, handler, repo, session):
        outcome = await handler.handle_webhook(_event("in_call_recording", "evt-1"), {})

        assert outcome.status_code == 200
        assert outcome.outcome == "applied"
        assert repo.bots["bot-1"].status == BotStatus.ACTIVE
        assert repo.sessions[session.id].status == SessionStatus.ACTIVE
        assert repo.events["evt-1"].processed is True

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_acknowledged_without_effect(self, handler, repo, session):
        await handler.handle_webhook(_event("in_call_recording", "evt-1"), {})
        cas_calls = repo.bot_cas_calls

        outcome = await handler.handle_webhook(_event("in_call_recording", "evt-1"), {})

        assert outcome.status_code == 200
        assert outcome.outcome == "duplicate"
        assert repo.bot_cas_calls == cas_calls

    @pytest.mark.asyncio
    async def test_unprocessed_event_is_reprocessed_on_retry(self, handler, repo, session):
        await repo.record_webhook_event(
            WebhookEvent(
                event_id="evt-1",
                bot_id="bot-1",
                event_type="bot.in_call_recording",
                reported_status="in_call_recording",
                received_at=T0,
            )
        )

        outcome = await handler.handle_webhook(_event("in_call_recording", "evt-1"), {})

        assert outcome.outcome == "applied"
        assert repo.events["evt-1"].processed is True

    @pytest.mark.asyncio
    async def test_completion_finalizes_billing_and_schedules_recordings(
        self, handler, repo, session
    ):
        await handler.handle_webhook(_event("in_call_recording", "evt-1", at=T0), {})

        outcome = await handler.handle_webhook(
            _event("done", "evt-2", at=T0 + timedelta(minutes=4, seconds=10)), {}
        )

        assert outcome.outcome == "applied"
        assert outcome.schedule_recording_for == "bot-1"
        stored = repo.sessions[session.id]
        assert stored.status == SessionStatus.COMPLETED
        assert stored.billable_minutes == 5
        assert stored.billable_amount == Decimal("0.50")

    @pytest.mark.asyncio
    async def test_out_of_order_active_after_done_is_ignored(self, handler, repo, session):
        await handler.handle_webhook(_event("done", "evt-2"), {})

        outcome = await handler.handle_webhook(_event("in_call_recording", "evt-1"), {})

        assert outcome.status_code == 200
        assert outcome.outcome == "already_terminal"
        assert outcome.schedule_recording_for is None
        assert repo.bots["bot-1"].status == BotStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_terminal_replay_repairs_missing_billing(self, handler, repo, session):
        repo.bots["bot-1"] = repo.bots["bot-1"].model_copy(update={"status": BotStatus.COMPLETED})
        repo.sessions[session.id] = repo.sessions[session.id].model_copy(
            update={
                "status": SessionStatus.COMPLETED,
                "recording_started_at": T0,
                "recording_ended_at": T0 + timedelta(minutes=2),
            }
        )

        outcome = await handler.handle_webhook(_event("call_ended", "evt-9"), {})

        assert outcome.outcome == "already_terminal"
        assert repo.sessions[session.id].billable_minutes == 2

    @pytest.mark.asyncio
    async def test_redelivery_closes_session_left_open_by_failed_write(
        self, handler, repo, session
    ):
        await handler.handle_webhook(_event("in_call_recording", "evt-1", at=T0), {})
        done = _event("done", "evt-2", at=T0 + timedelta(minutes=3))

        def session_write_fails(session_id):
            raise ConnectionError("database went away")

        repo.before_session_cas = session_write_fails
        with pytest.raises(ConnectionError):
            await handler.handle_webhook(done, {})

        assert repo.events["evt-2"].processed is False
        assert repo.sessions[session.id].status == SessionStatus.ACTIVE

        outcome = await handler.handle_webhook(done, {})

        assert outcome.status_code == 200
        assert outcome.outcome == "already_terminal"
        stored = repo.sessions[session.id]
        assert stored.status == SessionStatus.COMPLETED
        assert stored.recording_ended_at == T0 + timedelta(minutes=3)
        assert stored.billable_minutes == 3
        assert repo.events["evt-2"].processed is True

    @pytest.mark.asyncio
    async def test_unknown_bot_is_acknowledged(self, handler, repo):
        outcome = await handler.handle_webhook(_event("done", "evt-1", bot_id="ghost"), {})

        assert outcome.status_code == 200
        assert outcome.outcome == "unknown_bot"
        assert repo.events["evt-1"].processed is True

    @pytest.mark.asyncio
    async def test_unmapped_status_is_acknowledged(self, handler, repo, session):
        outcome = await handler.handle_webhook(_event("media_expired", "evt-1"), {})

        assert outcome.status_code == 200
        assert outcome.outcome == "unmapped_status"
        assert repo.bots["bot-1"].status == BotStatus.PENDING

    @pytest.mark.asyncio
    async def test_malformed_body_returns_400(self, handler):
        outcome = await handler.handle_webhook(b"[]", {})
        assert outcome.status_code == 400

    @pytest.mark.asyncio
    async def test_other_event_types_return_200(self, handler):
        body = json.dumps({"event": "calendar.update", "data": {}}).encode()
        outcome = await handler.handle_webhook(body, {})
        assert outcome.status_code == 200
        assert outcome.outcome == "ignored"


# ── Authentication ──────────────────────────────────────────────────────────


class TestWebhookAuthentication:
    @pytest.mark.asyncio
    async def test_valid_signature_is_accepted(self, store, billing, repo, session):
        handler = WebhookIngressHandler(store, billing, webhook_secret="whsec")
        body = _event("in_call_recording", "evt-1")
        timestamp = str(int(time.time()))
        headers = {
            "X-Recall-Timestamp": timestamp,
            "X-Recall-Signature": compute_webhook_signature("whsec", timestamp, body),
        }

        outcome = await handler.handle_webhook(body, headers)

        assert outcome.status_code == 200
        assert outcome.outcome == "applied"

    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected_before_any_write(self, store, billing, repo, session):
        handler = WebhookIngressHandler(store, billing, webhook_secret="whsec")
        timestamp = str(int(time.time()))
        headers = {"X-Recall-Timestamp": timestamp, "X-Recall-Signature": "v1=deadbeef"}

        outcome = await handler.handle_webhook(_event("done", "evt-1"), headers)

        assert outcome.status_code == 401
        assert repo.events == {}
        assert repo.bots["bot-1"].status == BotStatus.PENDING

    @pytest.mark.asyncio
    async def test_missing_token_is_rejected(self, store, billing, session):
        handler = WebhookIngressHandler(store, billing, webhook_token="tok")

        outcome = await handler.handle_webhook(_event("done", "evt-1"), {})

        assert outcome.status_code == 401
        assert outcome.detail == "invalid_token"

    @pytest.mark.asyncio
    async def test_matching_token_is_accepted(self, store, billing, session):
        handler = WebhookIngressHandler(store, billing, webhook_token="tok")

        outcome = await handler.handle_webhook(_event("done", "evt-1"), {"X-Recall-Token": "tok"})

        assert outcome.status_code == 200

    @pytest.mark.asyncio
    async def test_unconfigured_auth_is_rejected_when_required(self, store, billing, repo, session):
        handler = WebhookIngressHandler(store, billing, require_auth=True)

        outcome = await handler.handle_webhook(_event("done", "evt-1"), {})

        assert outcome.status_code == 401
        assert outcome.detail == "webhook_auth_not_configured"
        assert repo.events == {}
        assert repo.bots["bot-1"].status == BotStatus.PENDING
