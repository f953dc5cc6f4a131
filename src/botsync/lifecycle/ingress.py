"""Webhook Ingress Handler.

Primary, low-latency path for bot status changes. Each inbound webhook is
authenticated, parsed, recorded by event id (so vendor retries are
harmless), normalized and proposed to the BotStateStore. Terminal
transitions finalize billing synchronously; recording resolution is handed
back to the caller to run after the response.

Accepted payload shapes::

    {"event": "bot.done", "event_id": "...",
     "data": {"bot": {"id": "...", "metadata": {...}},
              "data": {"code": "done", "sub_code": null, "updated_at": "..."}}}

    {"event_id": "...", "bot_id": "...", "status": "done", "timestamp": "..."}
"""

from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from fastapi import status
from pydantic import TypeAdapter, ValidationError

from src.botsync.core.monitoring import webhook_events_total
from src.botsync.core.security import WebhookAuthError, authenticate_webhook
from src.botsync.lifecycle.billing import UsageCalculator
from src.botsync.lifecycle.errors import BotNotFoundError, WebhookPayloadError
from src.botsync.lifecycle.schemas import (
    BotStatus,
    TransitionSource,
    WebhookEvent,
    WebhookOutcome,
)
from src.botsync.lifecycle.store import BotStateStore

logger = structlog.get_logger(__name__)

_datetime_adapter = TypeAdapter(datetime)


@dataclass
class ParsedWebhook:
    event_id: str
    bot_id: str
    event_type: str
    status_code: str
    observed_at: datetime | None
    payload: dict


def _parse_timestamp(value: object) -> datetime | None:
    if not value:
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_webhook(body: bytes, headers: Mapping[str, str]) -> ParsedWebhook | None:
    """Parse a webhook body into a bot status event.

    Args:
        body: Raw request body.
        headers: Lower-cased request headers.

    Returns:
        ParsedWebhook, or None for well-formed events that are not about
        bot status (e.g. calendar or transcript events).

    Raises:
        WebhookPayloadError: If the body is not JSON or lacks bot id/status.
    """
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise WebhookPayloadError(f"Invalid JSON body: {exc}") from exc
    if not isinstance(payload, dict):
        raise WebhookPayloadError("Webhook body must be a JSON object")

    event_type = str(payload.get("event") or "")
    if event_type and not event_type.startswith("bot."):
        return None

    data = payload.get("data")
    data = data if isinstance(data, dict) else {}
    bot = data.get("bot") if isinstance(data.get("bot"), dict) else {}
    inner = data.get("data") if isinstance(data.get("data"), dict) else {}

    bot_id = bot.get("id") or payload.get("bot_id") or data.get("bot_id")
    status_code = (
        inner.get("code")
        or payload.get("status")
        or (event_type[len("bot."):] if event_type else None)
    )
    if not bot_id:
        raise WebhookPayloadError("Missing bot id")
    if not status_code:
        raise WebhookPayloadError("Missing bot status")

    raw_timestamp = inner.get("updated_at") or payload.get("timestamp") or payload.get("updated_at")
    event_type = event_type or f"bot.{status_code}"

    event_id = payload.get("event_id") or payload.get("id") or headers.get("webhook-id")
    if not event_id:
        # Same bot, event and vendor timestamp means the same delivery
        dedup_key = f"{bot_id}:{event_type}:{raw_timestamp or ''}"
        event_id = hashlib.sha256(dedup_key.encode("utf-8")).hexdigest()

    return ParsedWebhook(
        event_id=str(event_id),
        bot_id=str(bot_id),
        event_type=event_type,
        status_code=str(status_code),
        observed_at=_parse_timestamp(raw_timestamp),
        payload=payload,
    )


class WebhookIngressHandler:
    """Turns vendor webhooks into BotStateStore transitions.

    Args:
        store: BotStateStore.
        billing: UsageCalculator used on terminal transitions.
        webhook_secret: HMAC signing secret; takes precedence over the token.
        webhook_token: Static token expected in X-Recall-Token.
        timestamp_tolerance_seconds: Allowed skew for signed webhooks.
        require_auth: Reject webhooks when neither secret nor token is set
            (production).
    """

    def __init__(
        self,
        store: BotStateStore,
        billing: UsageCalculator,
        webhook_secret: str = "",
        webhook_token: str = "",
        timestamp_tolerance_seconds: int = 300,
        require_auth: bool = False,
    ) -> None:
        self._store = store
        self._repo = store.repository
        self._billing = billing
        self._secret = webhook_secret
        self._token = webhook_token
        self._tolerance = timestamp_tolerance_seconds
        self._require_auth = require_auth
        if require_auth and not (webhook_secret or webhook_token):
            logger.error("webhook.auth_not_configured")

    async def handle_webhook(self, body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        """Process one inbound webhook.

        Args:
            body: Raw request body exactly as received.
            headers: Request headers.

        Returns:
            WebhookOutcome with status_code 200 (processed, duplicate,
            ignored or unknown bot), 400 (malformed) or 401 (unauthenticated).

        Raises:
            Exception: Storage failures propagate so the vendor retries; the
                event stays unprocessed until a retry succeeds.
        """
        headers = {k.lower(): v for k, v in headers.items()}

        try:
            authenticate_webhook(
                headers,
                body,
                secret=self._secret,
                token=self._token,
                tolerance_seconds=self._tolerance,
                require_auth=self._require_auth,
            )
        except WebhookAuthError as exc:
            logger.warning("webhook.auth_failed", reason=exc.reason)
            webhook_events_total.labels(outcome="unauthorized").inc()
            return WebhookOutcome(
                status_code=status.HTTP_401_UNAUTHORIZED,
                outcome="unauthorized",
                detail=exc.reason,
            )

        try:
            parsed = parse_webhook(body, headers)
        except WebhookPayloadError as exc:
            logger.warning("webhook.malformed", error=str(exc))
            webhook_events_total.labels(outcome="malformed").inc()
            return WebhookOutcome(
                status_code=status.HTTP_400_BAD_REQUEST,
                outcome="malformed",
                detail=str(exc),
            )

        if parsed is None:
            webhook_events_total.labels(outcome="ignored").inc()
            return WebhookOutcome(status_code=status.HTTP_200_OK, outcome="ignored")

        log = logger.bind(event_id=parsed.event_id, bot_id=parsed.bot_id, event=parsed.event_type)

        stored = await self._repo.record_webhook_event(
            WebhookEvent(
                event_id=parsed.event_id,
                bot_id=parsed.bot_id,
                event_type=parsed.event_type,
                reported_status=parsed.status_code,
                received_at=datetime.now(timezone.utc),
                payload=parsed.payload,
            )
        )
        if stored.processed:
            log.info("webhook.duplicate")
            webhook_events_total.labels(outcome="duplicate").inc()
            return WebhookOutcome(
                status_code=status.HTTP_200_OK,
                outcome="duplicate",
                event_id=parsed.event_id,
            )

        try:
            transition = await self._store.apply_transition(
                parsed.bot_id,
                parsed.status_code,
                TransitionSource.WEBHOOK,
                observed_at=parsed.observed_at,
                vendor_status=parsed.status_code,
            )
        except BotNotFoundError:
            # Acknowledge so the vendor stops retrying a bot we never owned
            log.warning("webhook.unknown_bot")
            await self._repo.mark_webhook_event_processed(parsed.event_id, datetime.now(timezone.utc))
            webhook_events_total.labels(outcome="unknown_bot").inc()
            return WebhookOutcome(
                status_code=status.HTTP_200_OK,
                outcome="unknown_bot",
                event_id=parsed.event_id,
            )

        schedule_recording_for = None
        bot = transition.bot
        if bot is not None and bot.status.is_terminal:
            session = transition.session or await self._store.get_session(bot.session_id)
            if session.billing_finalized_at is None:
                await self._billing.finalize_billing(
                    session.id,
                    session.recording_started_at,
                    session.recording_ended_at or parsed.observed_at,
                )
            if transition.applied and bot.status == BotStatus.COMPLETED:
                schedule_recording_for = bot.bot_id

        await self._repo.mark_webhook_event_processed(parsed.event_id, datetime.now(timezone.utc))

        outcome = transition.reason.value
        log.info(
            "webhook.processed",
            outcome=outcome,
            applied=transition.applied,
            current=transition.current.value if transition.current else None,
        )
        webhook_events_total.labels(outcome=outcome).inc()
        return WebhookOutcome(
            status_code=status.HTTP_200_OK,
            outcome=outcome,
            event_id=parsed.event_id,
            transition=transition,
            schedule_recording_for=schedule_recording_for,
        )
