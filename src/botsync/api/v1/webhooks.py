"""Bot provider webhook receiver.

The vendor calls this endpoint directly, so it is authenticated by webhook
signature or token (inside WebhookIngressHandler), not by user auth.
Recording resolution for newly completed bots runs as a background task
after the response is sent.
"""

from __future__ import annotations

from fastapi import APIRouter, BackgroundTasks, Request, Response
from pydantic import BaseModel

from src.botsync.api.deps import get_webhook_handler

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class WebhookAck(BaseModel):
    """Response body returned to the bot provider."""

    status: str
    event_id: str | None = None
    detail: str | None = None


@router.post("/bot-provider", response_model=WebhookAck)
async def receive_bot_webhook(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
) -> WebhookAck:
    """Receive a bot status webhook.

    Returns 200 for processed, duplicate, ignored and unknown-bot events,
    400 for malformed bodies and 401 for failed authentication.
    """
    handler = get_webhook_handler(request)
    body = await request.body()
    outcome = await handler.handle_webhook(body, request.headers)

    if outcome.schedule_recording_for:
        resolver = getattr(request.app.state, "recording_resolver", None)
        if resolver is not None:
            background_tasks.add_task(
                resolver.resolve_in_background, outcome.schedule_recording_for
            )

    response.status_code = outcome.status_code
    return WebhookAck(status=outcome.outcome, event_id=outcome.event_id, detail=outcome.detail)
