"""Normalization of bot provider status codes into internal BotStatus.

Vendor status strings never leave this boundary except as the
``vendor_status`` observability column. Webhook event names carry a
``bot.`` prefix (``bot.in_call_recording``); polled status codes do not.
"""

from __future__ import annotations

from src.botsync.lifecycle.schemas import BotStatus

VENDOR_STATUS_MAP: dict[str, BotStatus] = {
    # Bot exists but is not yet capturing
    "ready": BotStatus.PENDING,
    "created": BotStatus.PENDING,
    "joining": BotStatus.PENDING,
    "joining_call": BotStatus.PENDING,
    "in_waiting_room": BotStatus.PENDING,
    "waiting": BotStatus.PENDING,
    # In the call
    "in_call": BotStatus.ACTIVE,
    "in_call_not_recording": BotStatus.ACTIVE,
    "in_call_recording": BotStatus.ACTIVE,
    "recording": BotStatus.ACTIVE,
    "recording_permission_allowed": BotStatus.ACTIVE,
    # Finished normally
    "call_ended": BotStatus.COMPLETED,
    "done": BotStatus.COMPLETED,
    "completed": BotStatus.COMPLETED,
    "analysis_done": BotStatus.COMPLETED,
    # Finished abnormally
    "fatal": BotStatus.FAILED,
    "error": BotStatus.FAILED,
    "failed": BotStatus.FAILED,
    "recording_permission_denied": BotStatus.FAILED,
}

_EVENT_PREFIX = "bot."


def strip_event_prefix(code: str) -> str:
    """Turn a webhook event name (``bot.done``) into a bare status code."""
    code = code.strip().lower()
    if code.startswith(_EVENT_PREFIX):
        return code[len(_EVENT_PREFIX):]
    return code


def normalize_vendor_status(code: str | None) -> BotStatus | None:
    """Map a vendor status code or event name to a BotStatus.

    Returns:
        The internal status, or None when the code is unknown.
    """
    if not code:
        return None
    return VENDOR_STATUS_MAP.get(strip_event_prefix(code))
