"""Domain errors raised by the lifecycle services."""

from __future__ import annotations


class BotNotFoundError(LookupError):
    """Raised when a bot id is not known locally."""

    def __init__(self, bot_id: str) -> None:
        self.bot_id = bot_id
        super().__init__(f"Bot not found: {bot_id}")


class SessionNotFoundError(LookupError):
    """Raised when a session id is not known locally."""

    def __init__(self, session_id: object) -> None:
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class SessionNotActiveError(ValueError):
    """Raised when usage is reported for a session that is not recording."""

    def __init__(self, session_id: object, status: str) -> None:
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} is not active (status={status})")


class WebhookPayloadError(ValueError):
    """Raised when a webhook body is not a usable bot status event."""
