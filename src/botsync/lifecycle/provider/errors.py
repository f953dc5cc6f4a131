"""Errors raised by bot provider clients."""

from __future__ import annotations


class ProviderError(Exception):
    """The bot provider answered with an error.

    Args:
        message: Human-readable description.
        status_code: HTTP status returned by the provider, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_transient(self) -> bool:
        """Server-side or throttling errors that are worth retrying later."""
        return self.status_code is None or self.status_code >= 500 or self.status_code == 429


class ProviderNotFoundError(ProviderError):
    """The provider has no record of the bot."""

    def __init__(self, bot_id: str) -> None:
        self.bot_id = bot_id
        super().__init__(f"Bot not found at provider: {bot_id}", status_code=404)


class ProviderTimeoutError(ProviderError):
    """No answer from the provider (timeout or connection failure).

    The outcome of the request is unknown.
    """

    def __init__(self, operation: str, bot_id: str) -> None:
        self.operation = operation
        self.bot_id = bot_id
        super().__init__(f"No response from provider for {operation} on bot {bot_id}")
