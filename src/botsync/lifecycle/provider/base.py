"""Bot provider contract and the vendor-side data it returns.

Lifecycle services depend on the BotProvider protocol, never on a
concrete HTTP client, so tests can supply an AsyncMock or a fake.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from datetime import datetime
from typing import Protocol, TypeVar

from pydantic import BaseModel, Field

from src.botsync.lifecycle.provider.errors import ProviderTimeoutError

T = TypeVar("T")


class VendorStatusChange(BaseModel):
    """One entry of the vendor's status history."""

    code: str
    sub_code: str | None = None
    created_at: datetime | None = None


class VendorBotStatus(BaseModel):
    """Vendor-reported bot state.

    recording_started_at and completed_at are the vendor's own timestamps
    and take precedence over local tracking when computing billable time.
    """

    bot_id: str
    status_code: str
    status_changes: list[VendorStatusChange] = Field(default_factory=list)
    recording_started_at: datetime | None = None
    completed_at: datetime | None = None


class VendorRecording(BaseModel):
    """A recording as listed by the vendor."""

    recording_id: str
    status_code: str = "processing"
    download_url: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    expires_at: datetime | None = None

    @property
    def is_available(self) -> bool:
        """True once the vendor exposes a download URL."""
        return bool(self.download_url)

    @property
    def duration_seconds(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return max(0, int((self.completed_at - self.started_at).total_seconds()))


class BotProvider(Protocol):
    """Operations the lifecycle engine needs from a bot vendor."""

    async def get_bot_status(self, bot_id: str) -> VendorBotStatus: ...

    async def stop_bot(self, bot_id: str) -> None: ...

    async def list_recordings(self, bot_id: str) -> list[VendorRecording]: ...


async def call_with_timeout(
    awaitable: Awaitable[T], timeout: float, operation: str, bot_id: str
) -> T:
    """Await a provider call under a hard deadline.

    Raises:
        ProviderTimeoutError: If the deadline passes first.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise ProviderTimeoutError(operation, bot_id) from exc
