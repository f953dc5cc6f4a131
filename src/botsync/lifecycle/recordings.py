"""Recording Resolver.

Retrieves recording artifacts for completed bots. Resolution is stateless:
asking the vendor again is always safe, and stored rows are upserted on
(session_id, bot_id, recording_id). A bot's recordings_resolved_at is set
only once every listed recording has a download URL; until then the
reconciliation poller keeps retrying.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog

from src.botsync.lifecycle.provider.base import BotProvider, call_with_timeout
from src.botsync.lifecycle.provider.errors import ProviderNotFoundError
from src.botsync.lifecycle.repository import LifecycleRepository
from src.botsync.lifecycle.schemas import (
    Recording,
    RecordingResolution,
    RecordingResolutionStatus,
    RecordingSyncItem,
    RecordingSyncResult,
)

logger = structlog.get_logger(__name__)


class RecordingResolver:
    """Resolve and persist recording artifacts for bots.

    Args:
        repository: LifecycleRepository (or a compatible test double).
        provider: Bot provider client.
        vendor_timeout: Deadline for each vendor call, in seconds.
    """

    def __init__(
        self,
        repository: LifecycleRepository,
        provider: BotProvider,
        vendor_timeout: float = 10.0,
    ) -> None:
        self._repo = repository
        self._provider = provider
        self._vendor_timeout = vendor_timeout

    async def resolve_recording(self, bot_id: str) -> RecordingResolution:
        """Fetch a bot's recordings from the vendor and store the available ones.

        Args:
            bot_id: Vendor bot id.

        Returns:
            RecordingResolution -- RESOLVED with the stored recordings,
            PENDING if nothing is downloadable yet, NOT_FOUND if neither we
            nor the vendor know the bot.

        Raises:
            ProviderError: On transient vendor failures (caller retries later).
        """
        bot = await self._repo.get_bot(bot_id)
        if bot is None:
            logger.warning("recordings.unknown_bot", bot_id=bot_id)
            return RecordingResolution(status=RecordingResolutionStatus.NOT_FOUND, bot_id=bot_id)

        try:
            vendor_recordings = await call_with_timeout(
                self._provider.list_recordings(bot_id),
                self._vendor_timeout,
                "list_recordings",
                bot_id,
            )
        except ProviderNotFoundError:
            logger.warning("recordings.bot_missing_at_vendor", bot_id=bot_id)
            # Nothing will ever appear; stop the poller from retrying
            await self._repo.mark_recordings_resolved(bot_id, datetime.now(timezone.utc))
            return RecordingResolution(status=RecordingResolutionStatus.NOT_FOUND, bot_id=bot_id)

        available = [r for r in vendor_recordings if r.is_available]
        if not available:
            logger.info(
                "recordings.pending",
                bot_id=bot_id,
                listed=len(vendor_recordings),
            )
            return RecordingResolution(status=RecordingResolutionStatus.PENDING, bot_id=bot_id)

        stored: list[Recording] = []
        for vendor_rec in available:
            stored.append(
                await self._repo.upsert_recording(
                    Recording(
                        session_id=bot.session_id,
                        bot_id=bot_id,
                        recording_id=vendor_rec.recording_id,
                        retrieval_url=vendor_rec.download_url,
                        recording_status=vendor_rec.status_code,
                        expires_at=vendor_rec.expires_at,
                        duration_seconds=vendor_rec.duration_seconds,
                    )
                )
            )

        if len(available) == len(vendor_recordings):
            await self._repo.mark_recordings_resolved(bot_id, datetime.now(timezone.utc))

        logger.info(
            "recordings.resolved",
            bot_id=bot_id,
            session_id=str(bot.session_id),
            stored=len(stored),
            still_processing=len(vendor_recordings) - len(available),
        )
        return RecordingResolution(
            status=RecordingResolutionStatus.RESOLVED,
            bot_id=bot_id,
            recordings=stored,
        )

    async def resolve_in_background(self, bot_id: str) -> None:
        """Fire-and-forget wrapper for request handlers. Never raises."""
        try:
            await self.resolve_recording(bot_id)
        except Exception:
            logger.warning("recordings.background_resolve_failed", bot_id=bot_id, exc_info=True)

    async def sync_recordings(self, limit: int = 50) -> RecordingSyncResult:
        """Resolve recordings for sessions whose completed bot has none stored.

        One failing session never fails the batch.

        Args:
            limit: Maximum sessions to process.

        Returns:
            RecordingSyncResult with per-session items.
        """
        result = RecordingSyncResult()
        sessions = await self._repo.find_sessions_missing_recordings(limit)

        for session in sessions:
            result.processed += 1
            if not session.bot_id:
                result.items.append(
                    RecordingSyncItem(session_id=session.id, status="no_bot")
                )
                continue
            try:
                resolution = await self.resolve_recording(session.bot_id)
            except Exception as exc:
                result.failed += 1
                result.errors.append(f"{session.id}: {exc}")
                result.items.append(
                    RecordingSyncItem(
                        session_id=session.id,
                        bot_id=session.bot_id,
                        status="error",
                        error=str(exc),
                    )
                )
                logger.warning(
                    "recordings.sync_item_failed",
                    session_id=str(session.id),
                    bot_id=session.bot_id,
                    exc_info=True,
                )
                continue

            if resolution.status == RecordingResolutionStatus.RESOLVED:
                result.updated += 1
            result.items.append(
                RecordingSyncItem(
                    session_id=session.id,
                    bot_id=session.bot_id,
                    status=resolution.status.value,
                )
            )

        logger.info(
            "recordings.sync_completed",
            processed=result.processed,
            updated=result.updated,
            failed=result.failed,
        )
        return result
