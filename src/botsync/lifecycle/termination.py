"""Session Termination Coordinator.

Handles an explicit "end session" request: stop the bot at the vendor,
close the session, and hand it to the Summary Generation Service. Every
status change goes through the BotStateStore, so a webhook or poll that
completes the session concurrently simply wins and the coordinator's own
transition becomes a no-op.

Stop outcomes:
- acknowledged, or 404 (bot already gone): bot_stopped=True, session completed
- timeout, connection failure, 5xx or 429: outcome unknown, bot_stopped=False,
  session completed; the poller later reconciles the bot
- explicit client error (other 4xx): bot_stopped=False, session failed

Summary generation is attempted regardless. On failure the session stays
completed-but-unfinalized and finalize_pending retries it; a retried
end_session skips the stop step.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import structlog

from src.botsync.lifecycle.billing import UsageCalculator
from src.botsync.lifecycle.provider.base import BotProvider, call_with_timeout
from src.botsync.lifecycle.provider.errors import (
    ProviderError,
    ProviderNotFoundError,
    ProviderTimeoutError,
)
from src.botsync.lifecycle.schemas import (
    BotStatus,
    Session,
    SessionStatus,
    TerminationResult,
)
from src.botsync.lifecycle.store import BotStateStore
from src.botsync.services.summary import SummaryClient, SummaryGenerationError

logger = structlog.get_logger(__name__)

_STOPPABLE_BOT_STATUSES = (BotStatus.PENDING, BotStatus.ACTIVE)


class SessionTerminationCoordinator:
    """Ends sessions on request and drives them to finalization.

    Args:
        store: BotStateStore.
        provider: Bot provider client.
        summary_client: Summary Generation Service client; None disables summaries.
        billing: UsageCalculator for sessions that never had a bot.
        vendor_timeout: Deadline for the stop request, in seconds.
        report_url_template: Redirect target, formatted with session_id.
        finalize_retry_delay_seconds: Minimum age of an unfinalized session
            before finalize_pending retries it.
    """

    def __init__(
        self,
        store: BotStateStore,
        provider: BotProvider,
        summary_client: SummaryClient | None,
        billing: UsageCalculator | None = None,
        vendor_timeout: float = 10.0,
        report_url_template: str = "/report/{session_id}",
        finalize_retry_delay_seconds: int = 120,
    ) -> None:
        self._store = store
        self._repo = store.repository
        self._provider = provider
        self._summary = summary_client
        self._billing = billing
        self._vendor_timeout = vendor_timeout
        self._report_url_template = report_url_template
        self._finalize_retry_delay = timedelta(seconds=finalize_retry_delay_seconds)

    def redirect_target(self, session_id: uuid.UUID) -> str:
        return self._report_url_template.format(session_id=session_id)

    async def end_session(self, session_id: uuid.UUID) -> TerminationResult:
        """End a session: stop its bot, close it and request the summary.

        Args:
            session_id: Session UUID.

        Returns:
            TerminationResult. redirect_target is always populated.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        session = await self._store.get_session(session_id)
        redirect = self.redirect_target(session_id)
        log = logger.bind(session_id=str(session_id), bot_id=session.bot_id)

        if session.finalized_at is not None:
            log.info("termination.already_finalized")
            return TerminationResult(
                bot_stopped=False,
                summary_generated=True,
                redirect_target=redirect,
                already_finalized=True,
            )

        bot_stopped = False
        if session.status.is_terminal:
            # Completed earlier but the summary never landed; don't re-stop
            log.info("termination.retry_finalize", status=session.status.value)
        else:
            await self._store.apply_session_transition(session_id, SessionStatus.STOPPING)
            bot_stopped, stop_error = await self._stop_bot(session)

            ended_at = datetime.now(timezone.utc)
            if stop_error is not None:
                result = await self._store.apply_session_transition(
                    session_id,
                    SessionStatus.FAILED,
                    observed_at=ended_at,
                    error_message=stop_error,
                )
            else:
                result = await self._store.apply_session_transition(
                    session_id, SessionStatus.COMPLETED, observed_at=ended_at
                )
            session = result.session
            log.info(
                "termination.session_closed",
                status=session.status.value,
                bot_stopped=bot_stopped,
                applied=result.applied,
            )

            if session.bot_id is None and self._billing is not None:
                await self._billing.finalize_billing(
                    session.id, session.recording_started_at, session.recording_ended_at
                )

        summary_generated = await self._generate_summary(session, interactive=True)
        return TerminationResult(
            bot_stopped=bot_stopped,
            summary_generated=summary_generated,
            redirect_target=redirect,
        )

    async def _stop_bot(self, session: Session) -> tuple[bool, str | None]:
        """Ask the vendor to stop the session's bot.

        Returns:
            Tuple of (bot_stopped, explicit_error_message).
        """
        if not session.bot_id:
            return False, None

        bot = await self._repo.get_bot(session.bot_id)
        if bot is None or bot.status not in _STOPPABLE_BOT_STATUSES:
            return False, None

        log = logger.bind(session_id=str(session.id), bot_id=bot.bot_id)
        try:
            await call_with_timeout(
                self._provider.stop_bot(bot.bot_id),
                self._vendor_timeout,
                "stop_bot",
                bot.bot_id,
            )
        except ProviderNotFoundError:
            log.info("termination.bot_already_gone")
            return True, None
        except ProviderTimeoutError:
            log.warning("termination.stop_outcome_unknown")
            return False, None
        except ProviderError as exc:
            if exc.is_transient:
                # 5xx or throttling: the bot may or may not have left
                log.warning(
                    "termination.stop_outcome_unknown",
                    error=str(exc),
                    status_code=exc.status_code,
                )
                return False, None
            log.error("termination.stop_failed", error=str(exc), status_code=exc.status_code)
            return False, f"Failed to stop bot: {exc}"

        log.info("termination.bot_stopped")
        return True, None

    async def _generate_summary(self, session: Session, interactive: bool = False) -> bool:
        if self._summary is None:
            logger.info("termination.summary_disabled", session_id=str(session.id))
            return False
        try:
            await self._summary.finalize(
                session.id,
                context={
                    "bot_id": session.bot_id,
                    "status": session.status.value,
                    "recording_started_at": (
                        session.recording_started_at.isoformat()
                        if session.recording_started_at
                        else None
                    ),
                    "recording_ended_at": (
                        session.recording_ended_at.isoformat()
                        if session.recording_ended_at
                        else None
                    ),
                },
                interactive=interactive,
            )
        except SummaryGenerationError as exc:
            logger.warning(
                "termination.summary_failed", session_id=str(session.id), error=str(exc)
            )
            return False

        await self._repo.mark_session_finalized(session.id, datetime.now(timezone.utc))
        logger.info("termination.session_finalized", session_id=str(session.id))
        return True

    async def finalize_pending(self, limit: int = 20) -> int:
        """Retry summaries for terminal sessions that were never finalized.

        Args:
            limit: Maximum sessions per run.

        Returns:
            Number of sessions finalized.
        """
        cutoff = datetime.now(timezone.utc) - self._finalize_retry_delay
        sessions = await self._repo.find_unfinalized_sessions(cutoff, limit)
        finalized = 0
        for session in sessions:
            if await self._generate_summary(session):
                finalized += 1
        if sessions:
            logger.info(
                "termination.finalize_pending_completed",
                candidates=len(sessions),
                finalized=finalized,
            )
        return finalized
