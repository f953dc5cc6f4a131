"""Bot State Store -- the single choke point for lifecycle status changes.

Every path that wants to move a bot (webhook ingress, reconciliation poller,
termination coordinator) calls BotStateStore.apply_transition. The store
enforces the monotonic partial order from transitions.py with an optimistic
compare-and-set loop, then propagates winning transitions to the owning
session. Callers perform vendor I/O before calling in; nothing here holds a
lock across a network call.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog

from src.botsync.core.monitoring import bot_transitions_total
from src.botsync.lifecycle.errors import BotNotFoundError, SessionNotFoundError
from src.botsync.lifecycle.repository import LifecycleRepository
from src.botsync.lifecycle.schemas import (
    Bot,
    BotStatus,
    Session,
    SessionStatus,
    SessionTransitionResult,
    TransitionReason,
    TransitionResult,
    TransitionSource,
)
from src.botsync.lifecycle.status_map import normalize_vendor_status
from src.botsync.lifecycle.transitions import (
    decide_bot_transition,
    decide_session_transition,
    session_status_for_bot,
)

logger = structlog.get_logger(__name__)

MAX_CAS_ATTEMPTS = 3


class BotStateStore:
    """Authoritative bot and session state with monotonic transitions.

    Args:
        repository: LifecycleRepository (or a compatible test double).
    """

    def __init__(self, repository: LifecycleRepository) -> None:
        self._repo = repository

    @property
    def repository(self) -> LifecycleRepository:
        return self._repo

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_bot(self, bot_id: str) -> Bot:
        """Get a bot by vendor id.

        Raises:
            BotNotFoundError: If the bot is unknown.
        """
        bot = await self._repo.get_bot(bot_id)
        if bot is None:
            raise BotNotFoundError(bot_id)
        return bot

    async def get_session(self, session_id: uuid.UUID) -> Session:
        """Get a session by id.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        session = await self._repo.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    # ── Bot Transitions ───────────────────────────────────────────────────

    async def apply_transition(
        self,
        bot_id: str,
        proposed: BotStatus | str,
        source: TransitionSource,
        observed_at: datetime | None = None,
        vendor_status: str | None = None,
    ) -> TransitionResult:
        """Propose a new status for a bot.

        Accepts either an internal BotStatus or a raw vendor status code,
        which is normalized first. Rejected proposals are not errors: the
        result carries applied=False and the reason.

        Args:
            bot_id: Vendor bot id.
            proposed: Target status (internal or vendor code).
            source: Which path is proposing the change.
            observed_at: When the vendor reported the status; defaults to now.
            vendor_status: Raw vendor code kept for observability.

        Returns:
            TransitionResult with the bot and session as they stand afterwards.

        Raises:
            BotNotFoundError: If the bot is unknown.
        """
        if not isinstance(proposed, BotStatus):
            vendor_status = vendor_status or proposed
            mapped = normalize_vendor_status(proposed)
            if mapped is None:
                bot = await self.get_bot(bot_id)
                logger.info(
                    "bot.transition_unmapped",
                    bot_id=bot_id,
                    vendor_status=vendor_status,
                    source=source.value,
                )
                bot_transitions_total.labels(
                    source=source.value, result=TransitionReason.UNMAPPED_STATUS.value
                ).inc()
                return TransitionResult(
                    applied=False,
                    reason=TransitionReason.UNMAPPED_STATUS,
                    previous=bot.status,
                    current=bot.status,
                    bot=bot,
                )
            proposed = mapped

        observed_at = observed_at or datetime.now(timezone.utc)

        for _ in range(MAX_CAS_ATTEMPTS):
            bot = await self.get_bot(bot_id)
            reason = decide_bot_transition(bot.status, proposed)
            if reason is not None:
                logger.debug(
                    "bot.transition_ignored",
                    bot_id=bot_id,
                    current=bot.status.value,
                    proposed=proposed.value,
                    reason=reason.value,
                    source=source.value,
                )
                bot_transitions_total.labels(source=source.value, result=reason.value).inc()
                session = None
                if reason in (TransitionReason.UNCHANGED, TransitionReason.ALREADY_TERMINAL):
                    session = await self._repair_session(bot, proposed, observed_at)
                return TransitionResult(
                    applied=False,
                    reason=reason,
                    previous=bot.status,
                    current=bot.status,
                    bot=bot,
                    session=session,
                )

            won = await self._repo.compare_and_set_bot_status(
                bot_id,
                expected=bot.status,
                new=proposed,
                changed_at=datetime.now(timezone.utc),
                source=source,
                vendor_status=vendor_status,
            )
            if not won:
                # Another path moved the bot first; re-read and re-decide
                continue

            session = await self._propagate_to_session(
                bot, proposed, observed_at, vendor_status
            )
            updated = await self.get_bot(bot_id)
            logger.info(
                "bot.transition_applied",
                bot_id=bot_id,
                session_id=str(bot.session_id),
                previous=bot.status.value,
                current=proposed.value,
                source=source.value,
                vendor_status=vendor_status,
            )
            bot_transitions_total.labels(
                source=source.value, result=TransitionReason.APPLIED.value
            ).inc()
            return TransitionResult(
                applied=True,
                reason=TransitionReason.APPLIED,
                previous=bot.status,
                current=proposed,
                bot=updated,
                session=session,
            )

        logger.warning(
            "bot.transition_conflict",
            bot_id=bot_id,
            proposed=proposed.value,
            source=source.value,
            attempts=MAX_CAS_ATTEMPTS,
        )
        bot_transitions_total.labels(
            source=source.value, result=TransitionReason.CONFLICT.value
        ).inc()
        bot = await self.get_bot(bot_id)
        return TransitionResult(
            applied=False,
            reason=TransitionReason.CONFLICT,
            previous=bot.status,
            current=bot.status,
            bot=bot,
        )

    async def _repair_session(
        self, bot: Bot, proposed: BotStatus, observed_at: datetime
    ) -> Session | None:
        """Re-propagate a bot's current status after a rejected proposal.

        The bot and session are separate writes, so a bot can be ahead of
        its session when a session write failed. A redelivered or late
        report for the bot finishes the session side.
        """
        if proposed == BotStatus.ACTIVE and bot.status != BotStatus.ACTIVE:
            # Late recording start: keep the start time, the status stays
            await self._propagate_to_session(bot, BotStatus.ACTIVE, observed_at, None)
        at = observed_at if proposed == bot.status else bot.last_status_change_at
        return await self._propagate_to_session(bot, bot.status, at, bot.vendor_status)

    async def _propagate_to_session(
        self,
        bot: Bot,
        status: BotStatus,
        observed_at: datetime,
        vendor_status: str | None,
    ) -> Session | None:
        """Drive the bot's session to the status implied by ``status``.

        Idempotent: re-running it for a bot already in ``status`` only
        completes a session write that an earlier call did not finish.
        The first recording start is kept even when the session has
        already moved past active.
        """
        session = await self._repo.get_session(bot.session_id)
        if session is None:
            logger.error(
                "bot.session_missing", bot_id=bot.bot_id, session_id=str(bot.session_id)
            )
            return None

        if (
            status == BotStatus.ACTIVE
            and session.recording_started_at is None
            and (session.recording_ended_at is None or observed_at < session.recording_ended_at)
        ):
            if await self._repo.set_recording_started_at(session.id, observed_at):
                session = await self.get_session(session.id)

        target = session_status_for_bot(status)
        if target is None or decide_session_transition(session.status, target) is not None:
            return session

        fields: dict[str, Any] = {}
        if status == BotStatus.FAILED:
            fields["error_message"] = f"Bot failed ({vendor_status or 'unknown'})"

        result = await self.apply_session_transition(
            session.id, target, observed_at=observed_at, **fields
        )
        return result.session

    # ── Session Transitions ───────────────────────────────────────────────

    async def apply_session_transition(
        self,
        session_id: uuid.UUID,
        proposed: SessionStatus,
        observed_at: datetime | None = None,
        **fields: Any,
    ) -> SessionTransitionResult:
        """Propose a new status for a session under the session partial order.

        Terminal targets always write recording_ended_at (defaulting to
        observed_at). recording_started_at is only written the first time.

        Args:
            session_id: Session UUID.
            proposed: Target session status.
            observed_at: Time of the triggering observation; defaults to now.
            **fields: Extra session columns to write with the status.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        observed_at = observed_at or datetime.now(timezone.utc)

        for _ in range(MAX_CAS_ATTEMPTS):
            session = await self.get_session(session_id)
            reason = decide_session_transition(session.status, proposed)
            if reason is not None:
                logger.debug(
                    "session.transition_ignored",
                    session_id=str(session_id),
                    current=session.status.value,
                    proposed=proposed.value,
                    reason=reason.value,
                )
                return SessionTransitionResult(
                    applied=False,
                    reason=reason,
                    previous=session.status,
                    current=session.status,
                    session=session,
                )

            values = dict(fields)
            if session.recording_started_at is not None:
                values.pop("recording_started_at", None)
            if proposed.is_terminal:
                values.setdefault("recording_ended_at", observed_at)
            else:
                values.pop("recording_ended_at", None)
            if proposed != SessionStatus.FAILED:
                values.pop("error_message", None)

            won = await self._repo.compare_and_set_session_status(
                session_id, expected=session.status, new=proposed, values=values
            )
            if not won:
                continue

            updated = await self.get_session(session_id)
            logger.info(
                "session.transition_applied",
                session_id=str(session_id),
                previous=session.status.value,
                current=proposed.value,
            )
            return SessionTransitionResult(
                applied=True,
                reason=TransitionReason.APPLIED,
                previous=session.status,
                current=proposed,
                session=updated,
            )

        session = await self.get_session(session_id)
        logger.warning(
            "session.transition_conflict",
            session_id=str(session_id),
            proposed=proposed.value,
        )
        return SessionTransitionResult(
            applied=False,
            reason=TransitionReason.CONFLICT,
            previous=session.status,
            current=session.status,
            session=session,
        )

    # ── Bookkeeping ───────────────────────────────────────────────────────

    async def touch_reconciled(
        self,
        bot_id: str,
        reconciled_at: datetime | None = None,
        vendor_status: str | None = None,
    ) -> None:
        """Record a successful poll that produced no transition."""
        await self._repo.touch_reconciled(
            bot_id, reconciled_at or datetime.now(timezone.utc), vendor_status
        )
