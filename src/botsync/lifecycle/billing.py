"""Usage/Billing Calculator.

Turns recording time into billable minutes exactly once per session.
Two inputs feed it: per-minute usage rows reported while a session records,
and the start/end timestamps known when a bot reaches a terminal state.
Finalization is a compare-and-set on billing_finalized_at, so replays and
concurrent finalizers all observe the same figures.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal

import structlog

from src.botsync.core.monitoring import billable_minutes_total, billing_finalizations_total
from src.botsync.lifecycle.errors import SessionNotActiveError, SessionNotFoundError
from src.botsync.lifecycle.repository import LifecycleRepository
from src.botsync.lifecycle.schemas import (
    BillingFigures,
    Session,
    SessionStatus,
    UsageAck,
)

logger = structlog.get_logger(__name__)

DEFAULT_RATE_PER_MINUTE = Decimal("0.10")
MAX_SECONDS_PER_MINUTE = 60
# Per-minute rows and timestamp-derived minutes may differ by one at the edges
DISAGREEMENT_TOLERANCE_MINUTES = 1


def truncate_to_minute(ts: datetime) -> datetime:
    """Drop seconds and microseconds. Naive timestamps are taken as UTC."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.replace(second=0, microsecond=0)


def compute_billing(
    start: datetime, end: datetime, rate: Decimal = DEFAULT_RATE_PER_MINUTE
) -> tuple[int, int, Decimal]:
    """Compute billable figures from a recording window.

    Args:
        start: Recording start.
        end: Recording end.
        rate: Price per started minute.

    Returns:
        Tuple of (duration_seconds, billable_minutes, amount). Duration is
        floored to whole seconds and never negative; any started minute is
        billed in full.
    """
    duration_seconds = max(0, math.floor((end - start).total_seconds()))
    billable_minutes = math.ceil(duration_seconds / 60)
    return duration_seconds, billable_minutes, _amount(billable_minutes, rate)


def _amount(minutes: int, rate: Decimal) -> Decimal:
    return (Decimal(minutes) * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _stored_figures(session: Session) -> BillingFigures:
    return BillingFigures(
        session_id=session.id,
        duration_seconds=session.recording_duration_seconds or 0,
        billable_minutes=session.billable_minutes or 0,
        amount=session.billable_amount if session.billable_amount is not None else Decimal("0.00"),
        finalized_at=session.billing_finalized_at,
    )


class UsageCalculator:
    """Per-minute usage tracking and exactly-once billing finalization.

    Args:
        repository: LifecycleRepository (or a compatible test double).
        rate_per_minute: Price per billable minute.
    """

    def __init__(
        self,
        repository: LifecycleRepository,
        rate_per_minute: Decimal = DEFAULT_RATE_PER_MINUTE,
    ) -> None:
        self._repo = repository
        self._rate = Decimal(rate_per_minute)

    async def record_usage_minute(
        self,
        session_id: uuid.UUID,
        minute_timestamp: datetime,
        seconds_recorded: int,
    ) -> UsageAck:
        """Record usage for one minute of an active session.

        Duplicate reports for the same (session, minute) are accepted as
        no-ops and leave the total unchanged.

        Args:
            session_id: Session UUID.
            minute_timestamp: Any instant within the minute being reported.
            seconds_recorded: Seconds recorded within that minute (0-60).

        Returns:
            UsageAck with accepted=False for duplicates and the session's
            total recorded minutes.

        Raises:
            ValueError: If seconds_recorded is outside 0-60.
            SessionNotFoundError: If the session is unknown.
            SessionNotActiveError: If the session is not recording.
        """
        if not 0 <= seconds_recorded <= MAX_SECONDS_PER_MINUTE:
            raise ValueError(
                f"seconds_recorded must be between 0 and {MAX_SECONDS_PER_MINUTE}, "
                f"got {seconds_recorded}"
            )

        session = await self._repo.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionNotActiveError(session_id, session.status.value)

        minute = truncate_to_minute(minute_timestamp)
        accepted = await self._repo.insert_usage_minute(session_id, minute, seconds_recorded)
        total_minutes, _ = await self._repo.usage_totals(session_id)

        if accepted:
            logger.info(
                "usage.minute_recorded",
                session_id=str(session_id),
                minute=minute.isoformat(),
                seconds=seconds_recorded,
                total_minutes=total_minutes,
            )
        else:
            logger.debug(
                "usage.minute_duplicate",
                session_id=str(session_id),
                minute=minute.isoformat(),
            )
        return UsageAck(accepted=accepted, total_minutes=total_minutes)

    async def finalize_billing(
        self,
        session_id: uuid.UUID,
        start: datetime | None,
        end: datetime | None,
    ) -> BillingFigures:
        """Compute and persist a session's billable figures once.

        With a known start the figures come from the recording window and
        per-minute rows are cross-checked (or backfilled when absent).
        Without a start, the per-minute rows are the only source.

        Args:
            session_id: Session UUID.
            start: Recording start, or None if the bot never recorded.
            end: Recording end; defaults to now.

        Returns:
            The persisted figures. Calls after the first return what the
            first call stored.

        Raises:
            SessionNotFoundError: If the session is unknown.
        """
        session = await self._repo.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.billing_finalized_at is not None:
            return _stored_figures(session)

        end = end or datetime.now(timezone.utc)
        usage_minutes, usage_seconds = await self._repo.usage_totals(session_id)

        if start is None:
            duration_seconds = usage_seconds
            billable_minutes = usage_minutes
            amount = _amount(billable_minutes, self._rate)
        else:
            duration_seconds, billable_minutes, amount = compute_billing(start, end, self._rate)
            if usage_minutes and abs(usage_minutes - billable_minutes) > DISAGREEMENT_TOLERANCE_MINUTES:
                logger.warning(
                    "billing.source_disagreement",
                    session_id=str(session_id),
                    timestamp_minutes=billable_minutes,
                    usage_minutes=usage_minutes,
                )

        now = datetime.now(timezone.utc)
        won = await self._repo.finalize_session_billing(
            session_id,
            duration_seconds=duration_seconds,
            billable_minutes=billable_minutes,
            amount=amount,
            finalized_at=now,
        )
        if not won:
            session = await self._repo.get_session(session_id)
            return _stored_figures(session)

        if start is not None and usage_minutes == 0 and duration_seconds > 0:
            await self._backfill_usage(session_id, start, duration_seconds)

        billing_finalizations_total.labels(basis="usage" if usage_minutes else "timestamps").inc()
        billable_minutes_total.inc(billable_minutes)
        logger.info(
            "billing.finalized",
            session_id=str(session_id),
            duration_seconds=duration_seconds,
            billable_minutes=billable_minutes,
            amount=str(amount),
        )
        return BillingFigures(
            session_id=session_id,
            duration_seconds=duration_seconds,
            billable_minutes=billable_minutes,
            amount=amount,
            finalized_at=now,
        )

    async def _backfill_usage(
        self, session_id: uuid.UUID, start: datetime, duration_seconds: int
    ) -> None:
        """Write per-minute rows for a session that only had bot timestamps."""
        first_minute = truncate_to_minute(start)
        minutes = math.ceil(duration_seconds / 60)
        for i in range(minutes):
            seconds = min(MAX_SECONDS_PER_MINUTE, duration_seconds - i * 60)
            await self._repo.insert_usage_minute(
                session_id, first_minute + timedelta(minutes=i), seconds
            )
        logger.info("billing.usage_backfilled", session_id=str(session_id), minutes=minutes)
