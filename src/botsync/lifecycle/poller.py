"""Reconciliation Poller.

Fallback path guaranteeing forward progress when webhooks are lost,
delayed or reordered. A sweep:

1. Finds non-terminal bots with no status change or reconciliation within
   the staleness threshold.
2. Asks the vendor for each one's status (bounded concurrency, hard
   per-call deadline) and proposes it to the BotStateStore.
3. Finalizes billing for bots it moves to a terminal state, using the
   vendor's timestamps.
4. Settles terminal bots whose session is still open or unbilled, after a
   session write or billing step failed.
5. Retries recording resolution for completed bots still waiting on their
   recordings.

Per-bot failures are logged and counted; the sweep never aborts for one
bot. Sweeps never overlap: each holds a SweepLease and a sweep that
cannot take it returns immediately with skipped=True.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum

import structlog

from src.botsync.core.monitoring import (
    reconciliation_orphans_fixed_total,
    reconciliation_sweeps_total,
)
from src.botsync.lifecycle.billing import UsageCalculator
from src.botsync.lifecycle.lease import SweepLease
from src.botsync.lifecycle.provider.base import (
    BotProvider,
    VendorBotStatus,
    call_with_timeout,
)
from src.botsync.lifecycle.provider.errors import ProviderError, ProviderNotFoundError
from src.botsync.lifecycle.recordings import RecordingResolver
from src.botsync.lifecycle.schemas import (
    Bot,
    BotStatus,
    RecordingResolutionStatus,
    SweepResult,
    TransitionResult,
    TransitionSource,
)
from src.botsync.lifecycle.status_map import normalize_vendor_status
from src.botsync.lifecycle.store import BotStateStore

logger = structlog.get_logger(__name__)

# Local and vendor durations further apart than this are reported
DURATION_DISAGREEMENT_SECONDS = 60


class _BotOutcome(str, Enum):
    UNCHANGED = "unchanged"
    UPDATED = "updated"
    ORPHAN_FIXED = "orphan_fixed"
    ERROR = "error"


def _observed_at(vendor: VendorBotStatus, status: BotStatus | None) -> datetime | None:
    """Pick the vendor timestamp that best dates the proposed status."""
    if status is not None and status.is_terminal and vendor.completed_at:
        return vendor.completed_at
    if status == BotStatus.ACTIVE and vendor.recording_started_at:
        return vendor.recording_started_at
    if vendor.status_changes and vendor.status_changes[-1].created_at:
        return vendor.status_changes[-1].created_at
    return None


class ReconciliationPoller:
    """Periodic detector and repairer of stuck bot state.

    Args:
        store: BotStateStore used for every transition.
        provider: Bot provider client.
        billing: UsageCalculator for terminal transitions.
        resolver: RecordingResolver for the pending-recordings phase.
        lease: SweepLease preventing overlapping sweeps; None disables it.
        staleness_threshold_seconds: Age after which a bot is re-checked.
        max_concurrency: Concurrent vendor calls per sweep.
        batch_size: Maximum stale bots per sweep.
        vendor_timeout: Deadline for each vendor call, in seconds.
        recording_batch_size: Maximum bots retried for recordings per sweep.
    """

    def __init__(
        self,
        store: BotStateStore,
        provider: BotProvider,
        billing: UsageCalculator,
        resolver: RecordingResolver,
        lease: SweepLease | None = None,
        staleness_threshold_seconds: int = 300,
        max_concurrency: int = 5,
        batch_size: int = 100,
        vendor_timeout: float = 10.0,
        recording_batch_size: int = 50,
    ) -> None:
        self._store = store
        self._repo = store.repository
        self._provider = provider
        self._billing = billing
        self._resolver = resolver
        self._lease = lease
        self._threshold = timedelta(seconds=staleness_threshold_seconds)
        self._max_concurrency = max_concurrency
        self._batch_size = batch_size
        self._vendor_timeout = vendor_timeout
        self._recording_batch_size = recording_batch_size

    async def run_sweep(self, now: datetime | None = None) -> SweepResult:
        """Run one reconciliation sweep unless another one is in progress.

        Args:
            now: Reference time for staleness; defaults to now.

        Returns:
            SweepResult counters; skipped=True if the lease was held elsewhere.
        """
        if self._lease is None:
            return await self._sweep(now)

        async with self._lease.hold() as acquired:
            if not acquired:
                reconciliation_sweeps_total.labels(outcome="skipped").inc()
                logger.info("reconcile.sweep_skipped", lease=self._lease.key)
                return SweepResult(skipped=True)
            return await self._sweep(now)

    async def _sweep(self, now: datetime | None) -> SweepResult:
        now = now or datetime.now(timezone.utc)
        try:
            stale = await self._repo.find_stale_bots(now - self._threshold, self._batch_size)
        except Exception:
            reconciliation_sweeps_total.labels(outcome="failed").inc()
            logger.error("reconcile.stale_query_failed", exc_info=True)
            raise

        result = SweepResult(bots_checked=len(stale))
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _guarded(bot: Bot) -> _BotOutcome:
            async with semaphore:
                return await self._reconcile_bot(bot, now)

        for outcome in await asyncio.gather(*(_guarded(bot) for bot in stale)):
            if outcome == _BotOutcome.ERROR:
                result.errors += 1
            elif outcome == _BotOutcome.UPDATED:
                result.bots_updated += 1
            elif outcome == _BotOutcome.ORPHAN_FIXED:
                result.bots_updated += 1
                result.orphans_fixed += 1

        settled, errors = await self._settle_terminal_sessions(now)
        result.sessions_settled = settled
        result.errors += errors

        resolved, errors = await self._resolve_pending_recordings(semaphore)
        result.recordings_resolved = resolved
        result.errors += errors

        reconciliation_sweeps_total.labels(outcome="completed").inc()
        if result.orphans_fixed:
            reconciliation_orphans_fixed_total.inc(result.orphans_fixed)
        logger.info(
            "reconcile.sweep_completed",
            bots_checked=result.bots_checked,
            bots_updated=result.bots_updated,
            orphans_fixed=result.orphans_fixed,
            recordings_resolved=result.recordings_resolved,
            sessions_settled=result.sessions_settled,
            errors=result.errors,
        )
        return result

    # ── Per-bot Reconciliation ────────────────────────────────────────────

    async def _reconcile_bot(self, bot: Bot, now: datetime) -> _BotOutcome:
        try:
            vendor = await call_with_timeout(
                self._provider.get_bot_status(bot.bot_id),
                self._vendor_timeout,
                "get_bot_status",
                bot.bot_id,
            )
        except ProviderNotFoundError:
            return await self._fail_missing_bot(bot, now)
        except ProviderError as exc:
            logger.warning(
                "reconcile.vendor_error",
                bot_id=bot.bot_id,
                error=str(exc),
                status_code=exc.status_code,
            )
            return _BotOutcome.ERROR
        except Exception:
            logger.error("reconcile.vendor_unexpected_error", bot_id=bot.bot_id, exc_info=True)
            return _BotOutcome.ERROR

        try:
            mapped = normalize_vendor_status(vendor.status_code)
            transition = await self._store.apply_transition(
                bot.bot_id,
                vendor.status_code,
                TransitionSource.POLLER,
                observed_at=_observed_at(vendor, mapped),
                vendor_status=vendor.status_code,
            )
            if not transition.applied:
                await self._store.touch_reconciled(bot.bot_id, now, vendor.status_code)
                return _BotOutcome.UNCHANGED

            if transition.current is not None and transition.current.is_terminal:
                await self._finalize_billing(transition, vendor, now)
                return _BotOutcome.ORPHAN_FIXED
            return _BotOutcome.UPDATED
        except Exception:
            logger.error("reconcile.bot_failed", bot_id=bot.bot_id, exc_info=True)
            return _BotOutcome.ERROR

    async def _fail_missing_bot(self, bot: Bot, now: datetime) -> _BotOutcome:
        """The vendor no longer knows a bot we think is live: fail it."""
        logger.warning("reconcile.bot_missing_at_vendor", bot_id=bot.bot_id)
        try:
            transition = await self._store.apply_transition(
                bot.bot_id,
                BotStatus.FAILED,
                TransitionSource.POLLER,
                observed_at=now,
                vendor_status="not_found",
            )
            if not transition.applied:
                return _BotOutcome.UNCHANGED
            await self._finalize_billing(transition, None, now)
            return _BotOutcome.ORPHAN_FIXED
        except Exception:
            logger.error("reconcile.bot_failed", bot_id=bot.bot_id, exc_info=True)
            return _BotOutcome.ERROR

    async def _finalize_billing(
        self,
        transition: TransitionResult,
        vendor: VendorBotStatus | None,
        now: datetime,
    ) -> None:
        """Finalize billing after a terminal transition. Vendor timestamps win."""
        session = transition.session
        if session is None:
            return

        local_start = session.recording_started_at
        local_end = session.recording_ended_at or now
        start = (vendor.recording_started_at if vendor else None) or local_start
        end = (vendor.completed_at if vendor else None) or local_end

        if local_start is not None and start is not None:
            local_duration = (local_end - local_start).total_seconds()
            vendor_duration = (end - start).total_seconds()
            if abs(local_duration - vendor_duration) > DURATION_DISAGREEMENT_SECONDS:
                logger.warning(
                    "billing.vendor_duration_override",
                    session_id=str(session.id),
                    local_seconds=int(local_duration),
                    vendor_seconds=int(vendor_duration),
                )

        try:
            await self._billing.finalize_billing(session.id, start, end)
        except Exception:
            logger.error(
                "reconcile.billing_failed", session_id=str(session.id), exc_info=True
            )

    # ── Unsettled Sessions ────────────────────────────────────────────────

    async def _settle_terminal_sessions(self, now: datetime) -> tuple[int, int]:
        """Close and bill sessions left behind by terminal bots. Returns (settled, errors)."""
        try:
            bots = await self._repo.find_unsettled_terminal_bots(
                now - self._threshold, self._batch_size
            )
        except Exception:
            logger.error("reconcile.unsettled_query_failed", exc_info=True)
            return 0, 1

        settled = errors = 0
        for bot in bots:
            try:
                # Re-proposing the bot's own status replays the session side
                transition = await self._store.apply_transition(
                    bot.bot_id,
                    bot.status,
                    TransitionSource.POLLER,
                    observed_at=bot.last_status_change_at,
                )
                session = transition.session
                if session is None:
                    continue
                if session.billing_finalized_at is None:
                    await self._billing.finalize_billing(
                        session.id,
                        session.recording_started_at,
                        session.recording_ended_at or bot.last_status_change_at,
                    )
            except Exception:
                logger.error("reconcile.settle_failed", bot_id=bot.bot_id, exc_info=True)
                errors += 1
                continue
            logger.info(
                "reconcile.session_settled",
                bot_id=bot.bot_id,
                session_id=str(session.id),
                status=session.status.value,
            )
            settled += 1
        return settled, errors

    # ── Pending Recordings ────────────────────────────────────────────────

    async def _resolve_pending_recordings(
        self, semaphore: asyncio.Semaphore
    ) -> tuple[int, int]:
        """Retry recording resolution for completed bots. Returns (resolved, errors)."""
        try:
            bots = await self._repo.find_unresolved_recording_bots(self._recording_batch_size)
        except Exception:
            logger.error("reconcile.pending_recordings_query_failed", exc_info=True)
            return 0, 1

        async def _resolve(bot: Bot) -> bool | None:
            async with semaphore:
                try:
                    resolution = await self._resolver.resolve_recording(bot.bot_id)
                except Exception:
                    logger.warning(
                        "reconcile.recording_retry_failed", bot_id=bot.bot_id, exc_info=True
                    )
                    return None
                return resolution.status == RecordingResolutionStatus.RESOLVED

        outcomes = await asyncio.gather(*(_resolve(bot) for bot in bots))
        resolved = sum(1 for o in outcomes if o)
        errors = sum(1 for o in outcomes if o is None)
        return resolved, errors
