"""Scheduled entry points, authorized with CRON_SECRET.

External schedulers call these in addition to (or instead of) the
in-process background loop; the sweep lease keeps runs from overlapping.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from src.botsync.api.deps import get_poller, require_cron_secret
from src.botsync.lifecycle.schemas import SweepResult

router = APIRouter(
    prefix="/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


@router.api_route("/sync-bot-status", methods=["GET", "POST"], response_model=SweepResult)
async def sync_bot_status(request: Request) -> SweepResult:
    """Run one reconciliation sweep and report its counters."""
    poller = get_poller(request)
    return await poller.run_sweep()
