"""Operator endpoints, authorized with ADMIN_SECRET."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from src.botsync.api.deps import get_app_settings, get_recording_resolver, require_admin_secret
from src.botsync.lifecycle.schemas import RecordingSyncResult

router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin_secret)],
)


@router.api_route("/sync-recordings", methods=["GET", "POST"], response_model=RecordingSyncResult)
async def sync_recordings(request: Request) -> RecordingSyncResult:
    """Resolve recordings for completed sessions that have none stored."""
    resolver = get_recording_resolver(request)
    settings = get_app_settings(request)
    return await resolver.sync_recordings(limit=settings.RECORDING_SYNC_BATCH_SIZE)
