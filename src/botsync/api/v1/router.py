"""V1 API router -- aggregates all v1 endpoint routers."""

from __future__ import annotations

from fastapi import APIRouter

from src.botsync.api.v1 import admin, cron, health, sessions, usage, webhooks

router = APIRouter()

router.include_router(health.router)
router.include_router(webhooks.router)
router.include_router(sessions.router)
router.include_router(usage.router)
router.include_router(admin.router)
router.include_router(cron.router)
