"""FastAPI dependencies for lifecycle services and shared-secret auth.

Services are created once in the application lifespan and stored on
app.state; these helpers fetch them and return 503 when a component
failed to initialize.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request, status

from src.botsync.config import Settings, get_settings
from src.botsync.core.security import verify_bearer_secret


def _get_component(request: Request, attr: str, label: str) -> Any:
    component = getattr(request.app.state, attr, None)
    if component is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} not initialized",
        )
    return component


def get_app_settings(request: Request) -> Settings:
    """Settings stored on app.state, falling back to the process singleton."""
    return getattr(request.app.state, "settings", None) or get_settings()


def get_state_store(request: Request) -> Any:
    return _get_component(request, "state_store", "Bot state store")


def get_webhook_handler(request: Request) -> Any:
    return _get_component(request, "webhook_handler", "Webhook handler")


def get_poller(request: Request) -> Any:
    return _get_component(request, "reconciliation_poller", "Reconciliation poller")


def get_recording_resolver(request: Request) -> Any:
    return _get_component(request, "recording_resolver", "Recording resolver")


def get_usage_calculator(request: Request) -> Any:
    return _get_component(request, "usage_calculator", "Usage calculator")


def get_termination_coordinator(request: Request) -> Any:
    return _get_component(request, "termination_coordinator", "Termination coordinator")


# ── Shared-secret Auth ──────────────────────────────────────────────────────


async def require_cron_secret(request: Request) -> None:
    """Authorize scheduled callers via ``Authorization: Bearer <CRON_SECRET>``.

    ``X-Cron-Secret: <CRON_SECRET>`` is accepted as well for schedulers that
    cannot set an Authorization header.
    """
    settings = get_app_settings(request)
    authorization = request.headers.get("Authorization")
    if authorization is None and request.headers.get("X-Cron-Secret"):
        authorization = f"Bearer {request.headers['X-Cron-Secret']}"
    verify_bearer_secret(authorization, settings.CRON_SECRET)


async def require_admin_secret(request: Request) -> None:
    """Authorize operators via ``Authorization: Bearer <ADMIN_SECRET>``."""
    settings = get_app_settings(request)
    verify_bearer_secret(request.headers.get("Authorization"), settings.ADMIN_SECRET)
