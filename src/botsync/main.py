"""botsync FastAPI application.

Creates the app with logging and metrics middleware, Sentry, lifespan
events that build the lifecycle services and start the reconciliation
scheduler, and the v1 API router.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.responses import Response

from src.botsync.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.botsync.api.v1.router import router as v1_router
from src.botsync.config import Environment, get_settings
from src.botsync.core.database import close_db, get_session, init_db
from src.botsync.core.monitoring import MetricsMiddleware, get_metrics_response, init_sentry
from src.botsync.core.redis import close_redis, get_redis_pool

SWEEP_LEASE_KEY = "botsync:lease:reconciliation_sweep"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB, services and scheduler; tear down on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    app.state.settings = settings

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    try:
        await init_db()
    except Exception:
        log.warning("startup.database_init_failed", exc_info=True)

    # ── Lifecycle services ───────────────────────────────────────────────
    # A failure here leaves the services unset; endpoints answer 503.

    try:
        from src.botsync.lifecycle.billing import UsageCalculator
        from src.botsync.lifecycle.ingress import WebhookIngressHandler
        from src.botsync.lifecycle.lease import SweepLease
        from src.botsync.lifecycle.poller import ReconciliationPoller
        from src.botsync.lifecycle.provider import RecallClient
        from src.botsync.lifecycle.recordings import RecordingResolver
        from src.botsync.lifecycle.repository import LifecycleRepository
        from src.botsync.lifecycle.store import BotStateStore
        from src.botsync.lifecycle.termination import SessionTerminationCoordinator
        from src.botsync.services.summary import SummaryClient

        repository = LifecycleRepository(session_factory=get_session)
        store = BotStateStore(repository)
        provider = RecallClient(
            api_key=settings.RECALL_AI_API_KEY,
            region=settings.RECALL_AI_REGION,
            read_timeout=settings.VENDOR_TIMEOUT_SECONDS,
            mutate_timeout=settings.VENDOR_TIMEOUT_SECONDS,
        )
        usage_calculator = UsageCalculator(
            repository, rate_per_minute=settings.BILLING_RATE_PER_MINUTE
        )
        resolver = RecordingResolver(
            repository, provider, vendor_timeout=settings.VENDOR_TIMEOUT_SECONDS
        )
        webhook_handler = WebhookIngressHandler(
            store,
            usage_calculator,
            webhook_secret=settings.RECALL_AI_WEBHOOK_SECRET,
            webhook_token=settings.RECALL_AI_WEBHOOK_TOKEN,
            timestamp_tolerance_seconds=settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS,
            require_auth=settings.ENVIRONMENT == Environment.production,
        )
        poller = ReconciliationPoller(
            store,
            provider,
            usage_calculator,
            resolver,
            lease=SweepLease(
                get_redis_pool(),
                SWEEP_LEASE_KEY,
                ttl_seconds=settings.SWEEP_LEASE_TTL_SECONDS,
                renew_interval_seconds=settings.SWEEP_LEASE_RENEW_SECONDS,
            ),
            staleness_threshold_seconds=settings.STALENESS_THRESHOLD_SECONDS,
            max_concurrency=settings.POLLER_MAX_CONCURRENCY,
            batch_size=settings.POLLER_BATCH_SIZE,
            vendor_timeout=settings.VENDOR_TIMEOUT_SECONDS,
            recording_batch_size=settings.RECORDING_SYNC_BATCH_SIZE,
        )
        summary_client = SummaryClient(
            settings.SUMMARY_SERVICE_URL,
            token=settings.SUMMARY_SERVICE_TOKEN,
            timeout=settings.SUMMARY_TIMEOUT_SECONDS,
            interactive_timeout=settings.SUMMARY_INTERACTIVE_TIMEOUT_SECONDS,
        )
        coordinator = SessionTerminationCoordinator(
            store,
            provider,
            summary_client if summary_client.enabled else None,
            billing=usage_calculator,
            vendor_timeout=settings.VENDOR_TIMEOUT_SECONDS,
            report_url_template=settings.REPORT_URL_TEMPLATE,
            finalize_retry_delay_seconds=settings.FINALIZE_RETRY_DELAY_SECONDS,
        )

        app.state.state_store = store
        app.state.usage_calculator = usage_calculator
        app.state.recording_resolver = resolver
        app.state.webhook_handler = webhook_handler
        app.state.reconciliation_poller = poller
        app.state.termination_coordinator = coordinator
        log.info("startup.lifecycle_services_initialized")
    except Exception:
        log.warning("startup.lifecycle_services_init_failed", exc_info=True)
        app.state.state_store = None
        app.state.usage_calculator = None
        app.state.recording_resolver = None
        app.state.webhook_handler = None
        app.state.reconciliation_poller = None
        app.state.termination_coordinator = None

    # ── Reconciliation scheduler ─────────────────────────────────────────

    if settings.POLLER_ENABLED and app.state.reconciliation_poller is not None:
        try:
            from src.botsync.lifecycle.scheduler import (
                build_reconciliation_tasks,
                start_reconciliation_scheduler,
            )

            tasks = build_reconciliation_tasks(
                app.state.reconciliation_poller, app.state.termination_coordinator
            )
            await start_reconciliation_scheduler(
                tasks, app.state, interval_seconds=settings.POLLER_INTERVAL_SECONDS
            )
        except Exception:
            log.warning("startup.scheduler_start_failed", exc_info=True)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    scheduler_refs = getattr(app.state, "reconciliation_tasks", None)
    if scheduler_refs:
        for task_ref in scheduler_refs:
            task_ref.cancel()
        await asyncio.gather(*scheduler_refs, return_exceptions=True)

    await close_db()
    await close_redis()


def create_app() -> FastAPI:
    """Build the app: middleware, v1 routes and the /metrics scrape endpoint."""
    app = FastAPI(
        title="Botsync API",
        version="0.1.0",
        description="Meeting bot lifecycle and recording reconciliation engine",
        lifespan=lifespan,
    )

    # Last added is outermost: request timing includes the logging middleware
    app.add_middleware(LoggingMiddleware)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Scrape endpoint lives outside the v1 router
    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return get_metrics_response()

    return app


# uvicorn src.botsync.main:app
app = create_app()
