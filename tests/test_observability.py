"""Tests for Prometheus metrics, request logging middleware and the app factory."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from src.botsync.core.monitoring import track_vendor_call
from src.botsync.lifecycle.schemas import BotStatus, TransitionSource
from src.botsync.main import create_app


def _sample(name: str, labels: dict) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


class TestLifecycleMetrics:
    @pytest.mark.asyncio
    async def test_track_vendor_call_success(self):
        labels = {"operation": "test_op", "status": "success"}
        before = _sample("vendor_request_duration_seconds_count", labels)

        async with track_vendor_call("test_op"):
            pass

        assert _sample("vendor_request_duration_seconds_count", labels) == before + 1

    @pytest.mark.asyncio
    async def test_track_vendor_call_error(self):
        labels = {"operation": "test_op", "status": "error"}
        before = _sample("vendor_request_duration_seconds_count", labels)

        with pytest.raises(ValueError, match="boom"):
            async with track_vendor_call("test_op"):
                raise ValueError("boom")

        assert _sample("vendor_request_duration_seconds_count", labels) == before + 1

    @pytest.mark.asyncio
    async def test_transitions_are_counted_by_source_and_result(self, store, repo):
        session = repo.seed_session()
        repo.seed_bot(session.id, "bot-1", status=BotStatus.COMPLETED)
        labels = {"source": "poller", "result": "already_terminal"}
        before = _sample("bot_transitions_total", labels)

        await store.apply_transition("bot-1", BotStatus.ACTIVE, TransitionSource.POLLER)

        assert _sample("bot_transitions_total", labels) == before + 1

    @pytest.mark.asyncio
    async def test_billing_finalization_counted_once(self, billing, repo):
        session = repo.seed_session()
        start = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
        labels = {"basis": "timestamps"}
        before = _sample("billing_finalizations_total", labels)
        minutes_before = _sample("billable_minutes_total", {})

        await billing.finalize_billing(session.id, start, start + timedelta(minutes=5))
        await billing.finalize_billing(session.id, start, start + timedelta(minutes=5))

        assert _sample("billing_finalizations_total", labels) == before + 1
        assert _sample("billable_minutes_total", {}) == minutes_before + 5


class TestAppFactory:
    def test_health_and_request_id(self):
        client = TestClient(create_app())

        response = client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated_when_missing(self):
        client = TestClient(create_app())

        response = client.get("/health")

        assert response.headers["X-Request-ID"]

    def test_metrics_endpoint_exposes_http_counters(self):
        client = TestClient(create_app())
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert 'endpoint="/health"' in response.text

    def test_services_unavailable_without_lifespan(self):
        client = TestClient(create_app())

        response = client.post("/webhooks/bot-provider", content="{}")

        assert response.status_code == 503

    def test_readiness_degraded_without_lifecycle_services(self, monkeypatch):
        from src.botsync.api.v1 import health

        async def storage_ok():
            return {"database": "ok", "redis": "ok"}

        monkeypatch.setattr(health, "_check_storage", storage_ok)
        client = TestClient(create_app())

        response = client.get("/health/ready")

        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "degraded"
        assert body["checks"]["services"] == "error"
        assert "webhook_handler" in body["checks"]["services_missing"]
