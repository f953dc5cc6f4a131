"""Tests for the reconciliation background tasks."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from src.botsync.lifecycle.scheduler import (
    build_reconciliation_tasks,
    start_reconciliation_scheduler,
)
from src.botsync.lifecycle.schemas import SweepResult


@pytest.fixture
def poller():
    mock = AsyncMock()
    mock.run_sweep = AsyncMock(return_value=SweepResult(bots_checked=2))
    return mock


@pytest.fixture
def coordinator():
    mock = AsyncMock()
    mock.finalize_pending = AsyncMock(return_value=1)
    return mock


class TestBuildReconciliationTasks:
    def test_task_names(self, poller, coordinator):
        tasks = build_reconciliation_tasks(poller, coordinator)
        assert set(tasks) == {"reconcile_bots", "finalize_sessions"}

    @pytest.mark.asyncio
    async def test_tasks_run_their_service(self, poller, coordinator):
        tasks = build_reconciliation_tasks(poller, coordinator)

        assert (await tasks["reconcile_bots"]()).bots_checked == 2
        assert await tasks["finalize_sessions"]() == 1

    @pytest.mark.asyncio
    async def test_task_failures_are_contained(self, poller, coordinator):
        poller.run_sweep.side_effect = RuntimeError("db down")
        coordinator.finalize_pending.side_effect = RuntimeError("db down")
        tasks = build_reconciliation_tasks(poller, coordinator)

        assert await tasks["reconcile_bots"]() is None
        assert await tasks["finalize_sessions"]() == 0


class TestStartReconciliationScheduler:
    @pytest.mark.asyncio
    async def test_loops_run_and_cancel_cleanly(self, poller, coordinator):
        app_state = SimpleNamespace()
        tasks = build_reconciliation_tasks(poller, coordinator)

        started = await start_reconciliation_scheduler(tasks, app_state, interval_seconds=0)
        await asyncio.sleep(0.05)
        for task in started:
            task.cancel()
        await asyncio.gather(*started, return_exceptions=True)

        assert app_state.reconciliation_tasks == started
        assert len(started) == 2
        assert poller.run_sweep.await_count >= 1
        assert coordinator.finalize_pending.await_count >= 1
        assert all(task.done() for task in started)
