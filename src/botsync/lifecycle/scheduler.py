"""Background scheduling for reconciliation work.

Runs the reconciliation sweep and the unfinalized-session retry as simple
asyncio background loops. Task functions are built separately from the
loops so tests (and the cron endpoint) can run them directly.
"""

from __future__ import annotations

import asyncio

import structlog

from src.botsync.lifecycle.poller import ReconciliationPoller
from src.botsync.lifecycle.termination import SessionTerminationCoordinator

logger = structlog.get_logger(__name__)


def build_reconciliation_tasks(
    poller: ReconciliationPoller,
    coordinator: SessionTerminationCoordinator,
) -> dict:
    """Build the periodic task functions.

    Each task catches and logs its own failures so one bad run never stops
    the loop.

    Returns:
        Dict mapping task name to async callable.
    """

    async def reconcile_bots_task():
        """Sweep stale bots and pending recordings."""
        try:
            result = await poller.run_sweep()
            return result
        except Exception:
            logger.warning("scheduler.reconcile_failed", exc_info=True)
            return None

    async def finalize_sessions_task():
        """Retry summaries for completed-but-unfinalized sessions."""
        try:
            count = await coordinator.finalize_pending()
            logger.debug("scheduler.sessions_finalized", count=count)
            return count
        except Exception:
            logger.warning("scheduler.finalize_failed", exc_info=True)
            return 0

    return {
        "reconcile_bots": reconcile_bots_task,
        "finalize_sessions": finalize_sessions_task,
    }


async def start_reconciliation_scheduler(
    tasks: dict, app_state, interval_seconds: int = 60
) -> list[asyncio.Task]:
    """Start each task as a background asyncio loop.

    Args:
        tasks: Dict mapping task name to async callable.
        app_state: FastAPI app.state object for storing task references.
        interval_seconds: Delay between runs of each task.

    Returns:
        The created asyncio tasks (also stored on app_state for shutdown).
    """
    background_tasks: list[asyncio.Task] = []

    for task_name, task_fn in tasks.items():

        async def _loop(fn=task_fn, name=task_name, sleep=interval_seconds):
            """Background loop that runs the task at the configured interval."""
            while True:
                try:
                    await asyncio.sleep(sleep)
                    await fn()
                except asyncio.CancelledError:
                    logger.info("scheduler.task_cancelled", task=name)
                    break
                except Exception:
                    logger.warning("scheduler.task_loop_error", task=name, exc_info=True)

        bg_task = asyncio.create_task(_loop(), name=f"reconciliation_{task_name}")
        background_tasks.append(bg_task)

    app_state.reconciliation_tasks = background_tasks

    logger.info(
        "scheduler.background_tasks_started",
        task_count=len(background_tasks),
        tasks=list(tasks.keys()),
        interval_seconds=interval_seconds,
    )
    return background_tasks
