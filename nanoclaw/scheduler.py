"""Async scheduler for persisted tasks."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from nanoclaw.db import Database
from nanoclaw.errors import ScheduleError
from nanoclaw.models import ScheduledTask, TaskRun, TaskStatus, Tenant, WorkerResult
from nanoclaw.schedule import next_run_after

LOGGER = logging.getLogger(__name__)

Invoke = Callable[[Tenant, str], Awaitable[WorkerResult]]
Deliver = Callable[[ScheduledTask, WorkerResult], Awaitable[None]]


class TaskScheduler:
    """Polls due tasks, runs each one through ``invoke`` and advances its schedule.

    A run that fails still advances the schedule; failures are recorded in
    the run log rather than retried.
    """

    def __init__(
        self,
        db: Database,
        invoke: Invoke,
        deliver: Deliver | None = None,
        poll_interval_seconds: float = 60.0,
        timezone_name: str = "UTC",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._db = db
        self._invoke = invoke
        self._deliver = deliver
        self._poll_interval_seconds = poll_interval_seconds
        self._timezone_name = timezone_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._stop_event = asyncio.Event()

    async def run_forever(self) -> None:
        """Run scheduler loop until stop() is called."""

        LOGGER.info("Scheduler loop started (interval %.1fs)", self._poll_interval_seconds)
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        LOGGER.info("Scheduler loop stopped")

    def stop(self) -> None:
        """Signal the loop to stop."""

        self._stop_event.set()

    async def tick(self) -> int:
        """Run every task that is due now; return how many ran."""

        due_tasks = self._db.get_due_tasks(self._clock())
        if due_tasks:
            LOGGER.info("Found %d due task(s)", len(due_tasks))
        ran = 0
        for due in due_tasks:
            # A mailbox request may have paused or cancelled it since the query.
            task = self._db.get_task(due.id)
            if task is None or task.status is not TaskStatus.ACTIVE:
                continue
            await self.run_task(task)
            ran += 1
        return ran

    async def run_task(self, task: ScheduledTask) -> WorkerResult:
        run_at = self._clock()
        started = time.monotonic()
        tenant = self._db.get_tenant(task.tenant_folder)
        if tenant is None:
            LOGGER.error("Task %s belongs to unknown tenant %s", task.id, task.tenant_folder)
            result = WorkerResult(status="error", error=f"Tenant not found: {task.tenant_folder}")
        else:
            LOGGER.info("Running scheduled task %s for %s", task.id, tenant.folder)
            try:
                result = await self._invoke(tenant, task.prompt)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception("Scheduled task %s raised", task.id)
                result = WorkerResult(status="error", error=str(exc))

        if not result.ok:
            LOGGER.error("Scheduled task %s failed: %s", task.id, result.error)

        try:
            next_run = next_run_after(task.schedule_type, task.schedule_value, run_at, self._timezone_name)
        except ScheduleError as exc:
            LOGGER.error("Task %s has an unusable schedule and is retired: %s", task.id, exc)
            next_run = None

        self._db.record_task_run(
            TaskRun(
                task_id=task.id,
                run_at=run_at,
                duration_ms=int((time.monotonic() - started) * 1000),
                status=result.status,
                result=result.result,
                error=result.error,
            ),
            next_run=next_run,
        )
        LOGGER.info("Task %s done (status=%s, next_run=%s)", task.id, result.status, next_run)

        if self._deliver is not None and result.ok and result.result:
            try:
                await self._deliver(task, result)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to deliver result of task %s", task.id)
        return result
