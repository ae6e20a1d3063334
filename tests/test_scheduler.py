import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from nanoclaw.db import Database
from nanoclaw.models import ScheduledTask, ScheduleType, TaskStatus, Tenant, WorkerResult
from nanoclaw.scheduler import TaskScheduler

T = datetime(2024, 1, 1, tzinfo=timezone.utc)
MAIN = Tenant(folder="main", jid="main@chat", name="Main", is_privileged=True)


def _db(tmp_path) -> Database:
    db = Database(tmp_path / "nanoclaw.db")
    db.initialize()
    db.register_tenant(MAIN)
    return db


def _add(db: Database, task_id: str, schedule_type: ScheduleType, value: str, next_run=T, status=TaskStatus.ACTIVE):
    db.create_task(
        ScheduledTask(
            id=task_id,
            tenant_folder="main",
            chat_jid="main@chat",
            prompt=f"prompt for {task_id}",
            schedule_type=schedule_type,
            schedule_value=value,
            status=status,
            next_run=next_run,
        )
    )


def _scheduler(db: Database, invoke, deliver=None, now=T) -> TaskScheduler:
    return TaskScheduler(db=db, invoke=invoke, deliver=deliver, clock=lambda: now)


@pytest.mark.asyncio
async def test_once_task_is_retired_after_success(tmp_path):
    db = _db(tmp_path)
    _add(db, "t1", ScheduleType.ONCE, "2024-01-01T00:00:00Z")
    invoke = AsyncMock(return_value=WorkerResult(status="success", result="done"))

    assert await _scheduler(db, invoke).tick() == 1

    invoke.assert_awaited_once()
    tenant, prompt = invoke.await_args.args
    assert (tenant.folder, prompt) == ("main", "prompt for t1")
    task = db.get_task("t1")
    assert task.status is TaskStatus.CANCELLED
    assert task.next_run is None
    assert task.last_result == "done"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "result",
    [WorkerResult(status="success", result="ok"), WorkerResult(status="error", error="worker crashed")],
)
async def test_interval_task_advances_regardless_of_outcome(tmp_path, result):
    db = _db(tmp_path)
    _add(db, "t1", ScheduleType.INTERVAL, "3600")

    await _scheduler(db, AsyncMock(return_value=result)).tick()

    task = db.get_task("t1")
    assert task.status is TaskStatus.ACTIVE
    assert task.next_run == T + timedelta(seconds=3600)
    runs = db.list_task_runs("t1")
    assert [run.status for run in runs] == [result.status]


@pytest.mark.asyncio
async def test_invoke_exception_is_recorded_and_schedule_advances(tmp_path):
    db = _db(tmp_path)
    _add(db, "t1", ScheduleType.INTERVAL, "60")
    _add(db, "t2", ScheduleType.INTERVAL, "60", next_run=T - timedelta(seconds=1))
    invoke = AsyncMock(side_effect=[RuntimeError("boom"), WorkerResult(status="success", result="fine")])

    assert await _scheduler(db, invoke).tick() == 2

    assert db.get_task("t2").last_result == "Error: boom"
    assert db.get_task("t1").last_result == "fine"
    assert db.get_task("t2").next_run == T + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_cron_task_gets_next_fire_time(tmp_path):
    db = _db(tmp_path)
    now = datetime(2030, 6, 3, 8, 0, 30, tzinfo=timezone.utc)
    _add(db, "t1", ScheduleType.CRON, "0 9 * * *", next_run=now)

    await _scheduler(db, AsyncMock(return_value=WorkerResult(status="success")), now=now).tick()

    assert db.get_task("t1").next_run == datetime(2030, 6, 3, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_paused_and_future_tasks_do_not_run(tmp_path):
    db = _db(tmp_path)
    _add(db, "paused", ScheduleType.INTERVAL, "60", status=TaskStatus.PAUSED)
    _add(db, "future", ScheduleType.INTERVAL, "60", next_run=T + timedelta(minutes=5))
    invoke = AsyncMock()

    assert await _scheduler(db, invoke).tick() == 0

    invoke.assert_not_awaited()


@pytest.mark.asyncio
async def test_task_paused_during_tick_is_skipped(tmp_path):
    db = _db(tmp_path)
    _add(db, "t1", ScheduleType.INTERVAL, "60", next_run=T - timedelta(seconds=1))
    _add(db, "t2", ScheduleType.INTERVAL, "60")

    async def invoke(tenant, prompt):
        db.set_task_status("t2", TaskStatus.PAUSED)
        return WorkerResult(status="success")

    assert await _scheduler(db, invoke).tick() == 1
    assert db.get_task("t2").next_run == T


@pytest.mark.asyncio
async def test_successful_result_is_delivered(tmp_path):
    db = _db(tmp_path)
    _add(db, "t1", ScheduleType.INTERVAL, "60")
    deliver = AsyncMock()
    result = WorkerResult(status="success", result="morning briefing")

    await _scheduler(db, AsyncMock(return_value=result), deliver=deliver).tick()

    deliver.assert_awaited_once()
    delivered_task, delivered_result = deliver.await_args.args
    assert delivered_task.id == "t1"
    assert delivered_result == result


@pytest.mark.asyncio
async def test_unknown_tenant_task_still_advances(tmp_path):
    db = _db(tmp_path)
    db.create_task(
        ScheduledTask(
            id="orphan",
            tenant_folder="gone",
            chat_jid="gone@chat",
            prompt="p",
            schedule_type=ScheduleType.INTERVAL,
            schedule_value="60",
            status=TaskStatus.ACTIVE,
            next_run=T,
        )
    )
    invoke = AsyncMock()

    await _scheduler(db, invoke).tick()

    invoke.assert_not_awaited()
    assert db.get_task("orphan").next_run == T + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_run_forever_survives_failing_ticks_and_stops(tmp_path):
    db = _db(tmp_path)
    scheduler = TaskScheduler(db=db, invoke=AsyncMock(), poll_interval_seconds=0.01)
    calls = 0

    async def failing_tick():
        nonlocal calls
        calls += 1
        raise RuntimeError("database locked")

    scheduler.tick = failing_tick  # type: ignore[method-assign]
    task = asyncio.create_task(scheduler.run_forever())
    while calls < 3:
        await asyncio.sleep(0.01)
    scheduler.stop()
    await asyncio.wait_for(task, timeout=1)

    assert calls >= 3


@pytest.mark.asyncio
async def test_task_cancelled_while_running_keeps_no_next_run(tmp_path):
    db = _db(tmp_path)
    _add(db, "t1", ScheduleType.INTERVAL, "3600")

    async def invoke(tenant, prompt):
        db.set_task_status("t1", TaskStatus.CANCELLED)
        return WorkerResult(status="success", result="done")

    await _scheduler(db, invoke).tick()

    task = db.get_task("t1")
    assert task.status is TaskStatus.CANCELLED
    assert task.next_run is None
    assert task.last_result == "done"
    assert task.to_snapshot()["next_run"] is None
