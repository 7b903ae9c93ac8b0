import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from task_engine.errors import (
    MissingRequiredFieldError,
    NotInitializedError,
    QueueCapacityError,
    QueueNotFoundError,
)
from task_engine.scheduler import DEFAULT_QUEUES, TaskScheduler


def queue_named(scheduler, name):
    return next(q for q in scheduler.get_all_queues() if q["name"] == name)


def scheduler_reports(error_handler):
    return [c for c in error_handler.handle_error.await_args_list if c.args[1]["module"] == "TaskScheduler"]


# ============================================================================
# Lifecycle and queues
# ============================================================================

@pytest.mark.asyncio
async def test_operations_require_initialize(scheduler, make_requirement, context):
    with pytest.raises(NotInitializedError):
        await scheduler.submit_task(make_requirement(), context)
    with pytest.raises(NotInitializedError):
        scheduler.create_queue("extra", "low", 1)
    with pytest.raises(NotInitializedError):
        scheduler.get_scheduler_stats()
    with pytest.raises(NotInitializedError):
        await scheduler.cancel_task("task_x")


@pytest.mark.asyncio
async def test_initialize_creates_default_queues(scheduler, planner, executor, recorder):
    await scheduler.initialize()
    assert planner.is_ready and executor.is_ready
    queues = scheduler.get_all_queues()
    assert [(q["name"], q["priority_class"], q["max_concurrent"]) for q in queues] == list(DEFAULT_QUEUES)
    assert len(recorder["queue_created"]) == 4
    assert scheduler.get_scheduler_stats()["total_capacity"] == 20


@pytest.mark.asyncio
async def test_create_queue_rejects_bad_arguments(scheduler):
    await scheduler.initialize()
    with pytest.raises(ValueError):
        scheduler.create_queue("zero", "high", 0)
    with pytest.raises(ValueError):
        scheduler.create_queue("urgent", "urgent", 1)


@pytest.mark.asyncio
async def test_get_queue_status_unknown_returns_none(scheduler):
    await scheduler.initialize()
    assert scheduler.get_queue_status("queue_missing") is None


# ============================================================================
# Submission
# ============================================================================

@pytest.mark.asyncio
async def test_submit_runs_task_to_completion(scheduler, recorder, make_requirement, context, until):
    await scheduler.initialize()
    task_id = await scheduler.submit_task(make_requirement(), context)
    assert task_id.startswith("task_")
    await until(lambda: recorder["task_completed"])

    done = recorder["task_completed"][0]
    assert done["task_id"] == task_id
    assert done["status"] == "completed"
    assert recorder["task_submitted"][0]["priority"] == 50
    assert scheduler.get_task_status(task_id) is None

    stats = scheduler.get_scheduler_stats()
    assert stats["total_submitted"] == 1
    assert stats["total_executed"] == 1
    assert stats["active_executions"] == 0
    assert stats["available_capacity"] == stats["total_capacity"]


@pytest.mark.asyncio
async def test_invalid_requirement_is_not_queued(scheduler, make_requirement, context):
    await scheduler.initialize()
    req = make_requirement()
    del req["title"]
    with pytest.raises(MissingRequiredFieldError):
        await scheduler.submit_task(req, context)
    assert scheduler.get_scheduler_stats()["total_submitted"] == 0


@pytest.mark.asyncio
async def test_submit_to_unknown_queue(scheduler, make_requirement, context):
    await scheduler.initialize()
    with pytest.raises(QueueNotFoundError):
        await scheduler.submit_task(make_requirement(), context, queue_id="queue_nope")


@pytest.mark.asyncio
async def test_concurrency_cap_holds_excess_tasks(scheduler, analyzer, recorder, make_requirement, context, until):
    await scheduler.initialize()
    gate = analyzer.hold()
    ids = [await scheduler.submit_task(make_requirement(priority="critical"), context) for _ in range(3)]

    critical = queue_named(scheduler, "critical")
    assert critical["active_executions"] == 2
    assert [t["id"] for t in critical["queued_tasks"]] == [ids[2]]
    assert scheduler.get_task_status(ids[0])["state"] == "running"
    assert scheduler.get_task_status(ids[2])["state"] == "queued"

    gate.set()
    await until(lambda: len(recorder["task_completed"]) == 3)
    assert queue_named(scheduler, "critical")["active_executions"] == 0


@pytest.mark.asyncio
async def test_active_never_exceeds_max_concurrent(scheduler, analyzer, events, make_requirement, context, until):
    await scheduler.initialize()
    peak = {"active": 0}

    def on_started(payload):
        active = scheduler.get_queue_status(payload["queue_id"])["active_executions"]
        peak["active"] = max(peak["active"], active)

    events.on("task_started", on_started)
    done = []
    events.on("task_completed", done.append)

    gate = analyzer.hold()
    for _ in range(8):
        await scheduler.submit_task(make_requirement(), context)
    medium = queue_named(scheduler, "medium")
    assert medium["active_executions"] == 5
    assert len(medium["queued_tasks"]) == 3

    gate.set()
    await until(lambda: len(done) == 8)
    assert peak["active"] <= 5


@pytest.mark.asyncio
async def test_queue_capacity_rejects_submission(planner, executor, error_handler, events, scheduler_config,
                                                 analyzer, make_requirement, context, until):
    scheduler = TaskScheduler(planner, executor, error_handler=error_handler, events=events,
                              config=replace(scheduler_config, max_queue_size=1))
    await scheduler.initialize()
    gate = analyzer.hold()
    for _ in range(3):
        await scheduler.submit_task(make_requirement(priority="critical"), context)
    with pytest.raises(QueueCapacityError) as ei:
        await scheduler.submit_task(make_requirement(priority="critical"), context)
    assert ei.value.code == "QUEUE_AT_CAPACITY"

    gate.set()
    await until(lambda: scheduler.get_scheduler_stats()["total_executed"] == 3)


@pytest.mark.asyncio
async def test_priority_order_with_fifo_ties(scheduler, analyzer, recorder, make_requirement, context, until):
    await scheduler.initialize()
    serial = scheduler.create_queue("serial", "medium", 1)
    gate = analyzer.hold()

    first = await scheduler.submit_task(make_requirement(), context, serial.id)
    zero = await scheduler.submit_task(make_requirement(), context, serial.id, priority=0)
    normal = await scheduler.submit_task(make_requirement(), context, serial.id)
    urgent = await scheduler.submit_task(make_requirement(), context, serial.id, priority=90)
    normal_2 = await scheduler.submit_task(make_requirement(), context, serial.id)

    queued = scheduler.get_queue_status(serial.id)["queued_tasks"]
    assert [t["id"] for t in queued] == [urgent, normal, normal_2, zero]
    assert queued[-1]["priority"] == 0

    gate.set()
    await until(lambda: len(recorder["task_completed"]) == 5)
    assert [p["task_id"] for p in recorder["task_started"]] == [first, urgent, normal, normal_2, zero]


@pytest.mark.asyncio
async def test_least_loaded_queue_is_chosen(scheduler, analyzer, recorder, make_requirement, context, until):
    await scheduler.initialize()
    second = scheduler.create_queue("critical-2", "critical", 2)
    gate = analyzer.hold()

    await scheduler.submit_task(make_requirement(priority="critical"), context)
    await scheduler.submit_task(make_requirement(priority="critical"), context)

    critical_id = queue_named(scheduler, "critical")["id"]
    assert [p["queue_id"] for p in recorder["task_submitted"]] == [critical_id, second.id]

    gate.set()
    await until(lambda: len(recorder["task_completed"]) == 2)


# ============================================================================
# Retry
# ============================================================================

@pytest.mark.asyncio
async def test_retries_exhausted_marks_task_failed(scheduler, analyzer, error_handler, recorder,
                                                   make_requirement, context, until):
    await scheduler.initialize()
    analyzer.failures = [RuntimeError("analyzer down")] * 3
    task_id = await scheduler.submit_task(make_requirement(), context, max_retries=2)
    await until(lambda: recorder["task_failed"])

    assert [p["retry_count"] for p in recorder["task_retried"]] == [1, 2]
    assert [p["delay_ms"] for p in recorder["task_retried"]] == [1, 2]
    assert len(recorder["task_failed"]) == 1
    assert recorder["task_failed"][0]["task_id"] == task_id
    assert "analyzer down" in recorder["task_failed"][0]["error"]
    assert len(analyzer.calls) == 3

    reports = scheduler_reports(error_handler)
    assert len(reports) == 1
    assert reports[0].args[2] == "high"

    stats = scheduler.get_scheduler_stats()
    assert stats["total_failed"] == 1
    assert stats["total_retried"] == 2


@pytest.mark.asyncio
async def test_retry_then_success(scheduler, analyzer, recorder, make_requirement, context, until):
    await scheduler.initialize()
    analyzer.failures = [RuntimeError("flaky")]
    task_id = await scheduler.submit_task(make_requirement(), context)
    await until(lambda: recorder["task_completed"])

    assert len(recorder["task_retried"]) == 1
    assert recorder["task_failed"] == []
    assert recorder["task_completed"][0]["task_id"] == task_id
    attempts = [p["task_id"] for p in recorder["task_started"]]
    assert attempts == [task_id, task_id]


@pytest.mark.asyncio
async def test_zero_retries_fails_immediately(scheduler, analyzer, recorder, make_requirement, context, until):
    await scheduler.initialize()
    analyzer.failures = [RuntimeError("nope")]
    await scheduler.submit_task(make_requirement(), context, max_retries=0)
    await until(lambda: recorder["task_failed"])
    assert recorder["task_retried"] == []


# ============================================================================
# Cancellation
# ============================================================================

@pytest.mark.asyncio
async def test_cancel_unknown_task(scheduler):
    await scheduler.initialize()
    assert await scheduler.cancel_task("task_missing") is False


@pytest.mark.asyncio
async def test_cancel_queued_task_never_executes(scheduler, analyzer, executor, recorder,
                                                 make_requirement, context, until):
    await scheduler.initialize()
    serial = scheduler.create_queue("serial", "medium", 1)
    gate = analyzer.hold()
    await scheduler.submit_task(make_requirement(), context, serial.id)
    waiting = await scheduler.submit_task(make_requirement(), context, serial.id)

    assert await scheduler.cancel_task(waiting) is True
    assert recorder["task_cancelled"][0]["stage"] == "queued"
    assert scheduler.get_task_status(waiting) is None
    assert await scheduler.cancel_task(waiting) is False

    gate.set()
    await until(lambda: recorder["task_completed"])
    assert executor.get_execution_stats()["total"] == 1
    assert scheduler.get_scheduler_stats()["total_cancelled"] == 1


@pytest.mark.asyncio
async def test_cancel_running_task(scheduler, analyzer, recorder, make_requirement, context, until):
    await scheduler.initialize()
    gate = analyzer.hold()
    task_id = await scheduler.submit_task(make_requirement(), context)
    await until(lambda: analyzer.calls)

    status = scheduler.get_task_status(task_id)
    assert status["state"] == "running"
    assert status["execution_id"]

    assert await scheduler.cancel_task(task_id) is True
    assert recorder["task_cancelled"] == []

    gate.set()
    await until(lambda: recorder["task_cancelled"])
    cancelled = recorder["task_cancelled"][0]
    assert cancelled["stage"] == "running"
    assert cancelled["execution_id"] == status["execution_id"]
    assert recorder["task_completed"] == []
    assert len(recorder["task_cancelled"]) == 1


@pytest.mark.asyncio
async def test_cancel_retry_pending_task(planner, executor, error_handler, events, scheduler_config, analyzer,
                                         recorder, make_requirement, context, until):
    slow_retry = replace(scheduler_config, retry_delay_ms=10_000, max_retry_delay_ms=20_000)
    scheduler = TaskScheduler(planner, executor, error_handler=error_handler, events=events, config=slow_retry)
    await scheduler.initialize()
    analyzer.failures = [RuntimeError("flaky")]
    task_id = await scheduler.submit_task(make_requirement(), context)
    await until(lambda: recorder["task_retried"])

    assert scheduler.get_task_status(task_id)["state"] == "retry_pending"
    assert scheduler.get_scheduler_stats()["pending_retries"] == 1

    assert await scheduler.cancel_task(task_id) is True
    assert recorder["task_cancelled"][0]["stage"] == "retry_pending"
    assert scheduler.get_task_status(task_id) is None
    assert scheduler.get_scheduler_stats()["pending_retries"] == 0
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_cancelled_running_task_is_not_retried_when_step_fails(scheduler, analyzer, recorder,
                                                                     make_requirement, context, until):
    await scheduler.initialize()
    gate = analyzer.hold()
    task_id = await scheduler.submit_task(make_requirement(), context)
    await until(lambda: analyzer.calls)

    assert await scheduler.cancel_task(task_id) is True
    assert await scheduler.cancel_task(task_id) is False
    analyzer.failures = [RuntimeError("boom")]
    gate.set()
    await until(lambda: recorder["task_cancelled"])
    await asyncio.sleep(0.05)

    assert recorder["task_retried"] == []
    assert recorder["task_failed"] == []
    assert recorder["task_completed"] == []
    assert len(recorder["task_started"]) == 1
    assert len(recorder["task_cancelled"]) == 1
    assert recorder["task_cancelled"][0]["stage"] == "running"
    stats = scheduler.get_scheduler_stats()
    assert stats["pending_retries"] == 0
    assert stats["total_cancelled"] == 1
    assert scheduler.get_task_status(task_id) is None


@pytest.mark.asyncio
async def test_cancel_while_planning_creates_no_execution(scheduler, planner, executor, recorder,
                                                          make_requirement, context, until):
    await scheduler.initialize()
    gate = asyncio.Event()
    build_plan = planner.create_execution_plan

    async def held_plan(requirement, ctx):
        await gate.wait()
        return await build_plan(requirement, ctx)

    planner.create_execution_plan = held_plan
    task_id = await scheduler.submit_task(make_requirement(), context)
    assert scheduler.get_task_status(task_id) == {
        "task_id": task_id, "queue_id": queue_named(scheduler, "medium")["id"],
        "execution_id": None, "state": "running",
    }

    assert await scheduler.cancel_task(task_id) is True
    assert await scheduler.cancel_task(task_id) is False
    assert scheduler.get_task_status(task_id) is None

    gate.set()
    await until(lambda: scheduler.get_scheduler_stats()["active_executions"] == 0)

    assert executor.get_execution_stats()["total"] == 0
    assert recorder["task_started"] == []
    assert [p["stage"] for p in recorder["task_cancelled"]] == ["dispatching"]
    assert scheduler.get_scheduler_stats()["total_cancelled"] == 1


@pytest.mark.asyncio
async def test_negative_max_retries_rejected(scheduler, make_requirement, context):
    await scheduler.initialize()
    with pytest.raises(ValueError):
        await scheduler.submit_task(make_requirement(), context, max_retries=-1)
    assert scheduler.get_scheduler_stats()["total_submitted"] == 0


# ============================================================================
# Scheduling and introspection
# ============================================================================

@pytest.mark.asyncio
async def test_scheduled_task_waits_until_due(scheduler, recorder, make_requirement, context, until):
    await scheduler.initialize()
    due = datetime.now(timezone.utc) + timedelta(milliseconds=80)
    task_id = await scheduler.submit_task(make_requirement(), context, scheduled_for=due)

    assert scheduler.get_task_status(task_id)["state"] == "queued"
    assert recorder["task_started"] == []

    await until(lambda: recorder["task_completed"])
    assert datetime.now(timezone.utc) >= due


@pytest.mark.asyncio
async def test_naive_scheduled_for_is_utc(scheduler, recorder, make_requirement, context, until):
    await scheduler.initialize()
    past = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(seconds=1)
    await scheduler.submit_task(make_requirement(), context, scheduled_for=past)
    await until(lambda: recorder["task_completed"])


@pytest.mark.asyncio
async def test_stats_are_read_only(scheduler, analyzer, make_requirement, context, until):
    await scheduler.initialize()
    gate = analyzer.hold()
    await scheduler.submit_task(make_requirement(priority="critical"), context)

    first = scheduler.get_scheduler_stats()
    assert first == scheduler.get_scheduler_stats()
    assert first["active_executions"] == 1
    assert first["queue_utilization"] == pytest.approx(1 / 20 * 100)
    assert first["available_capacity"] == 19

    gate.set()
    await until(lambda: scheduler.get_scheduler_stats()["total_executed"] == 1)
    assert scheduler.cleanup_completed_executions() == 1


# ============================================================================
# Shutdown
# ============================================================================

@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight_work(scheduler, analyzer, executor, recorder,
                                               make_requirement, context, until):
    await scheduler.initialize()
    analyzer.hold()
    await scheduler.submit_task(make_requirement(), context)
    await until(lambda: analyzer.calls)

    await scheduler.shutdown()

    assert not scheduler.is_ready
    assert len(recorder["scheduler_shutdown"]) == 1
    assert executor.get_active_executions() == []
    assert executor.get_execution_stats()["cancelled"] == 1
    with pytest.raises(NotInitializedError):
        await scheduler.submit_task(make_requirement(), context)


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(scheduler, recorder):
    await scheduler.initialize()
    await scheduler.shutdown()
    await scheduler.shutdown()
    assert len(recorder["scheduler_shutdown"]) == 1
