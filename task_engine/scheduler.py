"""
Task scheduler.

Owns a set of named priority queues. Submitted requirements are validated,
admitted to a queue (subject to ``max_queue_size``), ordered by
(priority desc, admission sequence asc) and dispatched while the queue has
free slots. Each dispatch plans the requirement afresh, runs it on the
executor in its own asyncio task, and on failure either schedules a delayed
retry (linear backoff, cancellable) or marks the task failed.

All queue and registry mutation happens without an intervening ``await``;
the only suspension points are the planner/executor calls inside a
dispatch task.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from . import metrics
from .config import get_settings
from .errors import (
    NotInitializedError,
    QueueCapacityError,
    QueueNotFoundError,
    StepExecutionError,
)
from .events import EngineEvent, EventEmitter
from .executor import TaskExecutor
from .models import ExecutionStatus, QueuedTask, TaskQueue, linear_backoff_ms, new_id, utcnow
from .planner import TaskPlanner
from .schemas import PRIORITY_CLASSES, Requirement, TaskContext, coerce_context

logger = logging.getLogger(__name__)


PRIORITY_WEIGHTS = {"critical": 100, "high": 75, "medium": 50, "low": 25}

DEFAULT_QUEUES = (
    ("critical", "critical", 2),
    ("high", "high", 3),
    ("medium", "medium", 5),
    ("low", "low", 10),
)


@dataclass(frozen=True)
class SchedulerConfig:
    default_retry_count: int = 3
    retry_delay_ms: int = 5000
    max_retry_delay_ms: int = 60000
    max_queue_size: int = 100
    shutdown_grace_seconds: float = 10.0

    @classmethod
    def from_settings(cls, **overrides) -> "SchedulerConfig":
        cfg = get_settings()
        base = cls(
            default_retry_count=cfg.DEFAULT_RETRY_COUNT,
            retry_delay_ms=cfg.RETRY_DELAY_MS,
            max_retry_delay_ms=cfg.MAX_RETRY_DELAY_MS,
            max_queue_size=cfg.MAX_QUEUE_SIZE,
            shutdown_grace_seconds=cfg.SHUTDOWN_GRACE_SECONDS,
        )
        return replace(base, **overrides)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TaskScheduler:
    def __init__(
        self,
        planner: TaskPlanner,
        executor: TaskExecutor,
        error_handler=None,
        events: Optional[EventEmitter] = None,
        config: Optional[SchedulerConfig] = None,
    ):
        self.planner = planner
        self.executor = executor
        self.error_handler = error_handler
        self.events = events or EventEmitter()
        self.config = config or SchedulerConfig.from_settings()

        self._queues: Dict[str, TaskQueue] = {}
        self._sequence = itertools.count(1)
        # task_id -> queue_id for every task the scheduler still owns
        self._task_queue: Dict[str, str] = {}
        self._retry_timers: Dict[str, Tuple[asyncio.TimerHandle, QueuedTask]] = {}
        self._wake_timers: Dict[str, asyncio.TimerHandle] = {}
        self._dispatching: Dict[str, QueuedTask] = {}
        self._cancelled_dispatch: set = set()
        self._cancel_requested: set = set()  # running tasks with a pending cancel
        self._running: Dict[str, str] = {}  # task_id -> execution_id
        self._dispatch_tasks: Dict[str, asyncio.Task] = {}

        self._stats = {
            "total_submitted": 0,
            "total_executed": 0,
            "total_failed": 0,
            "total_retried": 0,
            "total_cancelled": 0,
        }
        self._execution_time_ms = 0
        self._ready = False
        self._shutting_down = False

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    async def initialize(self) -> None:
        try:
            if not self.planner.is_ready:
                await self.planner.initialize()
            if not self.executor.is_ready:
                await self.executor.initialize()
            self._ready = True
            self._shutting_down = False
            for name, priority_class, max_concurrent in DEFAULT_QUEUES:
                self.create_queue(name, priority_class, max_concurrent)
            logger.info("TaskScheduler initialized with %d queues", len(self._queues))
        except Exception as exc:
            self._ready = False
            await self._report(exc, "initialize", {}, "critical")
            raise

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotInitializedError("TaskScheduler")

    async def _report(self, exc: BaseException, operation: str, parameters: Dict[str, Any], severity: str) -> None:
        if self.error_handler is None:
            return
        await self.error_handler.handle_error(
            exc, {"module": "TaskScheduler", "operation": operation, "parameters": parameters}, severity
        )

    # ------------------------------------------------------------------------
    # Queues
    # ------------------------------------------------------------------------

    def create_queue(self, name: str, priority_class: str, max_concurrent: int = 1) -> TaskQueue:
        self._require_ready()
        if priority_class not in PRIORITY_CLASSES:
            raise ValueError(f"unknown priority class: {priority_class}")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        queue = TaskQueue(id=new_id("queue"), name=name, priority_class=priority_class, max_concurrent=max_concurrent)
        self._queues[queue.id] = queue
        self._update_gauges(queue)
        self.events.emit(EngineEvent.QUEUE_CREATED, queue.to_dict())
        logger.debug("created queue %s (%s, max_concurrent=%d)", name, priority_class, max_concurrent)
        return queue

    def _resolve_queue(self, queue_id: Optional[str], priority_class: str) -> TaskQueue:
        if queue_id is not None:
            queue = self._queues.get(queue_id)
            if queue is None:
                raise QueueNotFoundError(queue_id)
            return queue
        candidates = [q for q in self._queues.values() if q.priority_class == priority_class]
        if not candidates:
            if not self._queues:
                raise QueueNotFoundError(priority_class)
            return next(iter(self._queues.values()))
        # min() keeps the first of equal loads, i.e. the earliest created queue
        return min(candidates, key=lambda q: q.load)

    def _enqueue(self, queue: TaskQueue, task: QueuedTask) -> None:
        queue.queued_tasks.append(task)
        queue.queued_tasks.sort(key=QueuedTask.sort_key)
        queue.updated_at = utcnow()
        self._task_queue[task.id] = queue.id
        self._update_gauges(queue)

    def _update_gauges(self, queue: TaskQueue) -> None:
        metrics.queue_depth.labels(queue=queue.name).set(len(queue.queued_tasks))
        metrics.queue_active_executions.labels(queue=queue.name).set(queue.active_executions)

    # ------------------------------------------------------------------------
    # Submission and dispatch
    # ------------------------------------------------------------------------

    async def submit_task(
        self,
        requirement: Union[Requirement, Mapping[str, Any]],
        context: Union[TaskContext, Mapping[str, Any]],
        queue_id: Optional[str] = None,
        *,
        priority: Optional[int] = None,
        scheduled_for: Optional[datetime] = None,
        max_retries: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._require_ready()
        if max_retries is not None and max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        req = self.planner.validate_requirement(requirement)
        ctx = coerce_context(context)
        queue = self._resolve_queue(queue_id, req.priority)

        if len(queue.queued_tasks) >= self.config.max_queue_size:
            metrics.tasks_rejected_total.labels(queue=queue.name).inc()
            logger.warning("rejecting %s: queue %s is full", req.id, queue.name)
            raise QueueCapacityError(queue.name, self.config.max_queue_size)

        task = QueuedTask(
            id=new_id("task"),
            requirement=req,
            context=ctx,
            priority=PRIORITY_WEIGHTS[req.priority] if priority is None else priority,
            sequence=next(self._sequence),
            max_retries=self.config.default_retry_count if max_retries is None else max_retries,
            scheduled_for=_as_utc(scheduled_for),
            metadata=dict(metadata or {}),
        )
        self._enqueue(queue, task)
        self._stats["total_submitted"] += 1
        metrics.tasks_submitted_total.labels(queue=queue.name).inc()
        self.events.emit(EngineEvent.TASK_SUBMITTED, {
            "task_id": task.id,
            "queue_id": queue.id,
            "requirement_id": req.id,
            "title": req.title,
            "priority": task.priority,
        })

        await self.process_queue(queue.id)

        if task.scheduled_for is not None and self._is_queued(queue, task.id):
            self._arm_wake_timer(task, queue.id)
        return task.id

    async def process_queue(self, queue_id: str) -> List[str]:
        """Dispatch due tasks from ``queue_id`` into free slots; returns dispatched task ids."""
        self._require_ready()
        return self._process_queue(queue_id)

    def _process_queue(self, queue_id: str) -> List[str]:
        queue = self._queues.get(queue_id)
        if queue is None or self._shutting_down:
            return []
        available = queue.available_slots
        if available <= 0:
            return []
        now = utcnow()
        ready = [t for t in queue.queued_tasks if t.is_due(now)][:available]
        for task in ready:
            queue.queued_tasks.remove(task)
            queue.active_executions += 1
            self._dispatching[task.id] = task
            wake = self._wake_timers.pop(task.id, None)
            if wake is not None:
                wake.cancel()
            self._dispatch_tasks[task.id] = asyncio.create_task(self._dispatch(queue, task))
            metrics.tasks_dispatched_total.labels(queue=queue.name).inc()
        if ready:
            queue.updated_at = now
            self._update_gauges(queue)
        return [t.id for t in ready]

    async def _dispatch(self, queue: TaskQueue, task: QueuedTask) -> None:
        try:
            plan = await self.planner.create_execution_plan(task.requirement, task.context)
            if task.id in self._cancelled_dispatch:
                logger.info("task %s cancelled while planning; not executing", task.id)
                return
            execution = self.executor.create_execution(plan, {
                "task_id": task.id,
                "queue_id": queue.id,
                "attempt": task.retry_count + 1,
            })
            self._dispatching.pop(task.id, None)
            self._running[task.id] = execution.id
            self.events.emit(EngineEvent.TASK_STARTED, {
                "task_id": task.id, "execution_id": execution.id, "queue_id": queue.id,
            })

            execution = await self.executor.run_execution(execution, plan, task.context)

            if execution.duration is not None:
                self._stats["total_executed"] += 1
                self._execution_time_ms += execution.duration

            if execution.status == ExecutionStatus.COMPLETED:
                self.events.emit(EngineEvent.TASK_COMPLETED, {
                    "task_id": task.id,
                    "execution_id": execution.id,
                    "queue_id": queue.id,
                    "status": execution.status.value,
                    "duration": execution.duration,
                })
            elif execution.status == ExecutionStatus.CANCELLED or task.id in self._cancel_requested:
                self._record_cancel(queue, task.id, "running", execution.id)
            else:
                failed = execution.results[-1] if execution.results else None
                message = failed.error.message if failed is not None and failed.error else "execution failed"
                error = StepExecutionError(message, execution.id, failed.step_id if failed else None)
                await self._handle_failure(queue, task, error)
        except asyncio.CancelledError:
            logger.warning("dispatch of task %s cancelled", task.id)
            raise
        except Exception as exc:
            if task.id in self._cancelled_dispatch:
                logger.info("task %s cancelled while planning failed: %s", task.id, exc)
            elif task.id in self._cancel_requested:
                logger.info("task %s failed after cancellation: %s", task.id, exc)
                self._record_cancel(queue, task.id, "running", self._running.get(task.id))
            else:
                logger.warning("task %s failed to dispatch: %s", task.id, exc)
                await self._handle_failure(queue, task, exc)
        finally:
            queue.active_executions -= 1
            queue.updated_at = utcnow()
            self._cancelled_dispatch.discard(task.id)
            self._cancel_requested.discard(task.id)
            self._dispatching.pop(task.id, None)
            self._running.pop(task.id, None)
            self._dispatch_tasks.pop(task.id, None)
            if task.id not in self._retry_timers:
                self._task_queue.pop(task.id, None)
            self._update_gauges(queue)
            self._process_queue(queue.id)

    # ------------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------------

    async def _handle_failure(self, queue: TaskQueue, task: QueuedTask, error: BaseException) -> None:
        if task.retry_count < task.max_retries and not self._shutting_down:
            task.retry_count += 1
            delay_ms = linear_backoff_ms(task.retry_count, self.config.retry_delay_ms, self.config.max_retry_delay_ms)
            handle = asyncio.get_running_loop().call_later(delay_ms / 1000.0, self._requeue, task.id)
            self._retry_timers[task.id] = (handle, task)
            self._stats["total_retried"] += 1
            metrics.tasks_retried_total.labels(queue=queue.name).inc()
            logger.info("retrying task %s in %dms (%d/%d)", task.id, delay_ms, task.retry_count, task.max_retries)
            self.events.emit(EngineEvent.TASK_RETRIED, {
                "task_id": task.id,
                "queue_id": queue.id,
                "retry_count": task.retry_count,
                "max_retries": task.max_retries,
                "delay_ms": delay_ms,
                "error": str(error),
            })
            return

        self._stats["total_failed"] += 1
        metrics.tasks_failed_total.labels(queue=queue.name).inc()
        logger.error("task %s failed after %d retries: %s", task.id, task.retry_count, error)
        self.events.emit(EngineEvent.TASK_FAILED, {
            "task_id": task.id,
            "queue_id": queue.id,
            "error": str(error),
            "retry_count": task.retry_count,
        })
        await self._report(error, "execute_queued_task", {"task_id": task.id, "retry_count": task.retry_count}, "high")

    def _requeue(self, task_id: str) -> None:
        entry = self._retry_timers.pop(task_id, None)
        if entry is None:
            return
        _, task = entry
        queue = self._queues.get(self._task_queue.get(task_id, ""))
        if queue is None:
            self._task_queue.pop(task_id, None)
            return
        # re-admitted behind equal-priority work; capacity limit does not apply
        task.sequence = next(self._sequence)
        self._enqueue(queue, task)
        self._process_queue(queue.id)

    # ------------------------------------------------------------------------
    # Scheduled tasks
    # ------------------------------------------------------------------------

    def _arm_wake_timer(self, task: QueuedTask, queue_id: str) -> None:
        delay = max(0.0, (task.scheduled_for - utcnow()).total_seconds())
        old = self._wake_timers.pop(task.id, None)
        if old is not None:
            old.cancel()
        self._wake_timers[task.id] = asyncio.get_running_loop().call_later(delay, self._on_wake, task.id, queue_id)

    def _on_wake(self, task_id: str, queue_id: str) -> None:
        self._wake_timers.pop(task_id, None)
        queue = self._queues.get(queue_id)
        if queue is None:
            return
        self._process_queue(queue_id)
        for task in queue.queued_tasks:
            if task.id == task_id and not task.is_due(utcnow()):
                self._arm_wake_timer(task, queue_id)
                break

    # ------------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------------

    @staticmethod
    def _is_queued(queue: TaskQueue, task_id: str) -> bool:
        return any(t.id == task_id for t in queue.queued_tasks)

    def _record_cancel(self, queue: Optional[TaskQueue], task_id: str, stage: str, execution_id: Optional[str] = None) -> None:
        self._stats["total_cancelled"] += 1
        if queue is not None:
            metrics.tasks_cancelled_total.labels(queue=queue.name).inc()
        payload = {"task_id": task_id, "queue_id": queue.id if queue else None, "stage": stage}
        if execution_id:
            payload["execution_id"] = execution_id
        self.events.emit(EngineEvent.TASK_CANCELLED, payload)

    async def cancel_task(self, task_id: str) -> bool:
        """Cancel a task wherever it is.

        Queued or retry-pending tasks are dropped immediately. A task still
        being planned is marked so no execution starts. A running task is
        cancelled cooperatively and reports ``task_cancelled`` once its
        current step returns, even if that step fails. Unknown ids and
        repeated requests return False.
        """
        self._require_ready()
        queue_id = self._task_queue.get(task_id)
        if queue_id is None:
            return False
        queue = self._queues.get(queue_id)

        if queue is not None:
            for task in queue.queued_tasks:
                if task.id == task_id:
                    queue.queued_tasks.remove(task)
                    queue.updated_at = utcnow()
                    wake = self._wake_timers.pop(task_id, None)
                    if wake is not None:
                        wake.cancel()
                    self._task_queue.pop(task_id, None)
                    self._update_gauges(queue)
                    self._record_cancel(queue, task_id, "queued")
                    return True

        entry = self._retry_timers.pop(task_id, None)
        if entry is not None:
            entry[0].cancel()
            self._task_queue.pop(task_id, None)
            self._record_cancel(queue, task_id, "retry_pending")
            return True

        if task_id in self._cancelled_dispatch or task_id in self._cancel_requested:
            return False

        if task_id in self._dispatching:
            self._cancelled_dispatch.add(task_id)
            self._record_cancel(queue, task_id, "dispatching")
            return True

        execution_id = self._running.get(task_id)
        if execution_id is not None and self.executor.cancel_execution(execution_id):
            self._cancel_requested.add(task_id)
            return True
        return False

    # ------------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------------

    def get_queue_status(self, queue_id: str) -> Optional[Dict[str, Any]]:
        self._require_ready()
        queue = self._queues.get(queue_id)
        return queue.to_dict() if queue else None

    def get_all_queues(self) -> List[Dict[str, Any]]:
        self._require_ready()
        return [q.to_dict() for q in self._queues.values()]

    def get_task_status(self, task_id: str) -> Optional[Dict[str, Any]]:
        self._require_ready()
        queue_id = self._task_queue.get(task_id)
        if queue_id is None:
            return None
        if task_id in self._cancelled_dispatch:
            return None
        status = {"task_id": task_id, "queue_id": queue_id, "execution_id": None}
        queue = self._queues.get(queue_id)
        if queue is not None and self._is_queued(queue, task_id):
            status["state"] = "queued"
        elif task_id in self._retry_timers:
            status["state"] = "retry_pending"
            status["retry_count"] = self._retry_timers[task_id][1].retry_count
        elif task_id in self._dispatching or task_id in self._running:
            status["state"] = "running"
            status["execution_id"] = self._running.get(task_id)
        else:
            return None
        return status

    def get_scheduler_stats(self) -> Dict[str, Any]:
        self._require_ready()
        queues = list(self._queues.values())
        active = sum(q.active_executions for q in queues)
        capacity = sum(q.max_concurrent for q in queues)
        executed = self._stats["total_executed"]
        stats = dict(self._stats)
        stats.update({
            "total_queued": sum(len(q.queued_tasks) for q in queues),
            "average_execution_time_ms": self._execution_time_ms / executed if executed else 0,
            "queue_utilization": active / capacity * 100 if capacity else 0,
            "active_executions": active,
            "total_capacity": capacity,
            "available_capacity": capacity - active,
            "pending_retries": len(self._retry_timers),
        })
        return stats

    def cleanup_completed_executions(self) -> int:
        return self.executor.cleanup_completed_executions()

    # ------------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------------

    async def shutdown(self) -> None:
        if not self._ready:
            return
        self._shutting_down = True
        t0 = time.monotonic()
        try:
            for handle, _ in self._retry_timers.values():
                handle.cancel()
            self._retry_timers.clear()
            for handle in self._wake_timers.values():
                handle.cancel()
            self._wake_timers.clear()

            self._cancelled_dispatch.update(self._dispatching)
            self._cancel_requested.update(self._running)
            for execution_id in list(self._running.values()):
                self.executor.cancel_execution(execution_id)

            pending = list(self._dispatch_tasks.values())
            if pending:
                _, not_done = await asyncio.wait(pending, timeout=self.config.shutdown_grace_seconds)
                for straggler in not_done:
                    straggler.cancel()
                if not_done:
                    logger.warning("cancelled %d dispatches still running after grace period", len(not_done))
                    await asyncio.gather(*not_done, return_exceptions=True)

            self._queues.clear()
            self._task_queue.clear()
            self._dispatching.clear()
            self._running.clear()
            self._cancel_requested.clear()
            self._dispatch_tasks.clear()
            self._ready = False
            self.events.emit(EngineEvent.SCHEDULER_SHUTDOWN, {"elapsed_seconds": round(time.monotonic() - t0, 3)})
            logger.info("TaskScheduler shut down")
        except Exception as exc:
            await self._report(exc, "shutdown", {}, "critical")
            raise
