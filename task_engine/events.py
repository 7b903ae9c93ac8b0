from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Set, Union

logger = logging.getLogger(__name__)


class EngineEvent(str, Enum):
    """Lifecycle events emitted by the scheduler, executor and error handler."""
    # Scheduler
    QUEUE_CREATED = "queue_created"
    TASK_SUBMITTED = "task_submitted"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_RETRIED = "task_retried"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    SCHEDULER_SHUTDOWN = "scheduler_shutdown"
    # Executor
    EXECUTION_STARTED = "execution_started"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    EXECUTION_CANCELLED = "execution_cancelled"
    # Error recovery
    ERROR = "error"
    RECOVERY_RETRY = "recovery_retry"
    RECOVERY_FALLBACK = "recovery_fallback"
    RECOVERY_ROLLBACK = "recovery_rollback"
    RECOVERY_NOTIFY = "recovery_notify"


Listener = Callable[[Dict[str, Any]], Any]


class EventEmitter:
    """Synchronous fan-out with support for coroutine listeners.

    ``emit`` never raises: a failing listener is logged and the remaining
    listeners still run. Coroutines returned by listeners are scheduled on the
    running loop so emitters never suspend while holding consistent state.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def _key(event: Union[str, EngineEvent]) -> str:
        return event.value if isinstance(event, EngineEvent) else str(event)

    def on(self, event: Union[str, EngineEvent], listener: Listener) -> Listener:
        self._listeners[self._key(event)].append(listener)
        return listener

    def off(self, event: Union[str, EngineEvent], listener: Listener) -> None:
        listeners = self._listeners.get(self._key(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def listener_count(self, event: Union[str, EngineEvent]) -> int:
        return len(self._listeners.get(self._key(event), []))

    def emit(self, event: Union[str, EngineEvent], payload: Dict[str, Any]) -> int:
        key = self._key(event)
        listeners = list(self._listeners.get(key, []))
        for listener in listeners:
            try:
                maybe = listener(payload)
                if asyncio.iscoroutine(maybe):
                    task = asyncio.ensure_future(maybe)
                    self._pending.add(task)
                    task.add_done_callback(self._on_listener_done)
            except Exception:
                logger.exception("listener for event '%s' raised", key)
        return len(listeners)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("async event listener failed: %s", exc)

    async def drain(self) -> None:
        """Wait for scheduled async listeners to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
