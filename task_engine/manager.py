"""
TaskExecutionManager: one object that wires planner, executor and scheduler to
a shared error handler, event emitter and set of capabilities.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .capabilities import AnalyzerCapability, BrowserCapability, FilesystemCapability, HttpCapability
from .error_recovery import ErrorHandler
from .events import EventEmitter
from .executor import TaskExecutor
from .metrics import start_metrics_server_if_enabled
from .planner import TaskPlanner
from .scheduler import SchedulerConfig, TaskScheduler

logger = logging.getLogger(__name__)


class TaskExecutionManager:
    def __init__(
        self,
        *,
        filesystem: Optional[FilesystemCapability] = None,
        analyzer: Optional[AnalyzerCapability] = None,
        http: Optional[HttpCapability] = None,
        browser: Optional[BrowserCapability] = None,
        config: Optional[SchedulerConfig] = None,
        events: Optional[EventEmitter] = None,
        error_handler: Optional[ErrorHandler] = None,
        step_timeout: Optional[float] = None,
        start_metrics: bool = False,
    ):
        self.events = events or EventEmitter()
        self.config = config or SchedulerConfig.from_settings()
        self.error_handler = error_handler or ErrorHandler(
            events=self.events,
            retry_delay_ms=self.config.retry_delay_ms,
            max_retry_delay_ms=self.config.max_retry_delay_ms,
        )
        self.planner = TaskPlanner(error_handler=self.error_handler)
        self.executor = TaskExecutor(
            filesystem=filesystem,
            analyzer=analyzer,
            http=http,
            browser=browser,
            error_handler=self.error_handler,
            events=self.events,
            step_timeout=step_timeout,
        )
        self.scheduler = TaskScheduler(
            self.planner,
            self.executor,
            error_handler=self.error_handler,
            events=self.events,
            config=self.config,
        )
        self.start_metrics = start_metrics
        self._initialized = False

    async def initialize(self) -> None:
        try:
            await self.planner.initialize()
            await self.executor.initialize()
            await self.scheduler.initialize()
            if self.start_metrics:
                start_metrics_server_if_enabled()
            self._initialized = True
            logger.info("TaskExecutionManager initialized")
        except Exception as exc:
            await self.error_handler.handle_error(
                exc, {"module": "TaskExecutionManager", "operation": "initialize"}, "critical"
            )
            raise

    def get_task_planner(self) -> TaskPlanner:
        return self.planner

    def get_task_executor(self) -> TaskExecutor:
        return self.executor

    def get_task_scheduler(self) -> TaskScheduler:
        return self.scheduler

    def get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "initialized": self._initialized,
            "planner_ready": self.planner.is_ready,
            "executor": self.executor.get_execution_stats(),
            "errors": self.error_handler.get_error_stats(),
        }
        if self.scheduler.is_ready:
            status["scheduler"] = self.scheduler.get_scheduler_stats()
        return status

    async def shutdown(self) -> None:
        try:
            await self.scheduler.shutdown()
            await self.events.drain()
            self._initialized = False
            logger.info("TaskExecutionManager shut down")
        except Exception as exc:
            await self.error_handler.handle_error(
                exc, {"module": "TaskExecutionManager", "operation": "shutdown"}, "critical"
            )
            raise

    async def __aenter__(self) -> "TaskExecutionManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()
