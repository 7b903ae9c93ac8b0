"""Prometheus metrics for the scheduler, executor and error handler."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from .config import get_settings

logger = logging.getLogger(__name__)


# Scheduler
tasks_submitted_total = Counter("task_engine_tasks_submitted_total", "Tasks admitted to a queue", ["queue"])
tasks_rejected_total = Counter("task_engine_tasks_rejected_total", "Submissions rejected by admission control", ["queue"])
tasks_dispatched_total = Counter("task_engine_tasks_dispatched_total", "Tasks dispatched to the executor", ["queue"])
tasks_retried_total = Counter("task_engine_tasks_retried_total", "Task retries scheduled", ["queue"])
tasks_failed_total = Counter("task_engine_tasks_failed_total", "Tasks that exhausted their retries", ["queue"])
tasks_cancelled_total = Counter("task_engine_tasks_cancelled_total", "Tasks cancelled", ["queue"])
queue_depth = Gauge("task_engine_queue_depth", "Tasks waiting in a queue", ["queue"])
queue_active_executions = Gauge("task_engine_queue_active_executions", "Executions in flight per queue", ["queue"])

# Executor
executions_total = Counter("task_engine_executions_total", "Executions reaching a terminal state", ["status"])
steps_total = Counter("task_engine_steps_total", "Steps executed", ["step_type", "status"])
step_duration_seconds = Histogram("task_engine_step_duration_seconds", "Step wall-clock duration", ["step_type"])

# Error recovery
errors_handled_total = Counter("task_engine_errors_handled_total", "Errors reported to the error handler", ["severity", "error_type"])


def start_metrics_server_if_enabled() -> bool:
    cfg = get_settings()
    if not cfg.METRICS_PORT:
        return False
    try:
        start_http_server(cfg.METRICS_PORT)
        logger.info("metrics exporter listening on :%d", cfg.METRICS_PORT)
        return True
    except OSError:
        logger.exception("failed to start metrics server")
        return False
