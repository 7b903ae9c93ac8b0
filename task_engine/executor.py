"""
Task executor.

Runs one ExecutionPlan's steps strictly in order. Each step is validated
against its ValidationRules, then dispatched through a handler registry keyed
by StepType. The first failing step aborts the run (fail-fast). Cancellation
is cooperative: a request is honoured only once the current step returns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from . import metrics
from .capabilities import (
    AiohttpClient,
    AnalyzerCapability,
    BrowserCapability,
    FilesystemCapability,
    HttpCapability,
    LocalFilesystem,
    ProjectAnalyzer,
)
from .config import get_settings
from .errors import (
    STEP_EXECUTION_FAILED,
    ApiCallFailedError,
    BrowserUnavailableError,
    ExecutionNotFoundError,
    ExecutionStateError,
    MissingRequiredFieldError,
    NotInitializedError,
    ProductionSafetyError,
    ProjectPathNotFoundError,
    StepExecutionError,
    StepValidationError,
)
from .events import EngineEvent, EventEmitter
from .models import (
    Execution,
    ExecutionPlan,
    ExecutionStatus,
    StepError,
    StepResult,
    elapsed_ms,
    new_id,
    utcnow,
)
from .schemas import TaskContext, coerce_context
from .steps import CustomParams, Step, StepType, ValidationRules

logger = logging.getLogger(__name__)


@dataclass
class StepContext:
    """What a handler gets besides the step itself."""
    execution_id: str
    step: Step
    context: TaskContext

    @property
    def parameters(self):
        return self.step.parameters

    @property
    def validation_rules(self) -> ValidationRules:
        return self.step.validation_rules


StepHandler = Callable[[Step, StepContext], Union[Any, Awaitable[Any]]]


async def _maybe_await(value):
    if asyncio.iscoroutine(value) or isinstance(value, asyncio.Future):
        return await value
    return value


class TaskExecutor:
    def __init__(
        self,
        filesystem: Optional[FilesystemCapability] = None,
        analyzer: Optional[AnalyzerCapability] = None,
        http: Optional[HttpCapability] = None,
        browser: Optional[BrowserCapability] = None,
        error_handler=None,
        events: Optional[EventEmitter] = None,
        step_timeout: Optional[float] = None,
    ):
        cfg = get_settings()
        self.filesystem = filesystem or LocalFilesystem()
        self.analyzer = analyzer or ProjectAnalyzer()
        self.http = http or AiohttpClient()
        self.browser = browser
        self.error_handler = error_handler
        self.events = events or EventEmitter()
        self.step_timeout = cfg.STEP_TIMEOUT_SECONDS if step_timeout is None else step_timeout

        self._executions: Dict[str, Execution] = {}
        self._cancel_requested: set = set()
        self._handlers: Dict[StepType, StepHandler] = {
            StepType.CODE_ANALYSIS: self._run_code_analysis,
            StepType.BROWSER_TESTING: self._run_browser_testing,
            StepType.FILE_OPERATION: self._run_file_operation,
            StepType.API_CALL: self._run_api_call,
            StepType.CUSTOM: self._run_custom,
        }
        self._custom_handlers: Dict[str, StepHandler] = {}
        self._ready = False

    async def initialize(self) -> None:
        self._ready = True
        logger.info("TaskExecutor initialized (browser=%s)", "yes" if self.browser else "no")

    @property
    def is_ready(self) -> bool:
        return self._ready

    # ------------------------------------------------------------------------
    # Extension points
    # ------------------------------------------------------------------------

    def register_handler(self, step_type: Union[str, StepType], handler: StepHandler) -> None:
        self._handlers[StepType.parse(step_type)] = handler

    def register_custom_handler(self, name: str, handler: StepHandler) -> None:
        self._custom_handlers[name] = handler

    # ------------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------------

    def create_execution(self, plan: ExecutionPlan, metadata: Optional[Dict[str, Any]] = None) -> Execution:
        if not self._ready:
            raise NotInitializedError("TaskExecutor")
        meta = {
            "requirement_id": plan.requirement_id,
            "risk_level": plan.risk_level.value,
            "fallback_strategies": list(plan.fallback_strategies),
        }
        meta.update(metadata or {})
        execution = Execution(id=new_id("exec"), plan_id=plan.id, total_steps=len(plan.steps), metadata=meta)
        self._executions[execution.id] = execution
        return execution

    async def execute_plan(self, plan: ExecutionPlan, context: Union[TaskContext, Mapping[str, Any]]) -> Execution:
        execution = self.create_execution(plan)
        return await self.run_execution(execution, plan, context)

    async def run_execution(
        self,
        execution: Execution,
        plan: ExecutionPlan,
        context: Union[TaskContext, Mapping[str, Any]],
    ) -> Execution:
        if execution.status != ExecutionStatus.PENDING:
            raise ExecutionStateError(execution.id, execution.status.value)
        try:
            ctx = coerce_context(context)
            execution.status = ExecutionStatus.RUNNING
            execution.log(f"started plan {plan.id} ({len(plan.steps)} steps)")
            self.events.emit(EngineEvent.EXECUTION_STARTED, {"execution_id": execution.id, "plan_id": plan.id})

            for i, step in enumerate(plan.steps):
                execution.current_step = i + 1
                result, exc = await self._execute_step(execution, step, ctx)
                execution.results.append(result)

                if exc is not None:
                    await self._fail(execution, step, result, exc)
                    return execution

                execution.progress = (i + 1) / len(plan.steps) * 100
                execution.log(f"step {step.id} completed")
                self.events.emit(EngineEvent.STEP_COMPLETED, {
                    "execution_id": execution.id,
                    "step_id": step.id,
                    "result": result.to_dict(),
                })

                if execution.id in self._cancel_requested:
                    self._cancel(execution)
                    return execution

            execution.progress = 100.0
            execution.finish(ExecutionStatus.COMPLETED)
            execution.log("completed")
            metrics.executions_total.labels(status="completed").inc()
            self.events.emit(EngineEvent.EXECUTION_COMPLETED, execution.to_dict())
            return execution
        except asyncio.CancelledError:
            # task-level cancellation (scheduler shutdown) mid-step
            if not execution.status.is_terminal:
                self._cancel(execution)
            raise
        except Exception as exc:
            execution.finish(ExecutionStatus.FAILED)
            metrics.executions_total.labels(status="failed").inc()
            if self.error_handler is not None:
                await self.error_handler.handle_error(
                    exc,
                    {"module": "TaskExecutor", "operation": "run_execution", "parameters": {"plan_id": plan.id}},
                    "critical",
                )
            raise
        finally:
            self._cancel_requested.discard(execution.id)

    def _cancel(self, execution: Execution) -> None:
        execution.finish(ExecutionStatus.CANCELLED)
        execution.log("cancelled")
        metrics.executions_total.labels(status="cancelled").inc()
        logger.info("execution %s cancelled after step %d/%d", execution.id, execution.current_step, execution.total_steps)
        self.events.emit(EngineEvent.EXECUTION_CANCELLED, execution.to_dict())

    async def _fail(self, execution: Execution, step: Step, result: StepResult, exc: BaseException) -> None:
        execution.finish(ExecutionStatus.FAILED)
        execution.log(f"step {step.id} failed: {exc}")
        metrics.executions_total.labels(status="failed").inc()
        logger.warning("execution %s failed at step %s: %s", execution.id, step.id, exc)
        if self.error_handler is not None:
            await self.error_handler.handle_error(
                exc,
                {"module": "TaskExecutor", "operation": "execute_step",
                 "parameters": {"execution_id": execution.id, "step_id": step.id, "step_type": step.type.value}},
                "high",
            )
        self.events.emit(EngineEvent.EXECUTION_FAILED, {
            "execution_id": execution.id,
            "step_id": step.id,
            "error": result.error.to_dict() if result.error else None,
        })

    # ------------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------------

    async def _execute_step(self, execution: Execution, step: Step, ctx: TaskContext):
        step_ctx = StepContext(execution_id=execution.id, step=step, context=ctx)
        started = utcnow()
        t0 = time.monotonic()
        result = StepResult(task_id=execution.id, step_id=step.id, status=ExecutionStatus.RUNNING, start_time=started)
        try:
            await self.validate_step(step, ctx)
            handler = self._handlers[step.type]
            coro = _maybe_await(handler(step, step_ctx))
            if self.step_timeout and self.step_timeout > 0:
                try:
                    value = await asyncio.wait_for(coro, timeout=self.step_timeout)
                except asyncio.TimeoutError:
                    raise StepExecutionError(
                        f"Step {step.id} timed out after {self.step_timeout}s", execution.id, step.id
                    ) from None
            else:
                value = await coro
            result.status = ExecutionStatus.COMPLETED
            result.result = value
            exc = None
        except Exception as e:
            logger.exception("step '%s' (%s) failed", step.id, step.type.value)
            result.status = ExecutionStatus.FAILED
            result.error = StepError(
                message=str(e) or e.__class__.__name__,
                code=STEP_EXECUTION_FAILED,
                details={"error_type": e.__class__.__name__, "error_code": getattr(e, "code", None)},
            )
            exc = e
        result.end_time = utcnow()
        result.duration = elapsed_ms(started, result.end_time)
        metrics.steps_total.labels(step_type=step.type.value, status=result.status.value).inc()
        metrics.step_duration_seconds.labels(step_type=step.type.value).observe(time.monotonic() - t0)
        if exc is not None:
            self.events.emit(EngineEvent.STEP_FAILED, {
                "execution_id": execution.id, "step_id": step.id, "error": result.error.to_dict(),
            })
        return result, exc

    async def validate_step(self, step: Step, ctx: TaskContext) -> None:
        rules = step.validation_rules
        params = step.parameters

        for name in rules.required_fields:
            if isinstance(params, CustomParams):
                value = params.payload.get(name)
            else:
                value = getattr(params, name, None)
            if not value:
                raise MissingRequiredFieldError(name, step.id)

        if rules.file_exists:
            project_path = getattr(params, "project_path", "") or ctx.project_path
            try:
                await self.filesystem.list_directory(project_path)
            except Exception as exc:
                raise ProjectPathNotFoundError(project_path) from exc

        if rules.browser_available:
            if self.browser is None:
                raise BrowserUnavailableError("No browser capability configured")
            sessions = await self.browser.list_sessions()
            if not sessions:
                raise BrowserUnavailableError()

        if rules.environment_ready and ctx.environment == "production" and not rules.production_safe:
            raise ProductionSafetyError(step.id)

    async def _run_code_analysis(self, step: Step, step_ctx: StepContext) -> Dict[str, Any]:
        params = step.parameters
        structure = await self.analyzer.analyze_structure(params.project_path or step_ctx.context.project_path)
        return {"analysis_type": params.analysis_type, "files": list(params.files), "structure": structure}

    async def _run_browser_testing(self, step: Step, step_ctx: StepContext) -> Dict[str, Any]:
        params = step.parameters
        if self.browser is None:
            raise BrowserUnavailableError("No browser capability configured")
        if params.mode not in ("automated", "screenshot"):
            raise StepValidationError(f"Unknown test mode: {params.mode}", {"step_id": step.id})
        session_id = await self.browser.create_session()
        try:
            results = []
            for target in params.targets:
                await self.browser.navigate_to(session_id, target.url)
                if params.mode == "automated":
                    if not target.script:
                        raise StepValidationError(f"No test script for {target.url}", {"step_id": step.id})
                    value = await self.browser.run_script(session_id, target.script)
                else:
                    value = await self.browser.take_screenshot(session_id)
                results.append({"url": target.url, "result": value, "status": "completed"})
            return {"session_id": session_id, "mode": params.mode, "results": results}
        finally:
            await self.browser.close_session(session_id)

    async def _run_file_operation(self, step: Step, step_ctx: StepContext) -> Dict[str, Any]:
        params = step.parameters
        project_path = params.project_path or step_ctx.context.project_path
        results: List[Dict[str, Any]] = []
        for op in params.operations:
            path = op.path if os.path.isabs(op.path) else os.path.join(project_path, op.path)
            if op.type == "read":
                results.append({"operation": "read", "path": op.path, "result": await self.filesystem.read_file(path)})
            elif op.type == "write":
                await self.filesystem.write_file(path, op.content or "")
                results.append({"operation": "write", "path": op.path, "status": "completed"})
            elif op.type == "delete":
                await self.filesystem.delete_file(path)
                results.append({"operation": "delete", "path": op.path, "status": "completed"})
            elif op.type == "list":
                results.append({"operation": "list", "path": op.path, "result": await self.filesystem.list_directory(path)})
            else:
                raise StepValidationError(f"Unknown file operation: {op.type}", {"step_id": step.id})
        return {"project_path": project_path, "operations": results}

    async def _run_api_call(self, step: Step, step_ctx: StepContext) -> Dict[str, Any]:
        params = step.parameters
        resp = await self.http.request(params.method, params.url, params.headers, params.body, params.timeout)
        if not 200 <= resp.status < 300:
            raise ApiCallFailedError(params.url, resp.status, resp.reason)
        return {"url": params.url, "method": params.method, "status": resp.status, "data": resp.body}

    async def _run_custom(self, step: Step, step_ctx: StepContext) -> Any:
        params = step.parameters
        handler = self._custom_handlers.get(params.handler) if params.handler else None
        if handler is not None:
            return await _maybe_await(handler(step, step_ctx))
        return {
            "step_type": "custom",
            "handler": params.handler,
            "parameters": dict(params.payload),
            "validation_rules": step.validation_rules.to_dict(),
        }

    # ------------------------------------------------------------------------
    # Control and introspection
    # ------------------------------------------------------------------------

    def cancel_execution(self, execution_id: str) -> bool:
        """Request cooperative cancellation.

        Returns True when the execution is running and will stop at the next
        step boundary; False when it is pending or already terminal.
        """
        execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        if execution.status != ExecutionStatus.RUNNING:
            return False
        self._cancel_requested.add(execution_id)
        execution.log("cancellation requested")
        return True

    def get_execution_status(self, execution_id: str) -> Optional[Execution]:
        return self._executions.get(execution_id)

    def get_active_executions(self) -> List[Execution]:
        return [e for e in self._executions.values() if not e.status.is_terminal]

    def cleanup_completed_executions(self) -> int:
        done = [eid for eid, e in self._executions.items() if e.status.is_terminal]
        for eid in done:
            del self._executions[eid]
            self._cancel_requested.discard(eid)
        return len(done)

    def get_execution_stats(self) -> Dict[str, int]:
        stats = {"total": 0}
        stats.update({s.value: 0 for s in ExecutionStatus})
        for execution in self._executions.values():
            stats["total"] += 1
            stats[execution.status.value] += 1
        return stats
