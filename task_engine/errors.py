"""
Engine-level exceptions.

Every exception carries a stable machine-readable ``code`` so callers (and the
error-recovery collaborator) can branch on it without parsing messages.
Step-level failures are never raised to callers of the Scheduler; they are
recorded in ``StepResult.error`` with code STEP_EXECUTION_FAILED.
"""

from typing import Any, Dict, List, Optional


STEP_EXECUTION_FAILED = "STEP_EXECUTION_FAILED"


class TaskEngineError(Exception):
    """Base class for all engine errors."""

    code = "TASK_ENGINE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class NotInitializedError(TaskEngineError):
    code = "NOT_INITIALIZED"

    def __init__(self, component: str):
        super().__init__(f"{component} not initialized", {"component": component})


# ============================================================================
# PLANNING ERRORS
# ============================================================================

class MissingRequiredFieldError(TaskEngineError):
    code = "MISSING_REQUIRED_FIELD"

    def __init__(self, field_name: str, context: Optional[str] = None):
        self.field_name = field_name
        message = f"Required field missing: {field_name}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message, {"field": field_name})


class CircularDependencyError(TaskEngineError):
    code = "CIRCULAR_DEPENDENCY"

    def __init__(self, step_id: str, path: Optional[List[str]] = None):
        self.step_id = step_id
        self.path = list(path or [])
        super().__init__(
            f"Circular dependency detected: {step_id}",
            {"step_id": step_id, "path": self.path},
        )


class UnknownStepTypeError(TaskEngineError):
    code = "UNKNOWN_STEP_TYPE"

    def __init__(self, step_type: Any):
        self.step_type = step_type
        super().__init__(f"Unknown step type: {step_type}", {"step_type": str(step_type)})


# ============================================================================
# SCHEDULING ERRORS
# ============================================================================

class QueueNotFoundError(TaskEngineError):
    code = "QUEUE_NOT_FOUND"

    def __init__(self, queue_id: str):
        self.queue_id = queue_id
        super().__init__(f"Queue not found: {queue_id}", {"queue_id": queue_id})


class QueueCapacityError(TaskEngineError):
    code = "QUEUE_AT_CAPACITY"

    def __init__(self, queue_name: str, max_size: int):
        self.queue_name = queue_name
        self.max_size = max_size
        super().__init__(
            f"Queue {queue_name} is at maximum capacity",
            {"queue": queue_name, "max_queue_size": max_size},
        )


# ============================================================================
# EXECUTION ERRORS
# ============================================================================

class ExecutionNotFoundError(TaskEngineError):
    code = "EXECUTION_NOT_FOUND"

    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}", {"execution_id": execution_id})


class ExecutionStateError(TaskEngineError):
    code = "INVALID_EXECUTION_STATE"

    def __init__(self, execution_id: str, status: str):
        self.execution_id = execution_id
        self.status = status
        super().__init__(
            f"Execution {execution_id} is {status}; only pending executions can run",
            {"execution_id": execution_id, "status": status},
        )


class StepValidationError(TaskEngineError):
    """Raised by per-step validation before a handler is dispatched."""

    code = "STEP_VALIDATION_FAILED"


class ProductionSafetyError(StepValidationError):
    code = "PRODUCTION_SAFETY_VIOLATION"

    def __init__(self, step_id: str):
        super().__init__(
            "Production environment requires additional safety checks",
            {"step_id": step_id},
        )


class ProjectPathNotFoundError(StepValidationError):
    code = "PROJECT_PATH_NOT_FOUND"

    def __init__(self, project_path: str):
        super().__init__(f"Project path does not exist: {project_path}", {"project_path": project_path})


class BrowserUnavailableError(StepValidationError):
    code = "BROWSER_UNAVAILABLE"

    def __init__(self, reason: str = "No browser sessions available"):
        super().__init__(reason)


class ApiCallFailedError(TaskEngineError):
    code = "API_CALL_FAILED"

    def __init__(self, url: str, status: int, reason: str = ""):
        self.status = status
        super().__init__(
            f"API call failed: {status} {reason}".rstrip(),
            {"url": url, "status": status},
        )


class StepExecutionError(TaskEngineError):
    """Summarizes a failed execution for the scheduler's retry/failure path."""

    code = STEP_EXECUTION_FAILED

    def __init__(self, message: str, execution_id: Optional[str] = None, step_id: Optional[str] = None):
        super().__init__(message, {"execution_id": execution_id, "step_id": step_id})


class FileAccessError(TaskEngineError):
    """Raised by the filesystem capability for confinement or size violations."""

    code = "FILE_ACCESS_DENIED"

    def __init__(self, path: str, reason: str):
        super().__init__(f"{reason}: {path}", {"path": path})
