"""Task execution engine: plan, schedule and run agent work requests."""

from .errors import TaskEngineError
from .events import EngineEvent, EventEmitter
from .executor import TaskExecutor
from .manager import TaskExecutionManager
from .models import Execution, ExecutionPlan, ExecutionStatus, QueuedTask, TaskQueue
from .planner import TaskPlanner, order_steps_by_dependencies
from .scheduler import SchedulerConfig, TaskScheduler
from .schemas import Requirement, TaskContext
from .steps import Step, StepType, ValidationRules, parse_step_parameters

__all__ = [
    "EngineEvent",
    "EventEmitter",
    "Execution",
    "ExecutionPlan",
    "ExecutionStatus",
    "QueuedTask",
    "Requirement",
    "SchedulerConfig",
    "Step",
    "StepType",
    "TaskContext",
    "TaskEngineError",
    "TaskExecutionManager",
    "TaskExecutor",
    "TaskPlanner",
    "TaskQueue",
    "TaskScheduler",
    "ValidationRules",
    "order_steps_by_dependencies",
    "parse_step_parameters",
]

__version__ = "0.1.0"
