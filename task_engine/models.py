"""
Runtime records for planning, scheduling and execution.

Plans, queued tasks, queues and executions are plain dataclasses owned by the
component that created them; ``to_dict`` gives a JSON-friendly snapshot for
status reporting.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .schemas import Requirement, TaskContext
from .steps import Step


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def linear_backoff_ms(attempt: int, base_delay_ms: int, max_delay_ms: int) -> int:
    """Delay before retry number ``attempt`` (1-based): base * attempt, capped."""
    if attempt < 1:
        return 0
    return min(base_delay_ms * attempt, max_delay_ms)


# ============================================================================
# ENUMS
# ============================================================================

class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================================
# PLAN
# ============================================================================

@dataclass
class ExecutionPlan:
    id: str
    requirement_id: str
    steps: List[Step]
    estimated_total_duration: float
    dependencies: List[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW
    fallback_strategies: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requirement_id": self.requirement_id,
            "steps": [s.to_dict() for s in self.steps],
            "estimated_total_duration": self.estimated_total_duration,
            "dependencies": list(self.dependencies),
            "risk_level": self.risk_level.value,
            "fallback_strategies": list(self.fallback_strategies),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "metadata": dict(self.metadata),
        }


# ============================================================================
# SCHEDULING
# ============================================================================

@dataclass
class QueuedTask:
    id: str
    requirement: Requirement
    context: TaskContext
    priority: int
    sequence: int
    max_retries: int
    retry_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    scheduled_for: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_for is None or self.scheduled_for <= now

    def sort_key(self):
        return (-self.priority, self.sequence)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "requirement_id": self.requirement.id,
            "title": self.requirement.title,
            "priority": self.priority,
            "sequence": self.sequence,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": _iso(self.created_at),
            "scheduled_for": _iso(self.scheduled_for),
            "metadata": dict(self.metadata),
        }


@dataclass
class TaskQueue:
    id: str
    name: str
    priority_class: str
    max_concurrent: int
    active_executions: int = 0
    queued_tasks: List[QueuedTask] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def load(self) -> float:
        return self.active_executions / self.max_concurrent

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent - self.active_executions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "priority_class": self.priority_class,
            "max_concurrent": self.max_concurrent,
            "active_executions": self.active_executions,
            "queued_tasks": [t.to_dict() for t in self.queued_tasks],
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


# ============================================================================
# EXECUTION
# ============================================================================

@dataclass
class StepError:
    message: str
    code: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": dict(self.details)}


@dataclass
class StepResult:
    task_id: str
    step_id: str
    status: ExecutionStatus
    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = None  # ms
    result: Any = None
    error: Optional[StepError] = None
    logs: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "step_id": self.step_id,
            "status": self.status.value,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration": self.duration,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "logs": list(self.logs),
            "metadata": dict(self.metadata),
        }


@dataclass
class Execution:
    id: str
    plan_id: str
    total_steps: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step: int = 0
    start_time: datetime = field(default_factory=utcnow)
    end_time: Optional[datetime] = None
    duration: Optional[int] = None  # ms
    results: List[StepResult] = field(default_factory=list)
    progress: float = 0.0
    logs: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def log(self, message: str) -> None:
        self.logs.append(f"[{utcnow().isoformat()}] {message}")

    def finish(self, status: ExecutionStatus) -> None:
        if self.status.is_terminal:
            return
        self.status = status
        self.end_time = utcnow()
        self.duration = elapsed_ms(self.start_time, self.end_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "start_time": _iso(self.start_time),
            "end_time": _iso(self.end_time),
            "duration": self.duration,
            "results": [r.to_dict() for r in self.results],
            "progress": self.progress,
            "logs": list(self.logs),
            "metadata": dict(self.metadata),
        }
