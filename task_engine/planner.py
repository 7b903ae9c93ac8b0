"""
Task planner.

Turns a Requirement + TaskContext into an ExecutionPlan: validates the
requirement, derives per-type steps, orders them so every step follows its
dependencies, and scores risk. Planning is a pure transformation; nothing here
touches the filesystem, browser or network.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import CircularDependencyError, NotInitializedError, TaskEngineError
from .models import ExecutionPlan, RiskLevel, new_id, utcnow
from .schemas import Requirement, TaskContext, coerce_context, coerce_requirement
from .steps import (
    BrowserTarget,
    BrowserTestingParams,
    CodeAnalysisParams,
    CustomParams,
    FileOperation,
    FileOperationParams,
    Step,
    StepType,
    ValidationRules,
)

logger = logging.getLogger(__name__)


VALIDATED_FIELDS = ["title", "description", "type", "priority"]

PRIORITY_RISK = {"critical": 3, "high": 2, "medium": 1, "low": 0}

# (minimum steps, minutes per step)
STEP_ESTIMATES = {
    "development": (3, 15),
    "testing": (2, 20),
    "deployment": (3, 25),
    "analysis": (2, 30),
}


# ============================================================================
# REQUIREMENT ANALYSIS
# ============================================================================

@dataclass
class RequirementAnalysis:
    complexity: str = "low"
    estimated_steps: int = 0
    code_impact: List[str] = field(default_factory=list)
    file_operations: List[FileOperation] = field(default_factory=list)
    browser_targets: List[BrowserTarget] = field(default_factory=list)
    test_cases: List[Any] = field(default_factory=list)
    test_mode: str = "automated"
    estimated_test_duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complexity": self.complexity,
            "estimated_steps": self.estimated_steps,
            "code_impact": list(self.code_impact),
            "file_operations": [
                {"type": op.type, "path": op.path} for op in self.file_operations
            ],
            "browser_targets": [t.url for t in self.browser_targets],
            "test_cases": len(self.test_cases),
        }


def assess_complexity(requirement: Requirement) -> str:
    duration = requirement.estimated_duration
    if requirement.type == "development":
        if duration > 60:
            return "high"
        return "medium" if duration > 30 else "low"
    if requirement.type == "testing":
        return "medium" if "browser" in requirement.resources else "low"
    if requirement.type == "deployment":
        return "high" if requirement.priority == "critical" else "medium"
    return "high" if duration > 30 else "low"


def estimate_step_count(requirement: Requirement) -> int:
    minimum, per_step = STEP_ESTIMATES[requirement.type]
    return max(minimum, math.ceil(requirement.estimated_duration / per_step))


def _parse_list(constraints: Mapping[str, Any], key: str, parser):
    raw = constraints.get(key) or []
    if not isinstance(raw, list):
        raise TaskEngineError(f"constraint '{key}' must be a list", {"constraint": key})
    try:
        return [parser(item) for item in raw]
    except (KeyError, TypeError) as exc:
        raise TaskEngineError(f"invalid entry in constraint '{key}': {exc}", {"constraint": key}) from exc


def analyze_requirement(requirement: Requirement, context: TaskContext) -> RequirementAnalysis:
    constraints = requirement.constraints
    analysis = RequirementAnalysis(
        complexity=assess_complexity(requirement),
        estimated_steps=estimate_step_count(requirement),
    )
    if requirement.type in ("development", "analysis"):
        analysis.code_impact = _parse_list(constraints, "files", str)
    if requirement.type in ("development", "deployment"):
        analysis.file_operations = _parse_list(constraints, "fileOperations", FileOperation.from_dict)
    if requirement.type == "testing":
        analysis.browser_targets = _parse_list(constraints, "browserRequirements", BrowserTarget.from_dict)
        analysis.test_cases = _parse_list(constraints, "testCases", lambda c: c)
        analysis.test_mode = constraints.get("testMode") or "automated"
        analysis.estimated_test_duration = constraints.get("estimatedTestDuration")
    return analysis


# ============================================================================
# DEPENDENCY ORDERING
# ============================================================================

def order_steps_by_dependencies(steps: List[Step]) -> List[Step]:
    """Return ``steps`` in dependency-first order.

    Depth-first over the authored order; a back-edge raises
    CircularDependencyError. Dependencies on ids not present in ``steps`` are
    skipped. ``order`` is renumbered 1..n on the result.
    """
    by_id = {s.id: s for s in steps}
    ordered: List[Step] = []
    visited = set()
    visiting: List[str] = []

    def visit(step: Step) -> None:
        if step.id in visiting:
            cycle = visiting[visiting.index(step.id):] + [step.id]
            raise CircularDependencyError(step.id, cycle)
        if step.id in visited:
            return
        visiting.append(step.id)
        for dep_id in step.dependencies:
            dep = by_id.get(dep_id)
            if dep is None:
                logger.warning("step %s depends on unknown step %s; ignoring", step.id, dep_id)
                continue
            visit(dep)
        visiting.pop()
        visited.add(step.id)
        ordered.append(step)

    for step in steps:
        if step.id not in visited:
            visit(step)

    for i, step in enumerate(ordered, start=1):
        step.order = i
    return ordered


# ============================================================================
# RISK
# ============================================================================

def assess_risk_level(requirement: Requirement, steps: List[Step], context: TaskContext) -> RiskLevel:
    score = PRIORITY_RISK.get(requirement.priority, 0)
    if len(steps) > 10:
        score += 2
    if requirement.estimated_duration > 120:
        score += 1
    if context.environment == "production":
        score += 2
    if len(requirement.dependencies) > 5:
        score += 1
    if score >= 5:
        return RiskLevel.HIGH
    if score >= 3:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def create_fallback_strategies(requirement: Requirement, steps: List[Step]) -> List[str]:
    strategies = []
    if requirement.priority == "critical":
        strategies.append("Rollback to previous stable state")
        strategies.append("Manual intervention required")
    if any(s.type == StepType.BROWSER_TESTING for s in steps):
        strategies.append("Fallback to manual browser testing")
    if any(s.type == StepType.FILE_OPERATION for s in steps):
        strategies.append("Restore from backup")
    return strategies


# ============================================================================
# PLANNER
# ============================================================================

class TaskPlanner:
    def __init__(self, error_handler=None):
        self.error_handler = error_handler
        self._ready = False

    async def initialize(self) -> None:
        self._ready = True
        logger.info("TaskPlanner initialized")

    @property
    def is_ready(self) -> bool:
        return self._ready

    def validate_requirement(self, requirement: Union[Requirement, Mapping[str, Any]]) -> Requirement:
        return coerce_requirement(requirement)

    async def create_execution_plan(
        self,
        requirement: Union[Requirement, Mapping[str, Any]],
        context: Union[TaskContext, Mapping[str, Any]],
    ) -> ExecutionPlan:
        requirement_id = requirement.get("id") if isinstance(requirement, Mapping) else getattr(requirement, "id", None)
        try:
            if not self._ready:
                raise NotInitializedError("TaskPlanner")
            req = self.validate_requirement(requirement)
            ctx = coerce_context(context)
            analysis = analyze_requirement(req, ctx)
            steps = order_steps_by_dependencies(self._build_steps(req, ctx, analysis))
            now = utcnow()
            plan = ExecutionPlan(
                id=new_id("plan"),
                requirement_id=req.id,
                steps=steps,
                estimated_total_duration=sum(s.estimated_duration for s in steps),
                dependencies=list(req.dependencies),
                risk_level=assess_risk_level(req, steps, ctx),
                fallback_strategies=create_fallback_strategies(req, steps),
                created_at=now,
                updated_at=now,
                metadata={"analysis": analysis.to_dict()},
            )
            logger.debug("planned %s: %d steps, risk=%s", req.id, len(steps), plan.risk_level.value)
            return plan
        except Exception as exc:
            if self.error_handler is not None:
                await self.error_handler.handle_error(
                    exc,
                    {"module": "TaskPlanner", "operation": "create_execution_plan",
                     "parameters": {"requirement_id": requirement_id}},
                    "high",
                )
            raise

    # ------------------------------------------------------------------------
    # Step construction
    # ------------------------------------------------------------------------

    def _build_steps(self, req: Requirement, ctx: TaskContext, analysis: RequirementAnalysis) -> List[Step]:
        token = uuid.uuid4().hex[:8]

        def sid(name: str) -> str:
            return f"step_{name}_{token}"

        validation_id = sid("validation")
        steps = [
            Step(
                id=validation_id,
                title="Validate Requirements",
                description="Validate all requirements and constraints",
                type=StepType.CUSTOM,
                estimated_duration=2,
                parameters=CustomParams(
                    handler="validate_requirements",
                    payload={
                        "title": req.title,
                        "description": req.description,
                        "type": req.type,
                        "priority": req.priority,
                        "requirement": req.model_dump(),
                        "context": ctx.model_dump(),
                        "analysis": analysis.to_dict(),
                    },
                ),
                validation_rules=ValidationRules(
                    required_fields=list(VALIDATED_FIELDS),
                    extra={"constraint_validation": True},
                ),
            )
        ]

        builder = {
            "development": self._development_steps,
            "testing": self._testing_steps,
            "deployment": self._deployment_steps,
            "analysis": self._analysis_steps,
        }[req.type]
        steps.extend(builder(req, ctx, analysis, validation_id, sid))

        steps.append(
            Step(
                id=sid("final_validation"),
                title="Final Validation",
                description="Validate task completion and quality",
                type=StepType.CUSTOM,
                estimated_duration=3,
                dependencies=[s.id for s in steps],
                parameters=CustomParams(
                    handler="final_validation",
                    payload={"requirement_id": req.id, "project_path": ctx.project_path},
                ),
                validation_rules=ValidationRules(extra={"quality_check": True, "completion_validation": True}),
            )
        )
        return steps

    def _development_steps(self, req, ctx, analysis, validation_id, sid) -> List[Step]:
        steps = []
        previous = validation_id
        if analysis.code_impact:
            previous = sid("code_analysis")
            steps.append(
                Step(
                    id=previous,
                    title="Analyze Code Impact",
                    description="Analyze existing code structure and impact",
                    type=StepType.CODE_ANALYSIS,
                    estimated_duration=5,
                    dependencies=[validation_id],
                    parameters=CodeAnalysisParams(
                        project_path=ctx.project_path,
                        files=list(analysis.code_impact),
                        analysis_type="impact",
                    ),
                    validation_rules=ValidationRules(file_exists=True, extra={"syntax_valid": True}),
                )
            )
        steps.append(
            Step(
                id=sid("file_operations"),
                title="Perform File Operations",
                description="Create, modify, or delete files as required",
                type=StepType.FILE_OPERATION,
                estimated_duration=10,
                dependencies=[previous],
                parameters=FileOperationParams(
                    project_path=ctx.project_path,
                    operations=list(analysis.file_operations),
                ),
                validation_rules=ValidationRules(extra={"backup_required": True, "permission_check": True}),
            )
        )
        return steps

    def _testing_steps(self, req, ctx, analysis, validation_id, sid) -> List[Step]:
        test_validation_id = sid("test_validation")
        return [
            Step(
                id=test_validation_id,
                title="Validate Test Cases",
                description="Validate test case definitions and dependencies",
                type=StepType.CUSTOM,
                estimated_duration=3,
                dependencies=[validation_id],
                parameters=CustomParams(
                    handler="validate_test_cases",
                    payload={"test_cases": list(analysis.test_cases), "validation_type": "comprehensive"},
                ),
                validation_rules=ValidationRules(extra={"test_case_valid": True, "dependencies_resolved": True}),
            ),
            Step(
                id=sid("test_execution"),
                title="Execute Test Suite",
                description="Run browser automation tests",
                type=StepType.BROWSER_TESTING,
                estimated_duration=analysis.estimated_test_duration or 30,
                dependencies=[test_validation_id],
                parameters=BrowserTestingParams(
                    targets=list(analysis.browser_targets),
                    mode=analysis.test_mode,
                    test_cases=list(analysis.test_cases),
                ),
                validation_rules=ValidationRules(browser_available=True, extra={"test_environment": True}),
            ),
        ]

    def _deployment_steps(self, req, ctx, analysis, validation_id, sid) -> List[Step]:
        env_validation_id = sid("env_validation")
        return [
            Step(
                id=env_validation_id,
                title="Validate Environment",
                description="Validate deployment environment and requirements",
                type=StepType.CUSTOM,
                estimated_duration=5,
                dependencies=[validation_id],
                parameters=CustomParams(
                    handler="validate_environment",
                    payload={"environment": ctx.environment, "requirements": list(req.resources)},
                ),
                validation_rules=ValidationRules(
                    environment_ready=True,
                    production_safe=bool(req.constraints.get("productionSafe", False)),
                    extra={"resources_available": True},
                ),
            ),
            Step(
                id=sid("deployment"),
                title="Execute Deployment",
                description="Perform deployment operations",
                type=StepType.CUSTOM,
                estimated_duration=20,
                dependencies=[env_validation_id],
                parameters=CustomParams(
                    handler="deploy",
                    payload={"deployment_type": "automated", "rollback_enabled": True},
                ),
                validation_rules=ValidationRules(extra={"deployment_valid": True, "health_check": True}),
            ),
        ]

    def _analysis_steps(self, req, ctx, analysis, validation_id, sid) -> List[Step]:
        return [
            Step(
                id=sid("code_analysis"),
                title="Analyze Code Structure",
                description="Perform comprehensive code analysis",
                type=StepType.CODE_ANALYSIS,
                estimated_duration=10,
                dependencies=[validation_id],
                parameters=CodeAnalysisParams(
                    project_path=ctx.project_path,
                    files=list(analysis.code_impact),
                    analysis_type="comprehensive",
                ),
                validation_rules=ValidationRules(extra={"analysis_complete": True, "quality_metrics": True}),
            )
        ]
