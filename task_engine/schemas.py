"""
Input schemas for work submitted to the engine.

Requirements and contexts arrive from a tool/protocol layer as loose JSON-ish
maps (usually camelCase). They are validated once at the edge into frozen
pydantic models and passed by value through planning and execution.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import MissingRequiredFieldError, TaskEngineError


RequirementType = Literal["development", "testing", "deployment", "analysis"]
PriorityClass = Literal["low", "medium", "high", "critical"]
Environment = Literal["development", "staging", "production"]

PRIORITY_CLASSES = ("low", "medium", "high", "critical")
REQUIRED_REQUIREMENT_FIELDS = ("id", "title", "description", "type", "priority")


class _FrozenModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class Requirement(_FrozenModel):
    """A unit of requested work. Immutable once submitted."""
    id: str
    title: str
    description: str
    type: RequirementType
    priority: PriorityClass
    estimated_duration: float = Field(default=0, ge=0)  # minutes
    dependencies: List[str] = Field(default_factory=list)
    resources: List[str] = Field(default_factory=list)
    constraints: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", "title", "description", mode="before")
    @classmethod
    def non_empty(cls, v):
        if v is None or (isinstance(v, str) and not v.strip()):
            raise ValueError("must be a non-empty string")
        return v


class TaskContext(_FrozenModel):
    """Environment a requirement is planned and executed against."""
    project_path: str
    current_branch: str = "main"
    available_resources: List[str] = Field(default_factory=list)
    constraints: Dict[str, Any] = Field(default_factory=dict)
    environment: Environment = "development"


# ============================================================================
# EDGE COERCION
# ============================================================================

def _first_error_field(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "<unknown>"
    loc = errors[0].get("loc") or ("<unknown>",)
    return ".".join(str(p) for p in loc)


def coerce_requirement(value: Union[Requirement, Mapping[str, Any]]) -> Requirement:
    """Return a validated Requirement.

    A missing or empty required field raises MissingRequiredFieldError; any
    other schema violation raises TaskEngineError with the pydantic errors
    attached.
    """
    if isinstance(value, Requirement):
        return value
    if not isinstance(value, Mapping):
        raise TaskEngineError("requirement must be a mapping", {"got": type(value).__name__})
    try:
        return Requirement.model_validate(dict(value))
    except ValidationError as exc:
        for err in exc.errors():
            loc = err.get("loc") or ()
            field = str(loc[0]) if loc else ""
            if err.get("type") == "missing" or (field in REQUIRED_REQUIREMENT_FIELDS and "non-empty" in str(err.get("msg", ""))):
                raise MissingRequiredFieldError(field or _first_error_field(exc), "requirement") from exc
        raise TaskEngineError(
            f"invalid requirement: {_first_error_field(exc)}",
            {"errors": exc.errors(include_url=False)},
        ) from exc


def coerce_context(value: Union[TaskContext, Mapping[str, Any]]) -> TaskContext:
    if isinstance(value, TaskContext):
        return value
    if not isinstance(value, Mapping):
        raise TaskEngineError("context must be a mapping", {"got": type(value).__name__})
    try:
        return TaskContext.model_validate(dict(value))
    except ValidationError as exc:
        for err in exc.errors():
            if err.get("type") == "missing":
                loc = err.get("loc") or ("<unknown>",)
                raise MissingRequiredFieldError(str(loc[0]), "context") from exc
        raise TaskEngineError(
            f"invalid context: {_first_error_field(exc)}",
            {"errors": exc.errors(include_url=False)},
        ) from exc
