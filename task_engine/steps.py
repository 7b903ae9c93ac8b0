"""
Typed plan steps.

Each step kind carries its own parameter structure instead of an untyped map;
the executor dispatches on ``Step.type`` through a handler registry. Plain maps
(e.g. steps authored by a tool layer) are converted with
``parse_step_parameters`` / ``Step.from_dict``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import UnknownStepTypeError


class StepType(str, Enum):
    CODE_ANALYSIS = "code_analysis"
    BROWSER_TESTING = "browser_testing"
    FILE_OPERATION = "file_operation"
    API_CALL = "api_call"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Union[str, "StepType"]) -> "StepType":
        if isinstance(value, StepType):
            return value
        try:
            return cls(value)
        except ValueError:
            raise UnknownStepTypeError(value) from None


def _get(raw: Mapping[str, Any], snake: str, camel: Optional[str] = None, default: Any = None) -> Any:
    if snake in raw:
        return raw[snake]
    if camel and camel in raw:
        return raw[camel]
    return default


# ============================================================================
# VALIDATION RULES
# ============================================================================

@dataclass(frozen=True)
class ValidationRules:
    """Pre-dispatch checks applied by the executor.

    Enforced: required_fields, file_exists, browser_available,
    environment_ready (with production_safe). Anything else is kept in
    ``extra`` as an advisory flag and echoed back in results.
    """
    required_fields: List[str] = field(default_factory=list)
    file_exists: bool = False
    browser_available: bool = False
    environment_ready: bool = False
    production_safe: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "ValidationRules":
        raw = dict(raw or {})
        known = {
            "required_fields": _get(raw, "required_fields", "requiredFields", []) or [],
            "file_exists": bool(_get(raw, "file_exists", "fileExists", False)),
            "browser_available": bool(_get(raw, "browser_available", "browserAvailable", False)),
            "environment_ready": bool(_get(raw, "environment_ready", "environmentReady", False)),
            "production_safe": bool(_get(raw, "production_safe", "productionSafe", False)),
        }
        consumed = {
            "required_fields", "requiredFields", "file_exists", "fileExists",
            "browser_available", "browserAvailable", "environment_ready",
            "environmentReady", "production_safe", "productionSafe",
        }
        extra = {k: v for k, v in raw.items() if k not in consumed}
        return cls(required_fields=list(known.pop("required_fields")), extra=extra, **known)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# STEP PARAMETER VARIANTS
# ============================================================================

@dataclass(frozen=True)
class CodeAnalysisParams:
    project_path: str
    files: List[str] = field(default_factory=list)
    analysis_type: str = "structure"  # impact | comprehensive | structure

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CodeAnalysisParams":
        return cls(
            project_path=_get(raw, "project_path", "projectPath", ""),
            files=list(_get(raw, "files", default=[]) or []),
            analysis_type=_get(raw, "analysis_type", "analysisType", None)
            or _get(raw, "analysis_depth", "analysisDepth", "structure"),
        )


@dataclass(frozen=True)
class BrowserTarget:
    url: str
    script: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Union[str, Mapping[str, Any]]) -> "BrowserTarget":
        if isinstance(raw, str):
            return cls(url=raw)
        return cls(url=raw["url"], script=_get(raw, "script", "testScript"))


@dataclass(frozen=True)
class BrowserTestingParams:
    targets: List[BrowserTarget] = field(default_factory=list)
    mode: str = "automated"  # automated | screenshot
    test_cases: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "BrowserTestingParams":
        targets = _get(raw, "targets", "browserRequirements", []) or []
        return cls(
            targets=[t if isinstance(t, BrowserTarget) else BrowserTarget.from_dict(t) for t in targets],
            mode=_get(raw, "mode", "testType", "automated"),
            test_cases=list(_get(raw, "test_cases", "testCases", []) or []),
        )


@dataclass(frozen=True)
class FileOperation:
    type: str  # read | write | delete | list
    path: str
    content: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FileOperation":
        return cls(type=raw["type"], path=raw["path"], content=raw.get("content"))


@dataclass(frozen=True)
class FileOperationParams:
    project_path: str = ""
    operations: List[FileOperation] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FileOperationParams":
        ops = _get(raw, "operations", default=[]) or []
        return cls(
            project_path=_get(raw, "project_path", "projectPath", ""),
            operations=[op if isinstance(op, FileOperation) else FileOperation.from_dict(op) for op in ops],
        )


@dataclass(frozen=True)
class ApiCallParams:
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ApiCallParams":
        return cls(
            url=raw["url"],
            method=str(raw.get("method") or "GET").upper(),
            headers=dict(raw.get("headers") or {}),
            body=raw.get("body"),
            timeout=raw.get("timeout"),
        )


@dataclass(frozen=True)
class CustomParams:
    """Parameters for custom steps.

    ``handler`` names a handler registered on the executor; when none is
    registered under that name the step echoes its payload.
    """
    handler: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "CustomParams":
        raw = dict(raw)
        handler = raw.pop("handler", None)
        payload = raw.pop("payload", None)
        if payload is None:
            payload = raw
        return cls(handler=handler, payload=dict(payload))


StepParameters = Union[CodeAnalysisParams, BrowserTestingParams, FileOperationParams, ApiCallParams, CustomParams]

PARAMETER_TYPES = {
    StepType.CODE_ANALYSIS: CodeAnalysisParams,
    StepType.BROWSER_TESTING: BrowserTestingParams,
    StepType.FILE_OPERATION: FileOperationParams,
    StepType.API_CALL: ApiCallParams,
    StepType.CUSTOM: CustomParams,
}


def parse_step_parameters(step_type: Union[str, StepType], raw: Union[Mapping[str, Any], StepParameters, None]) -> StepParameters:
    kind = StepType.parse(step_type)
    expected = PARAMETER_TYPES[kind]
    if isinstance(raw, expected):
        return raw
    return expected.from_dict(raw or {})


def parameters_to_dict(params: StepParameters) -> Dict[str, Any]:
    return asdict(params)


# ============================================================================
# STEP
# ============================================================================

@dataclass
class Step:
    id: str
    title: str
    type: StepType
    parameters: StepParameters
    description: str = ""
    order: int = 0
    estimated_duration: float = 0
    dependencies: List[str] = field(default_factory=list)
    validation_rules: ValidationRules = field(default_factory=ValidationRules)

    def __post_init__(self):
        self.type = StepType.parse(self.type)
        expected = PARAMETER_TYPES[self.type]
        if not isinstance(self.parameters, expected):
            self.parameters = parse_step_parameters(self.type, self.parameters)
        if not isinstance(self.validation_rules, ValidationRules):
            self.validation_rules = ValidationRules.from_dict(self.validation_rules)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "Step":
        step_type = StepType.parse(raw["type"])
        return cls(
            id=raw["id"],
            title=raw.get("title", raw["id"]),
            description=raw.get("description", ""),
            type=step_type,
            order=int(raw.get("order", 0)),
            estimated_duration=_get(raw, "estimated_duration", "estimatedDuration", 0),
            dependencies=list(raw.get("dependencies") or []),
            parameters=parse_step_parameters(step_type, raw.get("parameters")),
            validation_rules=ValidationRules.from_dict(_get(raw, "validation_rules", "validationRules", {})),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type.value,
            "order": self.order,
            "estimated_duration": self.estimated_duration,
            "dependencies": list(self.dependencies),
            "parameters": parameters_to_dict(self.parameters),
            "validation_rules": self.validation_rules.to_dict(),
        }
