import pytest
from pydantic import ValidationError

from task_engine.errors import MissingRequiredFieldError, TaskEngineError
from task_engine.schemas import Requirement, TaskContext, coerce_context, coerce_requirement


def test_requirement_accepts_camel_case_and_snake_case(make_requirement):
    camel = coerce_requirement(make_requirement(estimatedDuration=45))
    assert camel.estimated_duration == 45

    snake = make_requirement()
    snake.pop("estimatedDuration")
    snake["estimated_duration"] = 12
    assert coerce_requirement(snake).estimated_duration == 12


def test_requirement_is_frozen(make_requirement):
    req = coerce_requirement(make_requirement())
    with pytest.raises(ValidationError):
        req.title = "changed"


def test_requirement_passthrough_returns_same_instance(make_requirement):
    req = coerce_requirement(make_requirement())
    assert coerce_requirement(req) is req


@pytest.mark.parametrize("field", ["id", "title", "description", "type", "priority"])
def test_missing_required_field(make_requirement, field):
    raw = make_requirement()
    raw.pop(field)
    with pytest.raises(MissingRequiredFieldError) as ei:
        coerce_requirement(raw)
    assert ei.value.field_name == field
    assert ei.value.code == "MISSING_REQUIRED_FIELD"


def test_empty_description_counts_as_missing(make_requirement):
    with pytest.raises(MissingRequiredFieldError) as ei:
        coerce_requirement(make_requirement(description="   "))
    assert ei.value.field_name == "description"


def test_invalid_enum_is_not_reported_as_missing(make_requirement):
    with pytest.raises(TaskEngineError) as ei:
        coerce_requirement(make_requirement(type="refactoring"))
    assert not isinstance(ei.value, MissingRequiredFieldError)
    assert ei.value.details["errors"]


def test_negative_duration_rejected(make_requirement):
    with pytest.raises(TaskEngineError):
        coerce_requirement(make_requirement(estimatedDuration=-1))


def test_non_mapping_requirement_rejected():
    with pytest.raises(TaskEngineError):
        coerce_requirement(["not", "a", "mapping"])


def test_context_defaults():
    ctx = coerce_context({"projectPath": "/srv/app"})
    assert isinstance(ctx, TaskContext)
    assert ctx.current_branch == "main"
    assert ctx.environment == "development"
    assert ctx.available_resources == []


def test_context_missing_project_path():
    with pytest.raises(MissingRequiredFieldError):
        coerce_context({"environment": "staging"})


def test_context_bad_environment():
    with pytest.raises(TaskEngineError):
        coerce_context({"projectPath": "/p", "environment": "qa"})


def test_requirement_model_direct_construction():
    req = Requirement(id="r", title="t", description="d", type="testing", priority="low")
    assert req.dependencies == []
    assert req.constraints == {}
