# schemas.py
# Structural contracts for each stage's model output.
#
# A parsed payload must pass its contract before any hard rule runs or
# anything is persisted. Failures come back as a list of field-level
# violations rather than a bare boolean.

from dataclasses import dataclass, field
from typing import Annotated, Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError, field_validator

from fieldfix.models import PlanStep

T = TypeVar("T")

NonEmptyStr = Annotated[StrictStr, Field(min_length=1)]
Minutes = Annotated[float, Field(strict=True, gt=0)]
Number = Annotated[float, Field(strict=True)]


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ObservationPayload(_Payload):
    equipment_type: NonEmptyStr = Field(..., alias="equipmentType")
    problem_summary: NonEmptyStr = Field(..., alias="problemSummary")
    risk_flags: list[StrictStr] = Field(..., alias="riskFlags")
    environmental_notes: StrictStr | None = Field(default=None, alias="environmentalNotes")

    @field_validator("equipment_type", "problem_summary")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()


class PlanStepPayload(_Payload):
    step_number: StrictInt = Field(..., alias="stepNumber")
    action: NonEmptyStr
    duration: Minutes
    citations: list[StrictStr] = Field(..., min_length=1)


class PlanPayload(_Payload):
    steps: list[PlanStepPayload] = Field(..., min_length=3)


class QAPayload(_Payload):
    pass_: StrictBool = Field(..., alias="pass")
    issues: list[StrictStr]
    recommendations: list[StrictStr]
    score: Number

    @field_validator("score")
    @classmethod
    def _clamp(cls, value: float) -> float:
        return min(100.0, max(0.0, value))


class SafetyCheckPayload(_Payload):
    pass_: StrictBool = Field(..., alias="pass")
    ppe_required: list[StrictStr] = Field(..., alias="ppeRequired")
    hazards: list[StrictStr]
    required_presteps: list[StrictStr] = Field(..., alias="requiredPresteps")


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult(Generic[T]):
    ok: bool
    value: T | None = None
    violations: list[dict[str, str]] = field(default_factory=list)


def _violations(exc: ValidationError) -> list[dict[str, str]]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or "<root>", "message": err["msg"]}
        for err in exc.errors()
    ]


def _validate(model: type[BaseModel], data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(ok=False, violations=[{"field": "<root>", "message": "expected a JSON object"}])
    try:
        return ValidationResult(ok=True, value=model.model_validate(data))
    except ValidationError as exc:
        return ValidationResult(ok=False, violations=_violations(exc))


# ---------------------------------------------------------------------------
# Public validators
# ---------------------------------------------------------------------------


def validate_observation(data: Any) -> ValidationResult[ObservationPayload]:
    return _validate(ObservationPayload, data)


def validate_plan(data: Any) -> ValidationResult[list[PlanStep]]:
    """
    Check a plan payload and return its canonical steps.

    On top of the per-field rules, step numbers must be dense and 1-based
    (step N sits at position N). Citations only need to be present here;
    whether they resolve is the QA gate's job.
    """
    result = _validate(PlanPayload, data)
    if not result.ok:
        return result

    violations = [
        {"field": f"steps.{index}.stepNumber", "message": f"expected {index + 1}, got {step.step_number}"}
        for index, step in enumerate(result.value.steps)
        if step.step_number != index + 1
    ]
    if violations:
        return ValidationResult(ok=False, violations=violations)

    steps = [
        PlanStep(
            step_number=step.step_number,
            action=step.action,
            duration=step.duration,
            citations=list(step.citations),
        )
        for step in result.value.steps
    ]
    return ValidationResult(ok=True, value=steps)


def validate_qa(data: Any) -> ValidationResult[QAPayload]:
    return _validate(QAPayload, data)


def validate_safety_check(data: Any) -> ValidationResult[SafetyCheckPayload]:
    return _validate(SafetyCheckPayload, data)
